"""Live support chat broker: one visitor at a time, everyone else queued."""

__version__ = "1.0.0"
