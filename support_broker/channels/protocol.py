"""Relay channel protocol — the support inbox's send/receive primitives.

A relay channel is the single shared conversation with the support staff
(a Telegram support chat in production). Each channel implements:
- send_text(): post a message, returning the provider message id
- parse_update(): normalize an inbound provider payload into a StaffMessage

Contract:
- Credentials come from settings, never logged
- send_text() never raises for provider errors; it returns a failed SendResult
- Message ids are strings regardless of the provider's native type
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass
class SendResult:
    """Result of sending a message to the support channel."""
    success: bool
    channel_id: str
    error: str = ""
    response_id: str = ""  # Provider message id, used as correlation token


@dataclass
class StaffMessage:
    """An inbound message written by support staff."""
    text: str
    chat_id: str
    message_id: str = ""
    reply_to_id: str | None = None  # Id of the channel message being replied to
    sender: str = ""

    @property
    def is_command(self) -> bool:
        return self.text.startswith("/")


@runtime_checkable
class RelayChannel(Protocol):
    """Protocol for support relay channels."""

    @property
    def channel_id(self) -> str:
        """Unique identifier for this channel."""
        ...

    @property
    def channel_type(self) -> str:
        """Type of channel (telegram, ...)."""
        ...

    @property
    def is_configured(self) -> bool:
        """Whether this channel has valid credentials configured."""
        ...

    async def send_text(self, text: str) -> SendResult:
        """Post a plain-text message to the support inbox."""
        ...

    def parse_update(self, update: dict[str, Any]) -> StaffMessage | None:
        """Normalize a provider update. None for updates that are not staff messages."""
        ...

    async def aclose(self) -> None:
        """Release network resources."""
        ...
