"""Visitor sessions: models, registry and admission queue."""

from support_broker.sessions.models import Session, SessionState, create_session
from support_broker.sessions.queue import AdmissionQueue, QueueEntry
from support_broker.sessions.registry import SessionRegistry

__all__ = [
    "AdmissionQueue",
    "QueueEntry",
    "Session",
    "SessionRegistry",
    "SessionState",
    "create_session",
]
