"""Shared fakes and fixtures for the support broker test suite."""

from __future__ import annotations

from collections import defaultdict
from typing import Any

import pytest
import pytest_asyncio

from support_broker.broker import SessionBroker
from support_broker.channels.protocol import SendResult, StaffMessage
from support_broker.config import Settings
from support_broker.errors import DeliveryFailedError
from support_broker.serve import create_app


class FakeVisitors:
    """Records pushes and closes per connection handle."""

    def __init__(self):
        self.pushed: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self.closed: dict[str, str] = {}

    def push(self, handle: str, event: dict[str, Any]) -> bool:
        if handle in self.closed:
            return False
        self.pushed[handle].append(event)
        return True

    def close(self, handle: str, reason: str) -> None:
        self.closed.setdefault(handle, reason)

    def types(self, handle: str) -> list[str]:
        return [e["type"] for e in self.pushed[handle]]

    def last(self, handle: str) -> dict[str, Any]:
        return self.pushed[handle][-1]

    def all_events(self) -> list[dict[str, Any]]:
        return [e for events in self.pushed.values() for e in events]


class FakeRelay:
    """RelaySink that hands out sequential message ids as tokens."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.fail = False
        self._next_id = 100

    def _token(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def kinds(self) -> list[str]:
        return [c[0] for c in self.calls]

    async def notify_new_active_session(self, session_id: str) -> str | None:
        self.calls.append(("new_active", session_id))
        return self._token()

    async def notify_queued_session(self, session_id: str, position: int) -> str | None:
        self.calls.append(("queued", session_id, position))
        return self._token()

    async def notify_session_ended(self, session_id: str, reason: str) -> None:
        self.calls.append(("ended", session_id, reason))

    async def notify_typing(self, session_id: str) -> None:
        self.calls.append(("typing", session_id))

    async def deliver_visitor_message(self, session_id: str, text: str) -> str:
        if self.fail:
            raise DeliveryFailedError("relay down")
        self.calls.append(("message", session_id, text))
        return self._token()


class FakeChannel:
    """RelayChannel that records sent texts; updates are already StaffMessage-shaped dicts."""

    def __init__(self, chat_id: str = "-100", configured: bool = True):
        self.chat_id = chat_id
        self._configured = configured
        self.sent: list[str] = []
        self.should_fail = False
        self.closed = False
        self._next_id = 500

    @property
    def channel_id(self) -> str:
        return "fake-support"

    @property
    def channel_type(self) -> str:
        return "fake"

    @property
    def is_configured(self) -> bool:
        return self._configured

    async def send_text(self, text: str) -> SendResult:
        if self.should_fail:
            return SendResult(success=False, channel_id="fake-support", error="fake failure")
        self.sent.append(text)
        self._next_id += 1
        return SendResult(success=True, channel_id="fake-support", response_id=str(self._next_id))

    @property
    def last_message_id(self) -> str:
        return str(self._next_id)

    def parse_update(self, update: dict[str, Any]) -> StaffMessage | None:
        if "text" not in update:
            return None
        return StaffMessage(
            text=update["text"],
            chat_id=update.get("chat_id", self.chat_id),
            reply_to_id=update.get("reply_to"),
        )

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture()
def visitors() -> FakeVisitors:
    return FakeVisitors()


@pytest.fixture()
def relay() -> FakeRelay:
    return FakeRelay()


@pytest_asyncio.fixture()
async def make_broker(visitors, relay):
    """Factory for started brokers; all are stopped at teardown."""
    brokers: list[SessionBroker] = []

    async def _make(**kwargs) -> SessionBroker:
        kwargs.setdefault("connect_timeout_seconds", 0)
        broker = SessionBroker(visitors, relay, **kwargs)
        await broker.start()
        brokers.append(broker)
        return broker

    yield _make
    for broker in brokers:
        await broker.stop()


@pytest_asyncio.fixture()
async def broker(make_broker) -> SessionBroker:
    return await make_broker(max_queue_size=3)


@pytest.fixture()
def make_app():
    """Build an app wired to a FakeChannel; keyword overrides go to Settings."""

    def _make(channel: FakeChannel | None = None, **overrides):
        overrides.setdefault("rate_limit_enabled", False)
        overrides.setdefault("connect_timeout_seconds", 0)
        channel = channel or FakeChannel()
        return create_app(Settings(**overrides), channel=channel), channel

    return _make
