"""Relay adapter — binds the shared support channel to the session broker.

Outbound: broker notices (new active visitor, queued visitor, session
ended, typing, visitor messages) become plain-text channel messages. The
channel's message id is handed back to the broker as the correlation
token for replies.

Inbound: staff messages from the support chat are either commands or
replies. A reply is addressed by an explicit ``#<session-id-prefix>``
at the start of the text, or by replying to one of the bot's messages.

Commands:
    /end [session]   end a session (the active one when omitted)
    /queue           list waiting visitors
    /status          slot and queue overview
    /help, /start    usage
"""

from __future__ import annotations

import logging
import re
import time
from typing import TYPE_CHECKING, Any

from support_broker import events
from support_broker.channels.protocol import RelayChannel, StaffMessage
from support_broker.channels.sanitizer import sanitize_visitor_text
from support_broker.errors import DeliveryFailedError, UnroutableError

if TYPE_CHECKING:
    from support_broker.broker import QueueStatus, SessionBroker

logger = logging.getLogger(__name__)

# At most one typing notice per session in this window
_TYPING_NOTICE_INTERVAL = 15.0

_ADDRESS_PATTERN = re.compile(r"^#([0-9a-fA-F-]{4,36})\s*(.*)$", re.DOTALL)

_REASON_LABELS = {
    events.REASON_ENDED_BY_VISITOR: "ended by visitor",
    events.REASON_ENDED_BY_SUPPORT: "ended by support",
    events.REASON_DISCONNECTED: "visitor disconnected",
    events.REASON_TIMEOUT: "visitor never connected",
}

HELP_TEXT = (
    "Support relay commands:\n"
    "/end [session] - end a chat (the active one if no id is given)\n"
    "/queue - list waiting visitors\n"
    "/status - show the active chat and queue size\n"
    "/help - this message\n"
    "\n"
    "To answer a visitor, reply to one of their messages, "
    "or start your message with #<session id>."
)


def split_address(text: str) -> tuple[str | None, str]:
    """Split ``#<prefix> reply`` into (prefix, reply). No prefix -> (None, text)."""
    match = _ADDRESS_PATTERN.match(text.strip())
    if match is None:
        return None, text.strip()
    return match.group(1).lower(), match.group(2).strip()


def parse_command(text: str) -> tuple[str, str]:
    """Split ``/cmd@bot args`` into (cmd, args)."""
    head, _, args = text.strip().partition(" ")
    command = head[1:].split("@", 1)[0].lower()
    return command, args.strip()


def format_queue(status: QueueStatus) -> str:
    if not status.queue:
        return "📭 Queue is empty."
    lines = [f"🕒 {status.queue_size} waiting:"]
    for entry in status.queue:
        marker = " (connecting)" if entry.session_id == status.promoting_id else ""
        lines.append(f"{entry.position}. {entry.session_id[:8]}{marker}")
    return "\n".join(lines)


def format_status(status: QueueStatus) -> str:
    active = status.active_id[:8] if status.active_id else "none"
    return (
        "📊 Support status\n"
        f"Active chat: {active}\n"
        f"Waiting: {status.queue_size}\n"
        f"Open sessions: {status.sessions}"
    )


class RelayAdapter:
    """Support-channel side of the broker. Implements the broker's RelaySink."""

    def __init__(self, channel: RelayChannel, support_chat_id: str = ""):
        self._channel = channel
        self._support_chat_id = str(support_chat_id)
        self._broker: SessionBroker | None = None
        self._last_typing: dict[str, float] = {}
        self.sent_count = 0
        self.failure_count = 0
        self.last_error = ""

    def bind(self, broker: SessionBroker) -> None:
        self._broker = broker

    def status(self) -> dict[str, Any]:
        return {
            "type": self._channel.channel_type,
            "channel_id": self._channel.channel_id,
            "configured": self._channel.is_configured,
            "sent": self.sent_count,
            "failures": self.failure_count,
            "last_error": self.last_error,
        }

    # ── Outbound ──────────────────────────────────────────────────────────

    async def _send(self, text: str) -> str:
        """Send to the support chat and return the message id.

        Raises:
            DeliveryFailedError: the channel rejected or could not send
        """
        result = await self._channel.send_text(text)
        if not result.success:
            self.failure_count += 1
            self.last_error = result.error
            logger.warning("Relay send failed: channel=%s error=%s", result.channel_id, result.error)
            raise DeliveryFailedError(result.error or "relay send failed")
        self.sent_count += 1
        return result.response_id

    async def notify_new_active_session(self, session_id: str) -> str | None:
        token = await self._send(
            "🔔 New visitor connected\n"
            f"Session: {session_id}\n"
            f"Reply to this message or start with #{session_id[:8]} to answer."
        )
        return token or None

    async def notify_queued_session(self, session_id: str, position: int) -> str | None:
        token = await self._send(
            "🕒 Visitor waiting in queue\n"
            f"Session: {session_id}\n"
            f"Position: {position}"
        )
        return token or None

    async def notify_session_ended(self, session_id: str, reason: str) -> None:
        self._last_typing.pop(session_id, None)
        label = _REASON_LABELS.get(reason, reason)
        await self._send(f"ℹ️ Session {session_id[:8]} ended ({label})")

    async def notify_typing(self, session_id: str) -> None:
        now = time.monotonic()
        last = self._last_typing.get(session_id)
        if last is not None and now - last < _TYPING_NOTICE_INTERVAL:
            return
        self._last_typing[session_id] = now
        await self._send(f"✍️ Visitor {session_id[:8]} is typing...")

    async def deliver_visitor_message(self, session_id: str, text: str) -> str:
        clean = sanitize_visitor_text(text)
        if not clean:
            raise DeliveryFailedError("Message is empty after sanitization")
        return await self._send(f"💬 [{session_id[:8]}] {clean}")

    async def _reply(self, text: str) -> None:
        """Best-effort feedback to staff."""
        try:
            await self._send(text)
        except DeliveryFailedError as e:
            logger.warning("Could not send feedback to support: %s", e)

    # ── Inbound ───────────────────────────────────────────────────────────

    async def handle_update(self, update: dict[str, Any]) -> None:
        """Entry point for raw channel updates (polling or webhook)."""
        message = self._channel.parse_update(update)
        if message is None:
            return
        await self.handle_message(message)

    async def handle_message(self, message: StaffMessage) -> None:
        if self._broker is None:
            raise RuntimeError("Relay adapter is not bound to a broker")
        if self._support_chat_id and message.chat_id != self._support_chat_id:
            logger.warning("Ignoring message from unexpected chat %s", message.chat_id)
            return

        if message.is_command:
            await self._handle_command(message)
            return

        session_ref, text = split_address(message.text)
        if not text:
            await self._reply("✏️ Nothing to send. Usage: #<session> your reply")
            return

        try:
            result = await self._broker.route_staff_reply(
                text,
                session_id=session_ref,
                token=message.reply_to_id,
            )
        except UnroutableError as e:
            logger.info("Unroutable staff reply: %s", e)
            await self._reply(
                "❌ Could not tell which visitor this is for. "
                "Reply to one of their messages or start with #<session id>."
            )
            return

        if not result.delivered:
            await self._reply(f"⚠️ Visitor {result.session_id[:8]} is not connected, message not delivered.")

    async def _handle_command(self, message: StaffMessage) -> None:
        command, args = parse_command(message.text)
        broker = self._broker

        if command == "end":
            if args:
                session_id = await broker.find_session(args.lstrip("#"))
                if session_id is None:
                    await self._reply(f"❌ No session matches {args}")
                    return
            else:
                session_id = broker.active_id
                if session_id is None:
                    await self._reply("❌ No active chat to end.")
                    return
            result = await broker.end_session(session_id, events.REASON_ENDED_BY_SUPPORT)
            if not result.ended:
                await self._reply(f"❌ Session {session_id[:8]} already ended.")
            elif result.next_active_id:
                await self._reply(f"✅ Session {session_id[:8]} ended. Next visitor: {result.next_active_id[:8]}")
            else:
                await self._reply(f"✅ Session {session_id[:8]} ended.")
        elif command == "queue":
            await self._reply(format_queue(await broker.queue_status()))
        elif command == "status":
            await self._reply(format_status(await broker.queue_status()))
        elif command in ("help", "start"):
            await self._reply(HELP_TEXT)
        else:
            await self._reply(f"Unknown command /{command}. Send /help for usage.")
