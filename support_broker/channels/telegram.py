"""Telegram relay channel — the support inbox is one Telegram chat.

Outbound messages use the Bot API ``sendMessage`` method. Inbound staff
messages arrive either through ``getUpdates`` long polling (poll_forever)
or through a webhook (see support_broker.api.telegram_webhook).

Security: the bot token is part of the API URL and is never logged; the
webhook secret is compared in constant time.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from support_broker.channels.protocol import SendResult, StaffMessage
from support_broker.config import Settings

logger = logging.getLogger(__name__)

SECRET_TOKEN_HEADER = "x-telegram-bot-api-secret-token"

# Poll loop backoff after a failed getUpdates call
_POLL_BASE_DELAY = 1.0
_POLL_MAX_DELAY = 60.0
_POLL_JITTER = 0.3


def _compute_delay(attempt: int, base_delay: float, max_delay: float, jitter: float) -> float:
    """Exponential backoff with jitter."""
    delay = min(base_delay * (2**attempt), max_delay)
    jitter_amount = delay * jitter
    delay += random.uniform(-jitter_amount, jitter_amount)
    return max(0.1, delay)


def verify_secret_token(expected: str, header_value: str | None) -> bool:
    """Check Telegram's webhook secret header. Fails closed without a secret."""
    if not expected:
        logger.warning("Telegram webhook secret not set, rejecting update")
        return False
    if not header_value:
        return False
    return hmac.compare_digest(expected, header_value)


class TelegramChannel:
    """Support relay over a Telegram bot and one support chat."""

    def __init__(
        self,
        bot_token: str = "",
        chat_id: str = "",
        *,
        channel_id: str = "telegram-support",
        api_base: str = "https://api.telegram.org",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._channel_id = channel_id
        self._token = bot_token
        self._chat_id = str(chat_id)
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._offset: int | None = None

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient | None = None) -> TelegramChannel:
        return cls(
            settings.telegram_bot_token,
            settings.telegram_support_chat_id,
            api_base=settings.telegram_api_base,
            timeout=settings.relay_send_timeout,
            client=client,
        )

    @property
    def channel_id(self) -> str:
        return self._channel_id

    @property
    def channel_type(self) -> str:
        return "telegram"

    @property
    def is_configured(self) -> bool:
        return bool(self._token and self._chat_id)

    @property
    def chat_id(self) -> str:
        return self._chat_id

    def _url(self, method: str) -> str:
        return f"{self._api_base}/bot{self._token}/{method}"

    async def _call(self, method: str, payload: dict[str, Any], timeout: float | None = None) -> Any:
        """Call a Bot API method and return its ``result``.

        Raises httpx.HTTPError on transport failures and ValueError when the
        API answers ``ok: false``.
        """
        resp = await self._client.post(self._url(method), json=payload, timeout=timeout or self._timeout)
        try:
            data = resp.json()
        except ValueError:
            resp.raise_for_status()
            raise
        if not data.get("ok"):
            raise ValueError(f"Telegram {method} error {data.get('error_code', resp.status_code)}: {data.get('description', '')}")
        return data.get("result")

    async def send_text(self, text: str) -> SendResult:
        """Send a plain-text message to the support chat."""
        if not self.is_configured:
            return SendResult(
                success=False,
                channel_id=self._channel_id,
                error="Telegram bot token or support chat not configured",
            )

        try:
            result = await self._call(
                "sendMessage",
                {"chat_id": self._chat_id, "text": text, "disable_web_page_preview": True},
            )
        except (httpx.HTTPError, ValueError) as e:
            return SendResult(success=False, channel_id=self._channel_id, error=str(e))

        message_id = (result or {}).get("message_id")
        return SendResult(
            success=True,
            channel_id=self._channel_id,
            response_id="" if message_id is None else str(message_id),
        )

    def parse_update(self, update: dict[str, Any]) -> StaffMessage | None:
        """Turn a Bot API update into a StaffMessage (text messages only)."""
        message = update.get("message")
        if not isinstance(message, dict):
            return None
        text = message.get("text") or message.get("caption") or ""
        if not text.strip():
            return None

        reply_to = message.get("reply_to_message") or {}
        reply_to_id = reply_to.get("message_id")
        sender = message.get("from") or {}
        return StaffMessage(
            text=text.strip(),
            chat_id=str((message.get("chat") or {}).get("id", "")),
            message_id=str(message.get("message_id", "")),
            reply_to_id=None if reply_to_id is None else str(reply_to_id),
            sender=sender.get("username") or sender.get("first_name") or "",
        )

    async def get_updates(self, poll_timeout: int = 30) -> list[dict[str, Any]]:
        """Long-poll for new updates and advance the offset past them."""
        payload: dict[str, Any] = {"timeout": poll_timeout, "allowed_updates": ["message"]}
        if self._offset is not None:
            payload["offset"] = self._offset
        updates = await self._call("getUpdates", payload, timeout=poll_timeout + self._timeout)
        for update in updates or []:
            self._offset = max(self._offset or 0, int(update.get("update_id", 0)) + 1)
        return updates or []

    async def poll_forever(
        self,
        handler: Callable[[dict[str, Any]], Awaitable[None]],
        poll_timeout: int = 30,
    ) -> None:
        """Feed every update to ``handler`` until cancelled.

        getUpdates failures back off exponentially; handler errors are
        logged and the update is skipped.
        """
        logger.info("Telegram polling started (chat=%s)", self._chat_id)
        attempt = 0
        try:
            while True:
                try:
                    updates = await self.get_updates(poll_timeout)
                except (httpx.HTTPError, ValueError) as e:
                    delay = _compute_delay(attempt, _POLL_BASE_DELAY, _POLL_MAX_DELAY, _POLL_JITTER)
                    attempt += 1
                    logger.warning("Telegram getUpdates failed (%s), retrying in %.1fs", type(e).__name__, delay)
                    await asyncio.sleep(delay)
                    continue
                attempt = 0
                for update in updates:
                    try:
                        await handler(update)
                    except Exception:
                        logger.exception("Telegram update %s handling failed", update.get("update_id"))
        except asyncio.CancelledError:
            logger.info("Telegram polling stopped")
            raise

    async def aclose(self) -> None:
        await self._client.aclose()
