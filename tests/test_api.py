"""Tests for the HTTP API: start, end, queue status, health, webhook.

Uses FastAPI's TestClient against the full app (lifespan included) with
a fake relay channel.
"""

from __future__ import annotations

import json

import httpx
from fastapi.testclient import TestClient

from support_broker.channels.telegram import TelegramChannel


class TestStartEndpoint:
    """POST /api/start"""

    def test_first_connected_then_queued(self, make_app):
        app, _ = make_app()
        with TestClient(app) as client:
            first = client.post("/api/start")
            second = client.post("/api/start")

        assert first.status_code == 200
        assert first.json()["status"] == "connected"
        assert second.json()["status"] == "queued"
        assert second.json()["position"] == 1
        assert second.json()["queueSize"] == 1
        assert first.json()["sessionId"] != second.json()["sessionId"]

    def test_rejected_when_queue_full(self, make_app):
        app, _ = make_app(max_queue_size=1)
        with TestClient(app) as client:
            client.post("/api/start")
            client.post("/api/start")
            resp = client.post("/api/start")

        assert resp.status_code == 503
        assert resp.json()["status"] == "rejected"

    def test_rate_limited(self, make_app):
        app, _ = make_app(rate_limit_enabled=True, start_rate_limit="2/minute", max_queue_size=10)
        with TestClient(app) as client:
            codes = [client.post("/api/start").status_code for _ in range(3)]
            last = client.post("/api/start")

        assert codes == [200, 200, 429]
        assert last.status_code == 429
        assert "Retry-After" in last.headers

    def test_relay_notified(self, make_app):
        app, channel = make_app()
        with TestClient(app) as client:
            sid = client.post("/api/start").json()["sessionId"]
            client.portal.call(app.state.broker.wait_idle)

        assert any(sid in text for text in channel.sent)


class TestEndEndpoint:
    """POST /api/end"""

    def test_end_promotes_next(self, make_app):
        app, _ = make_app()
        with TestClient(app) as client:
            sid = client.post("/api/start").json()["sessionId"]
            queued = client.post("/api/start").json()["sessionId"]
            resp = client.post("/api/end", json={"sessionId": sid})
            status = client.get("/api/queue-status").json()

        assert resp.json()["status"] == "ended"
        assert resp.json()["nextActiveId"] == queued[:8]
        assert status["queueSize"] == 0
        assert status["activeId"] == queued[:8]

    def test_end_is_idempotent(self, make_app):
        app, _ = make_app()
        with TestClient(app) as client:
            sid = client.post("/api/start").json()["sessionId"]
            first = client.post("/api/end", json={"sessionId": sid})
            second = client.post("/api/end", json={"sessionId": sid})

        assert first.json() == {"status": "ended", "nextActiveId": None}
        assert second.json() == {"status": "ended", "nextActiveId": None}

    def test_user_id_alias(self, make_app):
        app, _ = make_app()
        with TestClient(app) as client:
            sid = client.post("/api/start").json()["sessionId"]
            client.post("/api/end", json={"userId": sid})
            status = client.get("/api/queue-status").json()

        assert status["activeId"] is None
        assert status["sessions"] == 0

    def test_missing_session_id(self, make_app):
        app, _ = make_app()
        with TestClient(app) as client:
            empty = client.post("/api/end", json={})
            no_body = client.post("/api/end")

        assert empty.status_code == 400
        assert no_body.status_code == 400


class TestStatusEndpoints:
    """GET /api/queue-status and /health"""

    def test_queue_status_uses_short_ids(self, make_app):
        app, _ = make_app(wait_unit_seconds=30)
        with TestClient(app) as client:
            active = client.post("/api/start").json()["sessionId"]
            queued = client.post("/api/start").json()["sessionId"]
            status = client.get("/api/queue-status").json()

        assert status["activeId"] == active[:8]
        assert status["queueSnapshot"] == [{"sessionId": queued[:8], "position": 1, "estimatedWait": 30}]
        assert status["sessions"] == 2

    def test_health(self, make_app):
        app, _ = make_app()
        with TestClient(app) as client:
            client.post("/api/start")
            body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["service"] == "support-broker"
        assert body["queue"]["sessions"] == 1
        assert body["relay"]["type"] == "fake"
        assert body["relay"]["configured"] is True

    def test_cors_preflight(self, make_app):
        app, _ = make_app(cors_origins=["http://localhost:5500"])
        with TestClient(app) as client:
            resp = client.options(
                "/api/start",
                headers={
                    "Origin": "http://localhost:5500",
                    "Access-Control-Request-Method": "POST",
                },
            )

        assert resp.status_code == 200
        assert resp.headers["access-control-allow-origin"] == "http://localhost:5500"

    def test_channel_closed_on_shutdown(self, make_app):
        app, channel = make_app()
        with TestClient(app):
            pass
        assert channel.closed is True


class TestTelegramWebhook:
    """POST /relay/telegram"""

    @staticmethod
    def _telegram(sent: list[dict]) -> TelegramChannel:
        def handler(request: httpx.Request) -> httpx.Response:
            sent.append(json.loads(request.content))
            return httpx.Response(200, json={"ok": True, "result": {"message_id": len(sent)}})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return TelegramChannel("1:token", "-100", client=client)

    @staticmethod
    def _update(text: str) -> dict:
        return {
            "update_id": 7,
            "message": {"message_id": 70, "chat": {"id": -100}, "text": text},
        }

    def test_valid_secret_handles_command(self, make_app):
        sent: list[dict] = []
        app, _ = make_app(
            channel=self._telegram(sent),
            telegram_webhook_secret="s3cret",
            telegram_support_chat_id="-100",
        )
        with TestClient(app) as client:
            resp = client.post(
                "/relay/telegram",
                json=self._update("/status"),
                headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"},
            )

        assert resp.status_code == 200
        assert resp.json() == {"ok": True}
        assert any("Support status" in body["text"] for body in sent)

    def test_bad_secret_rejected(self, make_app):
        sent: list[dict] = []
        app, _ = make_app(channel=self._telegram(sent), telegram_webhook_secret="s3cret")
        with TestClient(app) as client:
            resp = client.post(
                "/relay/telegram",
                json=self._update("/status"),
                headers={"X-Telegram-Bot-Api-Secret-Token": "wrong"},
            )

        assert resp.status_code == 401
        assert sent == []

    def test_webhook_disabled_without_secret(self, make_app):
        app, _ = make_app()
        with TestClient(app) as client:
            resp = client.post("/relay/telegram", json=self._update("/status"))
        assert resp.status_code == 404

    def test_staff_reply_via_webhook_reaches_visitor(self, make_app):
        app, _ = make_app(telegram_webhook_secret="s3cret")
        with TestClient(app) as client:
            sid = client.post("/api/start").json()["sessionId"]
            with client.websocket_connect(f"/ws?sessionId={sid}") as ws:
                assert ws.receive_json()["type"] == "connected"
                client.post(
                    "/relay/telegram",
                    json={"text": f"#{sid[:8]} Hello from support"},
                    headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"},
                )
                frame = ws.receive_json()

        assert frame["type"] == "support_message"
        assert frame["text"] == "Hello from support"
