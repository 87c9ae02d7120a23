"""Application factory and process entrypoint.

Wiring, leaves first: connection table -> relay channel -> relay adapter
-> session broker. The lifespan starts the broker (and Telegram polling
when no webhook secret is set) and tears everything down in reverse.

Usage:
    python -m support_broker
    uvicorn support_broker.serve:create_app --factory
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from support_broker import __version__
from support_broker.api import routes, telegram_webhook
from support_broker.api.middleware import install_middleware
from support_broker.broker import SessionBroker
from support_broker.channels.protocol import RelayChannel
from support_broker.channels.relay import RelayAdapter
from support_broker.channels.telegram import TelegramChannel
from support_broker.config import Settings, settings
from support_broker.transport import websocket
from support_broker.transport.connections import ConnectionTable

logger = logging.getLogger(__name__)


def create_app(config: Settings | None = None, channel: RelayChannel | None = None) -> FastAPI:
    """Build the FastAPI app. ``channel`` overrides the Telegram channel (tests)."""
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        connections = ConnectionTable()
        relay_channel = channel or TelegramChannel.from_settings(config)
        relay = RelayAdapter(relay_channel, config.telegram_support_chat_id)
        broker = SessionBroker.from_settings(config, connections, relay)
        relay.bind(broker)

        app.state.settings = config
        app.state.connections = connections
        app.state.relay = relay
        app.state.broker = broker

        await broker.start()

        poller: asyncio.Task | None = None
        if not relay_channel.is_configured:
            logger.warning("Relay channel %s is not configured; support will not see visitors", relay_channel.channel_id)
        elif isinstance(relay_channel, TelegramChannel) and not config.telegram_webhook_secret:
            poller = asyncio.create_task(
                relay_channel.poll_forever(relay.handle_update, config.telegram_poll_timeout),
                name="telegram-poller",
            )

        try:
            yield
        finally:
            if poller is not None:
                poller.cancel()
                await asyncio.gather(poller, return_exceptions=True)
            await broker.stop()
            await connections.close_all()
            await relay_channel.aclose()

    app = FastAPI(title="Support Broker", version=__version__, lifespan=lifespan)
    app.include_router(routes.router)
    app.include_router(routes.health_router)
    app.include_router(websocket.router)
    if config.telegram_webhook_secret:
        app.include_router(telegram_webhook.router)
    install_middleware(app, config)
    return app


def main() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting support broker on %s:%d", settings.host, settings.port)
    uvicorn.run(create_app(), host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
