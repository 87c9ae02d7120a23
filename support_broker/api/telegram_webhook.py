"""Telegram webhook receiver for staff messages.

Security contract:
- The X-Telegram-Bot-Api-Secret-Token header must match the configured
  secret (constant-time compare); no secret configured -> always 401
- Verification failure -> 401 immediately, the update is not parsed
- Handling errors are logged and acknowledged with 200 so Telegram does
  not redeliver the same update forever
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from support_broker.channels.telegram import SECRET_TOKEN_HEADER, verify_secret_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/relay", tags=["relay"])


@router.post("/telegram")
async def telegram_webhook(request: Request):
    secret = request.app.state.settings.telegram_webhook_secret
    if not verify_secret_token(secret, request.headers.get(SECRET_TOKEN_HEADER)):
        logger.warning("Telegram webhook rejected: bad secret token")
        return JSONResponse({"error": "Invalid secret token"}, status_code=401)

    try:
        update = await request.json()
    except ValueError:
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)
    if not isinstance(update, dict):
        return JSONResponse({"error": "Invalid update"}, status_code=400)

    try:
        await request.app.state.relay.handle_update(update)
    except Exception:
        logger.exception("Telegram update %s handling failed", update.get("update_id"))
    return {"ok": True}
