"""HTTP surface: visitor API, health, Telegram webhook, middleware."""
