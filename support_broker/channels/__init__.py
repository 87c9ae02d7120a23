"""Support relay: channel protocol, Telegram channel, relay adapter."""
