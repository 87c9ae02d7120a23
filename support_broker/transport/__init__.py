"""WebSocket connections bound to broker sessions."""
