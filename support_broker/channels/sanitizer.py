"""Visitor text sanitization for relay dispatch.

Sanitizes visitor messages before they leave the system:
- Strips control characters (keeps newlines and tabs)
- Redacts payment card numbers
- Removes secret patterns (API keys, connection strings)
- Caps message length to what the support channel accepts

Contact details (emails, phone numbers) are kept: staff need them to help.
"""

from __future__ import annotations

import re

# Telegram rejects messages over 4096 characters; leave room for the header
_MAX_TEXT_LENGTH = 3500

_CONTROL_PATTERN = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_CC_PATTERN = re.compile(r"\b(?:\d[ -]*?){13,19}\b")

# Internal patterns to strip
_SECRET_PATTERNS = [
    re.compile(r"postgres(?:ql)?://\S+"),
    re.compile(r"redis://\S+"),
    re.compile(r"sk[-_](?:live|test)[-_][a-zA-Z0-9]+"),
    re.compile(r"\b\d{8,10}:[A-Za-z0-9_-]{35}\b"),  # Telegram bot token
]


def _sanitize_string(text: str) -> str:
    """Sanitize a single string value."""
    result = _CONTROL_PATTERN.sub("", text)

    # Redact credit cards
    result = _CC_PATTERN.sub("[card]", result)

    for pattern in _SECRET_PATTERNS:
        result = pattern.sub("[redacted]", result)

    return result


def sanitize_visitor_text(text: str, max_length: int = _MAX_TEXT_LENGTH) -> str:
    """Sanitize a visitor message before relaying it to support."""
    result = _sanitize_string(text).strip()
    if len(result) > max_length:
        result = result[:max_length] + "..."
    return result
