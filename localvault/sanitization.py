"""
Input sanitization for stored credential fields.

Text fields are length-capped and stripped of control characters and markup.
Passwords keep their exact content apart from characters that cannot be
stored safely (NUL, other C0 controls, unpaired surrogates).
"""

import re
from typing import Any

MAX_TEXT_LEN = 200
MAX_WEBSITE_LEN = 500
MAX_CATEGORY_LEN = 50
MAX_BALANCE_LEN = 100
MAX_NOTES_LEN = 10_000
MAX_PASSWORD_LEN = 4096

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_ALL_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_SCRIPT_BLOCK = re.compile(r"<\s*(script|style|iframe)\b[^>]*>.*?<\s*/\s*\1\s*>", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<\s*/?\s*[a-zA-Z][^>]*>")
_SAFE_URL_SCHEMES = ("http://", "https://")
_SCHEME = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*:")


def _as_text(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, (int, float)):
        return str(value)
    if not isinstance(value, str):
        return ""
    return value


def _drop_surrogates(text: str) -> str:
    return text.encode("utf-8", "ignore").decode("utf-8") if text else text


def strip_markup(text: str) -> str:
    """Remove script/style/iframe blocks and any remaining HTML tags."""
    text = _SCRIPT_BLOCK.sub("", text)
    return _TAG.sub("", text)


def sanitize_text_field(value: Any, max_length: int = MAX_TEXT_LEN) -> str:
    """
    Clean a single-line text field.

    Removes control characters and markup, trims, and caps the length.
    """
    text = _drop_surrogates(_as_text(value))
    text = _ALL_CONTROL_CHARS.sub("", text)
    text = strip_markup(text)
    return text.strip()[:max_length]


def sanitize_notes(value: Any, max_length: int = MAX_NOTES_LEN) -> str:
    """Like :func:`sanitize_text_field` but keeps newlines and tabs."""
    text = _drop_surrogates(_as_text(value))
    text = text.replace("\r\n", "\n")
    text = _CONTROL_CHARS.sub("", text)
    text = strip_markup(text)
    return text.strip()[:max_length]


def sanitize_password(value: Any) -> str:
    """
    Make a password safe to store without altering its meaningful content.

    Leading/trailing whitespace is kept because it may be part of the secret.
    """
    text = _drop_surrogates(_as_text(value))
    text = _ALL_CONTROL_CHARS.sub("", text)
    return text[:MAX_PASSWORD_LEN]


def sanitize_url(value: Any, max_length: int = MAX_WEBSITE_LEN) -> str:
    """
    Normalize a website field.

    Only http/https are accepted; a bare host gets ``https://`` prepended and
    any other scheme (``javascript:``, ``data:``...) yields an empty string.
    """
    text = sanitize_text_field(value, max_length)
    if not text:
        return ""
    lowered = text.lower()
    if lowered.startswith(_SAFE_URL_SCHEMES):
        return text
    if _SCHEME.match(text) and not re.match(r"^[^:/]+:\d+", text):
        return ""
    return ("https://" + text)[:max_length]


def escape_html(value: Any) -> str:
    """Escape &, <, >, \" and ' for display in HTML contexts."""
    text = _as_text(value)
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&#x27;")
    )
