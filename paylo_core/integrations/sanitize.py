"""Input sanitization applied to outgoing request bodies."""
import re
from typing import Any

_SCRIPT_BLOCK = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_JS_SCHEME = re.compile(r"javascript:", re.IGNORECASE)
_INLINE_HANDLER = re.compile(r"on\w+\s*=", re.IGNORECASE)
_ANGLE_BRACKETS = re.compile(r"[<>]")


def sanitize_input(value: str) -> str:
    """
    Strip markup that could be replayed into a browser.

    Removes ``<script>`` blocks, the ``javascript:`` scheme, inline ``on*=``
    handlers and any remaining angle brackets, then trims whitespace.

    Example:
        >>> sanitize_input("  <script>alert(1)</script>hello<b>  ")
        'hellob'
    """
    value = _SCRIPT_BLOCK.sub("", value)
    value = _JS_SCHEME.sub("", value)
    value = _INLINE_HANDLER.sub("", value)
    value = _ANGLE_BRACKETS.sub("", value)
    return value.strip()


def sanitize_body(body: Any) -> Any:
    """
    Return a sanitized copy of a request body.

    Only first-level string values of a dict are sanitized; nested values and
    non-dict bodies are returned as-is. The input is never mutated.
    """
    if not isinstance(body, dict):
        return body
    return {
        key: sanitize_input(value) if isinstance(value, str) else value
        for key, value in body.items()
    }
