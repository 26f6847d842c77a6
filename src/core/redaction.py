"""
Sanitizing helpers for values that end up in logs.

Action parameters carry collected user fields (email, phone, address).
The audit trail records them with configured keys masked and control
characters stripped, to keep log lines single-line and injection free.
"""

import re
from typing import Any, Iterable

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_UNICODE_NEWLINES_RE = re.compile("[\u2028\u2029]")

REDACTED = "***"
MAX_LOGGED_STRING = 500


def sanitize_for_logging(value: Any) -> str:
    """
    Remove newlines and control characters from a value for safe logging.

    Examples:
        >>> sanitize_for_logging("Hello\\nWorld")
        'HelloWorld'
        >>> sanitize_for_logging(None)
        ''
    """
    if value is None:
        return ""
    if not isinstance(value, str):
        value = str(value)
    value = _CONTROL_CHARS_RE.sub("", value)
    value = _UNICODE_NEWLINES_RE.sub("", value)
    if len(value) > MAX_LOGGED_STRING:
        value = value[:MAX_LOGGED_STRING] + "..."
    return value


def redact_mapping(data: Any, sensitive_keys: Iterable[str]) -> Any:
    """Return a copy of ``data`` with values under sensitive keys masked.

    Keys match case-insensitively at any nesting depth. Non-container
    values are returned unchanged.
    """
    keys = {k.lower() for k in sensitive_keys}
    return _redact(data, keys)


def _redact(data: Any, keys: set) -> Any:
    if isinstance(data, dict):
        return {
            k: (REDACTED if isinstance(k, str) and k.lower() in keys else _redact(v, keys))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [_redact(v, keys) for v in data]
    if isinstance(data, tuple):
        return tuple(_redact(v, keys) for v in data)
    return data


def audit_params(params: Any, sensitive_keys: Iterable[str]) -> Any:
    """Redact then sanitize action parameters for the audit log."""
    redacted = redact_mapping(params, sensitive_keys)
    return _sanitize_leaves(redacted)


def _sanitize_leaves(data: Any) -> Any:
    if isinstance(data, dict):
        return {k: _sanitize_leaves(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [_sanitize_leaves(v) for v in data]
    if isinstance(data, str):
        return sanitize_for_logging(data)
    return data
