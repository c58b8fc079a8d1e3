from __future__ import annotations

import json
import logging
import re
from typing import Any

_SENSITIVE_KEYS = (
    "password",
    "token",
    "authorization",
    "auth",
    "secret",
    "api_key",
    "apikey",
    "email",
    "username",
    "login",
    "credential",
)

_BEARER_RE = re.compile(r"Bearer\s+[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE)
_TOKEN_QUERY_RE = re.compile(r"(?i)(token|refresh_token|access_token)=([^&\s]+)")
_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")


def mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}...{value[-2:]}"


def _is_sensitive(key: str) -> bool:
    k = key.lower()
    return any(s in k for s in _SENSITIVE_KEYS)


def redact_sensitive(obj: Any) -> Any:
    """Return a copy of ``obj`` with credential-like keys masked."""
    if isinstance(obj, list):
        return [redact_sensitive(v) for v in obj]
    if not isinstance(obj, dict):
        return obj
    out: dict[str, Any] = {}
    for key, value in obj.items():
        if _is_sensitive(str(key)):
            if isinstance(value, str) and value:
                out[key] = mask(value)
            else:
                out[key] = "[REDACTED]"
        elif isinstance(value, (dict, list)):
            out[key] = redact_sensitive(value)
        else:
            out[key] = value
    return out


def redact_text(value: str | None) -> str:
    if not value:
        return ""
    text = _BEARER_RE.sub("Bearer ***", str(value))
    text = _TOKEN_QUERY_RE.sub(lambda m: f"{m.group(1)}=***", text)
    return _EMAIL_RE.sub("***@***", text)


def debug_dump(logger: logging.Logger, label: str, data: Any) -> None:
    if not logger.isEnabledFor(logging.DEBUG):
        return
    try:
        text = json.dumps(redact_sensitive(data), indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        text = redact_text(repr(data))
    logger.debug("[DUMP] %s:\n%s", label, text)
