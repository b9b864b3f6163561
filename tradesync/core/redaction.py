"""tradesync.core.redaction

Secret redaction helpers.

Broker keys, bearer tokens and AI vendor keys must never reach a log line.
"""

from __future__ import annotations

import copy
import re
from typing import Any

_REDACTION_PATTERNS: list[tuple[str, str]] = [
    # Generic key/value
    (r"(?i)(api[_-]?key|secret|password|access[_-]?token)\s*[:=]\s*[^\s\"'&]+", r"\1=[REDACTED]"),
    # Query-string credentials (Gemini passes ?key=)
    (r"(?i)([?&]key=)[^&\s]+", r"\1[REDACTED]"),
    # Bearer tokens
    (r"(?i)(bearer\s+)[a-zA-Z0-9._\-]+", r"\1[REDACTED]"),
    # OpenAI
    (r"sk-proj-[a-zA-Z0-9_\-]{20,}", "[REDACTED]"),
    (r"sk-[a-zA-Z0-9]{20,}", "[REDACTED]"),
    # Google API keys
    (r"AIza[0-9A-Za-z_\-]{35}", "[REDACTED]"),
    # JWT
    (r"eyJ[a-zA-Z0-9_-]+\.eyJ[a-zA-Z0-9_-]+\.[a-zA-Z0-9_-]+", "[REDACTED]"),
]

_SENSITIVE_FIELD_NAMES = {
    "api_key",
    "apikey",
    "api_secret",
    "secret",
    "password",
    "token",
    "access_token",
    "accesstoken",
    "md_access_token",
    "authorization",
    "apca-api-key-id",
    "apca-api-secret-key",
    "x-goog-api-key",
    "sec",
}


def redact_secrets(text: str) -> str:
    out = text
    for pattern, repl in _REDACTION_PATTERNS:
        out = re.sub(pattern, repl, out)
    return out


def sanitize_for_log(data: dict[str, Any]) -> dict[str, Any]:
    """Deep-copy and redact sensitive fields + embedded secrets."""

    def _walk(obj: Any) -> Any:
        if isinstance(obj, dict):
            new: dict[str, Any] = {}
            for k, v in obj.items():
                if str(k).lower() in _SENSITIVE_FIELD_NAMES:
                    new[k] = "[REDACTED]"
                else:
                    new[k] = _walk(v)
            return new
        if isinstance(obj, (list, tuple)):
            return [_walk(v) for v in obj]
        if isinstance(obj, str):
            return redact_secrets(obj)
        return obj

    return _walk(copy.deepcopy(data))
