"""tradesync.core.logging

Log setup for the CLI and embedding hosts.

JSON mode emits one object per line so aggregators can parse the `extra=`
fields every event carries. Secrets are redacted on the way out.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any, TextIO

from tradesync.core.config import LoggingConfig
from tradesync.core.redaction import redact_secrets, sanitize_for_log

# Attributes every LogRecord has; anything else came in through `extra=`.
_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED and not k.startswith("_")}


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": redact_secrets(record.getMessage()),
        }
        payload.update(sanitize_for_log(_extra_fields(record)))
        if record.exc_info:
            payload["exc"] = redact_secrets(self.formatException(record.exc_info))
        return json.dumps(payload, default=str, sort_keys=False)


class PlainFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        base = redact_secrets(super().format(record))
        extra = sanitize_for_log(_extra_fields(record))
        if not extra:
            return base
        tail = " ".join(f"{k}={v}" for k, v in extra.items())
        return f"{base} {tail}"


def configure_logging(cfg: LoggingConfig, *, stream: TextIO | None = None) -> logging.Handler:
    """Install a single handler on the `tradesync` logger. Idempotent."""

    root = logging.getLogger("tradesync")
    for h in list(root.handlers):
        if getattr(h, "_tradesync_handler", False):
            root.removeHandler(h)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonLineFormatter() if cfg.json_output else PlainFormatter())
    handler._tradesync_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(cfg.level.upper())
    return handler
