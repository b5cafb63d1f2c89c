from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar, Token
from typing import Any

lookup_id: ContextVar[str] = ContextVar("lookup_id", default="")
lookup_vin: ContextVar[str] = ContextVar("lookup_vin", default="")


def bind_lookup(vin: str, request_id: str | None = None) -> tuple[Token[str], Token[str]]:
    """Attach a lookup id and VIN to every log line emitted in this context."""
    lid = request_id or lookup_id.get() or uuid.uuid4().hex[:12]
    return lookup_id.set(lid), lookup_vin.set(vin)


def unbind_lookup(tokens: tuple[Token[str], Token[str]]) -> None:
    id_token, vin_token = tokens
    lookup_vin.reset(vin_token)
    lookup_id.reset(id_token)


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "lookup_id": lookup_id.get(""),
        }
        vin = lookup_vin.get("")
        if vin:
            entry["vin"] = vin
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        if hasattr(record, "extra_data"):
            entry["data"] = record.extra_data
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for h in root.handlers[:]:
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"
        ))
    root.addHandler(handler)
    logging.getLogger("httpx").setLevel(logging.WARNING)
