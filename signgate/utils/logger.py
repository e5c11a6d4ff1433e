"""
signgate/utils/logger.py

Structured logging setup for SignGate using Loguru.

Design Decisions:
- One JSON object per line outside development, coloured text locally.
  Both formats carry the request ID.
- The request ID lives in a ContextVar and is copied onto every record
  by a Loguru patcher. Tasks created inside a request inherit the
  context, so background accounting logs under the caller's ID.
- Credentials never reach the logs. `mask_secret` keeps only a short
  prefix, which is enough to correlate a key with its owner.
"""

from __future__ import annotations

import json
import sys
from contextvars import ContextVar
from typing import Any

from loguru import logger

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")

_TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[request_id]: <32}</magenta> | "
    "<cyan>{extra[logger_name]}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)


def _attach_request_id(record: dict[str, Any]) -> None:
    record["extra"].setdefault("request_id", request_id_ctx.get() or "-")
    record["extra"].setdefault("logger_name", record["name"])


def _json_serialiser(record: dict[str, Any]) -> str:
    """Render a record as one JSON line."""
    extra = dict(record["extra"])
    payload = {
        "ts": record["time"].isoformat(),
        "level": record["level"].name,
        "logger": extra.pop("logger_name", record["name"]),
        "request_id": extra.pop("request_id", "-"),
        "message": record["message"],
        "caller": f"{record['module']}:{record['function']}:{record['line']}",
        **extra,
    }
    if record["exception"] is not None:
        payload["exception"] = repr(record["exception"].value)

    # Loguru treats the returned string as a format template
    return json.dumps(payload, default=str).replace("{", "{{").replace("}", "}}") + "\n"


def setup_logging(level: str = "INFO", json_output: bool = True, log_file: str | None = None) -> None:
    """
    Replace Loguru's default sink with the gateway's.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        json_output: JSON lines when true, coloured text otherwise.
        log_file: Optional rotating file sink (always JSON).
    """
    level = level.upper()
    logger.remove()
    logger.configure(patcher=_attach_request_id)  # type: ignore[arg-type]

    if json_output:
        logger.add(sys.stdout, format=_json_serialiser, level=level, backtrace=False, diagnose=False)  # type: ignore[arg-type]
    else:
        logger.add(sys.stdout, format=_TEXT_FORMAT, level=level, colorize=True, diagnose=False)

    if log_file:
        logger.add(
            log_file,
            format=_json_serialiser,  # type: ignore[arg-type]
            level=level,
            rotation="100 MB",
            retention="14 days",
            compression="gz",
            enqueue=True,
        )

    logger.bind(logger_name=__name__).debug(f"Logging configured (level={level}, json={json_output})")


def get_logger(name: str) -> "logger":  # type: ignore[valid-type]
    """Return a logger bound with the calling module's name."""
    return logger.bind(logger_name=name)


def mask_secret(secret: str | None, visible: int = 8) -> str:
    """Return a log-safe rendering of a credential."""
    if not secret:
        return "<none>"
    return f"{secret[:visible]}..."
