from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Dict, Mapping, Optional

LOGGER_NAME = "staking_pipeline"

_REDACT_KEYS = ("secret", "password", "private_key", "privkey", "mnemonic", "token", "api_key")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def get_logger() -> logging.Logger:
    return logging.getLogger(LOGGER_NAME)


def configure_logging(level: str | None = None) -> logging.Logger:
    """
    Attach a plain stream handler that prints one JSON object per line.

    Idempotent; applications embedding the pipeline can skip this and configure
    the `staking_pipeline` logger themselves.
    """
    logger = get_logger()
    lvl = (level or os.getenv("LOG_LEVEL") or "info").strip().lower()
    logger.setLevel(_LEVELS.get(lvl, logging.INFO))
    if not any(getattr(h, "_staking_pipeline", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        handler._staking_pipeline = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger


def build_log_context(**fields: Any) -> Dict[str, Any]:
    return {k: v for k, v in fields.items() if v is not None}


def _redact(data: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in data.items():
        if any(s in k.lower() for s in _REDACT_KEYS):
            out[k] = "***REDACTED***" if v else v
        elif isinstance(v, Mapping):
            out[k] = _redact(v)
        elif isinstance(v, bytes):
            out[k] = v.hex()
        else:
            out[k] = v
    return out


def log_event(
    event: str,
    *,
    ctx: Optional[Mapping[str, Any]] = None,
    data: Optional[Mapping[str, Any]] = None,
    level: str = "info",
) -> None:
    logger = get_logger()
    lvl = _LEVELS.get(level, logging.INFO)
    if not logger.isEnabledFor(lvl):
        return
    record: Dict[str, Any] = {"ts_ms": int(time.time() * 1000), "event": event}
    if ctx:
        record.update(_redact(ctx))
    if data:
        record["data"] = _redact(data)
    logger.log(lvl, json.dumps(record, sort_keys=True, default=str))
