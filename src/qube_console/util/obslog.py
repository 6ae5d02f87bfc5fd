from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

from .time import utc_iso_from_ts


_CONFIGURED: Dict[str, bool] = {}

# Correlation keys picked up from `logger.*(..., extra={...})`.
_CORRELATION_KEYS = ("op", "container_id", "command_id", "pid", "action")


class JsonlFormatter(logging.Formatter):
    """One JSON object per line; small and stable field set."""

    def __init__(self, *, component: str):
        super().__init__()
        self._component = str(component or "").strip() or "qube-console"

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": utc_iso_from_ts(getattr(record, "created", 0.0) or 0.0),
            "level": str(getattr(record, "levelname", "") or ""),
            "logger": str(getattr(record, "name", "") or ""),
            "component": self._component,
            "msg": record.getMessage(),
        }

        for k in _CORRELATION_KEYS:
            v = getattr(record, k, None)
            if v is None:
                continue
            sv = str(v).strip()
            if sv:
                payload[k] = sv

        if record.exc_info:
            try:
                payload["exc"] = self.formatException(record.exc_info)
            except Exception:
                payload["exc"] = "exception"

        try:
            return json.dumps(payload, ensure_ascii=False)
        except Exception:
            # Never let logging crash the caller.
            return '{"component":"%s","level":"%s","msg":"(log serialization failed)"}' % (
                self._component,
                payload.get("level", "INFO"),
            )


def _parse_level(level: str, default: int = logging.INFO) -> int:
    s = str(level or "").strip().upper()
    if not s:
        return default
    value = getattr(logging, s, default)
    return int(value) if isinstance(value, int) else default


def setup_root_json_logging(
    *,
    component: str,
    level: str = "INFO",
    stream: Optional[TextIO] = None,
    log_path: Optional[Path] = None,
    force: bool = False,
) -> None:
    """Configure root logging once per process.

    Logs go to `log_path` when given, otherwise to `stream` (stderr by default).
    `force=True` drops previously installed handlers.
    """
    key = f"root:{component}"
    if _CONFIGURED.get(key) and not force:
        return
    _CONFIGURED[key] = True

    lvl = _parse_level(level)
    root = logging.getLogger()
    root.setLevel(lvl)

    if force:
        for h in list(root.handlers):
            try:
                root.removeHandler(h)
            except Exception:
                pass

    for h in list(root.handlers):
        if isinstance(getattr(h, "formatter", None), JsonlFormatter):
            h.setLevel(lvl)
            return

    handler: logging.Handler
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(str(log_path), encoding="utf-8")
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(lvl)
    handler.setFormatter(JsonlFormatter(component=component))
    root.addHandler(handler)
