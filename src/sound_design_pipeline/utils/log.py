"""
Process-wide structlog setup.

Every record is rendered as one JSON object (`ts`, `level`, `logger`, `msg`, plus the
bound fields) to stdout and to a size-rotated `<log_dir>/app.log`. Records
emitted while a request or a pipeline run is active carry `request_id` / `job_id`.
Provider API keys are scrubbed from string fields before rendering.
"""

from __future__ import annotations

import logging
import re
import sys
from contextlib import suppress
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from sound_design_pipeline.config import get_settings

LOGGER_NAME = "sound_design_pipeline"
LOG_FILE = "app.log"
REDACTED = "***"

_request_id: ContextVar[str | None] = ContextVar("sound_design_request_id", default=None)
_job_id: ContextVar[str | None] = ContextVar("sound_design_job_id", default=None)

# key=value / header forms that leak provider credentials in error strings
_CREDENTIAL_PATTERNS = (
    re.compile(r"(?i)\b(xi-api-key|x-goog-api-key|authorization)\s*[:=]\s*(?:bearer\s+)?[^\s,;]+"),
    re.compile(r"(?i)\b(key|api_key|token)=[A-Za-z0-9_\-\.]{12,}"),
)


def set_request_id(rid: str | None) -> None:
    _request_id.set(rid)


def set_job_id(jid: str | None) -> None:
    _job_id.set(jid)


def _provider_keys() -> tuple[str, ...]:
    try:
        sec = get_settings().secret
    except Exception:
        return ()
    keys = []
    for name in ("gemini_api_key", "elevenlabs_api_key", "openai_api_key"):
        v = getattr(sec, name, None)
        raw = v.get_secret_value() if v is not None else ""
        if raw and len(raw) >= 8:
            keys.append(raw)
    return tuple(keys)


def scrub(text: str) -> str:
    for key in _provider_keys():
        text = text.replace(key, REDACTED)
    for pat in _CREDENTIAL_PATTERNS:
        text = pat.sub(lambda m: f"{m.group(1)}={REDACTED}", text)
    return text


def _scrub_fields(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    for k, v in event_dict.items():
        if isinstance(v, str):
            event_dict[k] = scrub(v)
    return event_dict


def _bind_context(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    rid = _request_id.get()
    if rid:
        event_dict.setdefault("request_id", rid)
    jid = _job_id.get()
    if jid:
        event_dict.setdefault("job_id", jid)
    return event_dict


def _event_as_msg(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    if "event" in event_dict and "msg" not in event_dict:
        event_dict["msg"] = event_dict.pop("event")
    return event_dict


def _shared_processors() -> list[Any]:
    return [
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.stdlib.add_log_level,
        _bind_context,
        _scrub_fields,
        structlog.processors.format_exc_info,
        _event_as_msg,
    ]


def _handlers(log_dir: Path, *, max_bytes: int, backups: int) -> list[logging.Handler]:
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=_shared_processors(),
    )
    log_dir.mkdir(parents=True, exist_ok=True)
    rotating = RotatingFileHandler(
        filename=str(log_dir / LOG_FILE),
        maxBytes=max_bytes,
        backupCount=backups,
        encoding="utf-8",
    )
    console = logging.StreamHandler(sys.stdout)
    for h in (rotating, console):
        h.setFormatter(formatter)
    return [rotating, console]


def configure_logging() -> structlog.stdlib.BoundLogger:
    root = logging.getLogger()
    if getattr(root, "_sound_design_configured", False):
        return structlog.get_logger(LOGGER_NAME)

    s = get_settings()
    root.setLevel(str(s.log_level).upper())
    root.handlers[:] = _handlers(
        Path(s.log_dir), max_bytes=int(s.log_max_bytes), backups=int(s.log_backup_count)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            *_shared_processors(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    root._sound_design_configured = True  # type: ignore[attr-defined]
    return structlog.get_logger(LOGGER_NAME)


logger = configure_logging()


def set_log_level(level: str) -> None:
    """Raise or lower filtering on the root logger and its handlers (CLI override)."""
    lvl = getattr(logging, str(level).upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(lvl)
    for h in root.handlers:
        with suppress(Exception):
            h.setLevel(lvl)
