"""structlog-based logging setup for the admin console backend."""
import gzip
import logging
import os
import shutil
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

import structlog

from dojo_console.backend.core.config import get_web_settings


# Short names for noisy logger hierarchies
_LOGGER_NAME_MAP = {
    "uvicorn.error": "uvicorn",
    "uvicorn.access": "uvicorn",
    "dojo_console.backend.api.deps": "web",
    "dojo_console.backend.core.api_helper": "http",
    "dojo_console.backend.core.bulk": "bulk",
    "dojo_console.backend.core.manager": "bulk",
    "dojo_console.backend.core.roles": "roles",
    "httpx": "http",
    "httpcore": "http",
}

# Rotation: 10 MB, 5 files, gzip-compressed
_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
_BACKUP_COUNT = 5

_LEVEL_STYLES = {
    "critical": "\033[1;91m",
    "exception": "\033[1;91m",
    "error": "\033[91m",
    "warning": "\033[93m",
    "info": "\033[36m",
    "debug": "\033[2;37m",
}


class CompressedRotatingFileHandler(RotatingFileHandler):
    """RotatingFileHandler whose backups are gzip files (console.log.1.gz, ...)."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.namer = _gzip_name
        self.rotator = _gzip_rotate


def _gzip_name(name: str) -> str:
    return name + ".gz"


def _gzip_rotate(source: str, dest: str) -> None:
    with open(source, "rb") as f_in, gzip.open(dest, "wb") as f_out:
        shutil.copyfileobj(f_in, f_out)
    os.remove(source)


def _shorten_logger_name(logger: object, method_name: str, event_dict: dict) -> dict:
    """structlog processor: shorten logger names."""
    name = event_dict.get("logger", "")
    for prefix, short in _LOGGER_NAME_MAP.items():
        if name == prefix or name.startswith(prefix + "."):
            event_dict["logger"] = short
            return event_dict
    if "." in name:
        event_dict["logger"] = name.rsplit(".", 1)[-1]
    return event_dict


def _compact_bulk_item(logger: object, method_name: str, event_dict: dict) -> dict:
    """structlog processor: one-line rendering for per-item bulk events."""
    if event_dict.get("event") != "bulk.item":
        return event_dict
    user_id = event_dict.pop("user_id", "")
    outcome = event_dict.pop("outcome", "")
    kind = event_dict.pop("kind", "")
    parts = [p for p in (kind, user_id) if p]
    if outcome:
        parts.append(f"→ {outcome}")
    event_dict["event"] = " ".join(parts) if parts else "bulk.item"
    return event_dict


def _make_console_renderer() -> structlog.dev.ConsoleRenderer:
    return structlog.dev.ConsoleRenderer(
        colors=True,
        pad_event_to=40,
        level_styles=_LEVEL_STYLES,
    )


def setup_logger(level_name: Optional[str] = None, log_dir: Optional[str] = None) -> logging.Logger:
    """Configure the root logger with structlog formatters.

    Console output is colored; when a log directory is configured a
    rotating JSON file log (``console.log``) is added as well.
    """
    settings = get_web_settings()
    level_name = level_name or settings.log_level
    log_dir = log_dir if log_dir is not None else settings.log_dir
    level = getattr(logging, level_name.upper(), logging.INFO)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _shorten_logger_name,
            _compact_bulk_item,
            _make_console_renderer(),
        ],
        foreign_pre_chain=shared_processors,
    ))
    root.addHandler(console)

    if log_dir:
        try:
            path = Path(log_dir)
            path.mkdir(parents=True, exist_ok=True)
            file_handler = CompressedRotatingFileHandler(
                filename=str(path / "console.log"),
                maxBytes=_MAX_BYTES,
                backupCount=_BACKUP_COUNT,
                encoding="utf-8",
            )
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(structlog.stdlib.ProcessorFormatter(
                processors=[
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    _shorten_logger_name,
                    structlog.processors.JSONRenderer(),
                ],
                foreign_pre_chain=shared_processors,
            ))
            root.addHandler(file_handler)
        except OSError as exc:
            root.warning("Cannot create log files (%s), logging to console only", exc)
            print(f"[LOGGING] File logging DISABLED: {exc}", file=sys.stderr, flush=True)

    http_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    logging.getLogger("httpx").setLevel(http_level)
    logging.getLogger("httpcore").setLevel(http_level)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    return logging.getLogger("dojo-console")


def set_log_level(level_name: str) -> None:
    """Change the level of all handlers without a restart."""
    level = getattr(logging, level_name.upper(), logging.INFO)
    root = logging.getLogger()

    for handler in root.handlers:
        if not isinstance(handler, RotatingFileHandler):
            handler.setLevel(level)

    http_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    logging.getLogger("httpx").setLevel(http_level)
    logging.getLogger("httpcore").setLevel(http_level)

    logging.getLogger("dojo-console").info("Log level changed to %s", level_name.upper())


def log_bulk_event(
    event: str,
    operation_id: str,
    level: int = logging.INFO,
    **details: Any,
) -> None:
    """Log a bulk-operation lifecycle event in structured form."""
    log = structlog.get_logger("bulk")
    log.log(level, event, operation_id=operation_id, **details)
