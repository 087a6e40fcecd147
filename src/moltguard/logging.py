"""Logging configuration for moltguard.

Log events go to stderr so the CLI's JSON result on stdout stays
machine-readable.  File logging is optional and always JSON.  Event fields
that could carry untrusted content are replaced before rendering; records
identify content by hash and excerpt, never by the payload itself.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from moltguard.config import Settings, get_settings

# Handlers installed here carry this name so a second setup replaces them
HANDLER_NAME = "moltguard"

CONTENT_FIELDS = frozenset({"raw", "payload", "text", "content"})
REDACTED = "<redacted>"


def redact_content(
    _logger: Any, _method: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Replace event fields that may hold untrusted payload text."""
    for key in CONTENT_FIELDS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def setup_logging(settings: Settings | None = None) -> None:
    """Route structlog through stdlib logging on stderr and optional files.

    Calling it again swaps the previously installed handlers instead of
    stacking new ones.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    for handler in [h for h in root.handlers if h.get_name() == HANDLER_NAME]:
        root.removeHandler(handler)
        handler.close()
    root.setLevel(level)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(_formatter(_console_renderer(settings)))
    _install(root, console)

    json_formatter = _formatter(structlog.processors.JSONRenderer())
    for handler in _file_handlers(settings, level):
        handler.setFormatter(json_formatter)
        _install(root, handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_content,
            structlog.dev.set_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def _console_renderer(settings: Settings) -> Any:
    if settings.is_development:
        return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    return structlog.processors.JSONRenderer()


def _formatter(renderer: Any) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer]
    )


def _file_handlers(settings: Settings, level: int) -> list[logging.Handler]:
    """Rotating JSON log file plus the WARNING+ error file, when enabled.

    An unwritable log directory degrades to console-only logging.
    """
    if not settings.log_to_file:
        return []

    targets = [(settings.log_file_path, level)]
    if settings.log_error_file_enabled:
        targets.append((settings.error_log_file_path, logging.WARNING))

    handlers: list[logging.Handler] = []
    try:
        Path(settings.log_directory).mkdir(parents=True, exist_ok=True)
        for path, handler_level in targets:
            handler = RotatingFileHandler(
                filename=path,
                maxBytes=settings.log_file_max_bytes,
                backupCount=settings.log_file_backup_count,
                encoding="utf-8",
            )
            handler.setLevel(handler_level)
            handlers.append(handler)
    except OSError as e:
        for handler in handlers:
            handler.close()
        print(f"Warning: file logging disabled: {e}", file=sys.stderr)
        return []
    return handlers


def _install(root: logging.Logger, handler: logging.Handler) -> None:
    handler.set_name(HANDLER_NAME)
    root.addHandler(handler)
