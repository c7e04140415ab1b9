"""Shared logging configuration using structlog."""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

import structlog

from dl_common.config.env import parse_bool_env
from dl_common.logs.jsonl_handler import DEFAULT_JSONL_TEMPLATE, JsonlLogHandler


def _resolve_level(value: str | int | None, debug: bool) -> int:
    if debug:
        return logging.DEBUG
    if value is None:
        return logging.INFO
    if isinstance(value, int):
        return value
    try:
        return int(value)
    except (TypeError, ValueError):
        pass
    return logging.getLevelNamesMapping().get(value.upper(), logging.INFO)


def build_jsonl_handler(
    *,
    output_dir: Path | str,
    component: str,
    run_id: str,
    path_template: str | None = None,
) -> JsonlLogHandler:
    """Create a JSONL file handler using defaults and env overrides."""
    resolved_template = (
        path_template
        or os.environ.get("DL_JSONL_LOG_PATH")
        or DEFAULT_JSONL_TEMPLATE
    )
    return JsonlLogHandler(
        output_dir=output_dir,
        component=component,
        run_id=run_id,
        path_template=resolved_template,
    )


def configure_logging(
    *,
    level: str | int | None = None,
    debug: bool = False,
    log_file: str | None = None,
    json: bool | None = None,
    force: bool = False,
) -> None:
    """Configure stdlib logging and structlog with a shared formatter."""
    env_level, env_json, env_log_file = _read_logging_env()
    resolved_level = _resolve_level(level or env_level, debug)
    resolved_json = env_json if json is None else json
    resolved_log_file = env_log_file if log_file is None else log_file

    formatter = _make_structlog_formatter(resolved_json)
    root_logger = logging.getLogger()
    if root_logger.handlers and not force:
        _configure_structlog()
        return

    handlers: list[logging.Handler] = []
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)
    if resolved_log_file:
        file_handler = logging.FileHandler(resolved_log_file)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if force:
        root_logger.handlers.clear()
    root_logger.setLevel(resolved_level)
    for handler in handlers:
        root_logger.addHandler(handler)
    _configure_structlog()


def attach_handler(handler: logging.Handler) -> None:
    """Attach an extra handler (e.g. a per-run JSONL sink) to the root logger."""
    logging.getLogger().addHandler(handler)


def detach_handler(handler: logging.Handler) -> None:
    """Detach and close a handler previously attached with attach_handler."""
    logging.getLogger().removeHandler(handler)
    handler.close()


def _read_logging_env() -> tuple[str | None, bool | None, str | None]:
    return (
        os.environ.get("DL_LOG_LEVEL"),
        parse_bool_env(os.environ.get("DL_LOG_JSON")),
        os.environ.get("DL_LOG_FILE"),
    )


def _make_structlog_formatter(
    resolved_json: bool | None,
) -> structlog.stdlib.ProcessorFormatter:
    renderer: structlog.types.Processor
    if resolved_json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    return structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=pre_chain,
    )


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
