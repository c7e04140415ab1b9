"""Logging configuration and handlers."""

from dl_common.logs.core import (
    attach_handler,
    build_jsonl_handler,
    configure_logging,
    detach_handler,
)
from dl_common.logs.jsonl_handler import JsonlLogHandler

__all__ = [
    "JsonlLogHandler",
    "attach_handler",
    "build_jsonl_handler",
    "configure_logging",
    "detach_handler",
]
