"""Shared helpers for the distributed benchmark launcher."""

from dl_common.logs.core import configure_logging

__all__ = ["configure_logging"]
