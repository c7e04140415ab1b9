"""JSONL log handler for per-run launcher logs."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


DEFAULT_JSONL_TEMPLATE = "{output_dir}/logs/{component}-{run_id}.jsonl"


class JsonlLogFormatter(logging.Formatter):
    """Format LogRecords as one JSON object per line."""

    def __init__(self, *, component: str, run_id: str) -> None:
        super().__init__()
        self._component = component
        self._run_id = run_id

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
            "component": self._component,
            "run_id": self._run_id,
        }
        role = getattr(record, "dl_role", None)
        if role:
            payload["role"] = role
        phase = getattr(record, "dl_phase", None)
        if phase:
            payload["phase"] = phase
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def resolve_jsonl_path(
    template: str,
    *,
    output_dir: Path | str,
    component: str,
    run_id: str,
) -> Path:
    """Resolve a JSONL log path from the provided template."""
    resolved = template.format(
        output_dir=output_dir,
        component=component,
        run_id=run_id,
    )
    return Path(resolved).expanduser().resolve()


class JsonlLogHandler(logging.FileHandler):
    """File handler that writes structured JSONL records."""

    def __init__(
        self,
        *,
        output_dir: Path | str,
        component: str,
        run_id: str,
        path_template: str = DEFAULT_JSONL_TEMPLATE,
    ) -> None:
        log_path = resolve_jsonl_path(
            path_template,
            output_dir=output_dir,
            component=component,
            run_id=run_id,
        )
        log_path.parent.mkdir(parents=True, exist_ok=True)
        self.log_path = log_path
        super().__init__(log_path, encoding="utf-8")
        self.setFormatter(JsonlLogFormatter(component=component, run_id=run_id))
