"""Run identifiers and the machine-readable run report."""

from __future__ import annotations

import json
import logging
import os
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Tuple

from dl_controller.models.state import RunState
from dl_controller.models.types import RunReport

logger = logging.getLogger(__name__)

REPORT_FILENAME = "run_report.json"


def generate_run_id() -> str:
    """Generate a timestamp-based run identifier with a short random suffix."""
    stamp = datetime.now(UTC).strftime("run-%Y%m%d-%H%M%S")
    return f"{stamp}-{uuid.uuid4().hex[:6]}"


def state_timeline(
    history: Iterable[Tuple[RunState, float]], origin: float
) -> List[Dict[str, Any]]:
    """Turn monotonic state entry times into offsets from ``origin``."""
    return [
        {"state": state.value, "offset_s": round(max(entered - origin, 0.0), 3)}
        for state, entered in history
    ]


def write_report(report: RunReport, output_dir: Path) -> Path:
    """Persist the report as ``run_report.json``; replaces an older one."""
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / REPORT_FILENAME
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(report.to_dict(), f, indent=2, default=str)
    os.replace(tmp_path, path)
    logger.info("Run report written to %s", path)
    return path


def load_report(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)
