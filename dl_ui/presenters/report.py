"""Presenters for run plans and run reports."""

from __future__ import annotations

from typing import Optional

from dl_controller.models.topology import Topology
from dl_controller.models.types import RoleOutcome, RunReport
from dl_ui.presenters.models import TableModel


def _offset(outcome_ts: Optional[float], origin: Optional[float]) -> str:
    if outcome_ts is None or origin is None:
        return "-"
    return f"{outcome_ts - origin:.2f}s"


def build_plan_table(topology: Topology) -> TableModel:
    """Provisioning order with hosts and declared artifacts."""
    rows = []
    for index, svc in enumerate(topology.topological_order(), start=1):
        host = topology.host_for(svc.role)
        rows.append(
            [
                str(index),
                svc.role,
                svc.image,
                host.destination if host.port is None else f"{host.destination}:{host.port}",
                ", ".join(svc.depends_on) or "-",
                ", ".join(svc.artifacts) or "-",
            ]
        )
    return TableModel(
        title=f"Deployment Plan: {topology.name}",
        columns=["#", "Role", "Image", "Host", "Depends on", "Artifacts"],
        rows=rows,
    )


def build_roles_table(report: RunReport) -> TableModel:
    origin = min(
        (role.started_at for role in report.roles if role.started_at is not None),
        default=None,
    )
    rows = [_role_row(role, origin) for role in report.roles]
    return TableModel(
        title=f"Roles ({report.run_id})",
        columns=["Role", "Deploy", "Started", "Ready", "Stop", "Error"],
        rows=rows,
    )


def _role_row(role: RoleOutcome, origin: Optional[float]) -> list[str]:
    return [
        role.role,
        role.status.value,
        _offset(role.started_at, origin),
        _offset(role.ready_at, origin),
        role.stop_status.value,
        role.error or role.stop_error or "",
    ]


def build_artifacts_table(report: RunReport) -> TableModel:
    rows = [
        [
            record.role,
            record.remote_path,
            str(record.local_path) if record.collected else "-",
            str(record.size),
            record.status.value,
        ]
        for record in report.artifacts
    ]
    return TableModel(
        title="Artifacts",
        columns=["Role", "Remote path", "Local path", "Bytes", "Status"],
        rows=rows,
    )


def summary_line(report: RunReport) -> str:
    collected = sum(1 for record in report.artifacts if record.collected)
    line = (
        f"Run {report.run_id} {report.final_state.value} in {report.elapsed_s:.1f}s; "
        f"{collected}/{len(report.artifacts)} artifacts collected"
    )
    if report.failure:
        line = f"{line}; cause: {report.failure}"
    return line
