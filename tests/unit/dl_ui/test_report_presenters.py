from pathlib import Path

import pytest

from dl_controller.models.state import RunState
from dl_controller.models.types import (
    ArtifactRecord,
    ArtifactStatus,
    DeployStatus,
    RoleOutcome,
    RunReport,
    StopStatus,
)
from dl_ui.presenters.report import (
    build_artifacts_table,
    build_plan_table,
    build_roles_table,
    summary_line,
)
from tests.helpers.fakes import make_topology


pytestmark = pytest.mark.unit_ui


def _report() -> RunReport:
    return RunReport(
        run_id="run-1",
        final_state=RunState.FAILED,
        failure="role 'b' is no longer alive",
        elapsed_s=12.34,
        roles=[
            RoleOutcome(
                role="a",
                status=DeployStatus.READY,
                stop_status=StopStatus.STOPPED,
                started_at=100.0,
                ready_at=101.5,
            ),
            RoleOutcome(role="b", status=DeployStatus.FAILED, error="boom"),
        ],
        artifacts=[
            ArtifactRecord("a", "/results/a.csv", Path("/out/a.csv"), size=10),
            ArtifactRecord(
                "b", "/results/b.csv", Path("/out/b.csv"), status=ArtifactStatus.FAILED, error="x"
            ),
        ],
    )


def test_plan_table_follows_topological_order() -> None:
    topology = make_topology({"web": ["db"], "db": []})
    table = build_plan_table(topology)
    assert [row[1] for row in table.rows] == ["db", "web"]
    assert table.rows[0][2] == "registry.local/db:latest"
    assert table.rows[0][3] == "bench@10.0.0.2"
    assert table.rows[1][4] == "db"


def test_roles_table_shows_offsets_and_errors() -> None:
    table = build_roles_table(_report())
    assert table.rows[0] == ["a", "ready", "0.00s", "1.50s", "stopped", ""]
    assert table.rows[1] == ["b", "failed", "-", "-", "not_started", "boom"]


def test_artifacts_table_hides_missing_local_paths() -> None:
    table = build_artifacts_table(_report())
    assert table.rows[0][2] == "/out/a.csv"
    assert table.rows[1][2] == "-"


def test_summary_line_mentions_cause() -> None:
    line = summary_line(_report())
    assert "failed" in line
    assert "1/2 artifacts" in line
    assert "no longer alive" in line
