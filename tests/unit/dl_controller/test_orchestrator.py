"""End-to-end orchestrator runs against the in-memory executor."""

from __future__ import annotations

import json
import logging

import pytest

from dl_controller.engine.orchestrator import Orchestrator
from dl_controller.models.run_config import RetryPolicy, RunConfig
from dl_controller.models.state import RunState
from dl_controller.models.types import DeployStatus, StopStatus
from dl_controller.services.report import REPORT_FILENAME
from tests.helpers.fakes import FakeExecutor, make_topology


pytestmark = pytest.mark.unit_controller


@pytest.fixture
def config(tmp_path) -> RunConfig:
    return RunConfig(
        output_dir=tmp_path / "out",
        timeout=1.0,
        readiness_attempts=3,
        readiness_interval=0.01,
        retry=RetryPolicy(max_attempts=1),
    )


def _executor() -> FakeExecutor:
    return FakeExecutor(artifacts={"/results/A.csv": b"A,1\n", "/results/B.csv": b"B,2\n"})


def _states(orchestrator: Orchestrator) -> list[RunState]:
    return [state for state, _ in orchestrator.controller.state_machine.history]


def test_successful_run_walks_every_state(config) -> None:
    topology = make_topology({"A": [], "B": ["A"]})
    executor = _executor()
    orchestrator = Orchestrator(topology, config, executor=executor, run_id="run-test")

    report = orchestrator.run()

    assert _states(orchestrator) == [
        RunState.IDLE,
        RunState.PROVISIONING,
        RunState.WARMING,
        RunState.RUNNING,
        RunState.COLLECTING,
        RunState.CLEANING_UP,
        RunState.SUCCEEDED,
    ]
    assert report.success
    assert executor.first("start", "A") <= executor.first("start", "B")
    out = config.output_dir
    assert (out / "A.csv").read_bytes() == b"A,1\n"
    assert (out / "B.csv").read_bytes() == b"B,2\n"
    assert executor.roles_with("stop") == ["B", "A"]
    assert executor.closed


def test_report_and_run_log_are_written(config, caplog) -> None:
    caplog.set_level(logging.INFO)
    topology = make_topology({"A": [], "B": ["A"]})
    run_config = config.with_overrides(params={"rate": 500})
    report = Orchestrator(topology, run_config, executor=_executor(), run_id="run-test").run()

    payload = json.loads((config.output_dir / REPORT_FILENAME).read_text())
    assert payload["run_id"] == "run-test"
    assert payload["final_state"] == "succeeded"
    assert payload["success"] is True
    assert payload["params"] == {"rate": 500}
    assert [s["state"] for s in payload["states"]][0] == "idle"
    assert [r["role"] for r in payload["roles"]] == ["A", "B"]
    assert payload["roles"][0]["stop_status"] == "stopped"
    assert payload["artifacts"][0]["local_path"].endswith("A.csv")
    assert payload["elapsed_s"] == report.elapsed_s

    log_path = config.output_dir / "logs" / "launcher-run-test.jsonl"
    lines = [json.loads(line) for line in log_path.read_text().splitlines()]
    assert any("Measurement window" in line["message"] for line in lines)
    assert all(line["run_id"] == "run-test" for line in lines)


def test_health_failure_fails_provisioning_and_still_tears_down(config) -> None:
    topology = make_topology({"A": [], "B": ["A"]})
    executor = _executor()
    executor.unhealthy = {"A"}
    orchestrator = Orchestrator(topology, config, executor=executor)

    report = orchestrator.run()

    assert _states(orchestrator) == [RunState.IDLE, RunState.PROVISIONING, RunState.FAILED]
    assert RunState.COLLECTING not in _states(orchestrator)
    assert report.final_state == RunState.FAILED
    assert "deployment of role 'A' failed" in report.failure
    assert executor.count("stop", "A") == 1
    assert executor.count("start", "B") == 0
    roles = {outcome.role: outcome for outcome in report.roles}
    assert roles["A"].status == DeployStatus.FAILED
    assert roles["A"].stop_status == StopStatus.STOPPED
    assert report.artifacts == []
    assert executor.closed


def test_unexpected_error_still_tears_down(config) -> None:
    class ExplodingExecutor(FakeExecutor):
        armed = False

        def execute(self, host, command, timeout, *, check=True):
            if self.armed and command.startswith("health-"):
                raise RuntimeError("executor bug")
            return super().execute(host, command, timeout, check=check)

    topology = make_topology({"A": [], "B": []})
    executor = ExplodingExecutor(artifacts={})
    orchestrator = Orchestrator(topology, config.with_overrides(timeout=0.05), executor=executor)
    orchestrator.controller.register_listener(
        lambda state, reason: setattr(executor, "armed", state == RunState.RUNNING)
    )

    report = orchestrator.run()

    assert _states(orchestrator) == [
        RunState.IDLE,
        RunState.PROVISIONING,
        RunState.WARMING,
        RunState.RUNNING,
        RunState.FAILED,
    ]
    assert report.failure == "executor bug"
    assert executor.count("stop", "A") == 1
    assert executor.count("stop", "B") == 1


def test_run_twice_overwrites_artifacts(config) -> None:
    topology = make_topology({"A": [], "B": ["A"]})
    Orchestrator(topology, config, executor=_executor()).run()

    second = FakeExecutor(artifacts={"/results/A.csv": b"A,9\n", "/results/B.csv": b"B,9\n"})
    report = Orchestrator(topology, config, executor=second).run()

    assert report.success
    assert (config.output_dir / "A.csv").read_bytes() == b"A,9\n"
    assert (config.output_dir / "B.csv").read_bytes() == b"B,9\n"
