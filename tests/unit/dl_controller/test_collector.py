"""Unit tests for artifact collection."""

from __future__ import annotations

import time
from pathlib import Path

import pytest

from dl_controller.models.run_config import RetryPolicy, RunConfig
from dl_controller.models.types import ArtifactStatus
from dl_controller.services.collector import Collector, plan_artifacts
from tests.helpers.fakes import FakeExecutor, make_topology


pytestmark = pytest.mark.unit_controller


@pytest.fixture
def config(tmp_path) -> RunConfig:
    return RunConfig(output_dir=tmp_path, retry=RetryPolicy(max_attempts=1))


def _results(*roles: str) -> dict[str, bytes]:
    return {f"/results/{role}.csv": f"latency_ms\n{len(role)}\n".encode() for role in roles}


def test_one_record_per_artifact_despite_a_failing_role(config, tmp_path) -> None:
    topology = make_topology({"frontend": [], "backend": [], "db": []})
    executor = FakeExecutor(artifacts=_results("frontend", "backend", "db"))
    executor.failing_pulls = {"backend"}

    records = Collector(executor, config).collect(topology, tmp_path)

    assert [r.role for r in records] == ["frontend", "backend", "db"]
    assert [r.status for r in records] == [
        ArtifactStatus.COLLECTED,
        ArtifactStatus.FAILED,
        ArtifactStatus.COLLECTED,
    ]
    assert (tmp_path / "frontend.csv").read_bytes() == b"latency_ms\n8\n"
    assert (tmp_path / "db.csv").exists()
    assert not (tmp_path / "backend.csv").exists()
    assert "No such file" in records[1].error
    assert records[0].size == len(b"latency_ms\n8\n")
    assert not list(tmp_path.glob("*.part"))


def test_collection_overwrites_previous_files(config, tmp_path) -> None:
    (tmp_path / "db.csv").write_text("stale run\n")
    topology = make_topology({"db": []})
    executor = FakeExecutor(artifacts={"/results/db.csv": b"fresh\n"})

    Collector(executor, config).collect(topology, tmp_path)

    assert (tmp_path / "db.csv").read_text() == "fresh\n"


def test_failed_download_keeps_previous_file_intact(config, tmp_path) -> None:
    (tmp_path / "db.csv").write_text("previous\n")
    topology = make_topology({"db": []})
    executor = FakeExecutor()
    executor.failing_pulls = {"db"}

    records = Collector(executor, config).collect(topology, tmp_path)

    assert records[0].status == ArtifactStatus.FAILED
    assert (tmp_path / "db.csv").read_text() == "previous\n"


def test_multiple_artifacts_use_basenames_and_resolve_clashes(tmp_path) -> None:
    topology = make_topology(
        {"db": [], "web": []},
        db={"artifacts": ["/var/log/out.txt", "/data/out.txt", "/data/stats.json"]},
        web={"artifacts": ["/srv/web/results.tar.gz"]},
    )

    names = [item.local_path.name for item in plan_artifacts(topology, tmp_path)]

    assert names == ["db.out.txt", "db.1.out.txt", "db.stats.json", "web.tar.gz"]


def test_container_artifacts_are_copied_out_first(config, tmp_path) -> None:
    topology = make_topology({"db": []}, db={"container": "bench-db"})
    staged = f"{config.remote_workdir}/collect/db/db.csv"
    executor = FakeExecutor(artifacts={staged: b"rows\n"})

    records = Collector(executor, config).collect(topology, tmp_path)

    assert records[0].collected
    copy = [cmd for role, cmd in executor.commands if "docker cp" in cmd]
    assert copy == [
        f"mkdir -p {config.remote_workdir}/collect/db && "
        f"docker cp bench-db:/results/db.csv {staged}"
    ]
    assert records[0].remote_path == "/results/db.csv"


def test_budget_exhaustion_yields_failed_records(config, tmp_path) -> None:
    class SlowExecutor(FakeExecutor):
        def transfer(self, host, direction, source_path, dest_path, timeout):
            if host.role == "slow":
                time.sleep(0.5)
            return super().transfer(host, direction, source_path, dest_path, timeout)

    topology = make_topology({"fast": [], "slow": []})
    executor = SlowExecutor(artifacts=_results("fast", "slow"))

    started = time.monotonic()
    records = Collector(executor, config).collect(topology, tmp_path, deadline=started + 0.1)

    assert time.monotonic() - started < 0.4
    assert [r.status for r in records] == [ArtifactStatus.COLLECTED, ArtifactStatus.FAILED]
    assert "budget exhausted" in records[1].error


def test_no_declared_artifacts_means_no_records(config, tmp_path) -> None:
    topology = make_topology({"a": []}, artifacts=False)
    assert Collector(FakeExecutor(), config).collect(topology, Path(tmp_path)) == []


def test_truncated_download_is_a_failed_record(config, tmp_path) -> None:
    (tmp_path / "db.csv").write_text("previous\n")
    topology = make_topology({"db": [], "web": []})
    executor = FakeExecutor(artifacts=_results("db", "web"))
    executor.truncated_pulls = {"db"}

    records = Collector(executor, config).collect(topology, tmp_path)

    assert [r.status for r in records] == [ArtifactStatus.FAILED, ArtifactStatus.COLLECTED]
    assert "size mismatch" in records[0].error
    assert (tmp_path / "db.csv").read_text() == "previous\n"
    assert not list(tmp_path.glob("*.part"))
