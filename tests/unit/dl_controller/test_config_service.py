"""Descriptor loading tests."""

from __future__ import annotations

import json
import textwrap
from pathlib import Path

import pytest

from dl_common.errors import ConfigurationError, TopologyError
from dl_controller.services.config_service import (
    ConfigService,
    load_run_config,
    load_topology,
)


pytestmark = pytest.mark.unit_controller

BENCHMARK_TOML = """
name = "social-network"

[[hosts]]
role = "db"
address = "10.0.0.10"
user = "bench"
ssh_key = "keys/id_ed25519"

[[hosts]]
role = "frontend"
address = "10.0.0.11"
port = 2222

[[services]]
role = "db"
image = "mongo:7"
start_command = "docker run -d --name db mongo:7"
stop_command = "docker rm -f db"
health_command = "docker exec db mongosh --eval 'db.runCommand({ping: 1})'"
artifacts = ["/results/db.log"]
container = "db"

[[services]]
role = "frontend"
image = "nginx:1.25"
start_command = "nginx -g 'daemon off;'"
config = "conf/nginx.conf"
config_dest = "/etc/nginx/nginx.conf"
depends_on = ["db"]
artifacts = ["/results/wrk.txt"]
"""


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(text))
    return path


def test_load_topology_from_toml_resolves_local_paths(tmp_path) -> None:
    descriptor = _write(tmp_path / "bench" / "social.toml", BENCHMARK_TOML)

    topology = load_topology(descriptor)

    assert topology.name == "social-network"
    assert topology.roles == ["db", "frontend"]
    bench_dir = (tmp_path / "bench").resolve()
    assert topology.service("frontend").config == bench_dir / "conf" / "nginx.conf"
    assert topology.host_for("db").ssh_key == bench_dir / "keys" / "id_ed25519"
    assert topology.host_for("frontend").port == 2222
    assert topology.service("db").container == "db"


def test_load_topology_from_yaml_defaults_name_to_file_stem(tmp_path) -> None:
    descriptor = _write(
        tmp_path / "kv.yaml",
        """
        hosts:
          - {role: kv, address: kv.lab}
        services:
          - role: kv
            image: redis:7
            start_command: redis-server
        """,
    )

    assert load_topology(descriptor).name == "kv"


def test_load_topology_from_json(tmp_path) -> None:
    descriptor = tmp_path / "bench.json"
    descriptor.write_text(
        json.dumps(
            {
                "hosts": [{"role": "a", "address": "a.lab"}],
                "services": [{"role": "a", "image": "x", "start_command": "run"}],
            }
        )
    )
    assert load_topology(descriptor).roles == ["a"]


def test_topology_errors_are_typed(tmp_path) -> None:
    descriptor = _write(
        tmp_path / "cycle.toml",
        """
        [[hosts]]
        role = "a"
        address = "a.lab"
        [[hosts]]
        role = "b"
        address = "b.lab"
        [[services]]
        role = "a"
        image = "x"
        start_command = "run"
        depends_on = ["b"]
        [[services]]
        role = "b"
        image = "x"
        start_command = "run"
        depends_on = ["a"]
        """,
    )
    with pytest.raises(TopologyError, match="dependency cycle"):
        load_topology(descriptor)


def test_unknown_descriptor_keys_are_rejected(tmp_path) -> None:
    descriptor = _write(
        tmp_path / "bad.toml",
        """
        [[hosts]]
        role = "a"
        address = "a.lab"
        [[services]]
        role = "a"
        image = "x"
        start_command = "run"
        replicas = 3
        """,
    )
    with pytest.raises(TopologyError, match="services.0.replicas"):
        load_topology(descriptor)


def test_unparseable_descriptor_is_a_configuration_error(tmp_path) -> None:
    descriptor = _write(tmp_path / "broken.toml", "[[hosts]\nrole = ")
    with pytest.raises(ConfigurationError, match="cannot parse"):
        load_topology(descriptor)
    with pytest.raises(ConfigurationError, match="not found"):
        load_topology(tmp_path / "missing.toml")


def test_run_config_accepts_launcher_table(tmp_path) -> None:
    descriptor = _write(
        tmp_path / "run.toml",
        """
        [launcher]
        timeout = 90
        warmup = 5
        output_dir = "results"

        [launcher.retry]
        max_attempts = 5

        [launcher.params]
        rate = 2000
        """,
    )

    config = load_run_config(descriptor)

    assert config.timeout == 90
    assert config.warmup == 5
    assert config.output_dir == tmp_path.resolve() / "results"
    assert config.retry.max_attempts == 5
    assert config.params == {"rate": 2000}


def test_run_config_rejects_unknown_tables(tmp_path) -> None:
    descriptor = _write(
        tmp_path / "run.toml",
        """
        [launcher]
        timeout = 90
        [analysis]
        plots = true
        """,
    )
    with pytest.raises(ConfigurationError, match="analysis"):
        load_run_config(descriptor)


def test_run_config_validation_errors_are_typed(tmp_path) -> None:
    descriptor = _write(tmp_path / "run.yaml", "timeout: -4\n")
    with pytest.raises(ConfigurationError, match="timeout"):
        load_run_config(descriptor)


def test_env_timeout_override(monkeypatch) -> None:
    monkeypatch.setenv("DL_TIMEOUT", "12.5")
    assert load_run_config().timeout == 12.5


def test_config_service_applies_cli_overrides(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("DL_TIMEOUT", raising=False)
    descriptor = _write(tmp_path / "bench" / "social.toml", BENCHMARK_TOML)
    _write(tmp_path / "bench" / "conf" / "nginx.conf", "events {}\n")
    run_file = _write(tmp_path / "run.toml", "[launcher]\ntimeout = 90\n")

    topology, config = ConfigService().load(
        descriptor, run_file, output_dir=tmp_path / "cli-out", timeout=3, warmup=None
    )

    assert topology.roles == ["db", "frontend"]
    assert config.timeout == 3
    assert config.output_dir == tmp_path / "cli-out"


def test_config_service_reports_missing_local_files(tmp_path) -> None:
    descriptor = _write(tmp_path / "bench" / "social.toml", BENCHMARK_TOML)
    with pytest.raises(ConfigurationError, match="nginx.conf"):
        ConfigService().load(descriptor)
