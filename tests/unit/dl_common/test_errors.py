"""Tests for shared error helpers."""

from __future__ import annotations

from pathlib import Path

import pytest

from dl_common.errors import (
    CollectionError,
    CommandError,
    ConfigurationError,
    DeploymentFailed,
    LauncherError,
    RemoteTimeoutError,
    RoleCrashed,
    TopologyError,
    error_to_payload,
    wrap_error,
)


pytestmark = pytest.mark.unit_common


def test_error_to_payload_normalizes_context() -> None:
    err = LauncherError(
        "boom",
        context={
            "path": Path("/tmp/test"),
            "count": 3,
            "nested": {"value": Path("nested")},
            "items": [Path("a"), "b"],
        },
    )
    payload = error_to_payload(err)
    assert payload["error_type"] == "LauncherError"
    assert payload["error"] == "boom"
    assert payload["error_context"]["path"].endswith("test")
    assert payload["error_context"]["count"] == 3
    assert payload["error_context"]["nested"]["value"] == "nested"
    assert payload["error_context"]["items"][0] == "a"


def test_error_to_payload_accepts_plain_exceptions() -> None:
    payload = error_to_payload(KeyError("role"))
    assert payload["error_type"] == "KeyError"
    assert payload["error_context"] == {}


def test_command_error_keeps_last_stderr_line() -> None:
    err = CommandError("bench@10.0.0.1", "docker start db", 125, "warning\nno such image\n")
    assert err.exit_code == 125
    assert str(err) == "command on bench@10.0.0.1 exited with 125: no such image"
    assert err.to_dict()["context"]["command"] == "docker start db"


def test_deployment_failed_chains_cause() -> None:
    cause = RemoteTimeoutError("10.0.0.1", "command", 5)
    err = DeploymentFailed("A", cause)
    assert err.role == "A"
    assert err.reason is cause
    assert err.__cause__ is cause
    assert "deployment of role 'A' failed" in str(err)
    assert "timed out after 5s" in str(err)


def test_collection_and_crash_errors_carry_role() -> None:
    assert CollectionError("B", "missing").to_dict()["context"] == {"role": "B"}
    assert RoleCrashed("C", "health check exit code 1").role == "C"


def test_topology_error_is_a_configuration_error() -> None:
    err = wrap_error(TopologyError, "cycle", context={"roles": ["A", "B"]})
    assert isinstance(err, ConfigurationError)
    assert err.context == {"roles": ["A", "B"]}
