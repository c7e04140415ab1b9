"""Shared launcher data types and protocols."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from dl_controller.models.state import RunState
from dl_controller.models.topology import HostSpec


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a single remote command."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class TransferDirection(str, Enum):
    """Direction of a file transfer relative to the launcher."""

    PUSH = "push"
    PULL = "pull"


class DeployStatus(str, Enum):
    PENDING = "pending"
    STARTED = "started"
    READY = "ready"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StopStatus(str, Enum):
    NOT_STARTED = "not_started"
    STOPPED = "stopped"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class RoleOutcome:
    """Deployment and teardown outcome of one role.

    Timestamps are ``time.monotonic()`` values.
    """

    role: str
    status: DeployStatus = DeployStatus.PENDING
    stop_status: StopStatus = StopStatus.NOT_STARTED
    error: Optional[str] = None
    stop_error: Optional[str] = None
    started_at: Optional[float] = None
    ready_at: Optional[float] = None
    stopped_at: Optional[float] = None

    @property
    def was_started(self) -> bool:
        return self.started_at is not None


class ArtifactStatus(str, Enum):
    COLLECTED = "collected"
    FAILED = "failed"


@dataclass(frozen=True)
class ArtifactRecord:
    """One declared artifact path and what happened to it."""

    role: str
    remote_path: str
    local_path: Path
    size: int = 0
    status: ArtifactStatus = ArtifactStatus.COLLECTED
    error: Optional[str] = None

    @property
    def collected(self) -> bool:
        return self.status == ArtifactStatus.COLLECTED


@dataclass
class RunReport:
    """Terminal report of a launcher run."""

    run_id: str
    final_state: RunState
    failure: Optional[str]
    elapsed_s: float
    params: Dict[str, Any] = field(default_factory=dict)
    states: List[Dict[str, Any]] = field(default_factory=list)
    roles: List[RoleOutcome] = field(default_factory=list)
    artifacts: List[ArtifactRecord] = field(default_factory=list)
    collection_errors: List[str] = field(default_factory=list)
    teardown_errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.final_state == RunState.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["final_state"] = self.final_state.value
        payload["success"] = self.success
        for role in payload["roles"]:
            role["status"] = role["status"].value
            role["stop_status"] = role["stop_status"].value
        for artifact in payload["artifacts"]:
            artifact["local_path"] = str(artifact["local_path"])
            artifact["status"] = artifact["status"].value
        return payload


class RemoteExecutor(Protocol):
    """Protocol for remote execution engines."""

    def execute(
        self,
        host: HostSpec,
        command: str,
        timeout: float,
        *,
        check: bool = True,
    ) -> CommandResult:
        """Run ``command`` on ``host`` and return its captured output."""
        raise NotImplementedError

    def transfer(
        self,
        host: HostSpec,
        direction: TransferDirection,
        source_path: str | Path,
        dest_path: str | Path,
        timeout: float,
    ) -> int:
        """Copy a file between the launcher and ``host``.

        Returns the file size as known at the source: the local size for a
        push, the size the remote side reports for a pull. Callers compare it
        with what landed on disk.
        """
        raise NotImplementedError

    def close(self) -> None:
        """Release every pooled connection."""
        raise NotImplementedError
