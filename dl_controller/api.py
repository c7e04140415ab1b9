"""Public controller API surface."""

from dl_controller.adapters.ssh_executor import SshConnectionPool, SshExecutor, build_executor
from dl_controller.engine.completion import CompletionSignal
from dl_controller.engine.orchestrator import Orchestrator
from dl_controller.engine.run_controller import RunController
from dl_controller.models.run_config import RetryPolicy, RunConfig
from dl_controller.models.state import RunState, RunStateMachine
from dl_controller.models.topology import FileUpload, HostSpec, ServiceSpec, Topology
from dl_controller.models.types import (
    ArtifactRecord,
    ArtifactStatus,
    CommandResult,
    DeployStatus,
    RemoteExecutor,
    RoleOutcome,
    RunReport,
    StopStatus,
    TransferDirection,
)
from dl_controller.services import (
    Collector,
    ConfigService,
    DeploymentManager,
    load_run_config,
    load_topology,
)

__all__ = [
    "ArtifactRecord",
    "ArtifactStatus",
    "Collector",
    "CommandResult",
    "CompletionSignal",
    "ConfigService",
    "DeployStatus",
    "DeploymentManager",
    "FileUpload",
    "HostSpec",
    "Orchestrator",
    "RemoteExecutor",
    "RetryPolicy",
    "RoleOutcome",
    "RunConfig",
    "RunController",
    "RunReport",
    "RunState",
    "RunStateMachine",
    "ServiceSpec",
    "SshConnectionPool",
    "SshExecutor",
    "StopStatus",
    "Topology",
    "TransferDirection",
    "build_executor",
    "load_run_config",
    "load_topology",
]
