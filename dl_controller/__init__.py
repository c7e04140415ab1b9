"""Controller facade for the distributed benchmark launcher.

Re-exports the types a caller needs to load descriptors and drive a run.
"""

from dl_controller.api import (
    ConfigService,
    Orchestrator,
    RunConfig,
    RunReport,
    RunState,
    Topology,
)

__all__ = [
    "ConfigService",
    "Orchestrator",
    "RunConfig",
    "RunReport",
    "RunState",
    "Topology",
]
