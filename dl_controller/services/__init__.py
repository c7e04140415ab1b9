"""Service layer for the launcher."""

from .collector import Collector
from .config_service import ConfigService, load_run_config, load_topology
from .deployment import DeploymentManager

__all__ = [
    "Collector",
    "ConfigService",
    "DeploymentManager",
    "load_run_config",
    "load_topology",
]
