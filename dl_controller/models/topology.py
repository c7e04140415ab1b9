"""Typed benchmark topology: hosts, services and their dependency graph."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class HostSpec(BaseModel):
    """Remote host a single role is deployed to."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    role: str = Field(description="Role deployed on this host")
    address: str = Field(description="IP address or hostname of the remote host")
    port: Optional[int] = Field(default=None, gt=0, le=65535, description="SSH port")
    user: Optional[str] = Field(default=None, description="SSH user for connection")
    ssh_key: Optional[Path] = Field(default=None, description="Private key file for SSH")
    ssh_options: List[str] = Field(
        default_factory=list,
        description="Extra ssh_config options as 'Key=Value' (e.g. 'ProxyJump=bastion')",
    )

    @model_validator(mode="after")
    def _validate_not_empty(self) -> "HostSpec":
        if not self.role.strip():
            raise ValueError("HostSpec: 'role' must be non-empty")
        if not self.address.strip():
            raise ValueError(f"HostSpec '{self.role}': 'address' must be non-empty")
        return self

    @property
    def destination(self) -> str:
        """Return the ssh destination (``user@address`` or ``address``)."""
        return f"{self.user}@{self.address}" if self.user else self.address


class FileUpload(BaseModel):
    """A local file pushed to the host before the role starts."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    source: Path
    dest: str


class ServiceSpec(BaseModel):
    """One deployable role of the benchmark."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    role: str = Field(description="Logical role name, e.g. 'frontend'")
    image: str = Field(description="Binary path or container image reference")
    start_command: str = Field(description="Command issued on the host to start the role")
    stop_command: Optional[str] = Field(
        default=None,
        description="Command stopping the role; detached roles default to killing the pid",
    )
    health_command: Optional[str] = Field(
        default=None,
        description="Readiness check; exit 0 means ready. Defaults to a pid liveness check",
    )
    detach: bool = Field(
        default=True,
        description="Run start_command in the background and track it with a pid file",
    )
    config: Optional[Path] = Field(default=None, description="Local config file to push")
    config_dest: Optional[str] = Field(default=None, description="Remote path for the config file")
    uploads: List[FileUpload] = Field(default_factory=list)
    pre_start: List[str] = Field(
        default_factory=list,
        description="Commands run on the host before uploads and start (e.g. cleanup)",
    )
    artifacts: List[str] = Field(default_factory=list, description="Remote result file paths")
    container: Optional[str] = Field(
        default=None,
        description="Container the role runs in; uploads are copied into it and artifacts out of it",
    )
    depends_on: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_fields(self) -> "ServiceSpec":
        if not self.role.strip():
            raise ValueError("ServiceSpec: 'role' must be non-empty")
        if not self.start_command.strip():
            raise ValueError(f"ServiceSpec '{self.role}': 'start_command' must be non-empty")
        if self.config is not None and not self.config_dest:
            raise ValueError(f"ServiceSpec '{self.role}': 'config' requires 'config_dest'")
        if not self.detach and not self.stop_command:
            raise ValueError(
                f"ServiceSpec '{self.role}': foreground roles (detach = false) need a 'stop_command'"
            )
        if self.role in self.depends_on:
            raise ValueError(f"ServiceSpec '{self.role}': a role cannot depend on itself")
        if len(set(self.depends_on)) != len(self.depends_on):
            raise ValueError(f"ServiceSpec '{self.role}': duplicate entries in depends_on")
        return self

    @field_validator("artifacts")
    @classmethod
    def _validate_artifacts(cls, value: List[str]) -> List[str]:
        for path in value:
            if not path.strip() or path.endswith("/"):
                raise ValueError(f"artifact path must name a file, got {path!r}")
        return value

    def all_uploads(self) -> List[FileUpload]:
        """Return config + declared uploads in push order."""
        uploads = list(self.uploads)
        if self.config is not None and self.config_dest:
            uploads.insert(0, FileUpload(source=self.config, dest=self.config_dest))
        return uploads


class Topology(BaseModel):
    """Ordered services keyed by role plus the host of every role."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(default="benchmark")
    hosts: List[HostSpec] = Field(default_factory=list)
    services: List[ServiceSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_graph(self) -> "Topology":
        if not self.services:
            raise ValueError("Topology: at least one service must be declared")
        host_roles = [host.role for host in self.hosts]
        duplicates = {role for role in host_roles if host_roles.count(role) > 1}
        if duplicates:
            raise ValueError(f"Topology: duplicate hosts for roles {sorted(duplicates)}")
        service_roles = [svc.role for svc in self.services]
        duplicates = {role for role in service_roles if service_roles.count(role) > 1}
        if duplicates:
            raise ValueError(f"Topology: duplicate services {sorted(duplicates)}")
        missing = [role for role in service_roles if role not in host_roles]
        if missing:
            raise ValueError(f"Topology: no host declared for roles {missing}")
        orphans = [role for role in host_roles if role not in service_roles]
        if orphans:
            raise ValueError(f"Topology: hosts declared for unknown roles {orphans}")
        for svc in self.services:
            unknown = [dep for dep in svc.depends_on if dep not in service_roles]
            if unknown:
                raise ValueError(
                    f"Topology: role '{svc.role}' depends on unknown roles {unknown}"
                )
        _topological_sort(self.services)
        return self

    @property
    def roles(self) -> List[str]:
        return [svc.role for svc in self.services]

    def service(self, role: str) -> ServiceSpec:
        for svc in self.services:
            if svc.role == role:
                return svc
        raise KeyError(role)

    def host_for(self, role: str) -> HostSpec:
        for host in self.hosts:
            if host.role == role:
                return host
        raise KeyError(role)

    def topological_order(self) -> List[ServiceSpec]:
        """Services with every dependency before its dependents.

        Ties keep declaration order so runs are reproducible.
        """
        return _topological_sort(self.services)

    def dependents(self, role: str) -> List[str]:
        """Roles that declare ``role`` as a dependency."""
        return [svc.role for svc in self.services if role in svc.depends_on]


def _topological_sort(services: List[ServiceSpec]) -> List[ServiceSpec]:
    remaining = {svc.role: set(svc.depends_on) for svc in services}
    ordered: List[ServiceSpec] = []
    while remaining:
        ready = [svc for svc in services if svc.role in remaining and not remaining[svc.role]]
        if not ready:
            raise ValueError(
                f"Topology: dependency cycle between roles {sorted(remaining)}"
            )
        for svc in ready:
            ordered.append(svc)
            del remaining[svc.role]
        for deps in remaining.values():
            deps.difference_update(svc.role for svc in ready)
    return ordered
