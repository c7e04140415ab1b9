"""Runtime configuration for a single launcher run."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RetryPolicy(BaseModel):
    """Caller-side retry budget for idempotent remote operations."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_attempts: int = Field(default=3, ge=1, description="Total attempts including the first")
    backoff: float = Field(default=1.0, ge=0, description="Delay before the first retry (s)")
    backoff_factor: float = Field(default=2.0, ge=1.0, description="Multiplier per retry")
    max_backoff: float = Field(default=30.0, ge=0, description="Upper bound for a single delay (s)")

    def delay_for(self, attempt: int) -> float:
        """Return the sleep before retry number ``attempt`` (1-based)."""
        delay = self.backoff * (self.backoff_factor ** (attempt - 1))
        return min(delay, self.max_backoff)


class RunConfig(BaseModel):
    """Immutable settings for one run."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    output_dir: Path = Field(default=Path("/tmp/dl-launcher"), description="Local results directory")
    timeout: float = Field(default=60.0, gt=0, description="Measurement window length (s)")
    warmup: float = Field(default=0.0, ge=0, description="Delay between readiness and measurement (s)")
    provision_timeout: float = Field(default=300.0, gt=0, description="Budget for provisioning (s)")
    collect_timeout: float = Field(default=120.0, gt=0, description="Budget for artifact collection (s)")
    teardown_timeout: float = Field(default=120.0, gt=0, description="Budget for teardown (s)")
    stop_timeout: float = Field(default=30.0, gt=0, description="Timeout for a single stop call (s)")
    command_timeout: float = Field(default=60.0, gt=0, description="Timeout for a single remote command (s)")
    transfer_timeout: float = Field(default=120.0, gt=0, description="Timeout for a single file transfer (s)")
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    readiness_attempts: int = Field(default=30, ge=1, description="Readiness checks before giving up")
    readiness_interval: float = Field(default=1.0, ge=0, description="Delay between readiness checks (s)")
    max_parallel: int = Field(default=8, ge=1, description="Concurrent role operations")
    max_connections_per_host: int = Field(default=4, ge=1, description="Concurrent ssh operations per host")
    remote_workdir: str = Field(default="/tmp/dl-launcher", description="Remote directory for pid/log files")
    container_runtime: str = Field(default="docker", description="CLI used to copy artifacts out of containers")
    check_liveness: bool = Field(default=True, description="Health-check every role after the measurement window")
    params: Dict[str, Any] = Field(default_factory=dict, description="Benchmark-specific parameters")

    @model_validator(mode="after")
    def _validate_workdir(self) -> "RunConfig":
        if not self.remote_workdir.startswith("/"):
            raise ValueError("RunConfig: 'remote_workdir' must be an absolute path")
        return self

    @property
    def run_budget(self) -> float:
        """Upper bound for Provisioning + Warming + Running combined."""
        return self.provision_timeout + self.warmup + self.timeout

    def with_overrides(self, **overrides: Any) -> "RunConfig":
        """Return a copy with non-None overrides applied and re-validated."""
        values = self.model_dump()
        values.update({key: val for key, val in overrides.items() if val is not None})
        return RunConfig.model_validate(values)
