"""Deployment manager: bring topology roles up in dependency order and back down."""

from __future__ import annotations

import logging
import shlex
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from dl_common.errors import (
    DeploymentFailed,
    LauncherError,
    ReadinessError,
    RemoteConnectionError,
    RemoteTimeoutError,
    RoleCrashed,
)
from dl_controller.models.run_config import RunConfig
from dl_controller.models.topology import FileUpload, HostSpec, ServiceSpec, Topology
from dl_controller.models.types import (
    DeployStatus,
    RemoteExecutor,
    RoleOutcome,
    StopStatus,
    TransferDirection,
)
from dl_controller.services.retry import call_with_retry

logger = logging.getLogger(__name__)


class ProvisionCancelled(Exception):
    """Raised inside a role task when sibling failure aborted provisioning."""


class RoleSignal:
    """One-shot completion signal a role publishes to the roles waiting on it."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._ok = False

    def set(self, ok: bool) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._ok = ok
            self._event.set()

    def wait(self) -> bool:
        """Block until the role finished; return True when it succeeded."""
        self._event.wait()
        return self._ok

    def is_set(self) -> bool:
        return self._event.is_set()


class DeploymentManager:
    """Provision, health-check and stop the roles of a topology."""

    def __init__(
        self,
        executor: RemoteExecutor,
        config: RunConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.executor = executor
        self.config = config
        self._clock = clock
        self._lock = threading.Lock()
        self._outcomes: Dict[str, RoleOutcome] = {}
        self._stopped: set[str] = set()

    @property
    def outcomes(self) -> List[RoleOutcome]:
        with self._lock:
            return list(self._outcomes.values())

    def outcome(self, role: str) -> RoleOutcome:
        with self._lock:
            if role not in self._outcomes:
                self._outcomes[role] = RoleOutcome(role=role)
            return self._outcomes[role]

    # ------------------------------------------------------------------ commands

    def pid_file(self, role: str) -> str:
        return f"{self.config.remote_workdir}/{role}.pid"

    def log_file(self, role: str) -> str:
        return f"{self.config.remote_workdir}/{role}.log"

    def start_command(self, svc: ServiceSpec) -> str:
        exports = "".join(
            f"export {key}={shlex.quote(value)}; " for key, value in svc.env.items()
        )
        command = f"{exports}{svc.start_command}"
        if not svc.detach:
            return command
        workdir = shlex.quote(self.config.remote_workdir)
        return (
            f"mkdir -p {workdir} && "
            f"nohup sh -c {shlex.quote(command)} > {shlex.quote(self.log_file(svc.role))} "
            f"2>&1 < /dev/null & echo $! > {shlex.quote(self.pid_file(svc.role))}"
        )

    def health_command(self, svc: ServiceSpec) -> Optional[str]:
        if svc.health_command:
            return svc.health_command
        if svc.detach:
            pid_file = shlex.quote(self.pid_file(svc.role))
            return f"kill -0 \"$(cat {pid_file})\" 2>/dev/null"
        return None

    def stop_command(self, svc: ServiceSpec) -> str:
        """Declared stop command, or a pid-file kill for detached roles."""
        if svc.stop_command:
            return svc.stop_command
        pid_file = shlex.quote(self.pid_file(svc.role))
        return (
            f"if [ -f {pid_file} ]; then pid=$(cat {pid_file}); kill \"$pid\" 2>/dev/null; "
            f"for _ in 1 2 3 4 5 6 7 8 9 10; do kill -0 \"$pid\" 2>/dev/null || break; sleep 0.5; done; "
            f"kill -9 \"$pid\" 2>/dev/null; rm -f {pid_file}; fi"
        )

    # ----------------------------------------------------------------- provision

    def provision(
        self, topology: Topology, deadline: Optional[float] = None
    ) -> List[RoleOutcome]:
        """Start every role after its dependencies are ready.

        Raises:
            DeploymentFailed: the first role that failed; sibling tasks are
                cancelled and already-started roles are stopped before raising.
        """
        order = topology.topological_order()
        for svc in order:
            self.outcome(svc.role)
        signals = {svc.role: RoleSignal() for svc in order}
        abort = threading.Event()

        pool = ThreadPoolExecutor(
            max_workers=min(self.config.max_parallel, len(order)),
            thread_name_prefix="dl-provision",
        )
        futures: Dict[Future[None], str] = {}
        failure: Optional[Tuple[str, BaseException]] = None
        try:
            for svc in order:
                future = pool.submit(
                    self._provision_role, topology, svc, signals, abort, deadline
                )
                futures[future] = svc.role
            failure = self._await_provisioning(futures, abort, deadline)
        except BaseException:
            abort.set()
            for signal in signals.values():
                signal.set(False)
            raise
        finally:
            if failure is not None:
                abort.set()
                for signal in signals.values():
                    signal.set(False)
            pool.shutdown(wait=True, cancel_futures=True)

        if failure is not None:
            role, cause = failure
            failed = self.outcome(role)
            if failed.status != DeployStatus.FAILED:
                failed.status = DeployStatus.FAILED
                failed.error = str(cause)
            for future, pending_role in futures.items():
                if future.cancelled():
                    self.outcome(pending_role).status = DeployStatus.CANCELLED
            logger.error("Provisioning failed at role %s: %s", role, cause, extra={"dl_role": role})
            self._stop_roles(topology, self._stoppable_roles(topology), self.config.teardown_timeout)
            raise DeploymentFailed(role, cause)

        logger.info("All %d roles ready", len(order))
        return [self.outcome(role) for role in topology.roles]

    def _await_provisioning(
        self,
        futures: Dict[Future[None], str],
        abort: threading.Event,
        deadline: Optional[float],
    ) -> Optional[Tuple[str, BaseException]]:
        pending = set(futures)
        while pending:
            remaining = None if deadline is None else max(deadline - self._clock(), 0.0)
            done, pending = wait(pending, timeout=remaining, return_when=FIRST_EXCEPTION)
            for future in done:
                exc = future.exception()
                if exc is not None and not isinstance(exc, ProvisionCancelled):
                    abort.set()
                    for other in pending:
                        other.cancel()
                    return futures[future], exc
            if not done and pending:
                abort.set()
                for other in pending:
                    other.cancel()
                stuck = [role for future, role in futures.items() if future in pending]
                return stuck[0], LauncherError(
                    "provisioning budget exhausted", context={"pending_roles": stuck}
                )
        return None

    def _provision_role(
        self,
        topology: Topology,
        svc: ServiceSpec,
        signals: Dict[str, RoleSignal],
        abort: threading.Event,
        deadline: Optional[float],
    ) -> None:
        outcome = self.outcome(svc.role)
        extra = {"dl_role": svc.role, "dl_phase": "provisioning"}
        try:
            for dep in svc.depends_on:
                if not signals[dep].wait():
                    raise ProvisionCancelled(f"dependency {dep} did not become ready")
            self._checkpoint(abort, deadline)

            host = topology.host_for(svc.role)
            for command in svc.pre_start:
                self._execute_with_retry(host, command, f"pre-start command for {svc.role}", abort)
            for index, upload in enumerate(svc.all_uploads()):
                self._push_upload(host, svc, upload, index, abort)
            self._checkpoint(abort, deadline)

            logger.info("Starting role %s on %s", svc.role, host.destination, extra=extra)
            outcome.started_at = self._clock()
            outcome.status = DeployStatus.STARTED
            call_with_retry(
                lambda: self.executor.execute(
                    host, self.start_command(svc), self.config.command_timeout
                ),
                self.config.retry,
                description=f"start of {svc.role}",
                retry_on=(RemoteConnectionError,),
                abort=abort,
            )
            self._await_ready(topology, svc, abort, deadline)
            outcome.ready_at = self._clock()
            outcome.status = DeployStatus.READY
            logger.info("Role %s is ready", svc.role, extra=extra)
            signals[svc.role].set(True)
        except ProvisionCancelled:
            outcome.status = DeployStatus.CANCELLED
            signals[svc.role].set(False)
            raise
        except Exception as exc:
            outcome.status = DeployStatus.FAILED
            outcome.error = str(exc)
            signals[svc.role].set(False)
            raise

    def _push_upload(
        self,
        host: HostSpec,
        svc: ServiceSpec,
        upload: FileUpload,
        index: int,
        abort: threading.Event,
    ) -> None:
        """Push one upload; containerised roles get it staged on the host and copied in."""
        dest = upload.dest
        if svc.container:
            stage_dir = f"{self.config.remote_workdir}/stage/{svc.role}"
            dest = f"{stage_dir}/{index}-{upload.source.name}"
            self._execute_with_retry(
                host,
                f"mkdir -p {shlex.quote(stage_dir)}",
                f"staging directory for {svc.role}",
                abort,
            )
        call_with_retry(
            lambda: self.executor.transfer(
                host,
                TransferDirection.PUSH,
                upload.source,
                dest,
                self.config.transfer_timeout,
            ),
            self.config.retry,
            description=f"upload of {upload.source} for {svc.role}",
            abort=abort,
        )
        if svc.container:
            target = f"{svc.container}:{upload.dest}"
            self._execute_with_retry(
                host,
                f"{self.config.container_runtime} cp {shlex.quote(dest)} {shlex.quote(target)}",
                f"container copy of {upload.source} for {svc.role}",
                abort,
            )

    def _execute_with_retry(
        self, host: HostSpec, command: str, description: str, abort: threading.Event
    ) -> None:
        call_with_retry(
            lambda: self.executor.execute(host, command, self.config.command_timeout),
            self.config.retry,
            description=description,
            abort=abort,
        )

    def _checkpoint(self, abort: threading.Event, deadline: Optional[float]) -> None:
        if abort.is_set():
            raise ProvisionCancelled("provisioning aborted")
        if deadline is not None and self._clock() >= deadline:
            raise LauncherError("provisioning budget exhausted")

    def _await_ready(
        self,
        topology: Topology,
        svc: ServiceSpec,
        abort: threading.Event,
        deadline: Optional[float],
    ) -> None:
        health = self.health_command(svc)
        if health is None:
            return
        host = topology.host_for(svc.role)
        attempts = self.config.readiness_attempts
        last_error = ""
        for attempt in range(1, attempts + 1):
            self._checkpoint(abort, deadline)
            try:
                result = self.executor.execute(
                    host, health, self.config.command_timeout, check=False
                )
                if result.success:
                    return
                last_error = result.stderr.strip() or f"exit code {result.exit_code}"
            except (RemoteConnectionError, RemoteTimeoutError) as exc:
                last_error = str(exc)
            logger.debug(
                "Readiness check %d/%d for %s failed: %s",
                attempt,
                attempts,
                svc.role,
                last_error,
                extra={"dl_role": svc.role},
            )
            if attempt < attempts and abort.wait(self.config.readiness_interval):
                raise ProvisionCancelled("provisioning aborted")
        raise ReadinessError(
            f"role '{svc.role}' not ready after {attempts} checks: {last_error}",
            context={"role": svc.role, "health_command": health},
        )

    # ------------------------------------------------------------------ liveness

    def check_alive(self, topology: Topology) -> List[RoleCrashed]:
        """Check every ready role once; return one error per dead role."""
        crashed: List[RoleCrashed] = []
        for svc in topology.services:
            if self.outcome(svc.role).status != DeployStatus.READY:
                continue
            health = self.health_command(svc)
            if health is None:
                continue
            host = topology.host_for(svc.role)
            try:
                result = self.executor.execute(
                    host, health, self.config.command_timeout, check=False
                )
            except (RemoteConnectionError, RemoteTimeoutError) as exc:
                crashed.append(RoleCrashed(svc.role, str(exc)))
                continue
            if not result.success:
                crashed.append(RoleCrashed(svc.role, f"health check exit code {result.exit_code}"))
        return crashed

    # ------------------------------------------------------------------ teardown

    def teardown(self, topology: Topology) -> List[RoleOutcome]:
        """Stop every started role in reverse dependency order.

        Best-effort and total: per-role failures are recorded on the outcome,
        never raised, and the call is bounded by ``teardown_timeout``.
        """
        roles = self._stoppable_roles(topology)
        if roles:
            logger.info("Tearing down %d role(s)", len(roles))
            self._stop_roles(topology, roles, self.config.teardown_timeout)
        return [self.outcome(role) for role in topology.roles]

    def _stoppable_roles(self, topology: Topology) -> List[str]:
        with self._lock:
            return [
                role
                for role in topology.roles
                if role in self._outcomes
                and self._outcomes[role].was_started
                and role not in self._stopped
            ]

    def _stop_roles(self, topology: Topology, roles: Iterable[str], budget: float) -> None:
        targets = list(roles)
        if not targets:
            return
        with self._lock:
            self._stopped.update(targets)
        signals = {role: RoleSignal() for role in targets}
        reverse_order = [
            svc.role for svc in reversed(topology.topological_order()) if svc.role in signals
        ]
        pool = ThreadPoolExecutor(
            max_workers=min(self.config.max_parallel, len(reverse_order)),
            thread_name_prefix="dl-teardown",
        )
        futures: Dict[Future[None], str] = {}
        try:
            for role in reverse_order:
                future = pool.submit(self._stop_role, topology, role, signals)
                futures[future] = role
            done, not_done = wait(futures, timeout=budget)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        for future in not_done:
            role = futures[future]
            outcome = self.outcome(role)
            outcome.stop_status = StopStatus.TIMED_OUT
            outcome.stop_error = f"teardown budget of {budget:g}s exhausted"
            logger.error("Stopping role %s did not finish in time", role, extra={"dl_role": role})

    def _stop_role(self, topology: Topology, role: str, signals: Dict[str, RoleSignal]) -> None:
        outcome = self.outcome(role)
        extra = {"dl_role": role, "dl_phase": "teardown"}
        try:
            for dependent in topology.dependents(role):
                if dependent in signals:
                    signals[dependent].wait()
            svc = topology.service(role)
            command = self.stop_command(svc)
            host = topology.host_for(role)
            logger.info("Stopping role %s on %s", role, host.destination, extra=extra)
            call_with_retry(
                lambda: self.executor.execute(host, command, self.config.stop_timeout),
                self.config.retry,
                description=f"stop of {role}",
                retry_on=(RemoteConnectionError,),
            )
            outcome.stop_status = StopStatus.STOPPED
            outcome.stopped_at = self._clock()
        except RemoteTimeoutError as exc:
            outcome.stop_status = StopStatus.TIMED_OUT
            outcome.stop_error = str(exc)
            logger.error("Stop of %s timed out: %s", role, exc, extra=extra)
        except Exception as exc:
            outcome.stop_status = StopStatus.FAILED
            outcome.stop_error = str(exc)
            logger.error("Stop of %s failed: %s", role, exc, extra=extra)
        finally:
            signals[role].set(True)
