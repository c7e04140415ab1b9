"""Run controller: drives one run through its lifecycle states."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

from dl_common.errors import DeploymentFailed, LauncherError
from dl_controller.engine.completion import CompletionSignal
from dl_controller.models.run_config import RunConfig
from dl_controller.models.state import RunState, RunStateMachine, StateCallback
from dl_controller.models.topology import Topology
from dl_controller.models.types import ArtifactRecord, RoleOutcome
from dl_controller.services.collector import Collector
from dl_controller.services.deployment import DeploymentManager

logger = logging.getLogger(__name__)


class RunController:
    """Own the run state machine and sequence the phases of a run.

    Only this class mutates the state machine. Phase methods return False
    once the run has failed so callers can skip the remaining phases;
    ``clean_up`` and ``finish`` must always be called.
    """

    def __init__(
        self,
        topology: Topology,
        config: RunConfig,
        deployment: DeploymentManager,
        collector: Collector,
        completion: Optional[CompletionSignal] = None,
        state_machine: Optional[RunStateMachine] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.topology = topology
        self.config = config
        self.deployment = deployment
        self.collector = collector
        self.completion = completion or CompletionSignal()
        self.state_machine = state_machine or RunStateMachine()
        self._clock = clock
        self._interrupt = threading.Event()
        # Woken by completion or interrupt, whichever comes first.
        self._wake = threading.Event()
        self.completion.subscribe(self._wake)
        self._failure: Optional[BaseException] = None
        self._torn_down = False
        self.running_started_at: Optional[float] = None
        self.completed_early = False
        self.artifacts: List[ArtifactRecord] = []
        self.collection_errors: List[str] = []
        self.teardown_errors: List[str] = []

    @property
    def state(self) -> RunState:
        return self.state_machine.state

    @property
    def failure(self) -> Optional[BaseException]:
        """First fatal cause recorded during the run."""
        return self._failure

    def register_listener(self, callback: StateCallback) -> None:
        self.state_machine.register_callback(callback)

    def interrupt(self) -> None:
        """Cut the warm-up or measurement wait short (e.g. on SIGTERM)."""
        self._interrupt.set()
        self._wake.set()

    def _record_failure(self, exc: BaseException) -> None:
        if self._failure is None:
            self._failure = exc

    def fail(self, exc: BaseException) -> None:
        """Record ``exc`` as fatal and move to FAILED immediately."""
        self._record_failure(exc)
        if not self.state_machine.is_terminal():
            self.state_machine.transition(RunState.FAILED, reason=str(self._failure))

    # ------------------------------------------------------------------ phases

    def provision(self, deadline: Optional[float] = None) -> bool:
        self.state_machine.transition(RunState.PROVISIONING)
        try:
            self.deployment.provision(self.topology, deadline=deadline)
        except DeploymentFailed as exc:
            self.fail(exc)
            return False
        self.state_machine.transition(RunState.WARMING)
        return True

    def warm_up(self, deadline: Optional[float] = None) -> bool:
        delay = self._clamp(self.config.warmup, deadline)
        if delay > 0:
            logger.info("Warming up for %.1fs", delay)
            if self._interrupt.wait(delay):
                self.fail(LauncherError("run interrupted during warm-up"))
                return False
        return True

    def run_window(self, deadline: Optional[float] = None) -> bool:
        """Hold the measurement window open until timeout or completion."""
        self.state_machine.transition(RunState.RUNNING)
        self.running_started_at = self._clock()
        window = self._clamp(self.config.timeout, deadline)
        if window < self.config.timeout:
            logger.warning(
                "Measurement window clamped to %.1fs by the overall run budget", window
            )
        logger.info("Measurement window open for %.1fs", window)
        self._wake.wait(window)
        if self._interrupt.is_set():
            self.fail(LauncherError("run interrupted during measurement"))
            return False
        self.completed_early = self.completion.is_set()
        if self.completed_early:
            logger.info(
                "Workload signalled completion after %.1fs",
                self._clock() - self.running_started_at,
            )
        else:
            logger.info("Measurement window elapsed")
        if self.config.check_liveness:
            for crashed in self.deployment.check_alive(self.topology):
                logger.error("%s", crashed, extra={"dl_role": crashed.role})
                self._record_failure(crashed)
        return True

    def collect(self, output_dir: Path) -> List[ArtifactRecord]:
        self.state_machine.transition(RunState.COLLECTING)
        deadline = self._clock() + self.config.collect_timeout
        try:
            self.artifacts = self.collector.collect(self.topology, output_dir, deadline=deadline)
        except Exception as exc:
            logger.exception("Artifact collection aborted")
            self.collection_errors.append(str(exc))
            return self.artifacts
        self.collection_errors.extend(
            record.error for record in self.artifacts if record.error
        )
        return self.artifacts

    def clean_up(self) -> List[RoleOutcome]:
        """Tear the deployment down; repeated calls do nothing."""
        if self._torn_down:
            return self.deployment.outcomes
        self._torn_down = True
        if self.state == RunState.COLLECTING:
            self.state_machine.transition(RunState.CLEANING_UP)
        try:
            outcomes = self.deployment.teardown(self.topology)
        except Exception as exc:
            logger.exception("Teardown aborted")
            self.teardown_errors.append(str(exc))
            return self.deployment.outcomes
        self.teardown_errors.extend(
            f"{outcome.role}: {outcome.stop_error}" for outcome in outcomes if outcome.stop_error
        )
        return outcomes

    def finish(self) -> RunState:
        if self.state_machine.is_terminal():
            return self.state
        if self._failure is not None:
            self.state_machine.transition(RunState.FAILED, reason=str(self._failure))
        else:
            self.state_machine.transition(RunState.SUCCEEDED)
        return self.state

    def _clamp(self, duration: float, deadline: Optional[float]) -> float:
        if deadline is None:
            return duration
        return max(min(duration, deadline - self._clock()), 0.0)
