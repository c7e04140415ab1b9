"""Top-level sequencing of a launcher run with guaranteed teardown."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from dl_common.errors import LauncherError
from dl_common.logs import attach_handler, build_jsonl_handler, detach_handler
from dl_controller.adapters.ssh_executor import build_executor
from dl_controller.engine.completion import CompletionSignal
from dl_controller.engine.run_controller import RunController
from dl_controller.models.run_config import RunConfig
from dl_controller.models.state import RunStateMachine
from dl_controller.models.topology import Topology
from dl_controller.models.types import RemoteExecutor, RunReport
from dl_controller.services.collector import Collector
from dl_controller.services.deployment import DeploymentManager
from dl_controller.services.report import generate_run_id, state_timeline, write_report

logger = logging.getLogger(__name__)

LOG_COMPONENT = "launcher"


class Orchestrator:
    """Wire the run components together and execute one run.

    The executor (and its connection pool) is created here unless one is
    injected, and is always closed when the run ends.
    """

    def __init__(
        self,
        topology: Topology,
        config: RunConfig,
        executor: Optional[RemoteExecutor] = None,
        completion: Optional[CompletionSignal] = None,
        state_machine: Optional[RunStateMachine] = None,
        run_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.topology = topology
        self.config = config
        self.run_id = run_id or generate_run_id()
        self.executor = executor or build_executor(
            max_connections_per_host=config.max_connections_per_host
        )
        self._clock = clock
        self.deployment = DeploymentManager(self.executor, config, clock=clock)
        self.collector = Collector(self.executor, config, clock=clock)
        self.controller = RunController(
            topology,
            config,
            self.deployment,
            self.collector,
            completion=completion,
            state_machine=state_machine,
            clock=clock,
        )

    @property
    def completion(self) -> CompletionSignal:
        return self.controller.completion

    def run(self) -> RunReport:
        """Execute the run; teardown is attempted on every exit path."""
        output_dir = self.config.output_dir
        output_dir.mkdir(parents=True, exist_ok=True)
        handler = build_jsonl_handler(
            output_dir=output_dir, component=LOG_COMPONENT, run_id=self.run_id
        )
        attach_handler(handler)
        started = self._clock()
        try:
            logger.info(
                "Starting run %s: %d role(s), window %.1fs",
                self.run_id,
                len(self.topology.services),
                self.config.timeout,
            )
            self._execute(started)
            report = self._build_report(started)
            write_report(report, output_dir)
            logger.info("Run %s finished: %s", self.run_id, report.final_state.value)
            return report
        finally:
            detach_handler(handler)

    def _execute(self, started: float) -> None:
        controller = self.controller
        run_deadline = started + self.config.run_budget
        provision_deadline = min(started + self.config.provision_timeout, run_deadline)
        try:
            if (
                controller.provision(deadline=provision_deadline)
                and controller.warm_up(deadline=run_deadline)
                and controller.run_window(deadline=run_deadline)
            ):
                controller.collect(self.config.output_dir)
        except KeyboardInterrupt:
            logger.warning("Interrupted; tearing down")
            controller.fail(LauncherError("run interrupted by user"))
        except Exception as exc:
            logger.exception("Run aborted in state %s", controller.state.value)
            controller.fail(exc)
        finally:
            try:
                controller.clean_up()
                controller.finish()
            finally:
                try:
                    self.executor.close()
                except Exception:
                    logger.warning("Failed to close remote connections", exc_info=True)

    def _build_report(self, started: float) -> RunReport:
        controller = self.controller
        history = controller.state_machine.history
        failure = controller.failure
        return RunReport(
            run_id=self.run_id,
            final_state=controller.state,
            failure=str(failure) if failure is not None else None,
            elapsed_s=round(self._clock() - started, 3),
            params=dict(self.config.params),
            states=state_timeline(history, history[0][1]),
            roles=[self.deployment.outcome(role) for role in self.topology.roles],
            artifacts=list(controller.artifacts),
            collection_errors=list(controller.collection_errors),
            teardown_errors=list(controller.teardown_errors),
        )
