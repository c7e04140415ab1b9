"""Retrieve per-role result artifacts into one local output directory."""

from __future__ import annotations

import logging
import os
import shlex
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, List, Optional

from dl_common.errors import CollectionError
from dl_controller.models.run_config import RunConfig
from dl_controller.models.topology import ServiceSpec, Topology
from dl_controller.models.types import (
    ArtifactRecord,
    ArtifactStatus,
    RemoteExecutor,
    TransferDirection,
)
from dl_controller.services.retry import call_with_retry

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".part"


@dataclass(frozen=True)
class PlannedArtifact:
    role: str
    remote_path: str
    local_path: Path


def plan_artifacts(topology: Topology, output_dir: Path) -> List[PlannedArtifact]:
    """Map every declared artifact to a unique local file name.

    A role with one artifact gets ``<role><ext>``; a role with several gets
    ``<role>.<basename>``. Remaining clashes get an index inserted.
    """
    planned: List[PlannedArtifact] = []
    used: set[str] = set()
    for svc in topology.services:
        for remote_path in svc.artifacts:
            remote = PurePosixPath(remote_path)
            if len(svc.artifacts) == 1:
                candidate = f"{svc.role}{''.join(remote.suffixes)}"
            else:
                candidate = f"{svc.role}.{remote.name}"
            index = 1
            while candidate in used:
                candidate = f"{svc.role}.{index}.{remote.name}"
                index += 1
            used.add(candidate)
            planned.append(PlannedArtifact(svc.role, remote_path, output_dir / candidate))
    return planned


class Collector:
    """Fetch artifacts concurrently across roles; never raises per-role failures."""

    def __init__(
        self,
        executor: RemoteExecutor,
        config: RunConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.executor = executor
        self.config = config
        self._clock = clock

    def collect(
        self,
        topology: Topology,
        output_dir: Path,
        deadline: Optional[float] = None,
    ) -> List[ArtifactRecord]:
        """Return one ArtifactRecord per declared artifact, in declaration order."""
        output_dir.mkdir(parents=True, exist_ok=True)
        planned = plan_artifacts(topology, output_dir)
        if not planned:
            logger.info("No artifacts declared; nothing to collect")
            return []
        by_role: Dict[str, List[PlannedArtifact]] = {}
        for item in planned:
            by_role.setdefault(item.role, []).append(item)

        records: Dict[PlannedArtifact, ArtifactRecord] = {}
        pool = ThreadPoolExecutor(
            max_workers=min(self.config.max_parallel, len(by_role)),
            thread_name_prefix="dl-collect",
        )
        futures: Dict[Future[List[ArtifactRecord]], str] = {}
        try:
            for role, items in by_role.items():
                future = pool.submit(self._collect_role, topology, topology.service(role), items)
                futures[future] = role
            remaining = None if deadline is None else max(deadline - self._clock(), 0.0)
            done, not_done = wait(futures, timeout=remaining)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        for future in done:
            for item, record in zip(by_role[futures[future]], future.result()):
                records[item] = record
        for future in not_done:
            role = futures[future]
            error = CollectionError(role, "collection budget exhausted")
            logger.error("%s", error, extra={"dl_role": role})
            for item in by_role[role]:
                records[item] = _failed(item, error)

        ordered = [records[item] for item in planned]
        collected = sum(1 for record in ordered if record.collected)
        logger.info("Collected %d/%d artifacts into %s", collected, len(ordered), output_dir)
        return ordered

    def _collect_role(
        self,
        topology: Topology,
        svc: ServiceSpec,
        items: List[PlannedArtifact],
    ) -> List[ArtifactRecord]:
        host = topology.host_for(svc.role)
        results: List[ArtifactRecord] = []
        for item in items:
            try:
                results.append(self._fetch(topology, svc, item))
            except Exception as exc:
                error = CollectionError(svc.role, exc)
                logger.error(
                    "Failed to collect %s from %s: %s",
                    item.remote_path,
                    host.destination,
                    exc,
                    extra={"dl_role": svc.role, "dl_phase": "collecting"},
                )
                results.append(_failed(item, error))
        return results

    def _fetch(
        self, topology: Topology, svc: ServiceSpec, item: PlannedArtifact
    ) -> ArtifactRecord:
        host = topology.host_for(svc.role)
        source = item.remote_path
        if svc.container:
            source = self._stage_from_container(topology, svc, item)

        partial = item.local_path.with_name(item.local_path.name + PARTIAL_SUFFIX)
        try:
            size = call_with_retry(
                lambda: self.executor.transfer(
                    host,
                    TransferDirection.PULL,
                    source,
                    partial,
                    self.config.transfer_timeout,
                ),
                self.config.retry,
                description=f"download of {source} for {svc.role}",
            )
            if not partial.is_file():
                raise CollectionError(svc.role, f"transfer produced no file for {source}")
            on_disk = partial.stat().st_size
            if on_disk != size:
                raise CollectionError(
                    svc.role, f"size mismatch for {source}: expected {size}, found {on_disk}"
                )
            if size == 0:
                logger.warning("Artifact %s of %s is empty", source, svc.role)
            os.replace(partial, item.local_path)
        finally:
            partial.unlink(missing_ok=True)

        logger.info(
            "Collected %s (%d bytes) -> %s",
            item.remote_path,
            size,
            item.local_path,
            extra={"dl_role": svc.role, "dl_phase": "collecting"},
        )
        return ArtifactRecord(
            role=svc.role,
            remote_path=item.remote_path,
            local_path=item.local_path,
            size=size,
            status=ArtifactStatus.COLLECTED,
        )

    def _stage_from_container(
        self, topology: Topology, svc: ServiceSpec, item: PlannedArtifact
    ) -> str:
        """Copy an artifact out of the role's container onto the host."""
        host = topology.host_for(svc.role)
        stage_dir = f"{self.config.remote_workdir}/collect/{svc.role}"
        staged = f"{stage_dir}/{item.local_path.name}"
        command = (
            f"mkdir -p {shlex.quote(stage_dir)} && "
            f"{self.config.container_runtime} cp "
            f"{shlex.quote(f'{svc.container}:{item.remote_path}')} {shlex.quote(staged)}"
        )
        call_with_retry(
            lambda: self.executor.execute(host, command, self.config.command_timeout),
            self.config.retry,
            description=f"container copy of {item.remote_path} for {svc.role}",
        )
        return staged


def _failed(item: PlannedArtifact, error: CollectionError) -> ArtifactRecord:
    return ArtifactRecord(
        role=item.role,
        remote_path=item.remote_path,
        local_path=item.local_path,
        size=0,
        status=ArtifactStatus.FAILED,
        error=str(error),
    )
