"""Per-tick evidence aggregation.

Folds every (GPU, compute process) pair in a snapshot into one record per
workload. A workload is idle for the tick only if every GPU it touched this
tick is idle. Workloads with no attributable process this tick are absent
from the result and therefore not observed.
"""

from __future__ import annotations

import asyncio
import re
from collections import Counter
from dataclasses import dataclass, field

import structlog

from gpu_reclaimer.attribution import (
    Attribution,
    AttributionError,
    AttributionResolver,
    AttributionTimeout,
)
from gpu_reclaimer.sampling import Snapshot
from gpu_reclaimer.tracker import Observation, WorkloadKey

log = structlog.get_logger()

MAX_CMDLINES = 5


@dataclass
class WorkloadEvidence:
    """One workload's evidence gathered during a single tick."""

    key: WorkloadKey
    gpu_idle: dict[int, bool] = field(default_factory=dict)
    pid_set: set[int] = field(default_factory=set)
    cmdlines: list[str] = field(default_factory=list)

    @property
    def gpus(self) -> list[int]:
        return sorted(self.gpu_idle)

    @property
    def pids(self) -> list[int]:
        return sorted(self.pid_set)

    @property
    def idle(self) -> bool:
        """AND of the idle verdicts of every GPU touched this tick."""
        return bool(self.gpu_idle) and all(self.gpu_idle.values())

    def add(self, gpu_index: int, gpu_idle: bool, attr: Attribution) -> None:
        self.gpu_idle[gpu_index] = gpu_idle
        if attr.pid not in self.pid_set:
            self.pid_set.add(attr.pid)
            if attr.cmdline and len(self.cmdlines) < MAX_CMDLINES:
                self.cmdlines.append(attr.cmdline)

    def to_observation(self, seen_at: float) -> Observation:
        return Observation(
            key=self.key,
            seen_at=seen_at,
            idle=self.idle,
            gpus=self.gpus,
            pids=self.pids,
            cmdlines=list(self.cmdlines),
        )


@dataclass
class AggregationResult:
    """Output of one aggregation pass."""

    workloads: list[WorkloadEvidence] = field(default_factory=list)
    failures: Counter[str] = field(default_factory=Counter)
    allowlisted: int = 0
    processes: int = 0


class EvidenceAggregator:
    """Attributes every compute process in a snapshot and groups by workload."""

    def __init__(
        self,
        resolver: AttributionResolver,
        gpu_util_threshold: int,
        allowlist: re.Pattern[str],
        resolve_timeout: float = 2.0,
        node: str = "",
    ) -> None:
        self.resolver = resolver
        self.gpu_util_threshold = gpu_util_threshold
        self.allowlist = allowlist
        self.resolve_timeout = resolve_timeout
        self.node = node

    async def _resolve(self, pid: int) -> Attribution:
        try:
            return await asyncio.wait_for(self.resolver.resolve(pid), timeout=self.resolve_timeout)
        except asyncio.TimeoutError as e:
            raise AttributionTimeout(
                f"pid {pid}: attribution timed out after {self.resolve_timeout}s"
            ) from e

    async def aggregate(self, snapshot: Snapshot) -> AggregationResult:
        """Build per-workload evidence for one snapshot.

        Attribution failures are counted by kind and the process is left out;
        an unattributed process is never idle evidence.
        """
        result = AggregationResult()
        by_identity: dict[tuple[str, str], WorkloadEvidence] = {}

        for gpu in snapshot.gpus:
            gpu_idle = gpu.is_idle(self.gpu_util_threshold)
            for proc in gpu.compute_procs:
                result.processes += 1
                try:
                    attr = await self._resolve(proc.pid)
                except AttributionError as e:
                    kind = e.kind
                    result.failures[kind] += 1
                    log.warning(
                        "pid_attribution_failed",
                        node=self.node,
                        gpu=gpu.index,
                        pid=proc.pid,
                        kind=kind,
                        error=str(e),
                    )
                    continue

                if attr.enrichment_error is not None:
                    result.failures["enrichment_failed"] += 1

                if attr.cmdline and self.allowlist.search(attr.cmdline):
                    result.allowlisted += 1
                    continue

                key = WorkloadKey(
                    uid=attr.pod_uid,
                    namespace=attr.pod_namespace,
                    name=attr.pod_name,
                    container_id=attr.container_id,
                )
                evidence = by_identity.get(key.identity)
                if evidence is None:
                    evidence = WorkloadEvidence(key=key)
                    by_identity[key.identity] = evidence
                evidence.add(gpu.index, gpu_idle, attr)

        if result.failures:
            log.info(
                "pid_attribution_failures",
                node=self.node,
                count=sum(result.failures.values()),
                by_kind=dict(result.failures),
            )

        result.workloads = list(by_identity.values())
        return result
