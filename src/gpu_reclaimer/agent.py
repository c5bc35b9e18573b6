"""Node agent orchestrating sampling, attribution, idle tracking and validation."""

import asyncio
import signal
import socket
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import psutil
import structlog

from gpu_reclaimer.aggregator import EvidenceAggregator
from gpu_reclaimer.attribution import AttributionResolver, ContainerMetadata
from gpu_reclaimer.config import Config
from gpu_reclaimer.crictl import CrictlInspector
from gpu_reclaimer.sampling import Sampler, SnapshotError, create_sampler
from gpu_reclaimer.tracker import Candidate, IdleTracker
from gpu_reclaimer.ttlcache import TTLCache
from gpu_reclaimer.validator import CandidateValidator

log = structlog.get_logger()

ACTION_DRY_RUN = "dry_run"
# No enforcer exists yet, so nothing is signalled even with dry_run off
ACTION_ENFORCEMENT_UNAVAILABLE = "dry_run_enforcement_unavailable"


@dataclass
class AgentState:
    """Runtime counters of the agent."""

    running: bool = False
    tick_count: int = 0
    tick_failures: int = 0
    last_tick_time: datetime | None = None
    candidates_emitted: int = 0
    candidates_reported: int = 0
    candidates_rejected: Counter = field(default_factory=Counter)
    attribution_failures: Counter = field(default_factory=Counter)
    tracked_workloads: int = 0

    def update_tick(self, tracked: int) -> None:
        """Update state after a completed tick."""
        self.tick_count += 1
        self.tracked_workloads = tracked
        self.last_tick_time = datetime.now()


@dataclass
class TickReport:
    """What one tick did."""

    seen_at: float
    observed: int = 0
    emitted: list[Candidate] = field(default_factory=list)
    accepted: list[Candidate] = field(default_factory=list)
    rejected: dict[str, int] = field(default_factory=dict)
    gc_removed: int = 0


def build_resolver(config: Config) -> AttributionResolver:
    """Create an AttributionResolver wired to crictl and a metadata cache."""
    attribution = config.attribution
    return AttributionResolver(
        inspector=CrictlInspector(
            endpoint=attribution.cri_endpoint,
            crictl_path=attribution.crictl_path,
        ),
        cache=TTLCache[ContainerMetadata](attribution.cache_ttl_seconds),
        proc_root=Path(attribution.proc_root),
    )


class Agent:
    """Drives one tick per sampling interval until shutdown.

    Per tick: snapshot -> aggregate -> observe each workload -> validate
    candidates -> report accepted candidates -> garbage-collect stale state.
    """

    def __init__(
        self,
        config: Config,
        node_name: str | None = None,
        sampler: Sampler | None = None,
        resolver: AttributionResolver | None = None,
        clock=time.monotonic,
    ):
        self.config = config
        self.node = node_name or socket.gethostname()
        self.state = AgentState()
        self._clock = clock

        self.sampler = sampler or create_sampler(config)
        self.aggregator = EvidenceAggregator(
            resolver=resolver or build_resolver(config),
            gpu_util_threshold=config.idle.gpu_util_threshold,
            allowlist=config.reclaim.allowlist,
            resolve_timeout=config.attribution.resolve_timeout_seconds,
            node=self.node,
        )
        self.tracker = IdleTracker(
            idle_minutes=config.idle.idle_minutes,
            consecutive_idle_samples=config.idle.consecutive_idle_samples,
        )
        self.validator = CandidateValidator(self.sampler, config.idle.gpu_util_threshold)

        self._shutdown_event = asyncio.Event()

    async def tick(self) -> TickReport:
        """Run one sampling tick.

        Raises:
            SnapshotError: The snapshot could not be taken; nothing was observed.
        """
        snap = await self.sampler.sample()
        now = self._clock()
        report = TickReport(seen_at=now)

        result = await self.aggregator.aggregate(snap)
        self.state.attribution_failures.update(result.failures)
        for evidence in result.workloads:
            report.observed += 1
            candidate = self.tracker.observe(evidence.to_observation(now))
            if candidate is None:
                continue

            self.state.candidates_emitted += 1
            report.emitted.append(candidate)

            validation = await self.validator.validate(candidate)
            if validation.error is not None:
                log.warning(
                    "candidate_validation_error",
                    node=self.node,
                    error=str(validation.error),
                )
            if not validation.accepted:
                self.state.candidates_rejected[validation.reason] += 1
                report.rejected[validation.reason] = report.rejected.get(validation.reason, 0) + 1
                log.info(
                    "candidate_rejected",
                    node=self.node,
                    reason=validation.reason,
                    pod_uid=candidate.key.uid,
                    container_id=candidate.key.container_id,
                )
                continue

            self._report(candidate)
            report.accepted.append(candidate)

        report.gc_removed = self.tracker.gc(now, self.config.system.gc_max_age_seconds)
        if report.gc_removed:
            log.info("tracker_gc", node=self.node, removed=report.gc_removed)

        self.state.update_tick(len(self.tracker))
        return report

    def _report(self, candidate: Candidate) -> None:
        """Emit the reclaim candidate record (dry-run only)."""
        dry_run = self.config.reclaim.dry_run
        evidence = candidate.evidence
        self.state.candidates_reported += 1
        log.info(
            "reclaim_candidate",
            node=self.node,
            action=ACTION_DRY_RUN if dry_run else ACTION_ENFORCEMENT_UNAVAILABLE,
            dry_run=dry_run,
            idle_minutes=candidate.idle_minutes,
            util_samples=evidence.util_samples,
            gpu_indexes=evidence.gpus,
            pids=evidence.pids,
            cmdlines=evidence.cmdlines,
            pod_uid=candidate.key.uid,
            pod_ns=candidate.key.namespace,
            pod_name=candidate.key.name,
            container_id=candidate.key.container_id,
        )

    def _heartbeat(self) -> None:
        rss_mb = psutil.Process().memory_info().rss / 1024 / 1024
        log.info(
            "agent_heartbeat",
            node=self.node,
            ticks=self.state.tick_count,
            tick_failures=self.state.tick_failures,
            tracked=self.state.tracked_workloads,
            candidates_emitted=self.state.candidates_emitted,
            candidates_reported=self.state.candidates_reported,
            candidates_rejected=dict(self.state.candidates_rejected),
            attribution_failures=dict(self.state.attribution_failures),
            metadata_cache=len(self.aggregator.resolver.cache),
            rss_mb=round(rss_mb, 1),
        )

    async def start(self) -> None:
        """Start the agent and run until shutdown."""
        from importlib.metadata import PackageNotFoundError, version

        try:
            pkg_version = version("gpu-reclaimer")
        except PackageNotFoundError:
            pkg_version = "unknown"

        idle = self.config.idle
        log.info(
            "agent_starting",
            version=pkg_version,
            node=self.node,
            dry_run=self.config.reclaim.dry_run,
            interval_s=self.config.sampling.interval_seconds,
            idle_minutes=idle.idle_minutes,
            consecutive_idle_samples=idle.consecutive_idle_samples,
            gpu_util_threshold=idle.gpu_util_threshold,
        )
        log.info("sampler_selected", node=self.node, sampler=self.sampler.name())

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        self.state.running = True
        await self._main_loop()

    async def stop(self) -> None:
        """Stop the agent and release the sampler."""
        self.state.running = False
        self._shutdown_event.set()
        self.sampler.close()
        log.info("agent_stopped", node=self.node, ticks=self.state.tick_count)

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        self._shutdown_event.set()

    async def _main_loop(self) -> None:
        """Tick immediately, then once per interval until shutdown.

        A tick always runs to completion; shutdown is noticed between ticks.
        Tick failures are logged and retried on the next interval.
        """
        interval = self.config.sampling.interval_seconds
        heartbeat_ticks = self.config.system.heartbeat_ticks
        loop = asyncio.get_running_loop()

        while not self._shutdown_event.is_set():
            iteration_start = loop.time()
            try:
                await self.tick()
            except asyncio.CancelledError:
                log.info("main_loop_cancelled")
                break
            except SnapshotError as e:
                self.state.tick_failures += 1
                log.warning("tick_failed", node=self.node, error=str(e))
            except Exception as e:
                self.state.tick_failures += 1
                log.exception("tick_failed", node=self.node, error=str(e))
            else:
                if self.state.tick_count % heartbeat_ticks == 0:
                    self._heartbeat()

            # Sleep for remaining interval (maintains consistent tick rate)
            sleep_time = interval - (loop.time() - iteration_start)
            if sleep_time > 0:
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=sleep_time)
                    break  # Shutdown requested during sleep
                except asyncio.TimeoutError:
                    pass


async def run_agent(config: Config | None = None, node_name: str | None = None) -> None:
    """Run the agent until shutdown.

    Args:
        config: Optional config, loads from file if not provided
        node_name: Node name for log records, defaults to the hostname
    """
    from gpu_reclaimer.logging import configure

    if config is None:
        config = Config.load()

    configure(config)

    agent = Agent(config, node_name=node_name)

    try:
        await agent.start()
    except Exception as e:
        log.exception("agent_crashed", error=str(e))
        raise
    finally:
        await agent.stop()
