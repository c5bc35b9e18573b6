"""Tests for the agent tick loop."""

import asyncio
import signal
import time
from unittest.mock import patch

import pytest
from structlog.testing import capture_logs

from conftest import (
    FakeResolver,
    FakeSampler,
    make_attribution,
    make_gpu,
    make_snapshot,
)

from gpu_reclaimer.agent import (
    ACTION_DRY_RUN,
    ACTION_ENFORCEMENT_UNAVAILABLE,
    Agent,
    AgentState,
    build_resolver,
)
from gpu_reclaimer.attribution import ProcessGone
from gpu_reclaimer.config import Config
from gpu_reclaimer.sampling import SnapshotError

IDLE = make_snapshot(make_gpu(0, util=0, pids=[123]))
BUSY = make_snapshot(make_gpu(0, util=90, pids=[123]))


class Clock:
    """Clock advancing one minute per tick."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float = 60.0) -> None:
        self.now += seconds


def make_agent(config: Config, sampler: FakeSampler, resolver=None, clock=None) -> Agent:
    return Agent(
        config,
        node_name="node-a",
        sampler=sampler,
        resolver=resolver or FakeResolver({123: make_attribution(123)}),
        clock=clock or Clock(),
    )


async def run_ticks(agent: Agent, clock: Clock, n: int):
    reports = []
    for _ in range(n):
        reports.append(await agent.tick())
        clock.advance()
    return reports


# === Tick ===


def test_agent_state_defaults():
    state = AgentState()
    assert state.running is False
    assert state.tick_count == 0
    assert state.candidates_reported == 0
    assert state.last_tick_time is None


@pytest.mark.asyncio
async def test_idle_workload_reported_once(config: Config):
    """idle_minutes=1 and 2 samples: reported on the second tick, then never again."""
    clock = Clock()
    agent = make_agent(config, FakeSampler(IDLE), clock=clock)

    with capture_logs() as logs:
        reports = await run_ticks(agent, clock, 5)

    assert [len(r.accepted) for r in reports] == [0, 1, 0, 0, 0]
    assert agent.state.candidates_emitted == 1
    assert agent.state.candidates_reported == 1
    assert agent.state.tick_count == 5
    assert agent.state.tracked_workloads == 1

    records = [r for r in logs if r["event"] == "reclaim_candidate"]
    assert len(records) == 1
    record = records[0]
    assert record["node"] == "node-a"
    assert record["action"] == ACTION_ENFORCEMENT_UNAVAILABLE
    assert record["dry_run"] is False
    assert record["idle_minutes"] == 1
    assert record["util_samples"] == 2
    assert record["gpu_indexes"] == [0]
    assert record["pids"] == [123]
    assert record["cmdlines"] == ["python train.py"]
    assert record["pod_ns"] == "ml"
    assert record["pod_name"] == "trainer-0"
    assert record["pod_uid"]
    assert record["container_id"]


@pytest.mark.asyncio
async def test_dry_run_action(config: Config):
    clock = Clock()
    config = config.with_overrides({"reclaim.dry_run": True})
    agent = make_agent(config, FakeSampler(IDLE), clock=clock)

    with capture_logs() as logs:
        await run_ticks(agent, clock, 2)

    record = next(r for r in logs if r["event"] == "reclaim_candidate")
    assert record["action"] == ACTION_DRY_RUN
    assert record["dry_run"] is True


@pytest.mark.asyncio
async def test_busy_workload_never_reported(config: Config):
    clock = Clock()
    agent = make_agent(config, FakeSampler(BUSY), clock=clock)

    reports = await run_ticks(agent, clock, 5)

    assert all(not r.emitted for r in reports)
    state = next(iter(agent.tracker._states.values()))
    assert state.idle_count == 0
    assert state.last_active is not None


@pytest.mark.asyncio
async def test_rejected_candidate_not_reported(config: Config):
    """Validation sees the GPU busy again: rejected and counted, episode stays locked."""
    clock = Clock()
    # tick 1 idle, tick 2 idle (candidate) then validation resample is busy
    sampler = FakeSampler(IDLE, IDLE, BUSY, IDLE)
    agent = make_agent(config, sampler, clock=clock)

    with capture_logs() as logs:
        reports = await run_ticks(agent, clock, 3)

    assert reports[1].emitted and not reports[1].accepted
    assert reports[1].rejected == {"gpu_0_util_not_idle": 1}
    assert agent.state.candidates_rejected["gpu_0_util_not_idle"] == 1
    assert agent.state.candidates_reported == 0
    assert not reports[2].emitted
    assert any(r["event"] == "candidate_rejected" for r in logs)
    assert not any(r["event"] == "reclaim_candidate" for r in logs)


@pytest.mark.asyncio
async def test_resample_failure_logged(config: Config):
    clock = Clock()
    sampler = FakeSampler(IDLE, IDLE, SnapshotError("nvml gone"), IDLE)
    agent = make_agent(config, sampler, clock=clock)

    with capture_logs() as logs:
        reports = await run_ticks(agent, clock, 2)

    assert reports[1].rejected == {"resample_failed": 1}
    errors = [r for r in logs if r["event"] == "candidate_validation_error"]
    assert errors and "nvml gone" in errors[0]["error"]


@pytest.mark.asyncio
async def test_snapshot_failure_raises_and_skips_tick(config: Config):
    agent = make_agent(config, FakeSampler(SnapshotError("boom")))

    with pytest.raises(SnapshotError):
        await agent.tick()
    assert agent.state.tick_count == 0
    assert len(agent.tracker) == 0


@pytest.mark.asyncio
async def test_attribution_failure_keeps_tick_alive(config: Config):
    clock = Clock()
    resolver = FakeResolver({123: ProcessGone("pid 123: gone")})
    agent = make_agent(config, FakeSampler(IDLE), resolver=resolver, clock=clock)

    reports = await run_ticks(agent, clock, 3)

    assert all(r.observed == 0 for r in reports)
    assert agent.state.attribution_failures["process_gone"] == 3
    assert agent.state.tick_count == 3


@pytest.mark.asyncio
async def test_stale_workloads_collected(config: Config):
    clock = Clock()
    empty = make_snapshot(make_gpu(0, util=0))
    sampler = FakeSampler(IDLE, empty)
    agent = make_agent(config, sampler, clock=clock)

    await agent.tick()
    clock.advance(config.system.gc_max_age_seconds + 1)
    with capture_logs() as logs:
        report = await agent.tick()

    assert report.gc_removed == 1
    assert len(agent.tracker) == 0
    assert any(r["event"] == "tracker_gc" for r in logs)


@pytest.mark.asyncio
async def test_absent_workload_is_frozen(config: Config):
    """A workload missing from a tick is neither advanced nor reset."""
    clock = Clock()
    empty = make_snapshot(make_gpu(0, util=0))
    sampler = FakeSampler(IDLE, empty, IDLE)
    agent = make_agent(config, sampler, clock=clock)

    reports = await run_ticks(agent, clock, 2)
    assert reports[1].observed == 0
    key = next(iter(agent.tracker._states.values())).key
    assert agent.tracker.get(key).idle_count == 1

    report = await agent.tick()
    assert len(report.accepted) == 1
    assert report.accepted[0].evidence.util_samples == 2


def test_build_resolver_uses_configured_cache_ttl():
    config = Config().with_overrides({"attribution.cache_ttl_seconds": 30.0})

    resolver = build_resolver(config)

    assert resolver.cache.ttl == 30.0


def test_default_clock_is_monotonic(config: Config):
    agent = Agent(
        config, node_name="node-a", sampler=FakeSampler(IDLE), resolver=FakeResolver({})
    )

    assert agent._clock is time.monotonic


# === Lifecycle ===


@pytest.mark.asyncio
async def test_main_loop_ticks_until_shutdown(config: Config):
    config = config.with_overrides(
        {"sampling.interval_seconds": 0.02, "system.heartbeat_ticks": 2}
    )
    agent = make_agent(config, FakeSampler(IDLE))

    with capture_logs() as logs:
        task = asyncio.create_task(agent._main_loop())
        while agent.state.tick_count < 3:
            await asyncio.sleep(0.01)
        agent.request_shutdown()
        await asyncio.wait_for(task, timeout=1.0)

    assert agent.state.tick_count >= 3
    assert any(r["event"] == "agent_heartbeat" for r in logs)


@pytest.mark.asyncio
async def test_main_loop_survives_failed_ticks(config: Config):
    config = config.with_overrides({"sampling.interval_seconds": 0.01})
    sampler = FakeSampler(SnapshotError("boom"), SnapshotError("boom"), IDLE)
    agent = make_agent(config, sampler)

    with capture_logs() as logs:
        task = asyncio.create_task(agent._main_loop())
        while agent.state.tick_count < 1:
            await asyncio.sleep(0.01)
        agent.request_shutdown()
        await asyncio.wait_for(task, timeout=1.0)

    assert agent.state.tick_failures == 2
    assert sum(1 for r in logs if r["event"] == "tick_failed") == 2


@pytest.mark.asyncio
async def test_stop_closes_sampler(config: Config):
    sampler = FakeSampler(IDLE)
    agent = make_agent(config, sampler)

    with capture_logs() as logs:
        await agent.stop()

    assert sampler.closed is True
    assert agent.state.running is False
    assert any(r["event"] == "agent_stopped" for r in logs)


@pytest.mark.asyncio
async def test_signal_sets_shutdown(config: Config):
    agent = make_agent(config, FakeSampler(IDLE))

    agent._handle_signal(signal.SIGTERM)

    assert agent._shutdown_event.is_set()


@pytest.mark.asyncio
async def test_start_logs_and_ticks_immediately(config: Config):
    """start() ticks before the first sleep and exits on shutdown."""
    agent = make_agent(config, FakeSampler(IDLE))

    async def tick_then_stop():
        report = await type(agent).tick(agent)
        agent.request_shutdown()
        return report

    with (
        patch.object(agent, "tick", side_effect=tick_then_stop),
        capture_logs() as logs,
    ):
        await asyncio.wait_for(agent.start(), timeout=1.0)

    events = [r["event"] for r in logs]
    assert events[:2] == ["agent_starting", "sampler_selected"]
    assert agent.state.tick_count == 1
    loop = asyncio.get_running_loop()
    loop.remove_signal_handler(signal.SIGTERM)
    loop.remove_signal_handler(signal.SIGINT)


@pytest.mark.asyncio
async def test_heartbeat_only_after_successful_ticks(config: Config):
    config = config.with_overrides(
        {"sampling.interval_seconds": 0.01, "system.heartbeat_ticks": 1}
    )
    boom = SnapshotError("boom")
    agent = make_agent(config, FakeSampler(IDLE, boom, boom, boom, IDLE))

    with capture_logs() as logs:
        task = asyncio.create_task(agent._main_loop())
        while agent.state.tick_count < 2:
            await asyncio.sleep(0.01)
        agent.request_shutdown()
        await asyncio.wait_for(task, timeout=1.0)

    heartbeats = [r["ticks"] for r in logs if r["event"] == "agent_heartbeat"]
    assert agent.state.tick_failures == 3
    assert heartbeats == list(range(1, agent.state.tick_count + 1))
