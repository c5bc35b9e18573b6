"""Shared test fixtures for gpu-reclaimer."""

from pathlib import Path

import pytest

from gpu_reclaimer.attribution import Attribution, AttributionError, Provenance
from gpu_reclaimer.config import Config
from gpu_reclaimer.sampling import GPUProcess, GPUSnapshot, Snapshot, SnapshotError

POD_UID = "0f3c2a1b-4d5e-4f60-8a9b-0c1d2e3f4a5b"
CONTAINER_ID = "a" * 64


def make_gpu(
    index: int = 0,
    util: int = 0,
    pids: list[int] | None = None,
    uuid: str | None = None,
    mem_used_bytes: int = 1024 * 1024 * 1024,
    mem_total_bytes: int = 16 * 1024 * 1024 * 1024,
) -> GPUSnapshot:
    """Create a GPUSnapshot with the given compute pids."""
    return GPUSnapshot(
        index=index,
        uuid=uuid or f"GPU-{index:08d}",
        util_gpu=util,
        util_mem=0,
        mem_used_bytes=mem_used_bytes,
        mem_total_bytes=mem_total_bytes,
        compute_procs=[GPUProcess(pid=p, used_bytes=512 * 1024 * 1024) for p in pids or []],
    )


def make_snapshot(*gpus: GPUSnapshot) -> Snapshot:
    """Create a Snapshot from GPUs."""
    return Snapshot(gpus=list(gpus))


def make_attribution(
    pid: int,
    pod_uid: str = POD_UID,
    namespace: str = "ml",
    name: str = "trainer-0",
    container_id: str = CONTAINER_ID,
    cmdline: str = "python train.py",
) -> Attribution:
    """Create a fully enriched Attribution."""
    return Attribution(
        pid=pid,
        pod_uid=pod_uid,
        pod_namespace=namespace,
        pod_name=name,
        container_name="trainer",
        container_id=container_id,
        cmdline=cmdline,
        provenance=Provenance.ENRICHED_FRESH,
    )


class FakeSampler:
    """Sampler returning queued snapshots; the last one repeats.

    Exceptions in the queue are raised instead of returned.
    """

    def __init__(self, *results: Snapshot | Exception) -> None:
        self.results = list(results)
        self.calls = 0
        self.closed = False

    def name(self) -> str:
        return "fake"

    def close(self) -> None:
        self.closed = True

    def push(self, *results: Snapshot | Exception) -> None:
        self.results.extend(results)

    async def sample(self) -> Snapshot:
        self.calls += 1
        if not self.results:
            raise SnapshotError("no snapshot queued")
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class FakeResolver:
    """Resolver backed by a pid -> Attribution | AttributionError mapping."""

    def __init__(self, attributions: dict[int, Attribution | AttributionError]) -> None:
        self.attributions = attributions
        self.cache: dict = {}
        self.calls: list[int] = []

    async def resolve(self, pid: int) -> Attribution:
        self.calls.append(pid)
        result = self.attributions.get(pid)
        if result is None:
            raise AttributionError(f"pid {pid}: unknown")
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def config() -> Config:
    """Config with fast thresholds for tests."""
    return Config().with_overrides(
        {
            "idle.idle_minutes": 1,
            "idle.consecutive_idle_samples": 2,
            "idle.gpu_util_threshold": 5,
        }
    )


@pytest.fixture
def fake_proc(tmp_path: Path):
    """Build a fake /proc tree; returns (root, add) where add(pid, cgroup, cmdline)."""
    root = tmp_path / "proc"
    root.mkdir()

    def add(pid: int, cgroup: str | None = None, cmdline: bytes | None = None) -> None:
        pid_dir = root / str(pid)
        pid_dir.mkdir(exist_ok=True)
        if cgroup is not None:
            (pid_dir / "cgroup").write_text(cgroup)
        if cmdline is not None:
            (pid_dir / "cmdline").write_bytes(cmdline)

    return root, add
