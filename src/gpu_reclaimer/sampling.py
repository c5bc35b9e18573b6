"""GPU snapshot data model and sampler selection.

A sampler returns one Snapshot per call: every visible GPU with its
utilization, memory and the compute processes currently holding it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from gpu_reclaimer.config import Config


class SnapshotError(RuntimeError):
    """Whole-snapshot sampling failure (the tick is abandoned)."""


@dataclass(frozen=True)
class GPUProcess:
    """A compute process holding memory on one GPU."""

    pid: int
    used_bytes: int = 0


@dataclass
class GPUSnapshot:
    """State of a single GPU at sampling time."""

    index: int
    uuid: str
    util_gpu: int  # Percent
    util_mem: int  # Percent
    mem_used_bytes: int
    mem_total_bytes: int
    compute_procs: list[GPUProcess] = field(default_factory=list)

    def is_idle(self, threshold: int) -> bool:
        """Return True if utilization is strictly below threshold percent."""
        return self.util_gpu < threshold

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {
            "index": self.index,
            "uuid": self.uuid,
            "util_gpu": self.util_gpu,
            "util_mem": self.util_mem,
            "mem_used_bytes": self.mem_used_bytes,
            "mem_total_bytes": self.mem_total_bytes,
            "compute_procs": [
                {"pid": p.pid, "used_bytes": p.used_bytes} for p in self.compute_procs
            ],
        }


@dataclass
class Snapshot:
    """All GPUs on the node at one point in time."""

    gpus: list[GPUSnapshot] = field(default_factory=list)

    def all_pids(self) -> set[int]:
        """Return every compute pid on any GPU."""
        return {p.pid for g in self.gpus for p in g.compute_procs}

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {"gpus": [g.to_dict() for g in self.gpus]}


class Sampler(Protocol):
    """Backend capable of producing GPU snapshots."""

    async def sample(self) -> Snapshot: ...

    def close(self) -> None: ...

    def name(self) -> str: ...


SMI_ALIASES = ("smi", "nvidia-smi", "nvidiasmi")


def create_sampler(config: Config) -> Sampler:
    """Build the sampler backend named in config.sampling.backend.

    Anything other than an nvidia-smi alias selects NVML.
    """
    backend = config.sampling.backend.strip().lower()
    if backend in SMI_ALIASES:
        from gpu_reclaimer.smi import SmiSampler

        return SmiSampler(
            binary_path=config.sampling.smi_path,
            timeout=config.sampling.smi_timeout_seconds,
        )

    from gpu_reclaimer.nvml import NvmlSampler

    return NvmlSampler()
