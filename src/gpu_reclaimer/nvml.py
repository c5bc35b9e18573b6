"""NVML-backed sampler using the nvidia-ml-py bindings."""

from __future__ import annotations

import asyncio

import pynvml
import structlog

from gpu_reclaimer.sampling import GPUProcess, GPUSnapshot, Snapshot, SnapshotError

log = structlog.get_logger()


def _decode(value: str | bytes) -> str:
    # Older bindings return bytes for string queries
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class NvmlSampler:
    """Samples GPUs through NVML.

    NVML is initialized lazily on the first sample and shut down by close().
    NVML calls are blocking, so sampling runs in the default executor.
    """

    def __init__(self) -> None:
        self._initialized = False

    def name(self) -> str:
        return "nvml"

    def _init(self) -> None:
        if self._initialized:
            return
        try:
            pynvml.nvmlInit()
        except pynvml.NVMLError as e:
            raise SnapshotError(f"nvml init failed: {e}") from e
        self._initialized = True

    def close(self) -> None:
        """Shut NVML down if it was initialized."""
        if not self._initialized:
            return
        try:
            pynvml.nvmlShutdown()
        except pynvml.NVMLError as e:
            log.warning("nvml_shutdown_failed", error=str(e))
        self._initialized = False

    def _sample_sync(self) -> Snapshot:
        self._init()

        try:
            count = pynvml.nvmlDeviceGetCount()
        except pynvml.NVMLError as e:
            raise SnapshotError(f"nvml device get count failed: {e}") from e

        snap = Snapshot()
        for i in range(count):
            try:
                handle = pynvml.nvmlDeviceGetHandleByIndex(i)
            except pynvml.NVMLError as e:
                raise SnapshotError(f"nvml get handle index={i} failed: {e}") from e

            # Per-device queries are best-effort; a missing field reads as zero
            uuid = ""
            util_gpu = util_mem = 0
            mem_used = mem_total = 0
            procs: list[GPUProcess] = []
            try:
                uuid = _decode(pynvml.nvmlDeviceGetUUID(handle))
            except pynvml.NVMLError:
                pass
            try:
                rates = pynvml.nvmlDeviceGetUtilizationRates(handle)
                util_gpu, util_mem = int(rates.gpu), int(rates.memory)
            except pynvml.NVMLError:
                pass
            try:
                mem = pynvml.nvmlDeviceGetMemoryInfo(handle)
                mem_used, mem_total = int(mem.used), int(mem.total)
            except pynvml.NVMLError:
                pass
            try:
                for p in pynvml.nvmlDeviceGetComputeRunningProcesses(handle):
                    procs.append(GPUProcess(pid=int(p.pid), used_bytes=int(p.usedGpuMemory or 0)))
            except pynvml.NVMLError:
                pass

            snap.gpus.append(
                GPUSnapshot(
                    index=i,
                    uuid=uuid,
                    util_gpu=util_gpu,
                    util_mem=util_mem,
                    mem_used_bytes=mem_used,
                    mem_total_bytes=mem_total,
                    compute_procs=procs,
                )
            )
        return snap

    async def sample(self) -> Snapshot:
        """Run an NVML sample in the executor (NVML calls are blocking)."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._sample_sync)
