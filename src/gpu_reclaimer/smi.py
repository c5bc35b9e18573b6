"""nvidia-smi backed sampler.

Runs two CSV queries per sample: one for GPU summaries and one for compute
apps. Processes are joined to GPUs by UUID.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog

from gpu_reclaimer.sampling import GPUProcess, GPUSnapshot, Snapshot, SnapshotError

log = structlog.get_logger()

MIB = 1024 * 1024

GPU_QUERY = [
    "--query-gpu=index,uuid,utilization.gpu,utilization.memory,memory.used,memory.total",
    "--format=csv,noheader,nounits",
]
APPS_QUERY = [
    "--query-compute-apps=gpu_uuid,pid,used_gpu_memory",
    "--format=csv,noheader,nounits",
]


class NoRunningProcesses(Exception):
    """nvidia-smi exited non-zero because there are no compute apps."""


@dataclass
class ProcRow:
    """One row of --query-compute-apps output."""

    gpu_uuid: str
    pid: int
    used_bytes: int


def _to_int(value: str) -> int:
    # nvidia-smi prints "[N/A]" or "[Not Supported]" for unavailable fields
    try:
        return int(value)
    except ValueError:
        return 0


def read_csv_lines(text: str) -> list[list[str]]:
    """Split CSV output into stripped columns, skipping blank lines."""
    rows = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        rows.append([col.strip() for col in line.split(",")])
    return rows


def parse_gpu_rows(text: str) -> list[GPUSnapshot]:
    """Parse --query-gpu output. Rows with fewer than 6 columns are skipped."""
    gpus = []
    for cols in read_csv_lines(text):
        if len(cols) < 6:
            continue
        gpus.append(
            GPUSnapshot(
                index=_to_int(cols[0]),
                uuid=cols[1],
                util_gpu=_to_int(cols[2]),
                util_mem=_to_int(cols[3]),
                mem_used_bytes=_to_int(cols[4]) * MIB,
                mem_total_bytes=_to_int(cols[5]) * MIB,
            )
        )
    return gpus


def parse_proc_rows(text: str) -> list[ProcRow]:
    """Parse --query-compute-apps output. Rows with fewer than 3 columns are skipped."""
    rows = []
    for cols in read_csv_lines(text):
        if len(cols) < 3:
            continue
        rows.append(ProcRow(gpu_uuid=cols[0], pid=_to_int(cols[1]), used_bytes=_to_int(cols[2]) * MIB))
    return rows


class SmiSampler:
    """Samples GPUs by shelling out to nvidia-smi."""

    def __init__(self, binary_path: str = "nvidia-smi", timeout: float = 5.0) -> None:
        self.binary_path = binary_path.strip() or "nvidia-smi"
        self.timeout = timeout

    def name(self) -> str:
        return "nvidia-smi"

    def close(self) -> None:
        pass

    async def _run(self, args: list[str]) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary_path,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise SnapshotError(f"nvidia-smi not found: {self.binary_path}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise SnapshotError(f"nvidia-smi timed out after {self.timeout}s") from e
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        if process.returncode != 0:
            err = stderr.decode(errors="replace").strip()
            # Some driver versions exit non-zero when nothing is running
            if "no running" in err.lower():
                raise NoRunningProcesses(err)
            raise SnapshotError(f"nvidia-smi failed (exit {process.returncode}): {err}")
        return stdout.decode(errors="replace")

    async def sample(self) -> Snapshot:
        """Query GPUs, then compute apps, and attach processes to their GPU."""
        try:
            gpus = parse_gpu_rows(await self._run(GPU_QUERY))
        except NoRunningProcesses as e:
            raise SnapshotError(f"nvidia-smi GPU query failed: {e}") from e
        by_uuid = {g.uuid: g for g in gpus if g.uuid}

        try:
            rows = parse_proc_rows(await self._run(APPS_QUERY))
        except NoRunningProcesses:
            rows = []

        for row in rows:
            gpu = by_uuid.get(row.gpu_uuid)
            if gpu is None:
                log.debug("smi_process_unknown_gpu", gpu_uuid=row.gpu_uuid, pid=row.pid)
                continue
            gpu.compute_procs.append(GPUProcess(pid=row.pid, used_bytes=row.used_bytes))

        return Snapshot(gpus=gpus)
