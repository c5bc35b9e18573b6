"""Candidate validation by re-sampling.

Evidence behind a candidate may be several ticks old. Before a candidate is
reported, a fresh snapshot must confirm that the named GPUs are still idle
and that at least one named pid still holds a GPU.
"""

from __future__ import annotations

from dataclasses import dataclass

from gpu_reclaimer.sampling import Sampler
from gpu_reclaimer.tracker import Candidate

REASON_OK = "ok"
REASON_PIDS_GONE = "pids_gone"
REASON_RESAMPLE_FAILED = "resample_failed"


def gpu_not_idle_reason(index: int) -> str:
    return f"gpu_{index}_util_not_idle"


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one candidate."""

    accepted: bool
    reason: str
    error: Exception | None = None


class CandidateValidator:
    """Re-samples live GPU state to confirm a candidate is still valid."""

    def __init__(self, sampler: Sampler, gpu_util_threshold: int) -> None:
        self.sampler = sampler
        self.gpu_util_threshold = gpu_util_threshold

    async def validate(self, candidate: Candidate) -> ValidationResult:
        """Accept the candidate only if it still holds.

        Rejects with gpu_<i>_util_not_idle if any named GPU present in the
        fresh snapshot is at or above the idle threshold, pids_gone if no
        named pid appears on any GPU, and resample_failed (carrying the
        error) if the snapshot itself fails.
        """
        try:
            snap = await self.sampler.sample()
        except Exception as e:
            return ValidationResult(accepted=False, reason=REASON_RESAMPLE_FAILED, error=e)

        named_gpus = set(candidate.evidence.gpus)
        named_pids = set(candidate.evidence.pids)

        for gpu in snap.gpus:
            if gpu.index in named_gpus and not gpu.is_idle(self.gpu_util_threshold):
                return ValidationResult(accepted=False, reason=gpu_not_idle_reason(gpu.index))

        if named_pids.isdisjoint(snap.all_pids()):
            return ValidationResult(accepted=False, reason=REASON_PIDS_GONE)

        return ValidationResult(accepted=True, reason=REASON_OK)
