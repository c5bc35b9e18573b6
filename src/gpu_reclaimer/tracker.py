# src/gpu_reclaimer/tracker.py
"""Per-workload idle tracking.

Each workload moves through fresh -> accumulating -> reported. Any active
observation returns it to the start of a new episode. A Candidate is emitted
once per idle episode, when both the consecutive-sample count and the
elapsed idle time reach their thresholds.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

log = structlog.get_logger()

UNKNOWN_IDENTITY = ("unknown", "")


@dataclass(frozen=True)
class WorkloadKey:
    """Identity of a reclaim subject.

    Lookup uses `identity`: UID if set, else container id, else one shared
    "unknown" bucket. Workloads missing both identifiers alias each other.
    """

    uid: str = ""
    namespace: str = ""
    name: str = ""
    container_id: str = ""

    @property
    def identity(self) -> tuple[str, str]:
        if self.uid:
            return ("uid", self.uid)
        if self.container_id:
            return ("cid", self.container_id)
        return UNKNOWN_IDENTITY


@dataclass
class PodEvidence:
    """What the tracker saw for a workload during its current idle episode."""

    gpus: list[int] = field(default_factory=list)
    pids: list[int] = field(default_factory=list)
    cmdlines: list[str] = field(default_factory=list)
    util_samples: int = 0
    idle_since: float | None = None

    def copy(self) -> PodEvidence:
        return PodEvidence(
            gpus=list(self.gpus),
            pids=list(self.pids),
            cmdlines=list(self.cmdlines),
            util_samples=self.util_samples,
            idle_since=self.idle_since,
        )


@dataclass
class Observation:
    """One workload's aggregated view for one tick."""

    key: WorkloadKey
    seen_at: float
    idle: bool
    gpus: list[int] = field(default_factory=list)
    pids: list[int] = field(default_factory=list)
    cmdlines: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Candidate:
    """A workload that has been idle long enough to reclaim."""

    key: WorkloadKey
    evidence: PodEvidence
    idle_for: float  # Seconds

    @property
    def idle_minutes(self) -> int:
        return int(self.idle_for // 60)


@dataclass
class TrackerState:
    """In-memory state for one tracked workload."""

    key: WorkloadKey
    idle_count: int = 0
    idle_since: float | None = None
    last_seen: float = 0.0
    last_active: float | None = None
    reported: bool = False
    evidence: PodEvidence = field(default_factory=PodEvidence)


class IdleTracker:
    """Debounces per-workload idle observations into one-shot candidates."""

    def __init__(self, idle_minutes: int, consecutive_idle_samples: int) -> None:
        self.idle_minutes = idle_minutes
        self.consecutive_idle_samples = consecutive_idle_samples
        self._states: dict[tuple[str, str], TrackerState] = {}

    def __len__(self) -> int:
        return len(self._states)

    def get(self, key: WorkloadKey) -> TrackerState | None:
        """Return the state tracked for key's identity, if any."""
        return self._states.get(key.identity)

    def observe(self, obs: Observation) -> Candidate | None:
        """Fold one observation into the workload's state.

        Returns a Candidate the first time the current idle episode crosses
        both thresholds, otherwise None.
        """
        identity = obs.key.identity
        st = self._states.get(identity)
        if st is None:
            st = TrackerState(key=obs.key)
            self._states[identity] = st
        st.last_seen = obs.seen_at

        if obs.idle:
            st.idle_count += 1
            if st.idle_count == 1:
                st.idle_since = obs.seen_at
            st.evidence = PodEvidence(
                gpus=list(obs.gpus),
                pids=list(obs.pids),
                cmdlines=list(obs.cmdlines),
                util_samples=st.idle_count,
                idle_since=st.idle_since,
            )
        else:
            if st.reported:
                log.debug("idle_episode_ended", identity=":".join(identity))
            st.idle_count = 0
            st.idle_since = None
            st.last_active = obs.seen_at
            st.reported = False
            st.evidence = PodEvidence()

        if st.reported or st.idle_since is None:
            return None
        if st.idle_count < self.consecutive_idle_samples:
            return None

        idle_for = obs.seen_at - st.idle_since
        if idle_for < self.idle_minutes * 60:
            return None

        st.reported = True
        return Candidate(key=st.key, evidence=st.evidence.copy(), idle_for=idle_for)

    def gc(self, now: float, max_age: float) -> int:
        """Forget workloads not seen for more than max_age seconds.

        Returns the number of workloads removed.
        """
        stale = [k for k, st in self._states.items() if now - st.last_seen > max_age]
        for k in stale:
            del self._states[k]
        return len(stale)
