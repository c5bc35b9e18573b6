"""PID to workload attribution.

Resolution order for one pid:
1. Read /proc/<pid>/cmdline (best-effort).
2. Read /proc/<pid>/cgroup (required; missing means the process is gone).
3. Extract the pod UID and container id from the cgroup paths.
4. If a container id was found, enrich from the metadata cache or, on a
   miss, from the container runtime.

Fields are merged first-non-empty-wins: a field populated by an earlier,
more specific source is never overwritten.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

import structlog

from gpu_reclaimer.ttlcache import TTLCache

log = structlog.get_logger()

DEFAULT_CACHE_TTL = 600.0  # 10 minutes

POD_UID_RE = re.compile(
    r"pod([0-9a-fA-F]{8}[-_][0-9a-fA-F]{4}[-_][0-9a-fA-F]{4}[-_][0-9a-fA-F]{4}[-_][0-9a-fA-F]{12})"
)
CONTAINER_ID_RE = re.compile(
    r"(?:^|/)(?:docker-|crio-|cri-containerd-|containerd-)([0-9a-fA-F]{12,64})(?:\.scope)?(?:$|/)"
)


class Provenance(str, Enum):
    """Which sources contributed to an attribution."""

    CGROUP_ONLY = "cgroup-only"
    ENRICHED_CACHED = "enriched-cached"
    ENRICHED_FRESH = "enriched-fresh"
    PARTIAL = "partial"


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────


class AttributionError(Exception):
    """Resolution failed for one pid. Never fatal to a tick."""

    kind = "attribution_failed"


class ProcessGone(AttributionError):
    """The pid's cgroup file could not be read; the process likely exited."""

    kind = "process_gone"


class NoIdentifiers(AttributionError):
    """Neither a pod UID nor a container id was found in the cgroup paths."""

    kind = "no_identifiers"


class AttributionTimeout(AttributionError):
    """Resolution did not finish within the per-pid time budget."""

    kind = "timeout"


class EnrichmentError(AttributionError):
    """The container runtime lookup failed."""

    kind = "enrichment_failed"


class EnrichmentUnavailable(EnrichmentError):
    """No container runtime inspection tool is installed."""


# ─────────────────────────────────────────────────────────────────────────────
# Data
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ContainerMetadata:
    """Workload metadata from the container runtime, cached per container id."""

    container_id: str = ""
    pod_uid: str = ""
    pod_namespace: str = ""
    pod_name: str = ""
    container_name: str = ""


@dataclass
class Attribution:
    """Resolved workload identity of one pid at one point in time."""

    pid: int
    pod_uid: str = ""
    pod_namespace: str = ""
    pod_name: str = ""
    container_name: str = ""
    container_id: str = ""
    cmdline: str = ""
    provenance: Provenance = Provenance.CGROUP_ONLY
    enrichment_error: str | None = None

    def merge(self, meta: ContainerMetadata) -> None:
        """Fill empty fields from meta; populated fields are kept."""
        self.pod_uid = self.pod_uid or meta.pod_uid
        self.container_id = self.container_id or meta.container_id
        self.pod_namespace = self.pod_namespace or meta.pod_namespace
        self.pod_name = self.pod_name or meta.pod_name
        self.container_name = self.container_name or meta.container_name

    @property
    def enriched(self) -> bool:
        return bool(self.pod_namespace or self.pod_name)


class Inspector(Protocol):
    """Enrichment collaborator (see gpu_reclaimer.crictl)."""

    async def inspect(self, container_id: str) -> ContainerMetadata: ...


# ─────────────────────────────────────────────────────────────────────────────
# /proc parsing
# ─────────────────────────────────────────────────────────────────────────────


def parse_cgroup(text: str) -> tuple[str, str]:
    """Extract (pod_uid, container_id) from /proc/<pid>/cgroup text.

    Lines are "hierarchy-id:controllers:path". The first match per field
    wins and scanning stops once both are found. Underscore-separated UIDs
    (systemd cgroup driver) are normalized to hyphens; container ids are
    lowercased. Missing fields are returned as "".
    """
    pod_uid = ""
    container_id = ""
    for line in text.splitlines():
        parts = line.split(":", 2)
        if len(parts) != 3:
            continue
        path = parts[2]
        if not pod_uid:
            m = POD_UID_RE.search(path)
            if m:
                pod_uid = m.group(1).replace("_", "-")
        if not container_id:
            m = CONTAINER_ID_RE.search(path)
            if m:
                container_id = m.group(1).lower()
        if pod_uid and container_id:
            break
    return pod_uid, container_id


def parse_cmdline(raw: bytes) -> str:
    """Join NUL-separated argv into one line, dropping empty arguments."""
    args = raw.rstrip(b"\x00").split(b"\x00")
    parts = [a.decode("utf-8", errors="replace").strip() for a in args]
    return " ".join(p for p in parts if p)


def read_cmdline(pid: int, proc_root: Path = Path("/proc")) -> str:
    """Return the pid's command line, or "" if it cannot be read."""
    try:
        return parse_cmdline((proc_root / str(pid) / "cmdline").read_bytes())
    except OSError:
        return ""


# ─────────────────────────────────────────────────────────────────────────────
# Resolver
# ─────────────────────────────────────────────────────────────────────────────


class AttributionResolver:
    """Resolves pids to workload identities with a container metadata cache.

    Only container metadata is cached; attributions themselves are computed
    fresh on every call. The cache is safe for concurrent callers.
    """

    def __init__(
        self,
        inspector: Inspector | None = None,
        cache: TTLCache[ContainerMetadata] | None = None,
        proc_root: Path = Path("/proc"),
    ) -> None:
        self.inspector = inspector
        self.cache: TTLCache[ContainerMetadata] = (
            cache if cache is not None else TTLCache(DEFAULT_CACHE_TTL)
        )
        self.proc_root = proc_root

    def _read_cgroup(self, pid: int) -> str:
        try:
            return (self.proc_root / str(pid) / "cgroup").read_text()
        except OSError as e:
            raise ProcessGone(f"pid {pid}: cannot read cgroup: {e}") from e

    async def resolve(self, pid: int) -> Attribution:
        """Resolve pid to an Attribution.

        Raises:
            ProcessGone: cgroup membership could not be read.
            NoIdentifiers: no pod UID or container id could be recovered.
        """
        attr = Attribution(pid=pid, cmdline=read_cmdline(pid, self.proc_root))

        pod_uid, container_id = parse_cgroup(self._read_cgroup(pid))
        attr.pod_uid = pod_uid
        attr.container_id = container_id

        if container_id:
            cached = self.cache.get(container_id)
            if cached is not None:
                attr.merge(cached)
                attr.provenance = (
                    Provenance.ENRICHED_CACHED if attr.enriched else Provenance.PARTIAL
                )
                return attr

            try:
                meta = await self._inspect(container_id)
            except EnrichmentError as e:
                # Fall back to what the cgroup told us
                attr.enrichment_error = str(e)
                log.debug("enrichment_failed", pid=pid, container_id=container_id, error=str(e))
            else:
                self.cache.set(container_id, meta)
                attr.merge(meta)
                attr.provenance = Provenance.ENRICHED_FRESH if attr.enriched else Provenance.PARTIAL
                return attr

        if not attr.pod_uid and not attr.container_id:
            raise NoIdentifiers(f"pid {pid}: no k8s identifiers found in cgroup")

        attr.provenance = Provenance.PARTIAL if attr.container_id else Provenance.CGROUP_ONLY
        return attr

    async def _inspect(self, container_id: str) -> ContainerMetadata:
        if self.inspector is None:
            raise EnrichmentUnavailable("no container inspector configured")
        return await self.inspector.inspect(container_id)
