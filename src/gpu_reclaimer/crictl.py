"""Container metadata enrichment via `crictl inspect`."""

from __future__ import annotations

import asyncio
import json
import os
import shutil

from gpu_reclaimer.attribution import ContainerMetadata, EnrichmentError, EnrichmentUnavailable

FALLBACK_PATHS = ("/usr/bin/crictl", "/usr/local/bin/crictl")

# Label key variants, most specific first. containerd also records the
# sandbox identity as annotations on each container.
POD_NAME_KEYS = ("io.kubernetes.pod.name", "io.kubernetes.cri.sandbox-name")
POD_NAMESPACE_KEYS = ("io.kubernetes.pod.namespace", "io.kubernetes.cri.sandbox-namespace")
POD_UID_KEYS = ("io.kubernetes.pod.uid", "io.kubernetes.cri.sandbox-uid")
CONTAINER_NAME_KEYS = ("io.kubernetes.container.name", "io.kubernetes.cri.container-name")


def find_crictl() -> str:
    """Return the crictl path from PATH or a known location, or "" if absent."""
    found = shutil.which("crictl")
    if found:
        return found
    for candidate in FALLBACK_PATHS:
        if os.path.exists(candidate):
            return candidate
    return ""


def first_non_empty(*values: object) -> str:
    for v in values:
        if isinstance(v, str) and v.strip():
            return v
    return ""


def _section(obj: object, *keys: str) -> dict:
    """Walk nested dicts, returning {} if any level is missing or not a dict."""
    for key in keys:
        if not isinstance(obj, dict):
            return {}
        obj = obj.get(key)
    return obj if isinstance(obj, dict) else {}


def parse_inspect_output(data: bytes | str, container_id: str) -> ContainerMetadata:
    """Parse `crictl inspect --output json` into ContainerMetadata.

    crictl emits labels under info.config.labels and status.labels depending
    on version; both are merged with status winning on conflicts.

    Raises:
        EnrichmentError: Output is not a JSON object.
    """
    try:
        obj = json.loads(data)
    except json.JSONDecodeError as e:
        raise EnrichmentError(f"crictl inspect returned invalid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise EnrichmentError("crictl inspect returned unexpected JSON")

    info_config = _section(obj, "info", "config")
    status = _section(obj, "status")

    labels: dict[str, str] = {}
    labels.update(_section(info_config, "labels"))
    labels.update(_section(status, "labels"))

    annotations: dict[str, str] = {}
    annotations.update(_section(info_config, "annotations"))
    annotations.update(_section(status, "annotations"))

    def lookup(keys: tuple[str, ...]) -> str:
        return first_non_empty(*(labels.get(k) for k in keys), *(annotations.get(k) for k in keys))

    return ContainerMetadata(
        container_id=container_id,
        pod_uid=lookup(POD_UID_KEYS),
        pod_namespace=lookup(POD_NAMESPACE_KEYS),
        pod_name=lookup(POD_NAME_KEYS),
        container_name=first_non_empty(
            lookup(CONTAINER_NAME_KEYS),
            _section(info_config, "metadata").get("name"),
            _section(status, "metadata").get("name"),
        ),
    )


class CrictlInspector:
    """Looks up container labels with crictl.

    A missing binary is reported as EnrichmentUnavailable, not a crash.
    """

    def __init__(self, endpoint: str = "", crictl_path: str = "") -> None:
        self.endpoint = endpoint.strip()
        self.crictl_path = crictl_path.strip() or find_crictl()

    def _command(self, container_id: str) -> list[str]:
        args = [self.crictl_path]
        if self.endpoint:
            args += ["-r", self.endpoint]
        args += ["inspect", "--output", "json", container_id]
        return args

    async def inspect(self, container_id: str) -> ContainerMetadata:
        """Run crictl inspect for container_id.

        Cancellation (e.g. a caller timeout) kills the subprocess.
        """
        if not self.crictl_path:
            raise EnrichmentUnavailable("crictl not found")

        try:
            process = await asyncio.create_subprocess_exec(
                *self._command(container_id),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise EnrichmentUnavailable(f"crictl not found at {self.crictl_path}") from e

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        if process.returncode != 0:
            err = stderr.decode(errors="replace").strip()
            raise EnrichmentError(f"crictl inspect failed (exit {process.returncode}): {err}")

        return parse_inspect_output(stdout, container_id)
