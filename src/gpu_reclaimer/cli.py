"""CLI commands for gpu-reclaimer."""

from pathlib import Path

import click

# CLI option name -> dotted config key
OVERRIDES = {
    "idle_minutes": "idle.idle_minutes",
    "sample_interval": "sampling.interval_seconds",
    "consecutive_idle_samples": "idle.consecutive_idle_samples",
    "gpu_util_threshold": "idle.gpu_util_threshold",
    "dry_run": "reclaim.dry_run",
    "cri_endpoint": "attribution.cri_endpoint",
    "process_allowlist_regex": "reclaim.process_allowlist_regex",
    "sampler": "sampling.backend",
}


def override_options(f):
    """Attach the agent's config override options to a command."""
    options = [
        click.option(
            "--idle-minutes",
            type=int,
            envvar="IDLE_MINUTES",
            help="Idle minutes before a workload is a candidate",
        ),
        click.option(
            "--sample-interval",
            type=float,
            envvar="SAMPLE_INTERVAL_SECONDS",
            help="Seconds between ticks",
        ),
        click.option(
            "--consecutive-idle-samples",
            type=int,
            envvar="CONSECUTIVE_IDLE_SAMPLES",
            help="Idle ticks in a row required",
        ),
        click.option(
            "--gpu-util-threshold",
            type=int,
            envvar="GPU_UTIL_THRESHOLD_PERCENT",
            help="GPU util percent below which a GPU is idle",
        ),
        click.option(
            "--dry-run/--no-dry-run", default=None, envvar="DRY_RUN", help="Only log candidates"
        ),
        click.option("--cri-endpoint", envvar="CRI_ENDPOINT", help="CRI endpoint for crictl -r"),
        click.option(
            "--process-allowlist-regex",
            envvar="PROCESS_ALLOWLIST_REGEX",
            help="Never reclaim processes whose cmdline matches",
        ),
        click.option("--sampler", envvar="SAMPLER", help="GPU sampler backend (nvml or smi)"),
        click.option("--node-name", envvar="NODE_NAME", help="Node name (default: hostname)"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def _load_config(ctx: click.Context, overrides: dict | None = None):
    """Load config from the --config path and apply CLI overrides."""
    from gpu_reclaimer.config import Config

    try:
        config = Config.load(ctx.obj["config_path"])
        if overrides:
            config = config.with_overrides(
                {OVERRIDES[name]: value for name, value in overrides.items() if name in OVERRIDES}
            )
    except ValueError as e:
        raise click.ClickException(str(e)) from e
    return config


@click.group()
@click.version_option(package_name="gpu-reclaimer")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="GPU_RECLAIMER_CONFIG",
    help="Config file (default: ~/.config/gpu-reclaimer/config.toml)",
)
@click.pass_context
def main(ctx, config_path: Path | None) -> None:
    """Find GPUs held by idle Kubernetes workloads."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.command()
@override_options
@click.pass_context
def run(ctx, node_name: str | None, **overrides) -> None:
    """Run the agent until SIGTERM/SIGINT."""
    import asyncio

    from gpu_reclaimer.agent import run_agent

    config = _load_config(ctx, overrides)
    asyncio.run(run_agent(config, node_name=node_name))


@main.command()
@override_options
@click.pass_context
def once(ctx, node_name: str | None, **overrides) -> None:
    """Run a single tick and print accepted candidates."""
    import asyncio

    from gpu_reclaimer.agent import Agent
    from gpu_reclaimer.logging import Icon, configure, info, warn
    from gpu_reclaimer.sampling import SnapshotError

    config = _load_config(ctx, overrides)
    configure(config)

    async def _tick():
        agent = Agent(config, node_name=node_name)
        try:
            return await agent.tick()
        finally:
            agent.sampler.close()

    try:
        report = asyncio.run(_tick())
    except SnapshotError as e:
        raise click.ClickException(f"Snapshot failed: {e}") from e

    info(
        f"Observed {report.observed} workload(s), {len(report.accepted)} candidate(s)", Icon.OK
    )
    for candidate in report.accepted:
        key = candidate.key
        name = f"{key.namespace}/{key.name}" if key.name else key.uid or key.container_id
        info(
            f"{name} idle {candidate.idle_minutes}m on GPU {candidate.evidence.gpus} "
            f"pids {candidate.evidence.pids}",
            Icon.IDLE,
        )
    for reason, count in sorted(report.rejected.items()):
        warn(f"Rejected {count}: {reason}", Icon.FAIL)


@main.command()
@click.option("--sampler", envvar="SAMPLER", help="GPU sampler backend (nvml or smi)")
@click.option("--json", "as_json", is_flag=True, help="Print the snapshot as JSON")
@click.pass_context
def snapshot(ctx, sampler: str | None, as_json: bool) -> None:
    """Take one GPU snapshot and print it."""
    import asyncio
    import json

    from rich.console import Console
    from rich.table import Table

    from gpu_reclaimer.sampling import SnapshotError, create_sampler

    config = _load_config(ctx, {"sampler": sampler})
    backend = create_sampler(config)

    async def _sample():
        try:
            return await backend.sample()
        finally:
            backend.close()

    try:
        snap = asyncio.run(_sample())
    except SnapshotError as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        click.echo(json.dumps(snap.to_dict(), indent=2))
        return

    if not snap.gpus:
        click.echo("No GPUs found.")
        return

    threshold = config.idle.gpu_util_threshold
    table = Table(title=f"GPU snapshot ({backend.name()})")
    table.add_column("GPU", justify="right")
    table.add_column("UUID")
    table.add_column("Util %", justify="right")
    table.add_column("Mem %", justify="right")
    table.add_column("Memory (MiB)", justify="right")
    table.add_column("PIDs")
    for gpu in snap.gpus:
        util_style = "yellow" if gpu.is_idle(threshold) else "green"
        table.add_row(
            str(gpu.index),
            gpu.uuid,
            f"[{util_style}]{gpu.util_gpu}[/]",
            str(gpu.util_mem),
            f"{gpu.mem_used_bytes // (1024 * 1024)}/{gpu.mem_total_bytes // (1024 * 1024)}",
            ", ".join(str(p.pid) for p in gpu.compute_procs) or "-",
        )
    Console().print(table)


@main.command()
@click.argument("pids", nargs=-1, required=True, type=int)
@click.pass_context
def resolve(ctx, pids: tuple[int, ...]) -> None:
    """Attribute PIDS to Kubernetes workloads."""
    import asyncio

    from gpu_reclaimer.agent import build_resolver
    from gpu_reclaimer.attribution import AttributionError, AttributionTimeout

    config = _load_config(ctx)
    resolver = build_resolver(config)
    timeout = config.attribution.resolve_timeout_seconds

    async def _resolve(pid: int):
        try:
            return await asyncio.wait_for(resolver.resolve(pid), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise AttributionTimeout(f"attribution timed out after {timeout}s") from e

    async def _resolve_all():
        results = []
        for pid in pids:
            try:
                results.append((pid, await _resolve(pid), None))
            except AttributionError as e:
                results.append((pid, None, e))
        return results

    failed = False
    for pid, attr, err in asyncio.run(_resolve_all()):
        if err is not None:
            failed = True
            click.echo(f"{pid}: {err.kind}: {err}")
            continue
        click.echo(
            f"{pid}: pod={attr.pod_namespace or '-'}/{attr.pod_name or '-'} "
            f"uid={attr.pod_uid or '-'} container={attr.container_id[:12] or '-'} "
            f"provenance={attr.provenance.value}"
        )
        if attr.enrichment_error:
            click.echo(f"  enrichment: {attr.enrichment_error}")
        if attr.cmdline:
            click.echo(f"  cmdline: {attr.cmdline}")

    if failed:
        ctx.exit(1)


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx) -> None:
    """Display current configuration."""
    cfg = _load_config(ctx)
    path = ctx.obj["config_path"] or cfg.config_path

    click.echo(f"# Config file: {path}")
    click.echo(f"# Exists: {path.exists()}")
    click.echo()
    click.echo(cfg.to_toml())


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
@click.pass_context
def config_reset(ctx) -> None:
    """Reset configuration to defaults."""
    from gpu_reclaimer.config import Config

    cfg = Config()
    path = ctx.obj["config_path"] or cfg.config_path
    cfg.save(path)
    click.echo(f"Config reset to defaults at {path}")
