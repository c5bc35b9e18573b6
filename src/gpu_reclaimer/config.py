"""Configuration system for gpu-reclaimer."""

import re
from dataclasses import dataclass, field, fields, is_dataclass, replace
from pathlib import Path

import tomlkit

VALID_BACKENDS = {"nvml", "smi", "nvidia-smi", "nvidiasmi"}
VALID_LOG_FORMATS = {"json", "console"}


@dataclass
class SamplingConfig:
    """GPU sampling configuration."""

    backend: str = "nvml"  # nvml | smi
    interval_seconds: float = 60.0  # Seconds between ticks
    smi_path: str = "nvidia-smi"
    smi_timeout_seconds: float = 5.0  # Per nvidia-smi query


@dataclass
class IdleConfig:
    """Idle detection thresholds.

    A workload becomes a reclaim candidate once it has been observed idle for
    consecutive_idle_samples ticks in a row AND at least idle_minutes have
    passed since the first idle tick of the run.
    """

    idle_minutes: int = 30
    consecutive_idle_samples: int = 30
    gpu_util_threshold: int = 1  # Percent; util < threshold is idle


@dataclass
class AttributionConfig:
    """PID attribution and container metadata enrichment."""

    cri_endpoint: str = ""  # Passed to crictl -r when set
    crictl_path: str = ""  # Empty = auto-detect
    cache_ttl_seconds: float = 600.0  # Container metadata cache TTL
    resolve_timeout_seconds: float = 2.0  # Per-pid attribution budget
    proc_root: str = "/proc"


@dataclass
class ReclaimConfig:
    """What happens to validated candidates."""

    dry_run: bool = False
    # Processes whose command line matches are never reclaimable
    process_allowlist_regex: str = r"(^|/)(nvidia-persistenced|nvidia-powerd)$"

    @property
    def allowlist(self) -> re.Pattern[str]:
        return re.compile(self.process_allowlist_regex)


@dataclass
class SystemConfig:
    """Agent housekeeping and logging."""

    gc_max_age_seconds: float = 2 * 60 * 60  # Forget workloads unseen this long
    heartbeat_ticks: int = 10  # Log heartbeat every N ticks
    log_format: str = "json"  # json | console
    log_to_file: bool = False
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


SECTIONS = ["sampling", "idle", "attribution", "reclaim", "system"]


@dataclass
class Config:
    """Main configuration container."""

    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    idle: IdleConfig = field(default_factory=IdleConfig)
    attribution: AttributionConfig = field(default_factory=AttributionConfig)
    reclaim: ReclaimConfig = field(default_factory=ReclaimConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "gpu-reclaimer"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "gpu-reclaimer"

    @property
    def log_path(self) -> Path:
        """Agent log path (JSON Lines, only written when system.log_to_file)."""
        return self.state_dir / "agent.log"

    def validate(self) -> None:
        """Check cross-field constraints.

        Raises:
            ValueError: Describing the first invalid field.
        """
        _validate_sampling(self.sampling)
        _validate_idle(self.idle)
        _validate_attribution(self.attribution)
        _validate_reclaim(self.reclaim)
        _validate_system(self.system)

    def to_toml(self) -> str:
        """Render every section as a TOML document."""
        doc = tomlkit.document()
        for name in SECTIONS:
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())
        return tomlkit.dumps(doc)

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_toml())

    def with_overrides(self, overrides: dict[str, object]) -> "Config":
        """Return a copy with dotted "section.field" values replaced.

        None values are skipped. The result is validated.

        Raises:
            ValueError: Unknown key or invalid resulting value.
        """
        sections = {name: getattr(self, name) for name in SECTIONS}
        for dotted, value in overrides.items():
            if value is None:
                continue
            section, _, name = dotted.partition(".")
            if section not in sections or name not in {f.name for f in fields(sections[section])}:
                raise ValueError(f"Unknown config key: {dotted}")
            sections[section] = replace(sections[section], **{name: value})

        config = replace(self, **sections)
        config.validate()
        return config

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions - no hardcoded values here.
        This ensures Config() and Config.load() use identical defaults.

        Raises:
            ValueError: If the file cannot be parsed or a value is invalid.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        config = cls(
            sampling=_load_section(SamplingConfig, data.get("sampling", {})),
            idle=_load_section(IdleConfig, data.get("idle", {})),
            attribution=_load_section(AttributionConfig, data.get("attribution", {})),
            reclaim=_load_section(ReclaimConfig, data.get("reclaim", {})),
            system=_load_section(SystemConfig, data.get("system", {})),
        )
        config.validate()
        return config


def _load_section(section_cls: type, data: dict):
    """Build a section dataclass, using its defaults for missing keys.

    Unknown keys are ignored. tomlkit items are unwrapped to plain values.
    """
    defaults = section_cls()
    values = {}
    for f in fields(section_cls):
        value = data.get(f.name, getattr(defaults, f.name))
        if hasattr(value, "unwrap"):
            value = value.unwrap()
        values[f.name] = value
    return section_cls(**values)


def _validate_sampling(sampling: SamplingConfig) -> None:
    if sampling.backend.strip().lower() not in VALID_BACKENDS:
        raise ValueError(
            f"Invalid sampling.backend: {sampling.backend!r}. Must be one of {sorted(VALID_BACKENDS)}"
        )
    if sampling.interval_seconds <= 0:
        raise ValueError(f"sampling.interval_seconds must be > 0, got {sampling.interval_seconds}")
    if sampling.smi_timeout_seconds <= 0:
        raise ValueError(
            f"sampling.smi_timeout_seconds must be > 0, got {sampling.smi_timeout_seconds}"
        )


def _validate_idle(idle: IdleConfig) -> None:
    if idle.idle_minutes < 0:
        raise ValueError(f"idle.idle_minutes must be >= 0, got {idle.idle_minutes}")
    if idle.consecutive_idle_samples < 1:
        raise ValueError(
            f"idle.consecutive_idle_samples must be >= 1, got {idle.consecutive_idle_samples}"
        )
    if not 0 <= idle.gpu_util_threshold <= 100:
        raise ValueError(
            f"idle.gpu_util_threshold must be between 0 and 100, got {idle.gpu_util_threshold}"
        )


def _validate_attribution(attribution: AttributionConfig) -> None:
    if attribution.cache_ttl_seconds < 0:
        raise ValueError(
            f"attribution.cache_ttl_seconds must be >= 0, got {attribution.cache_ttl_seconds}"
        )
    if attribution.resolve_timeout_seconds <= 0:
        raise ValueError(
            "attribution.resolve_timeout_seconds must be > 0, "
            f"got {attribution.resolve_timeout_seconds}"
        )


def _validate_reclaim(reclaim: ReclaimConfig) -> None:
    try:
        re.compile(reclaim.process_allowlist_regex)
    except re.error as e:
        raise ValueError(
            f"Invalid reclaim.process_allowlist_regex {reclaim.process_allowlist_regex!r}: {e}"
        ) from e


def _validate_system(system: SystemConfig) -> None:
    if system.gc_max_age_seconds <= 0:
        raise ValueError(f"system.gc_max_age_seconds must be > 0, got {system.gc_max_age_seconds}")
    if system.heartbeat_ticks < 1:
        raise ValueError(f"system.heartbeat_ticks must be >= 1, got {system.heartbeat_ticks}")
    if system.log_format not in VALID_LOG_FORMATS:
        raise ValueError(
            f"Invalid system.log_format: {system.log_format!r}. "
            f"Must be one of {sorted(VALID_LOG_FORMATS)}"
        )
