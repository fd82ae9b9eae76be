"""Configuration system for hang-monitor."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

DEFAULT_FLAGGED_MODULES = [
    "nvwgf2umx",
    "dxgi",
    "d3d",
    "win32k",
    "wlanapi",
    "bluetooth",
    "rpcrt4",
    "twinapi",
    "libnvidia",
    "nvidia",
    "amdgpu",
]


@dataclass
class MonitorConfig:
    """Sampling session configuration."""

    interval: float = 3.0  # Seconds between ticks
    duration: float = 300.0  # Total session length in seconds
    history_size: int = 60  # Samples kept for trend analysis (~3 min at 3s)
    max_events: int = 500  # Cap on the session event log
    top_n: int = 5  # Processes kept per top-N list
    admin: bool = False  # Elevated introspection (kernel stacks in dumps)


@dataclass
class HangsConfig:
    """Hang tracking and freeze investigation thresholds."""

    liveness_threshold: float = 1.0  # Seconds unresponsive before a process counts as hanging
    investigate_after: float = 5.0  # Hang seconds that trigger a deep investigation
    dump_after: float = 15.0  # Freeze seconds that must be exceeded to capture a dump
    dump_cooldown: float = 300.0  # Min seconds between dump captures


@dataclass
class BandsConfig:
    """Label band thresholds for composite scores.

    Comparisons are strict:
    - score > critical: Critical
    - score > high: High
    - score > pressure: Pressure (memory) / Some latency (latency)
    - otherwise: Healthy (memory) / Responsive (latency)
    """

    critical: int = 75
    high: int = 50
    pressure: int = 25

    def memory_label(self, score: int) -> str:
        """Return the memory pressure label for a composite score."""
        return self._label(score, "Pressure", "Healthy")

    def latency_label(self, score: int) -> str:
        """Return the system latency label for a composite score."""
        return self._label(score, "Some latency", "Responsive")

    def _label(self, score: int, moderate: str, calm: str) -> str:
        if score > self.critical:
            return "Critical"
        if score > self.high:
            return "High"
        if score > self.pressure:
            return moderate
        return calm


@dataclass
class DumpsConfig:
    """Process dump retention and analysis."""

    max_files: int = 10  # Newest dumps kept in the dumps directory
    flagged_modules: list[str] = field(default_factory=lambda: list(DEFAULT_FLAGGED_MODULES))


@dataclass
class HistoryConfig:
    """Run history retention."""

    max_runs: int = 10


@dataclass
class LoggingConfig:
    """Log file rotation."""

    max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    backup_count: int = 3  # Number of backup log files to keep


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


@dataclass
class Config:
    """Main configuration container."""

    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    hangs: HangsConfig = field(default_factory=HangsConfig)
    bands: BandsConfig = field(default_factory=BandsConfig)
    dumps: DumpsConfig = field(default_factory=DumpsConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "hang-monitor"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def data_dir(self) -> Path:
        """Data directory for run logs and dumps."""
        return Path.home() / ".local" / "share" / "hang-monitor"

    @property
    def state_dir(self) -> Path:
        """State directory for logs and other expendable persistent state."""
        return Path.home() / ".local" / "state" / "hang-monitor"

    @property
    def log_path(self) -> Path:
        """Monitor log path."""
        return self.state_dir / "monitor.log"

    @property
    def runs_dir(self) -> Path:
        """Directory holding one JSON file per monitoring run."""
        return self.data_dir / "runs"

    @property
    def dumps_dir(self) -> Path:
        """Directory holding captured process dumps."""
        return self.data_dir / "dumps"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ["monitor", "hangs", "bands", "dumps", "history", "logging"]:
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() agree when no file exists.
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

        return cls(
            monitor=_load_monitor_config(data.get("monitor", {})),
            hangs=_load_hangs_config(data.get("hangs", {})),
            bands=_load_bands_config(data.get("bands", {})),
            dumps=_load_dumps_config(data.get("dumps", {})),
            history=_load_history_config(data.get("history", {})),
            logging=_load_logging_config(data.get("logging", {})),
        )


def _load_monitor_config(data: dict) -> MonitorConfig:
    """Load monitor config from TOML data, using dataclass defaults for missing fields."""
    d = MonitorConfig()
    interval = data.get("interval", d.interval)
    duration = data.get("duration", d.duration)
    history_size = data.get("history_size", d.history_size)

    if interval <= 0:
        raise ValueError(f"interval must be > 0, got {interval}")
    if duration <= 0:
        raise ValueError(f"duration must be > 0, got {duration}")
    if history_size < 1:
        raise ValueError(f"history_size must be >= 1, got {history_size}")

    return MonitorConfig(
        interval=float(interval),
        duration=float(duration),
        history_size=history_size,
        max_events=data.get("max_events", d.max_events),
        top_n=data.get("top_n", d.top_n),
        admin=bool(data.get("admin", d.admin)),
    )


def _load_hangs_config(data: dict) -> HangsConfig:
    """Load hang thresholds from TOML data."""
    d = HangsConfig()
    return HangsConfig(
        liveness_threshold=data.get("liveness_threshold", d.liveness_threshold),
        investigate_after=data.get("investigate_after", d.investigate_after),
        dump_after=data.get("dump_after", d.dump_after),
        dump_cooldown=data.get("dump_cooldown", d.dump_cooldown),
    )


def _load_bands_config(data: dict) -> BandsConfig:
    """Load label bands from TOML data, validating their ordering."""
    d = BandsConfig()
    critical = data.get("critical", d.critical)
    high = data.get("high", d.high)
    pressure = data.get("pressure", d.pressure)

    if not 0 < pressure < high < critical <= 100:
        raise ValueError(
            f"bands must satisfy 0 < pressure < high < critical <= 100, "
            f"got pressure={pressure}, high={high}, critical={critical}"
        )

    return BandsConfig(critical=critical, high=high, pressure=pressure)


def _load_dumps_config(data: dict) -> DumpsConfig:
    """Load dump settings from TOML data."""
    d = DumpsConfig()
    max_files = data.get("max_files", d.max_files)
    if max_files < 1:
        raise ValueError(f"max_files must be >= 1, got {max_files}")

    return DumpsConfig(
        max_files=max_files,
        flagged_modules=[str(m) for m in data.get("flagged_modules", d.flagged_modules)],
    )


def _load_history_config(data: dict) -> HistoryConfig:
    """Load run history settings from TOML data."""
    d = HistoryConfig()
    max_runs = data.get("max_runs", d.max_runs)
    if max_runs < 1:
        raise ValueError(f"max_runs must be >= 1, got {max_runs}")
    return HistoryConfig(max_runs=max_runs)


def _load_logging_config(data: dict) -> LoggingConfig:
    """Load log rotation settings from TOML data."""
    d = LoggingConfig()
    return LoggingConfig(
        max_bytes=data.get("max_bytes", d.max_bytes),
        backup_count=data.get("backup_count", d.backup_count),
    )
