"""Configuration system for sysprobe."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

VALID_BACKENDS = ("auto", "procfs", "psutil")
VALID_LOG_LEVELS = ("debug", "info", "warning", "error")


@dataclass
class RefreshConfig:
    """Refresh engine configuration."""

    workers: int = 4  # Threads reading processes in parallel (1 = sequential)
    interval: float = 1.0  # Seconds between the two samples `sysprobe ps` takes
    open_files_limit: int = -1  # Cached stat handle budget; -1 = derive from RLIMIT_NOFILE
    backend: str = "auto"  # "auto" picks procfs when /proc is mounted


@dataclass
class LoggingConfig:
    """Structured log file configuration."""

    level: str = "info"
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


@dataclass
class Config:
    """Main configuration container."""

    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "sysprobe"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs and other expendable persistent state."""
        return Path.home() / ".local" / "state" / "sysprobe"

    @property
    def log_path(self) -> Path:
        """Structured event log path."""
        return self.state_dir / "sysprobe.log"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("refresh", "logging"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() on a missing file are identical.
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
            refresh=_load_refresh_config(data.get("refresh", {})),
            logging=_load_logging_config(data.get("logging", {})),
        )


def _number(data: dict, key: str, default, integer: bool = True):
    """Fetch a numeric field, rejecting strings, booleans and other TOML types."""
    value = data.get(key, default)
    allowed = int if integer else (int, float)
    if isinstance(value, bool) or not isinstance(value, allowed):
        kind = "an integer" if integer else "a number"
        raise ValueError(f"{key} must be {kind}, got {value!r}")
    return value


def _load_refresh_config(data: dict) -> RefreshConfig:
    """Load refresh config from TOML data, using dataclass defaults for missing fields."""
    defaults = RefreshConfig()

    workers = _number(data, "workers", defaults.workers)
    interval = _number(data, "interval", defaults.interval, integer=False)
    open_files_limit = _number(data, "open_files_limit", defaults.open_files_limit)
    backend = data.get("backend", defaults.backend)

    if workers < 1:
        raise ValueError(f"workers must be >= 1, got {workers}")
    if interval <= 0:
        raise ValueError(f"interval must be > 0, got {interval}")
    if open_files_limit < -1:
        raise ValueError(f"open_files_limit must be >= 0 or -1 for automatic, got {open_files_limit}")
    if backend not in VALID_BACKENDS:
        raise ValueError(f"Invalid backend: {backend!r}. Must be one of {VALID_BACKENDS}")

    return RefreshConfig(
        workers=int(workers),
        interval=float(interval),
        open_files_limit=int(open_files_limit),
        backend=str(backend),
    )


def _load_logging_config(data: dict) -> LoggingConfig:
    """Load logging config from TOML data."""
    defaults = LoggingConfig()

    level = str(data.get("level", defaults.level)).lower()
    log_max_bytes = _number(data, "log_max_bytes", defaults.log_max_bytes)
    log_backup_count = _number(data, "log_backup_count", defaults.log_backup_count)

    if level not in VALID_LOG_LEVELS:
        raise ValueError(f"Invalid level: {level!r}. Must be one of {VALID_LOG_LEVELS}")
    if log_max_bytes < 1:
        raise ValueError(f"log_max_bytes must be >= 1, got {log_max_bytes}")
    if log_backup_count < 0:
        raise ValueError(f"log_backup_count must be >= 0, got {log_backup_count}")

    return LoggingConfig(
        level=level,
        log_max_bytes=int(log_max_bytes),
        log_backup_count=int(log_backup_count),
    )
