"""
Configuration management for hob.

Loads and validates ~/.hob/config.yaml (or $HOB_HOME/config.yaml).
Every key is optional; missing keys take the defaults below.
"""

import os
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import yaml

from hob.errors import ConfigError


CLAIM_PRECEDENCES = ("strict", "first")
LOG_FORMATS = ("structured", "pretty")


def get_hob_home() -> Path:
    """Return the hob home directory ($HOB_HOME, default ~/.hob)."""
    return Path(os.environ.get("HOB_HOME", "~/.hob")).expanduser()


def _default_make_jobs() -> int:
    return (os.cpu_count() or 1) + 1


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy for transient fetch failures."""
    max_attempts: int = 1
    backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RetryConfig":
        retry = cls(
            max_attempts=data.get("max_attempts", 1),
            backoff_seconds=data.get("backoff_seconds", 1.0),
            backoff_multiplier=data.get("backoff_multiplier", 2.0),
        )
        if not isinstance(retry.max_attempts, int) or retry.max_attempts < 1:
            raise ConfigError(f"fetch_retry.max_attempts must be >= 1, got {retry.max_attempts!r}")
        if retry.backoff_seconds < 0 or retry.backoff_multiplier < 1:
            raise ConfigError("fetch_retry backoff must be non-negative with a multiplier >= 1")
        return retry


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "pretty"
    console: bool = True
    output: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LoggingConfig":
        cfg = cls(
            level=str(data.get("level", "INFO")).upper(),
            format=data.get("format", "pretty"),
            console=data.get("console", True),
            output=data.get("output"),
        )
        if cfg.level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"Invalid logging.level: {cfg.level}")
        if cfg.format not in LOG_FORMATS:
            raise ConfigError(f"Invalid logging.format: {cfg.format}. Expected one of {LOG_FORMATS}")
        return cfg

    def get_log_file_path(self) -> Optional[Path]:
        """Get log file path with {date} interpolation, None if file logging is off."""
        if not self.output:
            return None
        output = self.output.replace("{date}", datetime.now().strftime("%Y-%m-%d"))
        return Path(output).expanduser()


@dataclass(frozen=True)
class HobConfig:
    """
    Complete hob configuration.

    Attributes:
        cache_dir: Content-addressed artifact cache
        work_root: Parent of the per-recipe work directories
        output_dir: Default package output directory
        recipe_dirs: Directories searched when recipes are named instead of given as files
        jobs: Recipes built concurrently
        fetch_jobs: Concurrent artifact downloads per recipe
        make_jobs: Parallel jobs passed to build tools (make -j)
        phase_timeout_s: Timeout per external tool invocation (None: unlimited)
        keep_going: Continue unrelated recipes after a failure
        keep_work: Keep work directories after a build
        claim_precedence: "strict" (conflicts fail) or "first" (earliest side wins)
        http_timeout_s: Connect/read timeout for HTTP fetches
        fetch_retry: Retry policy for transient fetch errors
        logging: Logging settings
    """
    cache_dir: Path = field(default_factory=lambda: get_hob_home() / "cache")
    work_root: Path = field(default_factory=lambda: get_hob_home() / "work")
    output_dir: Path = field(default_factory=lambda: Path("out"))
    recipe_dirs: tuple[Path, ...] = field(default_factory=lambda: (get_hob_home() / "recipes",))
    jobs: int = 2
    fetch_jobs: int = 4
    make_jobs: int = field(default_factory=_default_make_jobs)
    phase_timeout_s: Optional[float] = None
    keep_going: bool = False
    keep_work: bool = False
    claim_precedence: str = "strict"
    http_timeout_s: float = 60.0
    fetch_retry: RetryConfig = field(default_factory=RetryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self):
        for name in ("jobs", "fetch_jobs", "make_jobs"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")
        if self.claim_precedence not in CLAIM_PRECEDENCES:
            raise ConfigError(
                f"Invalid claim_precedence: {self.claim_precedence}. Expected one of {CLAIM_PRECEDENCES}"
            )
        if self.phase_timeout_s is not None and self.phase_timeout_s <= 0:
            raise ConfigError(f"phase_timeout_s must be positive, got {self.phase_timeout_s}")
        if self.http_timeout_s <= 0:
            raise ConfigError(f"http_timeout_s must be positive, got {self.http_timeout_s}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HobConfig":
        """Build a config from a parsed YAML mapping, applying defaults."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {sorted(unknown)}")

        kwargs: dict[str, Any] = {}
        for key in ("cache_dir", "work_root", "output_dir"):
            if data.get(key) is not None:
                kwargs[key] = Path(data[key]).expanduser()
        for key in ("jobs", "fetch_jobs", "make_jobs", "phase_timeout_s",
                    "keep_going", "keep_work", "claim_precedence", "http_timeout_s"):
            if key in data and data[key] is not None:
                kwargs[key] = data[key]
        if data.get("recipe_dirs") is not None:
            dirs = data["recipe_dirs"]
            if isinstance(dirs, (str, Path)):
                dirs = [dirs]
            kwargs["recipe_dirs"] = tuple(Path(d).expanduser() for d in dirs)
        if data.get("fetch_retry") is not None:
            kwargs["fetch_retry"] = RetryConfig.from_dict(data["fetch_retry"])
        if data.get("logging") is not None:
            kwargs["logging"] = LoggingConfig.from_dict(data["logging"])

        try:
            return cls(**kwargs)
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a YAML-friendly dictionary."""
        data = asdict(self)
        for key in ("cache_dir", "work_root", "output_dir"):
            data[key] = str(data[key])
        data["recipe_dirs"] = [str(d) for d in self.recipe_dirs]
        return data

    def with_overrides(self, **overrides: Any) -> "HobConfig":
        """Return a copy with the non-None overrides applied (CLI flags)."""
        data = {k: v for k, v in overrides.items() if v is not None}
        if not data:
            return self
        merged = {f.name: getattr(self, f.name) for f in fields(self)}
        merged.update(data)
        return HobConfig(**merged)


def _apply_env(data: dict[str, Any]) -> dict[str, Any]:
    data = dict(data)
    if os.environ.get("HOB_JOBS"):
        try:
            data["jobs"] = int(os.environ["HOB_JOBS"])
        except ValueError:
            raise ConfigError(f"HOB_JOBS must be an integer, got {os.environ['HOB_JOBS']!r}")
    if os.environ.get("HOB_CACHE_DIR"):
        data["cache_dir"] = os.environ["HOB_CACHE_DIR"]
    return data


def load_config(config_path: Optional[Path] = None) -> HobConfig:
    """
    Load hob configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $HOB_HOME/config.yaml.
            A missing default file yields the built-in defaults; a missing
            explicit file is an error.

    Returns:
        HobConfig instance

    Raises:
        ConfigError: If config is invalid or an explicit path is missing
    """
    explicit = config_path is not None
    if config_path is None:
        config_path = get_hob_home() / "config.yaml"
    config_path = Path(config_path)

    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file must contain a mapping: {config_path}")
    elif explicit:
        raise ConfigError(f"Configuration file not found: {config_path}")

    return HobConfig.from_dict(_apply_env(data))
