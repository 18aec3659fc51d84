"""
Tracker configuration - thresholds, tolerances and file locations.

Defaults live as module constants; a ``config.yaml`` in the data directory
can override any of them.
"""

import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

from .exceptions import ConfigError

logger = logging.getLogger(__name__)

# Data storage location
DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "kbtrack"
DATA_DIR_ENV = "KBTRACK_DATA_DIR"

CONFIG_FILENAME = "config.yaml"
CURRENT_FILENAME = "current.json"
SESSIONS_FILENAME = "sessions.json"
SAMPLES_FILENAME = "samples.jsonl"
LOG_FILENAME = "daemon.log"
LOCK_FILENAME = "kbtrack.lock"

# Session thresholds (percent)
START_THRESHOLD = 85
STOP_THRESHOLD = 5
CHARGE_TOLERANCE = 7  # cumulative gain before a session counts as charging
OFFLINE_DROP_TOLERANCE = 5  # drop allowed while paused/blocked

# Failure handling
FAILURE_GRACE_CYCLES = 5
ACCRUAL_CONFIDENCE_THRESHOLD = 0.5
CONNECTION_TIMEOUT = 10.0  # seconds

# Sample retention
SAMPLE_RETENTION = 5000

# Device lookup
DEVICE_NAMES = ("NuPhy", "Air75")

# Analytics
SEGMENT_MINUTES = 60
TREND_SLOPE_THRESHOLD = 0.03  # (%/hr) per hour
RATE_CHANGE_TOLERANCE = 0.15


def get_data_dir(override=None) -> Path:
    """Resolve the data directory from an explicit override or the environment."""
    if override:
        return Path(override).expanduser()
    env_dir = os.environ.get(DATA_DIR_ENV)
    if env_dir:
        return Path(env_dir).expanduser()
    return DEFAULT_DATA_DIR


@dataclass(frozen=True)
class TrackerConfig:
    """Tunable thresholds for the session state machine and analytics."""

    start_threshold: int = START_THRESHOLD
    stop_threshold: int = STOP_THRESHOLD
    charge_tolerance: int = CHARGE_TOLERANCE
    offline_drop_tolerance: int = OFFLINE_DROP_TOLERANCE
    failure_grace_cycles: int = FAILURE_GRACE_CYCLES
    accrual_confidence_threshold: float = ACCRUAL_CONFIDENCE_THRESHOLD
    sample_retention: int = SAMPLE_RETENTION
    connection_timeout: float = CONNECTION_TIMEOUT
    device_address: Optional[str] = None
    device_names: tuple = DEVICE_NAMES
    segment_minutes: int = SEGMENT_MINUTES
    trend_slope_threshold: float = TREND_SLOPE_THRESHOLD
    rate_change_tolerance: float = RATE_CHANGE_TOLERANCE

    def __post_init__(self):
        for name in ("start_threshold", "stop_threshold"):
            value = getattr(self, name)
            if not 0 <= value <= 100:
                raise ConfigError(f"{name} must be within 0-100, got {value}")
        if self.stop_threshold >= self.start_threshold:
            raise ConfigError(
                f"stop_threshold ({self.stop_threshold}) must be below "
                f"start_threshold ({self.start_threshold})"
            )
        for name in ("charge_tolerance", "offline_drop_tolerance", "failure_grace_cycles"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be >= 0, got {getattr(self, name)}")
        if not 0.0 <= self.accrual_confidence_threshold <= 1.0:
            raise ConfigError(
                "accrual_confidence_threshold must be within 0-1, "
                f"got {self.accrual_confidence_threshold}"
            )
        for name in ("sample_retention", "segment_minutes"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be >= 1, got {getattr(self, name)}")
        if self.connection_timeout <= 0:
            raise ConfigError(f"connection_timeout must be > 0, got {self.connection_timeout}")
        if self.trend_slope_threshold < 0 or self.rate_change_tolerance < 0:
            raise ConfigError("trend_slope_threshold and rate_change_tolerance must be >= 0")

    @classmethod
    def from_mapping(cls, raw) -> "TrackerConfig":
        """Build a config from a parsed YAML mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in (raw or {}).items():
            if key not in known:
                logger.warning("Ignoring unknown config key %r", key)
                continue
            values[key] = value

        if "device_names" in values:
            names = values["device_names"]
            if isinstance(names, str):
                names = [names]
            values["device_names"] = tuple(str(n) for n in names or ())

        try:
            return cls(**values)
        except TypeError as e:
            raise ConfigError(f"Invalid config value: {e}") from e

    def to_mapping(self) -> dict:
        data = asdict(self)
        data["device_names"] = list(self.device_names)
        return data


def load_config(path) -> TrackerConfig:
    """
    Load configuration from a YAML file.

    A missing file yields the defaults. A file that is not a mapping, or
    values outside their allowed range, raise ConfigError.
    """
    path = Path(path)
    if not path.exists():
        return TrackerConfig()

    try:
        with path.open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(raw).__name__}")

    return TrackerConfig.from_mapping(raw)


def save_config(path, config: TrackerConfig):
    """Write the configuration as YAML."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        yaml.safe_dump(config.to_mapping(), fh, default_flow_style=False, sort_keys=False)
