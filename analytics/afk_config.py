# analytics/afk_config.py
"""
Static AFK detection configuration.
Values come from the `afk:` section of config/system.yaml and are
validated once at load time.
"""
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, asdict, fields
from pathlib import Path

import yaml

log = logging.getLogger("afk_config")

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "system.yaml"


class ConfigurationError(ValueError):
    """Invalid threshold value or relationship. Fatal at startup."""


@dataclass(frozen=True)
class AFKConfig:
    # Ticks of stationarity (or pattern) before an entity is marked AFK
    afk_threshold: int = 15
    # Max per-axis movement per tick to count as stationary
    position_threshold: float = 0.1
    # Max pitch/yaw change per tick to count as stationary
    pitch_yaw_threshold: float = 0.05
    # Matching movement vectors needed to call it a forced-movement loop
    pattern_threshold: int = 5
    history_size: int = 25
    pattern_lookback: int = 6
    pattern_min_history: int = 8
    # Per-axis tolerance between two movement vectors
    pattern_diff_threshold: float = 0.01
    # Zero-length latest movement never counts as a pattern
    pattern_ignore_stationary: bool = True

    position_pool_enabled: bool = True
    position_pool_max_size: int = 500

    evict_absent_entities: bool = False
    thread_safe: bool = False

    @classmethod
    def from_dict(cls, data=None) -> "AFKConfig":
        """
        Build and validate a config from a mapping. Missing keys keep defaults.

        Raises:
            ConfigurationError: unknown keys, wrong types or bad relationships
        """
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"AFK config must be a mapping (got {type(data).__name__})")
        data = dict(data)
        known = {f.name: f for f in fields(cls)}

        unknown = sorted(set(data) - set(known))
        if unknown:
            raise ConfigurationError(f"Unknown AFK config keys: {', '.join(unknown)}")

        values = {}
        for name, value in data.items():
            default = known[name].default
            values[name] = _coerce(name, value, type(default))

        config = cls(**values)
        config.validate()
        return config

    def validate(self):
        """Check every threshold and the relationships between them."""
        if self.afk_threshold <= 0:
            raise ConfigurationError(f"afk_threshold must be > 0 (got {self.afk_threshold})")
        if self.pattern_threshold <= 0:
            raise ConfigurationError(f"pattern_threshold must be > 0 (got {self.pattern_threshold})")
        for name in ("position_threshold", "pitch_yaw_threshold", "pattern_diff_threshold"):
            value = getattr(self, name)
            if not math.isfinite(value) or value < 0:
                raise ConfigurationError(f"{name} must be a finite number >= 0 (got {value})")
        if self.pattern_lookback <= 0:
            raise ConfigurationError(f"pattern_lookback must be > 0 (got {self.pattern_lookback})")
        if self.history_size <= self.pattern_lookback + 1:
            raise ConfigurationError(
                f"history_size ({self.history_size}) must be > pattern_lookback + 1 "
                f"({self.pattern_lookback + 1})")
        if self.pattern_lookback > self.history_size - 2:
            raise ConfigurationError(
                f"pattern_lookback ({self.pattern_lookback}) must be <= history_size - 2 "
                f"({self.history_size - 2})")
        if self.pattern_min_history > self.history_size:
            raise ConfigurationError(
                f"pattern_min_history ({self.pattern_min_history}) must be <= history_size "
                f"({self.history_size})")
        if self.position_pool_max_size < 0:
            raise ConfigurationError(
                f"position_pool_max_size must be >= 0 (got {self.position_pool_max_size})")

    def to_dict(self):
        return asdict(self)


def _coerce(name, value, expected):
    if expected is bool:
        if not isinstance(value, bool):
            raise ConfigurationError(f"{name} must be true/false (got {value!r})")
        return value
    # bool is an int subclass; reject it for numeric options
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{name} must be numeric (got {value!r})")
    if not math.isfinite(value):
        raise ConfigurationError(f"{name} must be finite (got {value!r})")
    if expected is int:
        if isinstance(value, float) and not value.is_integer():
            raise ConfigurationError(f"{name} must be an integer (got {value!r})")
        return int(value)
    return float(value)


def load_system_config(path=None) -> dict:
    """Read the whole system.yaml as a dict (empty dict if the file is empty)."""
    path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    with open(path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}
    if not isinstance(cfg, dict):
        raise ConfigurationError(f"{path}: top level must be a mapping")
    return cfg


def load_afk_config(path=None) -> AFKConfig:
    """Load and validate the `afk:` section of system.yaml."""
    cfg = load_system_config(path)
    config = AFKConfig.from_dict(cfg.get("afk"))
    log.info("AFK config loaded: threshold=%d ticks, history=%d, lookback=%d, pool=%s",
             config.afk_threshold, config.history_size, config.pattern_lookback,
             "on" if config.position_pool_enabled else "off")
    return config
