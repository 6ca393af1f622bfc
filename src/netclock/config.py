"""
netclock configuration.

Defaults cover every tunable of the associations and the network clock. A YAML
file can override them from its ``network_clock`` section:

    network_clock:
      servers:
        - time.cloudflare.com
        - time.google.com:123
      timeout_seconds: 2.0
      poll_interval_min: 4.0
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

logger = logging.getLogger(__name__)

DEFAULT_SERVERS: List[str] = [
    "time.apple.com",
    "time.google.com",
    "time.cloudflare.com",
    "0.pool.ntp.org",
    "1.pool.ntp.org",
]

CONFIG_SECTION = "network_clock"


@dataclass
class NetworkClockConfig:
    """Tunables for ServerAssociation and NetworkClock."""
    servers: List[str] = field(default_factory=lambda: list(DEFAULT_SERVERS))
    port: int = 123  # Used when a server address has no ":port" suffix
    ntp_version: int = 3

    # Exchange
    timeout_seconds: float = 2.0
    max_delay: float = 1.0  # Samples with a larger round trip are rejected
    history_size: int = 8
    failure_threshold: int = 3  # Consecutive rejections before unreachable

    # Poll schedule
    poll_interval_min: float = 4.0
    poll_interval_max: float = 256.0
    stable_jitter: float = 0.050  # Offset spread under which polling backs off

    # Quality and aggregation
    quality_floor: float = 0.001
    outlier_mad_multiplier: float = 3.0
    outlier_min_threshold: float = 0.003
    notify_epsilon: float = 0.0001

    # Lifecycle
    startup_timeout: float = 8.0
    hold_offset_when_unreachable: bool = True

    def validate(self) -> "NetworkClockConfig":
        """Raise ValueError for settings the clock cannot run with."""
        if self.history_size < 1:
            raise ValueError(f"history_size must be >= 1, got {self.history_size}")
        if self.failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {self.failure_threshold}")
        for name in ("timeout_seconds", "max_delay", "poll_interval_min",
                     "poll_interval_max", "startup_timeout", "quality_floor"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.poll_interval_min > self.poll_interval_max:
            raise ValueError(f"poll_interval_min ({self.poll_interval_min}) is larger than "
                             f"poll_interval_max ({self.poll_interval_max})")
        if self.notify_epsilon < 0 or self.outlier_min_threshold < 0 or self.outlier_mad_multiplier <= 0:
            raise ValueError("aggregation thresholds must be non-negative")
        if not 1 <= self.port <= 65535:
            raise ValueError(f"port out of range: {self.port}")
        return self

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "NetworkClockConfig":
        """Build a config from a mapping, ignoring unknown keys."""
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            logger.warning(f"[CONFIG] Ignoring unknown keys: {', '.join(unknown)}")

        kwargs: Dict[str, Any] = {k: v for k, v in values.items() if k in known}
        if "servers" in kwargs:
            kwargs["servers"] = [str(s) for s in kwargs["servers"] or []]
        return cls(**kwargs).validate()


def load_config(config_path: Union[str, Path], section: Optional[str] = CONFIG_SECTION) -> NetworkClockConfig:
    """Load configuration from a YAML file."""
    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except Exception as e:
        logger.error(f"Failed to load config {config_path}: {e}")
        raise

    if not isinstance(data, Mapping):
        raise ValueError(f"Config file {config_path} does not contain a mapping")
    if section:
        data = data.get(section) or {}
        if not isinstance(data, Mapping):
            raise ValueError(f"Config section '{section}' in {config_path} is not a mapping")

    logger.info(f"[CONFIG] Loaded {config_path} ({len(data)} keys)")
    return NetworkClockConfig.from_dict(data)
