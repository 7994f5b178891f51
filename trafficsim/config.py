"""
Simulator configuration
=======================
Dataclass configuration groups with JSON file loading and environment
overrides.

Example config.json::

    {
        "http": {"base_url": "http://localhost:3001", "max_retries": 2},
        "traffic": {"concurrency_limit": 20, "time_scale": 0.5, "seed": 42},
        "failures": {"cascade_stage_interval": 5.0}
    }
"""

import json
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Union

from trafficsim.errors import ConfigError

TRAFFIC_TIMINGS = ("steady", "peak", "low", "burst", "normal")


@dataclass
class HttpConfig:
    """Collaborator HTTP API settings."""
    base_url: str = "http://localhost:3001"
    timeout: float = 10.0
    max_retries: int = 2
    retry_backoff_ms: int = 1000  # Linear: attempt * backoff
    retry_jitter: float = 0.5
    synthetic_error_rate: float = 0.05  # First-attempt only
    request_source: str = "virtual-traffic-simulator"


@dataclass
class PaymentConfig:
    """Payment simulation odds. Chosen for demo realism, not modelled."""
    base_success_rate: float = 0.95
    large_order_threshold: float = 100.0
    very_large_order_threshold: float = 200.0
    large_order_penalty: float = 0.05
    card_type_penalties: Dict[str, float] = field(
        default_factory=lambda: {"amex": 0.02, "discover": 0.01}
    )
    retry_probability: float = 0.6
    retry_success_rate: float = 0.7


@dataclass
class TrafficConfig:
    """Virtual user pool settings."""
    concurrency_limit: int = 10
    bounce_rate: float = 0.0
    time_scale: float = 1.0  # Multiplies every simulated delay; 0 disables waiting
    seed: Optional[int] = None
    # Continuous mode
    target_concurrent_users: int = 5
    spawn_interval_min: float = 30.0  # Seconds, before timing adjustment
    spawn_interval_max: float = 120.0
    traffic_timing: str = "steady"
    burst_spawn_interval: float = 0.5  # Gap between initial burst spawns


@dataclass
class FailureConfig:
    """Failure scenario timing and thresholds."""
    min_duration: int = 10
    max_duration: int = 300
    max_connections: int = 3
    pool_queue_interval: float = 2.0
    queue_overflow_threshold: int = 10
    payment_retry_interval: float = 5.0
    memory_leak_interval: float = 1.0
    leak_block_bytes: int = 10 * 1024 * 1024
    heap_budget_bytes: int = 512 * 1024 * 1024
    gc_pressure_every: int = 10
    cascade_stage_interval: float = 5.0


@dataclass
class SimulatorConfig:
    """Top-level configuration."""
    http: HttpConfig = field(default_factory=HttpConfig)
    payment: PaymentConfig = field(default_factory=PaymentConfig)
    traffic: TrafficConfig = field(default_factory=TrafficConfig)
    failures: FailureConfig = field(default_factory=FailureConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SimulatorConfig":
        sections = {f.name: f for f in fields(cls)}
        unknown = set(data) - set(sections)
        if unknown:
            raise ConfigError(f"Unknown config sections: {', '.join(sorted(unknown))}")

        config = cls()
        for name, values in data.items():
            if not isinstance(values, dict):
                raise ConfigError(f"Section '{name}' must be an object")
            current = getattr(config, name)
            allowed = {f.name for f in fields(current)}
            bad = set(values) - allowed
            if bad:
                raise ConfigError(f"Unknown keys in '{name}': {', '.join(sorted(bad))}")
            setattr(config, name, replace(current, **values))
        config.validate()
        return config

    def with_env(self, environ: Optional[Dict[str, str]] = None) -> "SimulatorConfig":
        """Apply TRAFFICSIM_* environment overrides."""
        env = os.environ if environ is None else environ
        http, traffic = self.http, self.traffic
        try:
            if "TRAFFICSIM_BASE_URL" in env:
                http = replace(http, base_url=env["TRAFFICSIM_BASE_URL"])
            if "TRAFFICSIM_TIME_SCALE" in env:
                traffic = replace(traffic, time_scale=float(env["TRAFFICSIM_TIME_SCALE"]))
            if "TRAFFICSIM_SEED" in env:
                traffic = replace(traffic, seed=int(env["TRAFFICSIM_SEED"]))
        except ValueError as e:
            raise ConfigError(f"Invalid environment override: {e}") from e
        config = replace(self, http=http, traffic=traffic)
        config.validate()
        return config

    @classmethod
    def from_env(cls) -> "SimulatorConfig":
        return cls().with_env()

    def validate(self):
        if self.traffic.concurrency_limit < 1:
            raise ConfigError("traffic.concurrency_limit must be >= 1")
        if self.traffic.time_scale < 0:
            raise ConfigError("traffic.time_scale must be >= 0")
        if not 0 <= self.traffic.bounce_rate <= 1:
            raise ConfigError("traffic.bounce_rate must be within 0..1")
        if self.traffic.target_concurrent_users < 1:
            raise ConfigError("traffic.target_concurrent_users must be >= 1")
        if not 0 < self.traffic.spawn_interval_min <= self.traffic.spawn_interval_max:
            raise ConfigError("traffic.spawn_interval_min must be positive and <= spawn_interval_max")
        if self.traffic.burst_spawn_interval < 0:
            raise ConfigError("traffic.burst_spawn_interval must be >= 0")
        if self.traffic.traffic_timing not in TRAFFIC_TIMINGS:
            raise ConfigError(f"traffic.traffic_timing must be one of: {', '.join(TRAFFIC_TIMINGS)}")
        if self.http.max_retries < 0:
            raise ConfigError("http.max_retries must be >= 0")
        for name in ("base_success_rate", "retry_probability", "retry_success_rate"):
            value = getattr(self.payment, name)
            if not 0 <= value <= 1:
                raise ConfigError(f"payment.{name} must be within 0..1")
        if self.failures.min_duration > self.failures.max_duration:
            raise ConfigError("failures.min_duration exceeds failures.max_duration")
        if self.failures.heap_budget_bytes <= 0:
            raise ConfigError("failures.heap_budget_bytes must be positive")


def load_config(path: Optional[Union[str, Path]] = None) -> SimulatorConfig:
    """Load configuration from a JSON file (if given) plus environment overrides."""
    if path is None:
        return SimulatorConfig.from_env()

    try:
        data = json.loads(Path(path).read_text())
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return SimulatorConfig.from_dict(data).with_env()
