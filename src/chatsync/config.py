from __future__ import annotations

import os
from dataclasses import dataclass, fields


@dataclass(frozen=True)
class SyncConfig:
    steady_interval_ms: int = 3000
    fast_interval_ms: int = 1000
    failure_interval_ms: int = 5000
    failure_jitter_ms: int = 1000
    min_interval_ms: int = 500
    max_interval_ms: int = 6000
    burst_cycles: int = 3
    history_page_size: int = 100
    backfill_page_size: int = 150
    recent_window_ms: int = 10 * 60 * 1000
    cycle_timeout_s: float = 30.0
    max_payload_bytes: int = 64 * 1024

    @property
    def failure_bounds_ms(self) -> tuple[int, int]:
        low = max(self.min_interval_ms, self.failure_interval_ms - self.failure_jitter_ms)
        high = min(self.max_interval_ms, self.failure_interval_ms + self.failure_jitter_ms)
        return low, high

    def validate(self) -> "SyncConfig":
        if self.min_interval_ms <= 0:
            raise ValueError("min_interval_ms must be positive")
        if self.min_interval_ms > self.max_interval_ms:
            raise ValueError("min_interval_ms must not exceed max_interval_ms")
        if not self.min_interval_ms <= self.fast_interval_ms <= self.max_interval_ms:
            raise ValueError("fast_interval_ms must lie within [min_interval_ms, max_interval_ms]")
        if not self.min_interval_ms <= self.steady_interval_ms <= self.max_interval_ms:
            raise ValueError("steady_interval_ms must lie within [min_interval_ms, max_interval_ms]")
        low, high = self.failure_bounds_ms
        if low > high:
            raise ValueError("failure_interval_ms +/- failure_jitter_ms falls outside [min, max]")
        if self.history_page_size < 1 or self.backfill_page_size < 1:
            raise ValueError("page sizes must be positive")
        if self.cycle_timeout_s <= 0:
            raise ValueError("cycle_timeout_s must be positive")
        return self


_ENV_PREFIX = "CHATSYNC_"


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_positive_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def load_sync_config_from_env() -> SyncConfig:
    """Build a :class:`SyncConfig` from ``CHATSYNC_*`` variables.

    ``CHATSYNC_STEADY_INTERVAL_MS`` overrides ``steady_interval_ms`` and so on;
    unset or empty variables keep the defaults.
    """

    defaults = SyncConfig()
    values: dict[str, object] = {}
    for item in fields(SyncConfig):
        env_name = _ENV_PREFIX + item.name.upper()
        default = getattr(defaults, item.name)
        if isinstance(default, float):
            values[item.name] = _parse_positive_float(env_name, default)
        else:
            values[item.name] = _parse_non_negative_int(env_name, default)
    return SyncConfig(**values).validate()
