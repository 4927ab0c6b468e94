"""Runtime settings for scheduling and on-demand admission."""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Set

from dotenv import load_dotenv

from collector.core.config import Config
from collector.core.errors import ConfigError

load_dotenv()


def _resolve(
    overrides: Mapping[str, Any],
    section: Mapping[str, Any],
    key: str,
    env_var: str,
    default: Any,
    cast: Callable[[Any], Any],
    *,
    section_name: str,
) -> Any:
    if key in overrides and overrides[key] is not None:
        raw = overrides[key]
    elif os.getenv(env_var) not in (None, ""):
        raw = os.getenv(env_var)
    elif section.get(key) is not None:
        raw = section.get(key)
    else:
        raw = default
    try:
        return cast(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value for {key}: {raw!r}", key=key, section=section_name) from exc


def _load_section(name: str) -> Dict[str, Any]:
    try:
        section = Config.get(name, default={})
    except FileNotFoundError:
        return {}
    return section if isinstance(section, dict) else {}


class SchedulingSettings:
    """Safety-buffer interval and chronological retry tuning."""

    def __init__(self, **overrides: Any) -> None:
        section = _load_section("scheduling")

        def pick(key: str, env_var: str, default: Any, cast: Callable[[Any], Any]) -> Any:
            return _resolve(overrides, section, key, env_var, default, cast, section_name="scheduling")

        self.safety_buffer_items: float = pick("safety_buffer_items", "COLLECTOR_SAFETY_BUFFER_ITEMS", 750, float)
        self.min_interval_days: float = pick("min_interval_days", "COLLECTOR_MIN_INTERVAL_DAYS", 7, float)
        self.max_interval_days: float = pick("max_interval_days", "COLLECTOR_MAX_INTERVAL_DAYS", 60, float)
        self.smoothing_weight: float = pick("smoothing_weight", "COLLECTOR_SMOOTHING_WEIGHT", 0.3, float)
        self.default_items_per_day: float = pick(
            "default_items_per_day", "COLLECTOR_DEFAULT_ITEMS_PER_DAY", 20, float
        )
        self.retry_base_seconds: float = pick("retry_base_seconds", "COLLECTOR_RETRY_BASE_SECONDS", 5, float)
        self.retry_factor: float = pick("retry_factor", "COLLECTOR_RETRY_FACTOR", 2, float)
        self.retry_max_seconds: float = pick("retry_max_seconds", "COLLECTOR_RETRY_MAX_SECONDS", 3600, float)
        self.tick_seconds: int = pick("tick_seconds", "COLLECTOR_TICK_SECONDS", 60, int)

        rates = overrides.get("default_source_rates")
        if rates is None:
            rates = section.get("default_source_rates") or {}
        self.default_source_rates: Dict[str, float] = {str(k): float(v) for k, v in dict(rates).items()}

        self.validate()

    def validate(self) -> None:
        if self.safety_buffer_items <= 0:
            raise ConfigError("safety_buffer_items must be positive", key="safety_buffer_items", section="scheduling")
        if self.min_interval_days <= 0 or self.max_interval_days < self.min_interval_days:
            raise ConfigError(
                "interval bounds must satisfy 0 < min_interval_days <= max_interval_days",
                key="min_interval_days",
                section="scheduling",
            )
        if not 0.0 < self.smoothing_weight <= 1.0:
            raise ConfigError("smoothing_weight must be in (0, 1]", key="smoothing_weight", section="scheduling")
        if self.default_items_per_day <= 0:
            raise ConfigError(
                "default_items_per_day must be positive", key="default_items_per_day", section="scheduling"
            )

    def default_rate_for(self, source_id: str) -> float:
        rate = self.default_source_rates.get(source_id)
        if rate is not None and rate > 0:
            return rate
        return self.default_items_per_day


class OnDemandSettings:
    """Admission thresholds, cooldowns and ledger maintenance options."""

    def __init__(self, **overrides: Any) -> None:
        section = _load_section("on_demand")

        def pick(key: str, env_var: str, default: Any, cast: Callable[[Any], Any]) -> Any:
            return _resolve(overrides, section, key, env_var, default, cast, section_name="on_demand")

        self.max_requests_per_batch: int = max(
            pick("max_requests_per_batch", "ON_DEMAND_MAX_PER_BATCH", 5, int), 1
        )
        self.max_immediate_waiting: int = pick("max_immediate_waiting", "ON_DEMAND_MAX_IMMEDIATE_WAITING", 3, int)
        self.max_immediate_active: int = pick("max_immediate_active", "ON_DEMAND_MAX_IMMEDIATE_ACTIVE", 1, int)
        self.max_processing_backlog: int = pick(
            "max_processing_backlog", "ON_DEMAND_MAX_PROCESSING_BACKLOG", 10, int
        )
        self.instant_cooldown_ms: int = max(
            pick("instant_cooldown_ms", "ON_DEMAND_INSTANT_COOLDOWN_MS", 5 * 60 * 1000, int), 0
        )
        self.estimated_job_minutes: int = max(
            pick("estimated_job_minutes", "ON_DEMAND_ESTIMATED_JOB_MINUTES", 120, int), 1
        )
        self.success_cooldown_days: float = pick(
            "success_cooldown_days", "ON_DEMAND_SUCCESS_COOLDOWN_DAYS", 7, float
        )
        self.no_results_cooldown_days: float = pick(
            "no_results_cooldown_days", "ON_DEMAND_NO_RESULTS_COOLDOWN_DAYS", 60, float
        )
        self.error_cooldown_max_seconds: float = pick(
            "error_cooldown_max_seconds", "ON_DEMAND_ERROR_COOLDOWN_MAX_SECONDS", 24 * 60 * 60, float
        )
        self.source_timeout_seconds: float = pick(
            "source_timeout_seconds", "ON_DEMAND_SOURCE_TIMEOUT_SECONDS", 300, float
        )
        self.stale_after_seconds: float = pick("stale_after_seconds", "ON_DEMAND_STALE_AFTER_SECONDS", 6 * 60 * 60, float)
        self.requester_retention_days: int = pick(
            "requester_retention_days", "ON_DEMAND_REQUESTER_RETENTION_DAYS", 90, int
        )
        self.history_limit: int = max(pick("history_limit", "ON_DEMAND_HISTORY_LIMIT", 20, int), 1)

        stop_words = overrides.get("stop_words")
        if stop_words is None:
            stop_words = section.get("stop_words") or []
        self.stop_words: Set[str] = _normalise_words(stop_words)

    @property
    def instant_cooldown_seconds(self) -> float:
        return self.instant_cooldown_ms / 1000.0

    @property
    def estimated_job_seconds(self) -> float:
        return self.estimated_job_minutes * 60.0


def _normalise_words(words: Iterable[str]) -> Set[str]:
    return {str(word).strip().lower() for word in words if str(word).strip()}


@lru_cache(maxsize=1)
def get_scheduling_settings() -> SchedulingSettings:
    """Return cached scheduling settings instance."""

    return SchedulingSettings()


@lru_cache(maxsize=1)
def get_on_demand_settings() -> OnDemandSettings:
    """Return cached on-demand settings instance."""

    return OnDemandSettings()


def get_database_url(default: Optional[str] = None) -> Optional[str]:
    return os.getenv("DATABASE_URL") or default


__all__ = [
    "SchedulingSettings",
    "OnDemandSettings",
    "get_scheduling_settings",
    "get_on_demand_settings",
    "get_database_url",
]
