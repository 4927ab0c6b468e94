"""Cooldown and backoff rules that keep failing work from hammering the pipeline."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from collector.settings import OnDemandSettings
from models.request import (
    OUTCOME_ERROR,
    OUTCOME_NO_ACTIVE_SOURCES,
    OUTCOME_NO_RESULTS,
    OUTCOME_SUCCESS,
)

MAX_BACKOFF_SECONDS = 24 * 60 * 60  # 24 hours
BASE_BACKOFF_SECONDS = 5 * 60  # 5 minutes
BACKOFF_FACTOR = 2.0


def next_delay(
    attempt: int,
    *,
    base: float = BASE_BACKOFF_SECONDS,
    factor: float = BACKOFF_FACTOR,
    cap: float = MAX_BACKOFF_SECONDS,
) -> float:
    """Return ``min(base * factor ** attempt, cap)`` seconds; attempt 0 waits ``base``."""

    attempt = max(int(attempt), 0)
    try:
        delay = base * (factor ** attempt)
    except OverflowError:
        return cap
    return min(delay, cap)


def is_in_cooldown(*, until: Optional[datetime], now: datetime) -> bool:
    return until is not None and now < until


def cooldown_for_outcome(
    outcome: str,
    settings: OnDemandSettings,
    *,
    now: datetime,
    attempt: int = 0,
) -> Optional[datetime]:
    """Cooldown deadline applied when a request returns to ``pending``.

    ``no_active_sources`` gets none so the request is re-offered on the next
    reconciliation pass.
    """

    if outcome == OUTCOME_NO_ACTIVE_SOURCES:
        return None
    if outcome == OUTCOME_SUCCESS:
        seconds = settings.success_cooldown_days * 86400
    elif outcome == OUTCOME_NO_RESULTS:
        seconds = max(settings.no_results_cooldown_days * 86400, settings.instant_cooldown_seconds)
    elif outcome == OUTCOME_ERROR:
        seconds = next_delay(
            attempt,
            base=settings.instant_cooldown_seconds,
            cap=max(settings.error_cooldown_max_seconds, settings.instant_cooldown_seconds),
        )
    else:
        # deferred and unknown outcomes
        seconds = settings.instant_cooldown_seconds
    return now + timedelta(seconds=seconds)


__all__ = [
    "next_delay",
    "is_in_cooldown",
    "cooldown_for_outcome",
    "MAX_BACKOFF_SECONDS",
    "BASE_BACKOFF_SECONDS",
    "BACKOFF_FACTOR",
]
