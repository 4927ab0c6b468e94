"""Interval, cooldown and admission helpers for scheduled and on-demand collection."""

from .budget import BatchBudget
from .cooldown import BASE_BACKOFF_SECONDS, MAX_BACKOFF_SECONDS, cooldown_for_outcome, is_in_cooldown, next_delay
from .decision import AdmissionDecision, evaluate_cooldown, evaluate_queue_depth
from .policy import IntervalCalculation, compute_interval, smooth_rate

__all__ = [
    "BatchBudget",
    "BASE_BACKOFF_SECONDS",
    "MAX_BACKOFF_SECONDS",
    "cooldown_for_outcome",
    "is_in_cooldown",
    "next_delay",
    "AdmissionDecision",
    "evaluate_cooldown",
    "evaluate_queue_depth",
    "IntervalCalculation",
    "compute_interval",
    "smooth_rate",
]
