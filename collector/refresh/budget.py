"""Per-pass budget controller for reconciliation and dispatch loops."""

from __future__ import annotations


class BatchBudget:
    def __init__(self, max_items: int) -> None:
        if max_items < 0:
            raise ValueError("max_items must be non-negative")
        self.limit = max_items
        self.remaining = max_items

    def allow(self) -> bool:
        return self.remaining > 0

    def consume(self) -> None:
        if not self.allow():
            raise RuntimeError("Budget exceeded")
        self.remaining -= 1

    @property
    def used(self) -> int:
        return self.limit - self.remaining


__all__ = ["BatchBudget"]
