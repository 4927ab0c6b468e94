from .registry import SourceScheduleRegistry

__all__ = ["SourceScheduleRegistry"]
