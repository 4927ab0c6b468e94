"""Queue depth snapshot read at admission time; never persisted."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping


@dataclass(slots=True)
class StageDepth:
    waiting: int = 0
    active: int = 0
    delayed: int = 0

    @property
    def backlog(self) -> int:
        return self.waiting + self.active

    def to_dict(self) -> Dict[str, int]:
        return {"waiting": self.waiting, "active": self.active, "delayed": self.delayed}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "StageDepth":
        payload = payload or {}
        return cls(
            waiting=int(payload.get("waiting") or 0),
            active=int(payload.get("active") or 0),
            delayed=int(payload.get("delayed") or 0),
        )


@dataclass(slots=True)
class QueueDepthSnapshot:
    execution: StageDepth = field(default_factory=StageDepth)
    processing: StageDepth = field(default_factory=StageDepth)

    @property
    def total_backlog(self) -> int:
        return self.execution.backlog + self.processing.backlog

    def to_dict(self) -> Dict[str, Dict[str, int]]:
        return {"execution": self.execution.to_dict(), "processing": self.processing.to_dict()}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "QueueDepthSnapshot":
        return cls(
            execution=StageDepth.from_dict(payload.get("execution")),
            processing=StageDepth.from_dict(payload.get("processing")),
        )


@dataclass(slots=True)
class CollectionJob:
    """Work item handed to the downstream execution queue."""

    job_type: str
    source_id: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"job_type": self.job_type, "source_id": self.source_id, "payload": dict(self.payload)}


__all__ = ["StageDepth", "QueueDepthSnapshot", "CollectionJob"]
