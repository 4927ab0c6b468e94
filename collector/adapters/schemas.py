from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from models.queue import QueueDepthSnapshot, StageDepth


class StageDepthRead(BaseModel):
    waiting: int = Field(default=0, ge=0)
    active: int = Field(default=0, ge=0)
    delayed: int = Field(default=0, ge=0)

    model_config = ConfigDict(extra="ignore")

    def to_model(self) -> StageDepth:
        return StageDepth(waiting=self.waiting, active=self.active, delayed=self.delayed)


class QueueDepthRead(BaseModel):
    execution: StageDepthRead = Field(default_factory=StageDepthRead)
    processing: StageDepthRead = Field(default_factory=StageDepthRead)

    model_config = ConfigDict(extra="ignore")

    def to_snapshot(self) -> QueueDepthSnapshot:
        return QueueDepthSnapshot(execution=self.execution.to_model(), processing=self.processing.to_model())


class JobCreate(BaseModel):
    job_type: str
    source_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class JobAccepted(BaseModel):
    job_id: Optional[str] = None
    status: Optional[str] = None

    model_config = ConfigDict(extra="ignore")
