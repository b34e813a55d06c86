"""Pydantic models for persisted projects and their stage records."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StageStatus(str, Enum):
    """Lifecycle of one stage: pending -> running -> completed | failed."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


class StageRecord(BaseModel):
    """Persisted state and output of one stage of a project."""

    number: int
    name: str = ""
    status: StageStatus = StageStatus.PENDING
    content: Optional[str] = Field(default=None, description="Full text produced by the stage")
    error: Optional[Dict[str, Any]] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)


class Project(BaseModel):
    """A planning project and the outputs of its stages."""

    id: str
    name: str
    description: str = ""
    idea: Optional[str] = Field(default=None, description="Raw project idea; falls back to description")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    stages: List[StageRecord] = Field(default_factory=list)

    def find_stage(self, number: int) -> Optional[StageRecord]:
        for record in self.stages:
            if record.number == number:
                return record
        return None

    def stage(self, number: int, name: str = "") -> StageRecord:
        """Return the record for ``number``, creating a pending one if needed."""
        record = self.find_stage(number)
        if record is None:
            record = StageRecord(number=number, name=name)
            self.stages.append(record)
            self.stages.sort(key=lambda r: r.number)
        return record

    def completed_stages(self) -> List[int]:
        return [r.number for r in self.stages if r.status == StageStatus.COMPLETED]

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

    @classmethod
    def from_json(cls, data: str) -> "Project":
        return cls.model_validate_json(data)
