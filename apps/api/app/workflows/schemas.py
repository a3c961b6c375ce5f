from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field


RunStatus = Literal["succeeded", "partial", "failed"]


class EntityFailure(BaseModel):
    entity_type: str
    entity_id: UUID
    error: str


class ProcessorResult(BaseModel):
    processor: str
    status: RunStatus = "succeeded"
    scanned: int = 0
    processed: int = 0
    skipped: int = 0
    notifications_created: int = 0
    emails_sent: int = 0
    escalations: int = 0
    services_added: int = 0
    failures: list[EntityFailure] = Field(default_factory=list)
    error: str | None = None

    def record_failure(self, entity_type: str, entity_id: UUID, exc: BaseException) -> None:
        self.failures.append(EntityFailure(entity_type=entity_type, entity_id=entity_id, error=str(exc)[:2000]))

    def finalize(self) -> ProcessorResult:
        if self.error is not None:
            self.status = "failed"
        elif self.failures:
            self.status = "partial"
        return self


class WorkflowRunResult(BaseModel):
    run_id: UUID
    status: RunStatus
    started_at: datetime
    finished_at: datetime
    overdue_tasks: ProcessorResult
    won_opportunities: ProcessorResult


class SchedulerStatusRead(BaseModel):
    backend: str
    enabled: bool
    running: bool
    interval_seconds: float
    runs_started: int = 0
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_status: str | None = None
    last_error: str | None = None
