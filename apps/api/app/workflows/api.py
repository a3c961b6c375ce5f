from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.core.auth import AuthUser
from app.core.config import get_settings
from app.core.database import get_db
from app.core.rbac import require_permissions
from app.workflows.schemas import SchedulerStatusRead, WorkflowRunResult
from app.workflows.service import WorkflowRunError, workflow_service


logger = logging.getLogger("app.workflows.api")

router = APIRouter(prefix="/api/workflows", tags=["workflows"])


@router.post("/run", response_model=WorkflowRunResult)
def run_workflows(
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("workflows.execute")),
) -> WorkflowRunResult:
    logger.info("workflow_run_requested", extra={"user_id": user.sub})
    try:
        return workflow_service.run_workflows(db)
    except WorkflowRunError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=exc.result.model_dump(mode="json"),
        ) from exc


@router.get("/status", response_model=SchedulerStatusRead)
def get_workflow_status(
    request: Request,
    user: AuthUser = Depends(require_permissions("workflows.read")),
) -> SchedulerStatusRead:
    settings = get_settings()
    scheduler = getattr(request.app.state, "workflow_scheduler", None)
    if scheduler is None:
        return SchedulerStatusRead(
            backend=settings.workflow_scheduler_backend,
            enabled=settings.workflow_scheduler_enabled,
            running=False,
            interval_seconds=float(settings.workflow_interval_seconds),
        )
    return SchedulerStatusRead(
        backend=settings.workflow_scheduler_backend,
        enabled=settings.workflow_scheduler_enabled,
        **scheduler.status(),
    )
