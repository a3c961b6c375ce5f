from __future__ import annotations

import logging
from typing import Any

from app.core import database
from app.core.celery_app import celery_app
from app.workflows.service import WorkflowRunError, workflow_service


logger = logging.getLogger("app.workflows.tasks")


@celery_app.task(name="app.workflows.run")
def run_workflows_task() -> dict[str, Any]:
    session = database.SessionLocal()
    try:
        result = workflow_service.run_workflows(session)
    except WorkflowRunError as exc:
        logger.error("workflow_task_failed", extra={"run_id": str(exc.result.run_id), "status": exc.result.status})
        return exc.result.model_dump(mode="json")
    finally:
        session.close()
    return result.model_dump(mode="json")
