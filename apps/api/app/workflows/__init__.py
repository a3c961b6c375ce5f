from app.workflows.escalation import EscalationResolver
from app.workflows.processors import OverdueTaskProcessor, WonOpportunityProcessor, hours_overdue
from app.workflows.scheduler import WorkflowScheduler
from app.workflows.schemas import EntityFailure, ProcessorResult, SchedulerStatusRead, WorkflowRunResult
from app.workflows.service import WorkflowRunError, WorkflowService, workflow_service

__all__ = [
    "EntityFailure",
    "EscalationResolver",
    "OverdueTaskProcessor",
    "ProcessorResult",
    "SchedulerStatusRead",
    "WonOpportunityProcessor",
    "WorkflowRunError",
    "WorkflowRunResult",
    "WorkflowScheduler",
    "WorkflowService",
    "hours_overdue",
    "workflow_service",
]
