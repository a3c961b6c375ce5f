from contextlib import asynccontextmanager, contextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.database import SessionLocal, get_db
from app.crm.seed import init_default_business_units
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel
from app.workflows.schemas import WorkflowRunResult
from app.workflows.scheduler import WorkflowScheduler
from app.workflows.service import workflow_service
from app.workflows.tasks import run_workflows_task


configure_logging()
logger = logging.getLogger("app.lifecycle")


@contextmanager
def _workflow_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def run_scheduled_workflows() -> WorkflowRunResult:
    with _workflow_session_scope() as session:
        return workflow_service.run_workflows(session)


def _enqueue_startup_run() -> None:
    # Beat only fires after one full interval, so the first run is queued here.
    try:
        run_workflows_task.delay()
    except Exception as exc:
        logger.exception("workflow_startup_enqueue_failed", extra={"error": str(exc)[:500]})
    else:
        logger.info("workflow_startup_run_enqueued", extra={"reason": "celery"})


def _seed_business_units() -> None:
    try:
        with _workflow_session_scope() as session:
            init_default_business_units(session)
    except Exception as exc:
        logger.exception("default_business_units_seed_failed", extra={"error": str(exc)[:500]})


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.seed_default_business_units:
        _seed_business_units()

    scheduler: WorkflowScheduler | None = None
    if settings.workflow_scheduler_enabled and settings.workflow_scheduler_backend == "thread":
        scheduler = WorkflowScheduler(
            run_scheduled_workflows,
            settings.workflow_interval_seconds,
            run_on_start=settings.workflow_run_on_startup,
        )
        scheduler.start()
    elif settings.workflow_scheduler_enabled:
        logger.info("workflow_scheduler_delegated", extra={"reason": settings.workflow_scheduler_backend})
        if settings.workflow_run_on_startup:
            _enqueue_startup_run()
    app.state.workflow_scheduler = scheduler

    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()
        app.state.workflow_scheduler = None


app = FastAPI(title="Wondrlab API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
