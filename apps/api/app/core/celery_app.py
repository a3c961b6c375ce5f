from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "wondrlab_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.workflows.tasks"],
)
celery_app.conf.timezone = "UTC"
celery_app.conf.beat_schedule = {
    "run-workflows": {
        "task": "app.workflows.run",
        "schedule": float(settings.workflow_interval_seconds),
    },
}
