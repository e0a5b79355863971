from celery import Celery

from .config import get_settings
from .logging import configure_logging

settings = get_settings()
configure_logging()

celery_app = Celery(
    "writing_desk",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_routes={"app.services.research_tasks.*": {"queue": "research"}},
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # Submission must not be lost if a worker dies mid-call
    task_acks_late=True,
    imports=("app.services.research_tasks",),
    beat_schedule={
        # Reconcile in-flight research runs even when no client is polling
        "refresh-active-research": {
            "task": "app.services.research_tasks.refresh_active_research",
            "schedule": float(settings.RESEARCH_REFRESH_INTERVAL_SECONDS),
        },
    },
)
