"""Celery application used by the campaign scheduler to trigger maintenance runs."""

from celery import Celery

from sendlists.config import get_settings

settings = get_settings()

celery_app = Celery(
    "sendlists",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["sendlists.tasks.maintenance_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)
