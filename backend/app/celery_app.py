from __future__ import annotations

import logging

from celery import Celery

from app.core.config import settings


logger = logging.getLogger(__name__)

BROKER_CONFIGURED = bool(settings.CELERY_BROKER_URL)

celery_app = Celery("session-maintenance", include=["app.tasks.maintenance"])

if BROKER_CONFIGURED:
    broker_url = settings.CELERY_BROKER_URL
else:
    broker_url = "memory://"
    logger.warning("CELERY_BROKER_URL is not configured; Celery will run in in-memory mode.")

celery_app.conf.update(
    broker_url=broker_url,
    result_backend=None,
    task_default_queue="maintenance-tasks",
    task_serializer="json",
    accept_content=["json"],
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    broker_connection_retry_on_startup=True,
    timezone="UTC",
    enable_utc=True,
)

# Two independent periodic jobs; intervals come from settings.
celery_app.conf.beat_schedule = {
    "sweep-expired-refresh-tokens": {
        "task": "maintenance.sweep_expired_refresh_tokens",
        "schedule": float(settings.TOKEN_CLEANUP_INTERVAL_SECONDS),
    },
    "monitor-token-security": {
        "task": "maintenance.monitor_token_security",
        "schedule": float(settings.SECURITY_MONITOR_INTERVAL_SECONDS),
    },
}

