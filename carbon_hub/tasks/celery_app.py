from celery import Celery
from celery.schedules import crontab

from carbon_hub.core.config import settings

celery_app = Celery(
    "carbon_hub",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
)

# Celery Beat schedule: hourly cache maintenance.
# The sweep runs first so the refresh does not count stale entries.
celery_app.conf.beat_schedule = {
    "sweep-expired-cache": {
        "task": "sweep_expired_cache",
        "schedule": crontab(minute=0),  # every hour at :00
    },
    "warm-cache": {
        "task": "warm_cache",
        "schedule": crontab(minute=5),  # every hour at :05
    },
}

celery_app.conf.include = [
    "carbon_hub.tasks.cache_tasks",
]
