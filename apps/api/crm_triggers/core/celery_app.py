from celery import Celery

from crm_triggers.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "crm_triggers",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["crm_triggers.tasks"],
)
celery_app.conf.task_ignore_result = True
