from celery import Celery

from crm_automation.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "crm_automation",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["crm_automation.automation.tasks"],
)
celery_app.conf.task_acks_late = True
celery_app.conf.task_serializer = "json"
celery_app.conf.accept_content = ["json"]
