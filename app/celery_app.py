from celery import Celery

from app.logging import configure_logging
from app.services.scheduler_config import build_beat_schedule, get_celery_config
from app.telemetry import setup_otel

configure_logging()

celery_app = Celery("billing_sync", include=["app.tasks"])
celery_app.conf.update(get_celery_config())
celery_app.conf.beat_schedule = build_beat_schedule()
celery_app.conf.task_acks_late = True
celery_app.conf.worker_prefetch_multiplier = 1

setup_otel()
