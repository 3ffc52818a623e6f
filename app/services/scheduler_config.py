import logging
import os
from datetime import timedelta

from celery.schedules import crontab

logger = logging.getLogger(__name__)


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_int(name: str) -> int | None:
    raw = _env_value(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return None


def get_celery_config() -> dict:
    broker = (
        _env_value("CELERY_BROKER_URL")
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/0"
    )
    backend = (
        _env_value("CELERY_RESULT_BACKEND")
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/1"
    )
    timezone = _env_value("CELERY_TIMEZONE") or "UTC"
    config = {"broker_url": broker, "result_backend": backend, "timezone": timezone}
    config["beat_max_loop_interval"] = _env_int("CELERY_BEAT_MAX_LOOP_INTERVAL") or 5
    return config


def build_beat_schedule() -> dict:
    """Cadence of the billing jobs. Cron entries are in UTC."""
    return {
        "billing_subscription_sync": {
            "task": "app.tasks.sync_subscriptions",
            "schedule": timedelta(hours=6),
        },
        "billing_invoice_sync": {
            "task": "app.tasks.sync_pending_invoices",
            "schedule": timedelta(minutes=30),
        },
        "billing_usage_forward": {
            "task": "app.tasks.forward_usage",
            "schedule": timedelta(minutes=5),
        },
        "billing_reconcile": {
            "task": "app.tasks.reconcile",
            "schedule": crontab(hour=2, minute=0),
            "kwargs": {"entity": "subscriptions"},
        },
        "billing_cleanup": {
            "task": "app.tasks.cleanup",
            "schedule": crontab(hour=3, minute=0, day_of_week=0),
        },
        "billing_health_check": {
            "task": "app.tasks.check_health",
            "schedule": timedelta(minutes=10),
        },
        "billing_checkout_expiry": {
            "task": "app.tasks.expire_checkouts",
            "schedule": timedelta(minutes=15),
        },
    }
