import asyncio

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging as celery_setup_logging

from gigmarket.core.config import settings
from gigmarket.core.logging_config import setup_logging

_loop = None


def worker_loop() -> asyncio.AbstractEventLoop:
    """Return the event loop shared by every task in this worker process.

    The asyncpg pool is bound to the loop it was created on, so tasks must
    not each spin up their own.
    """
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop


@celery_setup_logging.connect
def _configure_worker_logging(**kwargs) -> None:
    setup_logging("worker")


celery_app = Celery(
    "gigmarket_worker",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "expire-unfunded-escrows-5m": {
            "task": "expire_unfunded_escrows",
            "schedule": crontab(minute="*/5"),
        },
        "auto-release-escrows-hourly": {
            "task": "auto_release_escrows",
            "schedule": crontab(minute=0, hour="*"),
        },
    },
)

# Import tasks so they are registered with the celery app
import gigmarket.workers.escrow_sweep  # noqa: F401, E402
