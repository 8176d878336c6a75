"""Celery application for escrow and proof reconciliation.

Run with ``celery -A marketplace.workers worker -B``.
"""

import asyncio

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging as celery_setup_logging

from marketplace.core.config import settings
from marketplace.core.logging_config import setup_logging

_loop = None


def worker_loop() -> asyncio.AbstractEventLoop:
    """One event loop per worker process.

    The asyncpg pool binds to the loop it was created on, so every task
    in the process must run on this loop.
    """
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop


@celery_setup_logging.connect
def _configure_worker_logging(**kwargs) -> None:
    setup_logging()


celery_app = Celery(
    "marketplace_worker",
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
    worker_hijack_root_logger=False,
    beat_schedule={
        # Webhooks are the primary path; polling covers missed deliveries
        "sync-escrow-payments-60s": {
            "task": "sync_escrow_payments",
            "schedule": 60.0,
        },
        "reconcile-escrow-intents-15m": {
            "task": "reconcile_escrow_intents",
            "schedule": crontab(minute="*/15"),
        },
        "reconcile-proof-flags-hourly": {
            "task": "reconcile_proof_flags",
            "schedule": crontab(minute=5),
        },
    },
)

import marketplace.workers.monitor_escrow  # noqa: F401, E402
import marketplace.workers.proof_flags  # noqa: F401, E402
