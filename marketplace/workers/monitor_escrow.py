"""Celery tasks that reconcile local escrow state with the payment gateway."""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from marketplace.core.config import settings
from marketplace.db.session import async_session_factory
from marketplace.workers import celery_app, worker_loop

logger = logging.getLogger(__name__)


@celery_app.task(name="sync_escrow_payments", bind=True, max_retries=3, default_retry_delay=60)
def sync_escrow_payments(self):
    """Poll payment_pending campaigns and apply succeeded/canceled intents."""
    try:
        worker_loop().run_until_complete(_sync_payments())
    except Exception as exc:
        logger.exception("sync_escrow_payments failed")
        raise self.retry(exc=exc)


@celery_app.task(name="reconcile_escrow_intents", bind=True, max_retries=3, default_retry_delay=120)
def reconcile_escrow_intents(self):
    """Restamp campaigns whose funding record was lost after the intent was created."""
    try:
        worker_loop().run_until_complete(_reconcile_intents())
    except Exception as exc:
        logger.exception("reconcile_escrow_intents failed")
        raise self.retry(exc=exc)


async def _sync_payments(service=None) -> int:
    from marketplace.models.campaign import Campaign
    from marketplace.services.escrow import EscrowService

    svc = service or EscrowService()
    if not svc.client.configured:
        logger.warning("Skipping escrow sync: gateway not configured")
        return 0

    async with async_session_factory() as db:
        result = await db.execute(
            select(Campaign).where(
                Campaign.escrow_status == "payment_pending",
                Campaign.payment_intent_id.is_not(None),
            )
        )
        pending = list(result.scalars().all())
        if not pending:
            return 0

        logger.info("Syncing %d pending escrow payments", len(pending))
        synced = 0
        for campaign in pending:
            try:
                state = await svc.sync_pending_payment(db, campaign)
                synced += 1
                logger.debug("Campaign %s intent state %s", campaign.id, state)
            except Exception:
                logger.exception("Error syncing escrow payment for campaign %s", campaign.id)
        return synced


async def _reconcile_intents(service=None, now: datetime | None = None) -> int:
    from marketplace.services.escrow import ESCROW_METADATA_TYPE, EscrowService

    svc = service or EscrowService()
    if not svc.client.configured:
        logger.warning("Skipping escrow reconciliation: gateway not configured")
        return 0

    now = now or datetime.now(timezone.utc)
    since = int((now - timedelta(hours=settings.reconcile_lookback_hours)).timestamp())
    intents = await svc.client.search_payment_intents(
        f"metadata['type']:'{ESCROW_METADATA_TYPE}' AND created>{since}",
    )

    repaired = 0
    async with async_session_factory() as db:
        for intent in intents:
            try:
                if await svc.apply_funding_from_intent(db, intent):
                    repaired += 1
            except Exception:
                logger.exception("Error reconciling escrow intent %s", intent.get("id"))
    if repaired:
        logger.warning("Restamped %d campaigns from gateway intents", repaired)
    return repaired
