"""Repair campaigns whose verification flag lags behind a submitted proof."""

import logging

from marketplace.db.session import async_session_factory
from marketplace.workers import celery_app, worker_loop

logger = logging.getLogger(__name__)


@celery_app.task(name="reconcile_proof_flags", bind=True, max_retries=3, default_retry_delay=300)
def reconcile_proof_flags(self):
    try:
        worker_loop().run_until_complete(_reconcile_proof_flags())
    except Exception as exc:
        logger.exception("reconcile_proof_flags failed")
        raise self.retry(exc=exc)


async def _reconcile_proof_flags() -> int:
    from marketplace.services import proof as proof_svc

    async with async_session_factory() as db:
        campaign_ids = await proof_svc.find_lagging_verification_flags(db)
        fixed = 0
        for campaign_id in campaign_ids:
            try:
                if await proof_svc.repair_verification_flag(db, campaign_id):
                    fixed += 1
                    logger.info("Campaign %s moved to proof_submitted", campaign_id)
            except Exception:
                await db.rollback()
                logger.exception("Error repairing verification flag for campaign %s", campaign_id)
        return fixed
