"""Payment gateway webhooks."""

import logging

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.api.escrow import get_escrow_service
from marketplace.core.config import settings
from marketplace.core.deps import get_db
from marketplace.services.escrow import EscrowService
from marketplace.services.stripe.webhook import verify_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    service: EscrowService = Depends(get_escrow_service),
) -> dict:
    """Signed gateway events confirm or fail escrow payments. Replays are no-ops."""
    payload = await request.body()
    event = verify_webhook(
        payload,
        stripe_signature,
        settings.stripe_webhook_secret,
        tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
    )
    logger.info("Stripe event received", extra={"event_id": event.get("id"), "type": event.get("type")})
    changed = await service.handle_gateway_event(db, event)
    return {"received": True, "applied": changed}
