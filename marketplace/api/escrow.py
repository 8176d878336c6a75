"""Escrow API endpoints: fund a campaign, release the creator payout."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.api.schemas import (
    CreateEscrowPaymentRequest,
    EscrowPaymentResponse,
    ReleaseEscrowRequest,
    ReleaseEscrowResponse,
)
from marketplace.core.config import settings
from marketplace.core.deps import get_db
from marketplace.core.rate_limit import limiter
from marketplace.core.rbac import Identity
from marketplace.core.security import get_current_identity
from marketplace.services.audit import log_audit
from marketplace.services.escrow import EscrowService

router = APIRouter(prefix="/escrow", tags=["escrow"])

escrow_service = EscrowService()


def get_escrow_service() -> EscrowService:
    return escrow_service


@router.post("/create-payment", response_model=EscrowPaymentResponse)
@limiter.limit(settings.rate_limit_escrow)
async def create_payment(
    request: Request,
    body: CreateEscrowPaymentRequest,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
    service: EscrowService = Depends(get_escrow_service),
):
    """Open a gateway payment for a campaign and return its client secret."""
    payment = await service.create_escrow_payment(
        db, identity,
        campaign_id=body.campaign_id,
        creator_id=body.creator_id,
        amount=body.amount,
        cpv_rate=body.cpv_rate,
        expected_views=body.expected_views,
    )

    await log_audit(
        db, action="escrow_create_payment", entity_type="campaign", entity_id=body.campaign_id,
        user_id=identity.user_id,
        details={"payment_intent_id": payment.payment_intent_id, "amount": str(body.amount)},
        ip_address=request.client.host if request.client else None,
        request_id=getattr(request.state, "request_id", None),
    )

    return EscrowPaymentResponse(
        client_secret=payment.client_secret,
        payment_intent_id=payment.payment_intent_id,
        platform_fee=payment.platform_fee,
        creator_payout=payment.creator_payout,
    )


@router.post("/release", response_model=ReleaseEscrowResponse)
@limiter.limit(settings.rate_limit_escrow)
async def release(
    request: Request,
    body: ReleaseEscrowRequest,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
    service: EscrowService = Depends(get_escrow_service),
):
    """Credit the creator's wallet with the campaign payout and close the campaign."""
    payout = await service.release_escrow(db, identity, body.campaign_id)

    await log_audit(
        db, action="escrow_release", entity_type="campaign", entity_id=body.campaign_id,
        user_id=identity.user_id, details={"payout": str(payout)},
        ip_address=request.client.host if request.client else None,
        request_id=getattr(request.state, "request_id", None),
    )

    return ReleaseEscrowResponse(success=True, payout=payout)
