from fastapi import APIRouter

from marketplace.api.schemas import PublicConfigResponse
from marketplace.core.config import settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


@router.get("/config/public", response_model=PublicConfigResponse)
async def public_config() -> PublicConfigResponse:
    """Public platform configuration (fees, limits, etc.)."""
    return PublicConfigResponse(
        platform_fee_percent=settings.platform_fee_percent,
        min_withdrawal_amount=float(settings.min_withdrawal_amount),
        currency=settings.currency,
        publish_deadline_hours=settings.publish_deadline_hours,
    )
