from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.errors import NotFoundError, PermissionDeniedError, StateConflictError, ValidationFailedError
from marketplace.core.rbac import Identity, can_view_campaign
from marketplace.models.campaign import Campaign
from marketplace.services.campaign_state_machine import (
    Actor,
    CampaignAction,
    CampaignStatus,
    EscrowStatus,
    VerificationStatus,
    get_available_actions,
    validate_campaign_transition,
)
from marketplace.services.user import get_user_by_id


def resolve_actor(identity: Identity, campaign: Campaign) -> Actor | None:
    """Map the caller onto a state-machine actor for this campaign."""
    if identity.user_id == campaign.advertiser_id:
        return Actor.ADVERTISER
    if identity.user_id == campaign.creator_id:
        return Actor.CREATOR
    if identity.is_admin:
        return Actor.ADMIN
    return None


def available_actions(identity: Identity, campaign: Campaign) -> list[str]:
    actor = resolve_actor(identity, campaign)
    if actor is None:
        return []
    return get_available_actions(
        campaign.status, campaign.escrow_status, campaign.verification_status, actor,
    )


async def create_campaign(
    db: AsyncSession,
    identity: Identity,
    *,
    creator_id: int,
    title: str,
    price: Decimal,
    description: str | None = None,
) -> Campaign:
    if creator_id == identity.user_id:
        raise ValidationFailedError("An advertiser cannot hire themselves")
    if await get_user_by_id(db, creator_id) is None:
        raise NotFoundError("Creator not found")

    campaign = Campaign(
        advertiser_id=identity.user_id,
        creator_id=creator_id,
        title=title,
        description=description,
        price=price,
        status=CampaignStatus.PENDING.value,
        escrow_status=EscrowStatus.NONE.value,
        verification_status=VerificationStatus.NOT_STARTED.value,
    )
    db.add(campaign)
    await db.commit()
    await db.refresh(campaign)
    return campaign


async def get_campaigns_for_user(
    db: AsyncSession,
    user_id: int,
    *,
    status: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[Campaign]:
    query = select(Campaign).where(
        or_(Campaign.advertiser_id == user_id, Campaign.creator_id == user_id)
    )
    if status:
        query = query.where(Campaign.status == status)
    result = await db.execute(
        query.order_by(Campaign.created_at.desc(), Campaign.id.desc()).offset(offset).limit(limit)
    )
    return list(result.scalars().all())


async def get_campaign(db: AsyncSession, campaign_id: int) -> Campaign:
    result = await db.execute(
        select(Campaign)
        .where(Campaign.id == campaign_id)
        .execution_options(populate_existing=True)
    )
    campaign = result.scalar_one_or_none()
    if not campaign:
        raise NotFoundError("Campaign not found")
    return campaign


async def get_campaign_for(db: AsyncSession, campaign_id: int, identity: Identity) -> Campaign:
    """Load a campaign the caller is allowed to see."""
    campaign = await get_campaign(db, campaign_id)
    if not can_view_campaign(identity, campaign):
        raise NotFoundError("Campaign not found")
    return campaign


async def activate_campaign(db: AsyncSession, identity: Identity, campaign_id: int) -> Campaign:
    campaign = await get_campaign_for(db, campaign_id, identity)
    actor = resolve_actor(identity, campaign)
    if actor is None:
        raise PermissionDeniedError("Not a party to this campaign")

    new_status = validate_campaign_transition(campaign.status, CampaignAction.ACTIVATE, actor)
    result = await db.execute(
        update(Campaign)
        .where(Campaign.id == campaign.id, Campaign.status == campaign.status)
        .values(status=new_status.value, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise StateConflictError("Campaign status changed concurrently")
    await db.commit()
    await db.refresh(campaign)
    return campaign
