"""Campaign endpoints: create, list, detail, activate."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.api.schemas import CampaignCreate, CampaignResponse
from marketplace.core.deps import get_db
from marketplace.core.rbac import Identity
from marketplace.core.security import get_current_identity
from marketplace.models.campaign import Campaign
from marketplace.services import campaign as campaign_svc

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


def _to_response(identity: Identity, campaign: Campaign) -> CampaignResponse:
    resp = CampaignResponse.model_validate(campaign)
    resp.available_actions = campaign_svc.available_actions(identity, campaign)
    return resp


@router.post("", response_model=CampaignResponse, status_code=201)
async def create_campaign(
    body: CampaignCreate,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    campaign = await campaign_svc.create_campaign(
        db, identity,
        creator_id=body.creator_id,
        title=body.title,
        price=body.price,
        description=body.description,
    )
    return _to_response(identity, campaign)


@router.get("", response_model=list[CampaignResponse])
async def list_campaigns(
    status: str | None = Query(None),
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """Campaigns where the caller is the advertiser or the creator, newest first."""
    campaigns = await campaign_svc.get_campaigns_for_user(
        db, identity.user_id, status=status, offset=offset, limit=limit,
    )
    return [_to_response(identity, c) for c in campaigns]


@router.get("/{campaign_id}", response_model=CampaignResponse)
async def get_campaign(
    campaign_id: int,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    campaign = await campaign_svc.get_campaign_for(db, campaign_id, identity)
    return _to_response(identity, campaign)


@router.post("/{campaign_id}/activate", response_model=CampaignResponse)
async def activate_campaign(
    campaign_id: int,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    campaign = await campaign_svc.activate_campaign(db, identity, campaign_id)
    return _to_response(identity, campaign)
