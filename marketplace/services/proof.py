"""Proof submission and review.

Every write that touches a proof row and its campaign's verification flag
happens in one transaction, guarded by conditional updates on the prior
state so concurrent reviewers cannot run the cascade twice.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import settings
from marketplace.core.errors import (
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationFailedError,
)
from marketplace.core.rbac import Identity, can_review_proof, can_submit_proof
from marketplace.models.campaign import Campaign
from marketplace.models.proof import CampaignProof
from marketplace.services import campaign as campaign_svc
from marketplace.services.campaign_state_machine import (
    Actor,
    CampaignStatus,
    ProofStatus,
    VerificationAction,
    validate_verification_transition,
)
from marketplace.services.storage import ProofStorage, build_proof_key

logger = logging.getLogger(__name__)

PROOF_TYPES = ("screenshot", "video", "link")
FILE_PROOF_TYPES = ("screenshot", "video")
SUPERSEDED_NOTE = "Closed automatically: another proof for this campaign was approved"


@dataclass
class ProofUpload:
    filename: str
    content_type: str
    body: bytes


async def _flip_verification(
    db: AsyncSession, campaign: Campaign, new_status: str, **extra_values,
) -> None:
    """Conditionally move verification_status off the value we validated against."""
    result = await db.execute(
        update(Campaign)
        .where(
            Campaign.id == campaign.id,
            Campaign.verification_status == campaign.verification_status,
        )
        .values(
            verification_status=new_status,
            updated_at=datetime.now(timezone.utc),
            **extra_values,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StateConflictError("Campaign verification status changed concurrently")


async def submit_proof(
    db: AsyncSession,
    identity: Identity,
    campaign_id: int,
    *,
    proof_type: str,
    upload: ProofUpload | None = None,
    link_url: str | None = None,
    view_count: int | None = None,
    storage: ProofStorage | None = None,
) -> CampaignProof:
    """Attach new evidence to a campaign and flag it as proof_submitted."""
    campaign = await campaign_svc.get_campaign_for(db, campaign_id, identity)
    if not can_submit_proof(identity, campaign):
        raise PermissionDeniedError("Only the campaign's creator can submit proof")

    if proof_type not in PROOF_TYPES:
        raise ValidationFailedError(f"Unknown proof type: {proof_type}")
    if view_count is not None and view_count < 0:
        raise ValidationFailedError("view_count must not be negative")

    new_status = validate_verification_transition(
        campaign.verification_status, VerificationAction.SUBMIT_PROOF, Actor.CREATOR,
    )

    storage_key = None
    file_name = None
    if proof_type == "link":
        if not link_url or not link_url.strip():
            raise ValidationFailedError("link_url is required for link proofs")
        file_url = link_url.strip()
    else:
        if upload is None or not upload.body:
            raise ValidationFailedError("A file is required for screenshot and video proofs")
        max_bytes = settings.proof_max_file_mb * 1024 * 1024
        if len(upload.body) > max_bytes:
            raise ValidationFailedError(
                f"Proof file exceeds {settings.proof_max_file_mb} MB"
            )
        storage = storage or ProofStorage()
        storage_key = build_proof_key(identity.user_id, campaign.id, upload.filename)
        file_url = await storage.upload(storage_key, upload.body, upload.content_type)
        file_name = upload.filename

    proof = CampaignProof(
        campaign_id=campaign.id,
        creator_id=identity.user_id,
        proof_type=proof_type,
        file_url=file_url,
        file_name=file_name,
        storage_key=storage_key,
        view_count=view_count,
        status=ProofStatus.PENDING.value,
    )
    try:
        db.add(proof)
        await db.flush()
        if campaign.verification_status != new_status:
            await _flip_verification(db, campaign, new_status.value)
        await db.commit()
    except Exception:
        await db.rollback()
        if storage_key:
            logger.error(
                "Proof upload stored without a proof row",
                extra={"campaign_id": campaign.id, "storage_key": storage_key},
            )
        raise

    await db.refresh(proof)
    logger.info(
        "Proof submitted",
        extra={"campaign_id": campaign.id, "proof_id": proof.id, "proof_type": proof_type},
    )
    return proof


async def list_proofs(db: AsyncSession, identity: Identity, campaign_id: int) -> list[CampaignProof]:
    campaign = await campaign_svc.get_campaign_for(db, campaign_id, identity)
    result = await db.execute(
        select(CampaignProof)
        .where(CampaignProof.campaign_id == campaign.id)
        .order_by(CampaignProof.submitted_at.desc(), CampaignProof.id.desc())
    )
    return list(result.scalars().all())


async def get_proof(db: AsyncSession, proof_id: int) -> CampaignProof:
    result = await db.execute(
        select(CampaignProof)
        .where(CampaignProof.id == proof_id)
        .execution_options(populate_existing=True)
    )
    proof = result.scalar_one_or_none()
    if not proof:
        raise NotFoundError("Proof not found")
    return proof


async def start_review(db: AsyncSession, identity: Identity, campaign_id: int) -> Campaign:
    """Reviewer picks up submitted proof: proof_submitted → under_review."""
    campaign = await campaign_svc.get_campaign_for(db, campaign_id, identity)
    if not can_review_proof(identity, campaign):
        raise PermissionDeniedError("Not authorized to review proofs for this campaign")
    actor = campaign_svc.resolve_actor(identity, campaign)
    new_status = validate_verification_transition(
        campaign.verification_status, VerificationAction.START_REVIEW, actor,
    )
    try:
        await _flip_verification(db, campaign, new_status.value)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await db.refresh(campaign)
    return campaign


async def review_proof(
    db: AsyncSession,
    identity: Identity,
    proof_id: int,
    decision: str,
    notes: str | None = None,
) -> CampaignProof:
    """Approve or reject a pending proof and cascade onto its campaign.

    Approval marks the campaign verified and completed and closes any other
    pending proof of the campaign as rejected. Rejection only flags
    verification as rejected so the creator can resubmit.
    """
    if decision not in (ProofStatus.APPROVED, ProofStatus.REJECTED):
        raise ValidationFailedError(f"Unknown decision: {decision}")

    proof = await get_proof(db, proof_id)
    campaign = await campaign_svc.get_campaign(db, proof.campaign_id)
    if not can_review_proof(identity, campaign):
        raise PermissionDeniedError("Not authorized to review proofs for this campaign")
    if proof.status != ProofStatus.PENDING:
        raise StateConflictError("Proof has already been reviewed")

    actor = campaign_svc.resolve_actor(identity, campaign)
    action = VerificationAction.APPROVE if decision == ProofStatus.APPROVED else VerificationAction.REJECT
    new_verification = validate_verification_transition(
        campaign.verification_status, action, actor,
    )

    now = datetime.now(timezone.utc)
    try:
        claimed = await db.execute(
            update(CampaignProof)
            .where(CampaignProof.id == proof.id, CampaignProof.status == ProofStatus.PENDING.value)
            .values(
                status=decision,
                reviewed_at=now,
                reviewed_by=identity.user_id,
                reviewer_notes=notes,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            raise StateConflictError("Proof has already been reviewed")

        if action == VerificationAction.APPROVE:
            superseded = await db.execute(
                update(CampaignProof)
                .where(
                    CampaignProof.campaign_id == campaign.id,
                    CampaignProof.id != proof.id,
                    CampaignProof.status == ProofStatus.PENDING.value,
                )
                .values(
                    status=ProofStatus.REJECTED.value,
                    reviewed_at=now,
                    reviewed_by=identity.user_id,
                    reviewer_notes=SUPERSEDED_NOTE,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if superseded.rowcount:
                logger.info(
                    "Closed %d sibling proof(s) on approval", superseded.rowcount,
                    extra={"campaign_id": campaign.id, "proof_id": proof.id},
                )
            await _flip_verification(
                db,
                campaign,
                new_verification.value,
                status=CampaignStatus.COMPLETED.value,
                completed_at=func.coalesce(Campaign.completed_at, now),
            )
        else:
            await _flip_verification(db, campaign, new_verification.value)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await db.refresh(proof)
    await db.refresh(campaign)
    logger.info(
        "Proof reviewed",
        extra={
            "proof_id": proof.id,
            "campaign_id": campaign.id,
            "decision": decision,
            "reviewer_id": identity.user_id,
        },
    )
    return proof


async def find_lagging_verification_flags(db: AsyncSession, limit: int = 200) -> list[int]:
    """Campaign ids holding a pending proof while still flagged not_started/rejected."""
    result = await db.execute(
        select(Campaign.id)
        .join(CampaignProof, CampaignProof.campaign_id == Campaign.id)
        .where(
            CampaignProof.status == ProofStatus.PENDING.value,
            Campaign.verification_status.in_(["not_started", "rejected"]),
        )
        .distinct()
        .limit(limit)
    )
    return list(result.scalars().all())


async def repair_verification_flag(db: AsyncSession, campaign_id: int) -> bool:
    """Move a lagging campaign to proof_submitted. Returns True if a row changed."""
    result = await db.execute(
        update(Campaign)
        .where(
            Campaign.id == campaign_id,
            Campaign.verification_status.in_(["not_started", "rejected"]),
        )
        .values(verification_status="proof_submitted", updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1
