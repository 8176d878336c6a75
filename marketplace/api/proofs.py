"""Proof submission and review endpoints."""

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.api.schemas import (
    ProofResponse,
    ProofReviewRequest,
    ProofType,
    VerificationStatusResponse,
)
from marketplace.core.deps import get_db
from marketplace.core.rbac import Identity
from marketplace.core.security import get_current_identity
from marketplace.services import proof as proof_svc
from marketplace.services.audit import log_audit
from marketplace.services.storage import ProofStorage

router = APIRouter(tags=["proofs"])


def get_proof_storage() -> ProofStorage:
    return ProofStorage()


@router.post("/campaigns/{campaign_id}/proofs", response_model=ProofResponse, status_code=201)
async def submit_proof(
    campaign_id: int,
    proof_type: ProofType = Form(...),
    link_url: str | None = Form(None),
    view_count: int | None = Form(None, ge=0),
    file: UploadFile | None = File(None),
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
    storage: ProofStorage = Depends(get_proof_storage),
):
    """Creator attaches a screenshot, video or link as evidence of publication."""
    upload = None
    if file is not None and file.filename:
        upload = proof_svc.ProofUpload(
            filename=file.filename,
            content_type=file.content_type or "application/octet-stream",
            body=await file.read(),
        )

    proof = await proof_svc.submit_proof(
        db,
        identity,
        campaign_id,
        proof_type=proof_type,
        upload=upload,
        link_url=link_url,
        view_count=view_count,
        storage=storage,
    )
    return proof


@router.get("/campaigns/{campaign_id}/proofs", response_model=list[ProofResponse])
async def list_proofs(
    campaign_id: int,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    return await proof_svc.list_proofs(db, identity, campaign_id)


@router.post(
    "/campaigns/{campaign_id}/verification/start-review",
    response_model=VerificationStatusResponse,
)
async def start_review(
    campaign_id: int,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    campaign = await proof_svc.start_review(db, identity, campaign_id)
    return VerificationStatusResponse(
        campaign_id=campaign.id, verification_status=campaign.verification_status,
    )


@router.post("/proofs/{proof_id}/review", response_model=ProofResponse)
async def review_proof(
    request: Request,
    proof_id: int,
    body: ProofReviewRequest,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """Approve or reject a pending proof. Approval completes the campaign."""
    proof = await proof_svc.review_proof(db, identity, proof_id, body.decision, body.notes)

    await log_audit(
        db, action=f"proof_{body.decision}", entity_type="campaign_proof", entity_id=proof.id,
        user_id=identity.user_id, details={"campaign_id": proof.campaign_id},
        ip_address=request.client.host if request.client else None,
        request_id=getattr(request.state, "request_id", None),
    )
    return proof
