"""Proof submission, review cascade and resubmission history."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from conftest import make_stripe_client
from marketplace.core.errors import (
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    UpstreamError,
    ValidationFailedError,
)
from marketplace.models.proof import CampaignProof
from marketplace.models.wallet import CreatorWallet
from marketplace.services import proof as proof_svc
from marketplace.services.escrow import EscrowService
from marketplace.services.proof import ProofUpload


def _storage(url: str = "https://cdn.example.com/campaign-proofs/x.png") -> MagicMock:
    storage = MagicMock()
    storage.upload = AsyncMock(return_value=url)
    return storage


def _png() -> ProofUpload:
    return ProofUpload(filename="shot.PNG", content_type="image/png", body=b"\x89PNG fake")


async def _submit_screenshot(db, creator, campaign, storage=None, view_count=1200):
    return await proof_svc.submit_proof(
        db, creator, campaign.id,
        proof_type="screenshot", upload=_png(), view_count=view_count,
        storage=storage or _storage(),
    )


async def _proofs(db, campaign_id):
    result = await db.execute(
        select(CampaignProof)
        .where(CampaignProof.campaign_id == campaign_id)
        .order_by(CampaignProof.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


class TestSubmitProof:
    async def test_screenshot_is_uploaded_and_flags_campaign(self, db, creator, campaign):
        storage = _storage()

        proof = await _submit_screenshot(db, creator, campaign, storage=storage)

        key = storage.upload.await_args.args[0]
        assert key.startswith(f"{creator.user_id}/{campaign.id}/")
        assert key.endswith(".png")
        assert proof.file_url == "https://cdn.example.com/campaign-proofs/x.png"
        assert proof.storage_key == key
        assert proof.file_name == "shot.PNG"
        assert proof.status == "pending"
        assert proof.view_count == 1200

        await db.refresh(campaign)
        assert campaign.verification_status == "proof_submitted"

    async def test_link_proof_skips_upload(self, db, creator, campaign):
        storage = _storage()
        proof = await proof_svc.submit_proof(
            db, creator, campaign.id,
            proof_type="link", link_url=" https://status.example/p/1 ", storage=storage,
        )
        storage.upload.assert_not_awaited()
        assert proof.file_url == "https://status.example/p/1"
        assert proof.storage_key is None

    async def test_link_proof_requires_url(self, db, creator, campaign):
        with pytest.raises(ValidationFailedError):
            await proof_svc.submit_proof(db, creator, campaign.id, proof_type="link", storage=_storage())

    async def test_file_proof_requires_file(self, db, creator, campaign):
        with pytest.raises(ValidationFailedError):
            await proof_svc.submit_proof(db, creator, campaign.id, proof_type="video", storage=_storage())

    async def test_oversized_file_rejected(self, db, creator, campaign, monkeypatch):
        monkeypatch.setattr("marketplace.services.proof.settings.proof_max_file_mb", 0)
        with pytest.raises(ValidationFailedError, match="exceeds"):
            await _submit_screenshot(db, creator, campaign)

    async def test_only_creator_can_submit(self, db, advertiser, campaign):
        with pytest.raises(PermissionDeniedError):
            await _submit_screenshot(db, advertiser, campaign)

    async def test_outsider_cannot_see_campaign(self, db, outsider, campaign):
        with pytest.raises(NotFoundError):
            await _submit_screenshot(db, outsider, campaign)

    async def test_storage_failure_leaves_no_row(self, db, creator, campaign):
        storage = MagicMock()
        storage.upload = AsyncMock(side_effect=UpstreamError("Could not store proof file"))
        with pytest.raises(UpstreamError):
            await _submit_screenshot(db, creator, campaign, storage=storage)
        assert await _proofs(db, campaign.id) == []
        await db.refresh(campaign)
        assert campaign.verification_status == "not_started"

    async def test_verified_campaign_rejects_new_proof(self, db, creator, campaign):
        campaign.verification_status = "verified"
        await db.commit()
        with pytest.raises(StateConflictError):
            await _submit_screenshot(db, creator, campaign)

    async def test_accepted_without_escrow(self, db, creator, campaign):
        assert campaign.escrow_status == "none"
        proof = await _submit_screenshot(db, creator, campaign)
        assert proof.id is not None


class TestReviewProof:
    async def test_approval_cascades(self, db, advertiser, creator, campaign):
        proof = await _submit_screenshot(db, creator, campaign)

        reviewed = await proof_svc.review_proof(db, advertiser, proof.id, "approved", "Looks good")

        assert reviewed.status == "approved"
        assert reviewed.reviewed_by == advertiser.user_id
        assert reviewed.reviewed_at is not None
        assert reviewed.reviewer_notes == "Looks good"
        await db.refresh(campaign)
        assert campaign.verification_status == "verified"
        assert campaign.status == "completed"
        assert campaign.completed_at is not None

    async def test_reviewing_twice_is_rejected(self, db, advertiser, admin, creator, campaign):
        proof = await _submit_screenshot(db, creator, campaign)
        await proof_svc.review_proof(db, advertiser, proof.id, "approved")
        await db.refresh(campaign)
        first_completed_at = campaign.completed_at

        with pytest.raises(StateConflictError, match="already been reviewed"):
            await proof_svc.review_proof(db, admin, proof.id, "rejected")

        await db.refresh(campaign)
        assert campaign.verification_status == "verified"
        assert campaign.completed_at == first_completed_at
        assert (await _proofs(db, campaign.id))[0].status == "approved"

    async def test_creator_cannot_review(self, db, creator, campaign):
        proof = await _submit_screenshot(db, creator, campaign)
        with pytest.raises(PermissionDeniedError):
            await proof_svc.review_proof(db, creator, proof.id, "approved")

    async def test_outsider_cannot_review(self, db, outsider, creator, campaign):
        proof = await _submit_screenshot(db, creator, campaign)
        with pytest.raises(PermissionDeniedError):
            await proof_svc.review_proof(db, outsider, proof.id, "approved")

    async def test_admin_can_review(self, db, admin, creator, campaign):
        proof = await _submit_screenshot(db, creator, campaign)
        reviewed = await proof_svc.review_proof(db, admin, proof.id, "rejected", "Blurry")
        assert reviewed.status == "rejected"
        assert reviewed.reviewed_by == admin.user_id

    async def test_unknown_proof(self, db, advertiser):
        with pytest.raises(NotFoundError):
            await proof_svc.review_proof(db, advertiser, 404, "approved")

    async def test_start_review_then_approve(self, db, advertiser, creator, campaign):
        proof = await _submit_screenshot(db, creator, campaign)

        updated = await proof_svc.start_review(db, advertiser, campaign.id)
        assert updated.verification_status == "under_review"

        with pytest.raises(StateConflictError):
            await _submit_screenshot(db, creator, campaign)

        await proof_svc.review_proof(db, advertiser, proof.id, "approved")
        await db.refresh(campaign)
        assert campaign.verification_status == "verified"

    async def test_start_review_requires_submitted_proof(self, db, advertiser, campaign):
        with pytest.raises(StateConflictError):
            await proof_svc.start_review(db, advertiser, campaign.id)


class TestRejectionAndResubmission:
    async def test_history_is_preserved(self, db, advertiser, creator, campaign):
        first = await _submit_screenshot(db, creator, campaign)
        await proof_svc.review_proof(db, advertiser, first.id, "rejected", "Views not visible")

        await db.refresh(campaign)
        assert campaign.verification_status == "rejected"
        assert campaign.status == "pending"

        second = await _submit_screenshot(db, creator, campaign, view_count=1500)

        assert second.id != first.id
        await db.refresh(campaign)
        assert campaign.verification_status == "proof_submitted"

        rows = await _proofs(db, campaign.id)
        assert [p.id for p in rows] == [first.id, second.id]
        assert rows[0].status == "rejected"
        assert rows[0].reviewer_notes == "Views not visible"
        assert rows[1].status == "pending"

    async def test_list_is_newest_first(self, db, advertiser, creator, campaign):
        first = await _submit_screenshot(db, creator, campaign)
        second = await _submit_screenshot(db, creator, campaign)

        listed = await proof_svc.list_proofs(db, advertiser, campaign.id)
        assert [p.id for p in listed] == [second.id, first.id]

    async def test_pending_proof_reviewable_after_sibling_rejected(self, db, advertiser, creator, campaign):
        first = await _submit_screenshot(db, creator, campaign)
        second = await _submit_screenshot(db, creator, campaign)
        await proof_svc.review_proof(db, advertiser, first.id, "rejected")

        await proof_svc.review_proof(db, advertiser, second.id, "approved")
        await db.refresh(campaign)
        assert campaign.verification_status == "verified"

    async def test_approval_closes_pending_siblings(self, db, advertiser, creator, campaign):
        first = await _submit_screenshot(db, creator, campaign)
        second = await _submit_screenshot(db, creator, campaign)
        third = await _submit_screenshot(db, creator, campaign)

        await proof_svc.review_proof(db, advertiser, second.id, "approved")

        by_id = {p.id: p for p in await _proofs(db, campaign.id)}
        assert by_id[second.id].status == "approved"
        for sibling in (by_id[first.id], by_id[third.id]):
            assert sibling.status == "rejected"
            assert sibling.reviewer_notes == proof_svc.SUPERSEDED_NOTE
            assert sibling.reviewed_by == advertiser.user_id
            assert sibling.reviewed_at is not None

        with pytest.raises(StateConflictError, match="already been reviewed"):
            await proof_svc.review_proof(db, advertiser, third.id, "approved")


class TestLaggingFlagRepair:
    async def test_finds_and_repairs_lagging_campaign(self, db, creator, campaign):
        db.add(CampaignProof(
            campaign_id=campaign.id, creator_id=creator.user_id,
            proof_type="link", file_url="https://x", status="pending",
        ))
        await db.commit()

        assert await proof_svc.find_lagging_verification_flags(db) == [campaign.id]
        assert await proof_svc.repair_verification_flag(db, campaign.id) is True
        assert await proof_svc.find_lagging_verification_flags(db) == []

        await db.refresh(campaign)
        assert campaign.verification_status == "proof_submitted"


async def test_happy_path_scenario(db, advertiser, creator, campaign):
    """Fund 200, submit screenshot, approve, release 164 into the creator wallet."""
    escrow = EscrowService(client=make_stripe_client())
    payment = await escrow.create_escrow_payment(
        db, advertiser,
        campaign_id=campaign.id, creator_id=creator.user_id, amount=Decimal("200"),
    )
    assert (payment.platform_fee, payment.creator_payout) == (Decimal("36.00"), Decimal("164.00"))
    await db.refresh(campaign)
    assert campaign.escrow_status == "payment_pending"

    proof = await _submit_screenshot(db, creator, campaign)
    await db.refresh(campaign)
    assert campaign.verification_status == "proof_submitted"

    await proof_svc.review_proof(db, advertiser, proof.id, "approved")
    await db.refresh(campaign)
    assert (campaign.verification_status, campaign.status) == ("verified", "completed")

    assert await escrow.release_escrow(db, advertiser, campaign.id) == Decimal("164.00")
    await db.refresh(campaign)
    assert campaign.escrow_status == "released"

    wallet = (
        await db.execute(select(CreatorWallet).where(CreatorWallet.user_id == creator.user_id))
    ).scalar_one()
    assert wallet.available_balance == Decimal("164.00")
    assert wallet.total_earned == Decimal("164.00")
