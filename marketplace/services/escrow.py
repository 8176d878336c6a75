"""Escrow lifecycle: fund through the gateway, confirm, release to wallet."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import settings
from marketplace.core.errors import (
    AuthenticationError,
    GatewayNotConfiguredError,
    PermissionDeniedError,
    StateConflictError,
    ValidationFailedError,
)
from marketplace.core.rbac import Identity, can_fund_campaign, can_release_escrow
from marketplace.models.campaign import Campaign
from marketplace.models.transaction import Transaction
from marketplace.services import campaign as campaign_svc
from marketplace.services import wallet as wallet_svc
from marketplace.services.campaign_state_machine import (
    CampaignStatus,
    EscrowAction,
    EscrowStatus,
    RELEASABLE_ESCROW_STATUSES,
    VerificationStatus,
    validate_escrow_transition,
)
from marketplace.services.fees import FeeSplit, compute_fee_split, to_money
from marketplace.services.stripe.client import StripeClient

logger = logging.getLogger(__name__)

ESCROW_METADATA_TYPE = "escrow"
# Stripe intent states that mean the advertiser will never pay this intent
DEAD_INTENT_STATES = frozenset({"canceled"})


def _step(op: str, step: str, **details) -> None:
    logger.info("%s %s", op, step, extra={"op": op, "step": step, **details})


@dataclass(frozen=True)
class EscrowPayment:
    client_secret: str
    payment_intent_id: str
    platform_fee: Decimal
    creator_payout: Decimal


class EscrowService:
    """Moves campaign money: gateway funding, confirmation, release to wallet."""

    def __init__(self, client: StripeClient | None = None) -> None:
        self.client = client or StripeClient()

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    async def create_escrow_payment(
        self,
        db: AsyncSession,
        identity: Identity,
        *,
        campaign_id: int,
        creator_id: int,
        amount: Decimal,
        cpv_rate: Decimal | None = None,
        expected_views: int | None = None,
    ) -> EscrowPayment:
        """Open a payment intent for a campaign and record the intended split.

        The payment intent (with its metadata) is the authoritative record:
        once it exists, failing to stamp the campaign or write the ledger row
        is logged and left to reconciliation, and the client secret is still
        returned.
        """
        op = "escrow.funding"
        if not self.client.configured:
            raise GatewayNotConfiguredError("STRIPE_SECRET_KEY is not set")
        if not identity.email:
            raise AuthenticationError("User not authenticated")
        _step(op, "started", user_id=identity.user_id, campaign_id=campaign_id)

        campaign = await campaign_svc.get_campaign(db, campaign_id)
        if not can_fund_campaign(identity, campaign):
            raise PermissionDeniedError("Only the campaign's advertiser can fund escrow")
        if campaign.creator_id != creator_id:
            raise ValidationFailedError("creator_id does not match the campaign")

        split = compute_fee_split(amount, settings.platform_fee_percent)
        _step(
            op, "payment_details",
            campaign_id=campaign.id,
            amount=str(split.amount),
            platform_fee=str(split.platform_fee),
            creator_payout=str(split.creator_payout),
        )

        if campaign.escrow_status == EscrowStatus.PAYMENT_PENDING and campaign.payment_intent_id:
            existing = await self._reuse_pending_intent(db, campaign, split)
            if existing is not None:
                return existing
            campaign = await campaign_svc.get_campaign(db, campaign_id)

        validate_escrow_transition(
            campaign.escrow_status, EscrowAction.REQUEST_PAYMENT, campaign_svc.resolve_actor(identity, campaign),
        )

        customer_id = await self.client.get_or_create_customer(identity.email)
        _step(op, "customer_resolved", customer_id=customer_id)

        attempt = await self._count_hold_transactions(db, campaign.id)
        cpv_rate = cpv_rate if cpv_rate is not None else Decimal("0")
        expected_views = expected_views or 0
        intent = await self.client.create_payment_intent(
            amount_minor=split.amount_minor,
            currency=settings.currency,
            customer_id=customer_id,
            metadata={
                "campaign_id": str(campaign.id),
                "creator_id": str(campaign.creator_id),
                "advertiser_id": str(campaign.advertiser_id),
                "platform_fee": str(split.platform_fee),
                "creator_payout": str(split.creator_payout),
                "cpv_rate": str(cpv_rate),
                "expected_views": str(expected_views),
                "type": ESCROW_METADATA_TYPE,
            },
            idempotency_key=f"escrow-{campaign.id}-{split.amount_minor}-{attempt}",
        )
        intent_id = intent["id"]
        _step(op, "intent_created", campaign_id=campaign.id, payment_intent_id=intent_id)

        await self.record_funding(
            db,
            campaign_id=campaign.id,
            advertiser_id=campaign.advertiser_id,
            creator_id=campaign.creator_id,
            split=split,
            cpv_rate=cpv_rate,
            expected_views=expected_views,
            payment_intent_id=intent_id,
        )

        return EscrowPayment(
            client_secret=intent["client_secret"],
            payment_intent_id=intent_id,
            platform_fee=split.platform_fee,
            creator_payout=split.creator_payout,
        )

    async def _reuse_pending_intent(
        self, db: AsyncSession, campaign: Campaign, split: FeeSplit,
    ) -> EscrowPayment | None:
        """Return the open intent of a retried funding request.

        A canceled intent reopens funding and None is returned.
        """
        intent = await self.client.retrieve_payment_intent(campaign.payment_intent_id)
        if intent.get("status") in DEAD_INTENT_STATES:
            await self.fail_payment(db, intent)
            return None
        if int(intent.get("amount", 0)) != split.amount_minor:
            raise StateConflictError(
                "An escrow payment for a different amount is already pending"
            )
        _step("escrow.funding", "intent_reused", campaign_id=campaign.id, payment_intent_id=intent["id"])
        return EscrowPayment(
            client_secret=intent["client_secret"],
            payment_intent_id=intent["id"],
            platform_fee=campaign.platform_fee,
            creator_payout=campaign.creator_payout,
        )

    async def _count_hold_transactions(self, db: AsyncSession, campaign_id: int) -> int:
        result = await db.execute(
            select(func.count())
            .select_from(Transaction)
            .where(Transaction.campaign_id == campaign_id, Transaction.type == "escrow_hold")
        )
        return result.scalar() or 0

    async def record_funding(
        self,
        db: AsyncSession,
        *,
        campaign_id: int,
        advertiser_id: int,
        creator_id: int,
        split: FeeSplit,
        cpv_rate: Decimal,
        expected_views: int,
        payment_intent_id: str,
    ) -> bool:
        """Stamp the campaign and write the pending hold row for an intent.

        Both writes commit together. A failure is logged and rolled back but
        not raised, since the intent already exists upstream. Returns True
        when the writes landed.
        """
        op = "escrow.funding"
        now = datetime.now(timezone.utc)
        ctx = {"op": op, "campaign_id": campaign_id, "payment_intent_id": payment_intent_id}

        try:
            result = await db.execute(
                update(Campaign)
                .where(
                    Campaign.id == campaign_id,
                    Campaign.escrow_status == EscrowStatus.NONE.value,
                )
                .values(
                    escrow_status=EscrowStatus.PAYMENT_PENDING.value,
                    escrow_amount=split.amount,
                    platform_fee=split.platform_fee,
                    creator_payout=split.creator_payout,
                    cpv_rate=cpv_rate,
                    expected_views=expected_views,
                    payment_intent_id=payment_intent_id,
                    publish_deadline=now + timedelta(hours=settings.publish_deadline_hours),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.warning("%s campaign_already_stamped", op, extra={**ctx, "step": "campaign_already_stamped"})
            await self._ensure_hold_transaction(
                db,
                campaign_id=campaign_id,
                advertiser_id=advertiser_id,
                creator_id=creator_id,
                split=split,
                payment_intent_id=payment_intent_id,
            )
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            logger.exception(
                "%s campaign_update_failed: payment intent %s exists without a local record",
                op, payment_intent_id,
                extra={**ctx, "step": "campaign_update_failed"},
            )
            return False
        _step(op, "recorded", campaign_id=campaign_id, payment_intent_id=payment_intent_id)
        return True

    async def _ensure_hold_transaction(
        self,
        db: AsyncSession,
        *,
        campaign_id: int,
        advertiser_id: int,
        creator_id: int,
        split: FeeSplit,
        payment_intent_id: str,
    ) -> None:
        result = await db.execute(
            select(Transaction.id).where(
                Transaction.payment_intent_id == payment_intent_id,
                Transaction.type == "escrow_hold",
            )
        )
        if result.scalar_one_or_none() is not None:
            return
        db.add(
            Transaction(
                campaign_id=campaign_id,
                payer_id=advertiser_id,
                payee_id=creator_id,
                amount=split.amount,
                platform_fee=split.platform_fee,
                net_amount=split.creator_payout,
                type="escrow_hold",
                status="pending",
                payment_intent_id=payment_intent_id,
                description="Escrow for campaign",
            )
        )
        await db.flush()

    async def apply_funding_from_intent(self, db: AsyncSession, intent: dict) -> bool:
        """Rebuild a missing local funding record from an intent's metadata.

        Applies only when the campaign was never stamped and the ledger has
        no row for the intent. Returns True when a record was written.
        """
        campaign_id = _escrow_campaign_id(intent)
        if campaign_id is None or intent.get("status") in DEAD_INTENT_STATES:
            return False

        known = await db.execute(
            select(Transaction.id).where(Transaction.payment_intent_id == intent["id"]).limit(1)
        )
        if known.scalar_one_or_none() is not None:
            return False

        result = await db.execute(
            select(Campaign)
            .where(Campaign.id == campaign_id)
            .execution_options(populate_existing=True)
        )
        campaign = result.scalar_one_or_none()
        if campaign is None:
            logger.warning("Escrow intent %s references missing campaign %s", intent["id"], campaign_id)
            return False
        if campaign.escrow_status != EscrowStatus.NONE or campaign.payment_intent_id:
            return False

        metadata = intent.get("metadata") or {}
        ok = await self.record_funding(
            db,
            campaign_id=campaign.id,
            advertiser_id=campaign.advertiser_id,
            creator_id=campaign.creator_id,
            split=split_from_metadata(intent),
            cpv_rate=Decimal(metadata.get("cpv_rate") or "0"),
            expected_views=int(metadata.get("expected_views") or 0),
            payment_intent_id=intent["id"],
        )
        if ok:
            _step("escrow.reconcile", "restamped", campaign_id=campaign.id, payment_intent_id=intent["id"])
            if intent.get("status") == "succeeded":
                await self.confirm_payment(db, intent)
        return ok

    async def sync_pending_payment(self, db: AsyncSession, campaign: Campaign) -> str | None:
        """Poll the gateway for a payment_pending campaign and apply the outcome."""
        intent = await self.client.retrieve_payment_intent(campaign.payment_intent_id)
        state = intent.get("status")
        if state == "succeeded":
            await self.confirm_payment(db, intent)
        elif state in DEAD_INTENT_STATES:
            await self.fail_payment(db, intent)
        return state

    # ------------------------------------------------------------------
    # Gateway confirmation
    # ------------------------------------------------------------------

    async def confirm_payment(self, db: AsyncSession, intent: dict) -> bool:
        """Advertiser's payment captured: payment_pending → held, hold row completed.

        Safe to call repeatedly for the same intent.
        """
        campaign_id = _escrow_campaign_id(intent)
        if campaign_id is None:
            return False
        now = datetime.now(timezone.utc)
        try:
            result = await db.execute(
                update(Campaign)
                .where(
                    Campaign.id == campaign_id,
                    Campaign.escrow_status == EscrowStatus.PAYMENT_PENDING.value,
                    Campaign.payment_intent_id == intent["id"],
                )
                .values(escrow_status=EscrowStatus.HELD.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.execute(
                update(Transaction)
                .where(
                    Transaction.payment_intent_id == intent["id"],
                    Transaction.type == "escrow_hold",
                    Transaction.status == "pending",
                )
                .values(status="completed", completed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            raise
        held = result.rowcount == 1
        _step("escrow.confirm", "held" if held else "noop", campaign_id=campaign_id, payment_intent_id=intent["id"])
        return held

    async def fail_payment(self, db: AsyncSession, intent: dict) -> bool:
        """Intent canceled: mark the hold failed and reopen funding."""
        campaign_id = _escrow_campaign_id(intent)
        if campaign_id is None:
            return False
        now = datetime.now(timezone.utc)
        try:
            await db.execute(
                update(Transaction)
                .where(
                    Transaction.payment_intent_id == intent["id"],
                    Transaction.type == "escrow_hold",
                    Transaction.status == "pending",
                )
                .values(status="failed", updated_at=now)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(
                update(Campaign)
                .where(
                    Campaign.id == campaign_id,
                    Campaign.escrow_status == EscrowStatus.PAYMENT_PENDING.value,
                    Campaign.payment_intent_id == intent["id"],
                )
                .values(escrow_status=EscrowStatus.NONE.value, payment_intent_id=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            raise
        reopened = result.rowcount == 1
        _step("escrow.confirm", "canceled", campaign_id=campaign_id, payment_intent_id=intent["id"])
        return reopened

    def record_failed_attempt(self, intent: dict) -> bool:
        """A declined charge leaves the intent open for another attempt.

        The campaign stays payment_pending on the same intent, so a later
        success on that intent still confirms the escrow. Only cancellation
        reopens funding.
        """
        campaign_id = _escrow_campaign_id(intent)
        if campaign_id is None:
            return False
        error = intent.get("last_payment_error") or {}
        logger.warning(
            "escrow.confirm payment_attempt_failed",
            extra={
                "op": "escrow.confirm",
                "step": "payment_attempt_failed",
                "campaign_id": campaign_id,
                "payment_intent_id": intent["id"],
                "decline_code": error.get("decline_code") or error.get("code"),
            },
        )
        return False

    async def handle_gateway_event(self, db: AsyncSession, event: dict) -> bool:
        """Dispatch a verified gateway webhook event. Unknown types are ignored."""
        event_type = event.get("type", "")
        intent = (event.get("data") or {}).get("object") or {}
        if event_type == "payment_intent.succeeded":
            return await self.confirm_payment(db, intent)
        if event_type == "payment_intent.payment_failed":
            return self.record_failed_attempt(intent)
        if event_type == "payment_intent.canceled":
            return await self.fail_payment(db, intent)
        logger.debug("Ignoring gateway event %s", event_type)
        return False

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release_escrow(
        self, db: AsyncSession, identity: Identity, campaign_id: int,
    ) -> Decimal:
        """Move the campaign's creator payout into the creator wallet, once.

        The escrow claim (conditional status flip), wallet credit and ledger
        row are one database transaction: the claim serializes concurrent
        releases, and a failed credit rolls the claim back.
        """
        op = "escrow.release"
        campaign = await campaign_svc.get_campaign(db, campaign_id)

        if not can_release_escrow(identity, campaign):
            raise PermissionDeniedError("Not authorized to release escrow")

        if campaign.escrow_status not in RELEASABLE_ESCROW_STATUSES:
            raise StateConflictError(f"Cannot release escrow with status: {campaign.escrow_status}")

        if (
            not identity.is_admin
            and campaign.verification_status != VerificationStatus.VERIFIED
        ):
            raise StateConflictError("Proof must be verified before releasing escrow")

        payout = campaign.creator_payout
        if payout is None or payout <= 0:
            raise StateConflictError("Campaign has no creator payout recorded")

        now = datetime.now(timezone.utc)
        try:
            claimed = await db.execute(
                update(Campaign)
                .where(
                    Campaign.id == campaign.id,
                    Campaign.escrow_status.in_([s.value for s in RELEASABLE_ESCROW_STATUSES]),
                )
                .values(
                    escrow_status=EscrowStatus.RELEASED.value,
                    status=CampaignStatus.COMPLETED.value,
                    completed_at=func.coalesce(Campaign.completed_at, now),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                raise StateConflictError("Escrow was already released")
            _step(op, "claimed", campaign_id=campaign.id, payout=str(payout))

            await wallet_svc.credit_wallet(db, campaign.creator_id, payout)
            _step(op, "wallet_credited", campaign_id=campaign.id, creator_id=campaign.creator_id)

            db.add(
                Transaction(
                    campaign_id=campaign.id,
                    payer_id=campaign.advertiser_id,
                    payee_id=campaign.creator_id,
                    amount=payout,
                    platform_fee=Decimal("0"),
                    net_amount=payout,
                    type="escrow_release",
                    status="completed",
                    payment_intent_id=campaign.payment_intent_id,
                    description=f"Payment release - {campaign.title}",
                    completed_at=now,
                )
            )
            if campaign.payment_intent_id:
                await db.execute(
                    update(Transaction)
                    .where(
                        Transaction.payment_intent_id == campaign.payment_intent_id,
                        Transaction.type == "escrow_hold",
                        Transaction.status == "pending",
                    )
                    .values(status="completed", completed_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        await db.refresh(campaign)
        _step(op, "released", campaign_id=campaign.id, payout=str(payout), user_id=identity.user_id)
        return payout


def _escrow_campaign_id(intent: dict) -> int | None:
    metadata = intent.get("metadata") or {}
    if metadata.get("type") != ESCROW_METADATA_TYPE or not intent.get("id"):
        return None
    try:
        return int(metadata["campaign_id"])
    except (KeyError, TypeError, ValueError):
        logger.warning("Escrow intent %s has no usable campaign_id", intent.get("id"))
        return None


def split_from_metadata(intent: dict) -> FeeSplit:
    """Rebuild the funding split recorded on a payment intent."""
    metadata = intent.get("metadata") or {}
    amount_minor = int(intent["amount"])
    amount = (Decimal(amount_minor) / 100).quantize(Decimal("0.01"))
    platform_fee = to_money(metadata.get("platform_fee", "0"))
    return FeeSplit(
        amount=amount,
        platform_fee=platform_fee,
        creator_payout=to_money(metadata.get("creator_payout", amount - platform_fee)),
        amount_minor=amount_minor,
    )
