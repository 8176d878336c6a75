from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


def _money(v: Decimal | None) -> float | None:
    return float(v) if v is not None else None


# ---------------------------------------------------------------------------
# Campaigns
# ---------------------------------------------------------------------------


class CampaignCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    price: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    creator_id: int


class CampaignResponse(BaseModel):
    id: int
    advertiser_id: int
    creator_id: int
    title: str
    description: str | None
    price: Decimal
    escrow_amount: Decimal | None
    platform_fee: Decimal | None
    creator_payout: Decimal | None
    cpv_rate: Decimal
    expected_views: int
    status: str
    escrow_status: str
    verification_status: str
    payment_intent_id: str | None
    publish_deadline: datetime | None
    completed_at: datetime | None
    created_at: datetime
    available_actions: list[str] = []

    model_config = {"from_attributes": True}

    @field_serializer("price", "escrow_amount", "platform_fee", "creator_payout", "cpv_rate")
    def _ser_money(self, v: Decimal | None) -> float | None:
        return _money(v)


# ---------------------------------------------------------------------------
# Escrow
# ---------------------------------------------------------------------------


class CreateEscrowPaymentRequest(BaseModel):
    campaign_id: int
    creator_id: int
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    cpv_rate: Decimal | None = Field(None, ge=0)
    expected_views: int | None = Field(None, ge=0)


class EscrowPaymentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    client_secret: str = Field(..., alias="clientSecret")
    payment_intent_id: str = Field(..., alias="paymentIntentId")
    platform_fee: Decimal = Field(..., alias="platformFee")
    creator_payout: Decimal = Field(..., alias="creatorPayout")

    @field_serializer("platform_fee", "creator_payout")
    def _ser_money(self, v: Decimal) -> float:
        return float(v)


class ReleaseEscrowRequest(BaseModel):
    campaign_id: int


class ReleaseEscrowResponse(BaseModel):
    success: bool = True
    payout: Decimal

    @field_serializer("payout")
    def _ser_money(self, v: Decimal) -> float:
        return float(v)


# ---------------------------------------------------------------------------
# Proofs
# ---------------------------------------------------------------------------


ProofType = Literal["screenshot", "video", "link"]


class ProofResponse(BaseModel):
    id: int
    campaign_id: int
    creator_id: int
    proof_type: str
    file_url: str
    file_name: str | None
    view_count: int | None
    status: str
    submitted_at: datetime
    reviewed_at: datetime | None
    reviewed_by: int | None
    reviewer_notes: str | None

    model_config = {"from_attributes": True}


class ProofReviewRequest(BaseModel):
    decision: Literal["approved", "rejected"]
    notes: str | None = Field(None, max_length=2000)


class VerificationStatusResponse(BaseModel):
    campaign_id: int
    verification_status: str


# ---------------------------------------------------------------------------
# Wallet
# ---------------------------------------------------------------------------


class TransactionResponse(BaseModel):
    id: int
    campaign_id: int | None
    payer_id: int | None
    payee_id: int | None
    amount: Decimal
    platform_fee: Decimal
    net_amount: Decimal
    type: str
    status: str
    description: str | None
    created_at: datetime
    completed_at: datetime | None

    model_config = {"from_attributes": True}

    @field_serializer("amount", "platform_fee", "net_amount")
    def _ser_money(self, v: Decimal) -> float:
        return float(v)


class WalletResponse(BaseModel):
    available_balance: Decimal
    pending_balance: Decimal
    total_earned: Decimal
    transactions: list[TransactionResponse] = []

    model_config = {"from_attributes": True}

    @field_serializer("available_balance", "pending_balance", "total_earned")
    def _ser_money(self, v: Decimal) -> float:
        return float(v)


class WithdrawalRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    pix_key: str = Field(..., min_length=1, max_length=140)

    @field_validator("pix_key")
    @classmethod
    def _strip_key(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("pix_key must not be blank")
        return v


class WithdrawalResponse(BaseModel):
    id: int
    amount: Decimal
    pix_key: str
    status: str
    created_at: datetime
    processed_at: datetime | None

    model_config = {"from_attributes": True}

    @field_serializer("amount")
    def _ser_money(self, v: Decimal) -> float:
        return float(v)


class WithdrawalCreatedResponse(WithdrawalResponse):
    settles_on: date
    message: str


# ---------------------------------------------------------------------------
# Public config
# ---------------------------------------------------------------------------


class PublicConfigResponse(BaseModel):
    platform_fee_percent: int
    min_withdrawal_amount: float
    currency: str
    publish_deadline_hours: int
