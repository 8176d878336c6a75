from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace.db.base import Base, Money


class Campaign(Base):
    __tablename__ = "campaigns"

    advertiser_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    creator_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)

    # Escrow bookkeeping, stamped once at funding time
    escrow_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    platform_fee: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    creator_payout: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    cpv_rate: Mapped[Decimal] = mapped_column(
        Numeric(12, 4), default=Decimal("0"), server_default="0", nullable=False
    )
    expected_views: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )
    payment_intent_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )

    # Three independent lifecycles (see services.campaign_state_machine)
    status: Mapped[str] = mapped_column(
        String(20), default="pending", server_default="pending", nullable=False
    )  # pending / active / completed
    escrow_status: Mapped[str] = mapped_column(
        String(20), default="none", server_default="none", nullable=False, index=True
    )  # none / payment_pending / held / released
    verification_status: Mapped[str] = mapped_column(
        String(20), default="not_started", server_default="not_started", nullable=False
    )  # not_started / proof_submitted / under_review / verified / rejected

    publish_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Relationships
    advertiser = relationship("User", foreign_keys=[advertiser_id], lazy="selectin")
    creator = relationship("User", foreign_keys=[creator_id], lazy="selectin")
