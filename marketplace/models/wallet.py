from decimal import Decimal

from sqlalchemy import CheckConstraint, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.db.base import Base, Money


class CreatorWallet(Base):
    __tablename__ = "creator_wallets"

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False, index=True
    )
    available_balance: Mapped[Decimal] = mapped_column(
        Money, default=Decimal("0"), server_default="0", nullable=False
    )
    pending_balance: Mapped[Decimal] = mapped_column(
        Money, default=Decimal("0"), server_default="0", nullable=False
    )
    total_earned: Mapped[Decimal] = mapped_column(
        Money, default=Decimal("0"), server_default="0", nullable=False
    )

    __table_args__ = (
        CheckConstraint("available_balance >= 0", name="ck_creator_wallets_available_non_negative"),
        CheckConstraint("pending_balance >= 0", name="ck_creator_wallets_pending_non_negative"),
    )
