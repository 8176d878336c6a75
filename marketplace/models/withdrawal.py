from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.db.base import Base, Money


class Withdrawal(Base):
    __tablename__ = "withdrawals"

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    pix_key: Mapped[str] = mapped_column(String(140), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default="pending", server_default="pending", nullable=False
    )  # pending / paid / rejected, settled by the weekly payout batch
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
