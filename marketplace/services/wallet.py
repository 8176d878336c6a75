"""Creator wallet balances and withdrawal requests.

All balance changes are single SQL statements (``balance = balance + :x``),
never a read-modify-write of a previously loaded row, so concurrent escrow
releases and withdrawals on the same wallet cannot lose updates.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import settings
from marketplace.core.errors import InsufficientBalanceError, ValidationFailedError
from marketplace.models.transaction import Transaction
from marketplace.models.wallet import CreatorWallet
from marketplace.models.withdrawal import Withdrawal
from marketplace.services.fees import to_money

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


@dataclass
class WalletSummary:
    user_id: int
    available_balance: Decimal = ZERO
    pending_balance: Decimal = ZERO
    total_earned: Decimal = ZERO
    transactions: list[Transaction] = field(default_factory=list)


def next_settlement_date(today: date | None = None) -> date:
    """Withdrawals are paid out in a weekly batch on the next Monday."""
    today = today or datetime.now(timezone.utc).date()
    days_ahead = (7 - today.weekday()) % 7 or 7
    return today + timedelta(days=days_ahead)


async def get_wallet(db: AsyncSession, user_id: int) -> CreatorWallet | None:
    result = await db.execute(
        select(CreatorWallet)
        .where(CreatorWallet.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_transactions_for_user(
    db: AsyncSession, user_id: int, limit: int | None = None,
) -> list[Transaction]:
    result = await db.execute(
        select(Transaction)
        .where(or_(Transaction.payer_id == user_id, Transaction.payee_id == user_id))
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .limit(limit or settings.wallet_transactions_limit)
    )
    return list(result.scalars().all())


async def get_wallet_summary(db: AsyncSession, user_id: int) -> WalletSummary:
    wallet = await get_wallet(db, user_id)
    summary = WalletSummary(user_id=user_id)
    if wallet is not None:
        summary.available_balance = wallet.available_balance
        summary.pending_balance = wallet.pending_balance
        summary.total_earned = wallet.total_earned
    summary.transactions = await get_transactions_for_user(db, user_id)
    return summary


async def credit_wallet(db: AsyncSession, user_id: int, amount: Decimal) -> None:
    """Atomically add ``amount`` to available balance and total earned.

    Does not commit; the caller owns the transaction. Creates the wallet
    on first credit. If a concurrent first credit wins the insert race the
    flush raises IntegrityError and the caller's whole unit rolls back.
    """
    if amount <= 0:
        raise ValueError("credit amount must be positive")

    result = await db.execute(
        update(CreatorWallet)
        .where(CreatorWallet.user_id == user_id)
        .values(
            available_balance=CreatorWallet.available_balance + amount,
            total_earned=CreatorWallet.total_earned + amount,
            updated_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return

    db.add(
        CreatorWallet(
            user_id=user_id,
            available_balance=amount,
            pending_balance=ZERO,
            total_earned=amount,
        )
    )
    await db.flush()
    logger.info("Created wallet on first credit", extra={"user_id": user_id})


async def request_withdrawal(
    db: AsyncSession, user_id: int, amount, pix_key: str,
) -> Withdrawal:
    """Move ``amount`` from available to pending and record the payout request."""
    amount = to_money(amount)
    pix_key = pix_key.strip()
    if not pix_key:
        raise ValidationFailedError("A payout key is required")

    wallet = await get_wallet(db, user_id)
    available = wallet.available_balance if wallet is not None else ZERO
    if wallet is None or amount > available:
        raise InsufficientBalanceError()
    if amount < settings.min_withdrawal_amount:
        raise ValidationFailedError(
            f"Minimum withdrawal amount is {settings.min_withdrawal_amount}"
        )

    try:
        # Guarded move: zero rows means another request drained the balance first
        result = await db.execute(
            update(CreatorWallet)
            .where(
                CreatorWallet.user_id == user_id,
                CreatorWallet.available_balance >= amount,
            )
            .values(
                available_balance=CreatorWallet.available_balance - amount,
                pending_balance=CreatorWallet.pending_balance + amount,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InsufficientBalanceError()

        withdrawal = Withdrawal(user_id=user_id, amount=amount, pix_key=pix_key, status="pending")
        db.add(withdrawal)
        db.add(
            Transaction(
                campaign_id=None,
                payer_id=None,
                payee_id=user_id,
                amount=amount,
                platform_fee=ZERO,
                net_amount=amount,
                type="withdrawal",
                status="pending",
                description=f"Withdrawal to payout key, settles {next_settlement_date()}",
            )
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await db.refresh(withdrawal)
    logger.info(
        "Withdrawal requested",
        extra={"user_id": user_id, "withdrawal_id": withdrawal.id, "amount": str(amount)},
    )
    return withdrawal


async def get_withdrawals(
    db: AsyncSession, user_id: int, offset: int = 0, limit: int = 50,
) -> list[Withdrawal]:
    result = await db.execute(
        select(Withdrawal)
        .where(Withdrawal.user_id == user_id)
        .order_by(Withdrawal.created_at.desc(), Withdrawal.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())
