"""Creator wallet endpoints: balances, ledger, withdrawal requests."""

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.api.schemas import (
    TransactionResponse,
    WalletResponse,
    WithdrawalCreatedResponse,
    WithdrawalRequest,
    WithdrawalResponse,
)
from marketplace.core.config import settings
from marketplace.core.deps import get_db
from marketplace.core.errors import StateConflictError
from marketplace.core.idempotency import check_idempotency, release_idempotency
from marketplace.core.rate_limit import limiter
from marketplace.core.rbac import Identity
from marketplace.core.security import get_current_identity
from marketplace.services import wallet as wallet_svc
from marketplace.services.audit import log_audit

router = APIRouter(prefix="/wallet", tags=["wallet"])


@router.get("", response_model=WalletResponse)
async def get_wallet(
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """Balances plus the most recent ledger entries. Zero balances if no wallet yet."""
    summary = await wallet_svc.get_wallet_summary(db, identity.user_id)
    return WalletResponse(
        available_balance=summary.available_balance,
        pending_balance=summary.pending_balance,
        total_earned=summary.total_earned,
        transactions=[TransactionResponse.model_validate(t) for t in summary.transactions],
    )


@router.post("/withdrawals", response_model=WithdrawalCreatedResponse, status_code=201)
@limiter.limit(settings.rate_limit_withdrawal)
async def request_withdrawal(
    request: Request,
    body: WithdrawalRequest,
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    guard_key = f"withdrawal:{identity.user_id}:{idempotency_key}" if idempotency_key else None
    if guard_key and not await check_idempotency(guard_key, ttl=3600):
        raise StateConflictError("Duplicate withdrawal request")

    try:
        withdrawal = await wallet_svc.request_withdrawal(
            db, identity.user_id, body.amount, body.pix_key,
        )
    except Exception:
        if guard_key:
            await release_idempotency(guard_key)
        raise

    await log_audit(
        db, action="withdrawal_request", entity_type="withdrawal", entity_id=withdrawal.id,
        user_id=identity.user_id, details={"amount": str(withdrawal.amount)},
        ip_address=request.client.host if request.client else None,
        request_id=getattr(request.state, "request_id", None),
    )

    settles_on = wallet_svc.next_settlement_date()
    return WithdrawalCreatedResponse(
        id=withdrawal.id,
        amount=withdrawal.amount,
        pix_key=withdrawal.pix_key,
        status=withdrawal.status,
        created_at=withdrawal.created_at,
        processed_at=withdrawal.processed_at,
        settles_on=settles_on,
        message=f"Withdrawal requested. It will be processed on Monday {settles_on.isoformat()}.",
    )


@router.get("/withdrawals", response_model=list[WithdrawalResponse])
async def list_withdrawals(
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    return await wallet_svc.get_withdrawals(db, identity.user_id, offset=offset, limit=limit)
