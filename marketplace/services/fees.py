"""Escrow fee split.

The platform fee is rounded on the scaled amount (``amount * percent``) to a
whole number, then divided by 100, using ROUND_HALF_UP. Amounts are handled
as ``Decimal`` end to end so the split is exact in the ledger.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


@dataclass(frozen=True)
class FeeSplit:
    amount: Decimal
    platform_fee: Decimal
    creator_payout: Decimal
    amount_minor: int  # amount in the gateway's minor currency unit


def to_money(value) -> Decimal:
    """Coerce a number to a cent-quantized Decimal without float drift."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_fee_split(amount, fee_percent: int) -> FeeSplit:
    """Split an escrow amount into platform fee and creator payout.

    >>> compute_fee_split(Decimal("200"), 18).platform_fee
    Decimal('36.00')
    """
    if not 0 <= fee_percent <= 100:
        raise ValueError(f"fee_percent must be within 0..100, got {fee_percent}")

    amount = to_money(amount)
    if amount <= 0:
        raise ValueError("amount must be positive")

    scaled_fee = (amount * fee_percent).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    platform_fee = (scaled_fee / 100).quantize(CENT)
    creator_payout = amount - platform_fee
    amount_minor = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    return FeeSplit(
        amount=amount,
        platform_fee=platform_fee,
        creator_payout=creator_payout,
        amount_minor=amount_minor,
    )
