"""Tests for the escrow fee split."""

from decimal import Decimal

import pytest

from marketplace.services.fees import compute_fee_split, to_money


class TestComputeFeeSplit:
    def test_two_hundred_at_eighteen_percent(self):
        split = compute_fee_split(Decimal("200"), 18)
        assert split.platform_fee == Decimal("36.00")
        assert split.creator_payout == Decimal("164.00")
        assert split.amount_minor == 20000

    @pytest.mark.parametrize(
        "amount",
        ["0.01", "0.99", "1", "10.50", "33.33", "99.99", "149.95", "1234.56", "99999.99"],
    )
    def test_fee_plus_payout_equals_amount(self, amount):
        split = compute_fee_split(Decimal(amount), 18)
        assert split.platform_fee + split.creator_payout == split.amount

    def test_fee_rounds_scaled_amount_half_up(self):
        # 2.25 * 18 = 40.5 -> 41 -> 0.41
        assert compute_fee_split(Decimal("2.25"), 18).platform_fee == Decimal("0.41")
        # 0.25 * 18 = 4.5 -> 5, where half-even would give 4
        assert compute_fee_split(Decimal("0.25"), 18).platform_fee == Decimal("0.05")

    def test_zero_percent(self):
        split = compute_fee_split(Decimal("50"), 0)
        assert split.platform_fee == Decimal("0.00")
        assert split.creator_payout == Decimal("50.00")

    def test_float_input_has_no_drift(self):
        split = compute_fee_split(0.1 + 0.2, 18)
        assert split.amount == Decimal("0.30")
        assert split.platform_fee == Decimal("0.05")  # 5.4 -> 5

    def test_rejects_non_positive_amount(self):
        with pytest.raises(ValueError):
            compute_fee_split(Decimal("0"), 18)
        with pytest.raises(ValueError):
            compute_fee_split(Decimal("-5"), 18)

    def test_rejects_out_of_range_percent(self):
        with pytest.raises(ValueError):
            compute_fee_split(Decimal("10"), 101)


def test_to_money_quantizes_half_up():
    assert to_money("1.005") == Decimal("1.01")
    assert to_money(3) == Decimal("3.00")
