"""
test_fixed_point.py - Unit tests for decimal arithmetic

Tests:
- Admission of numeric values (float via str, NaN/inf/bool rejected)
- Toward-zero quantization of amounts and prices
- Bootstrap share price with no shares outstanding
- Tolerance band and spread helpers
- Round-trip loss bounded by one unit of rounding
"""

import pytest
from decimal import Decimal
from hypothesis import given, settings
from hypothesis import strategies as st

from vaultledger import (
    InvalidValue,
    to_decimal, quantize_amount, quantize_price, div_down, mul_down, share_price,
    shares_for_assets, assets_for_shares, bps_to_fraction, apply_bps, within_tolerance, spread_bps,
)


class TestToDecimal:
    """Tests for to_decimal admission."""

    def test_float_goes_through_str(self):
        assert to_decimal(0.1) == Decimal("0.1")

    def test_int_and_str(self):
        assert to_decimal(5) == Decimal("5")
        assert to_decimal("1.25") == Decimal("1.25")

    def test_decimal_passes_through(self):
        d = Decimal("3.14")
        assert to_decimal(d) is d

    @pytest.mark.parametrize("bad", [True, "abc", float("nan"), float("inf"), Decimal("NaN"), None, [1]])
    def test_rejects_non_numeric_and_non_finite(self, bad):
        with pytest.raises(InvalidValue):
            to_decimal(bad)


class TestQuantization:
    """Every stored quantity rounds toward zero."""

    def test_amount_rounds_down(self):
        assert quantize_amount(Decimal("1.2345679")) == Decimal("1.234567")

    def test_negative_amount_rounds_toward_zero(self):
        assert quantize_amount(Decimal("-1.2345679")) == Decimal("-1.234567")

    def test_price_has_eighteen_places(self):
        assert quantize_price(Decimal(1) / Decimal(3)) == Decimal("0.333333333333333333")

    def test_div_down(self):
        assert div_down(Decimal("100"), Decimal("3")) == Decimal("33.333333")

    def test_div_by_zero_raises(self):
        with pytest.raises(InvalidValue):
            div_down(Decimal("1"), Decimal("0"))

    def test_mul_down(self):
        assert mul_down(Decimal("81.726354"), Decimal("1.089")) == Decimal("88.999999")


class TestSharePrice:
    """share_price = nav / total_shares, 1 when no shares exist."""

    def test_bootstrap_price_is_one(self):
        assert share_price(Decimal("0"), Decimal("0")) == Decimal("1")

    def test_bootstrap_ignores_nav(self):
        assert share_price(Decimal("500"), Decimal("0")) == Decimal("1")

    def test_regular_price(self):
        assert share_price(Decimal("1089"), Decimal("1000")) == Decimal("1.089")

    def test_zero_nav_with_shares_is_zero(self):
        assert share_price(Decimal("0"), Decimal("1000")) == Decimal("0")

    def test_shares_for_assets(self):
        assert shares_for_assets(Decimal("500"), Decimal("1.25")) == Decimal("400")

    def test_assets_for_shares(self):
        assert assets_for_shares(Decimal("400"), Decimal("1.25")) == Decimal("500")


class TestBasisPoints:

    def test_bps_to_fraction(self):
        assert bps_to_fraction(100) == Decimal("0.01")

    def test_apply_bps(self):
        assert apply_bps(Decimal("100"), 20) == Decimal("0.2")

    def test_within_tolerance(self):
        assert within_tolerance(Decimal("1000.5"), Decimal("1000"), 10)
        assert not within_tolerance(Decimal("1001.01"), Decimal("1000"), 10)

    def test_zero_band_accepts_one_rounding_unit(self):
        assert within_tolerance(Decimal("1000.000001"), Decimal("1000"), 0)
        assert not within_tolerance(Decimal("1000.000002"), Decimal("1000"), 0)

    def test_spread_sign(self):
        assert spread_bps(Decimal("0.99"), Decimal("1")) == Decimal("-100")
        assert spread_bps(Decimal("1.02"), Decimal("1")) == Decimal("200")

    def test_spread_against_zero_reference(self):
        with pytest.raises(InvalidValue):
            spread_bps(Decimal("1"), Decimal("0"))


class TestRoundTrip:

    @given(
        amount=st.decimals(min_value=Decimal("0.000001"), max_value=Decimal("1000000000"), places=6),
        price=st.decimals(min_value=Decimal("0.01"), max_value=Decimal("1000"), places=6),
    )
    @settings(max_examples=200)
    def test_round_trip_never_gains(self, amount, price):
        """
        PROPERTY: assets -> shares -> assets returns at most the original,
        losing at most one rounding unit on each leg.
        """
        back = assets_for_shares(shares_for_assets(amount, price), price)
        assert back <= amount
        assert amount - back <= price * Decimal("0.000001") + Decimal("0.000001")
