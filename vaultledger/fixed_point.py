"""
fixed_point.py - Exact decimal arithmetic for shares, assets and prices

Every monetary and share quantity in the vault is a Decimal. Nothing in the
package touches binary floating point once a value has been admitted through
to_decimal().

Rounding policy:
    - Intermediate results use the module context (prec=50, ROUND_HALF_EVEN)
    - Every stored quantity is quantized toward zero (ROUND_DOWN):
      minted shares, burned shares, redemptions, fees, swap outputs
    - Share price is stored at PRICE_DECIMAL_PLACES, amounts at 6 places

Rounding toward zero everywhere means the vault never pays out more than
the value it recorded, and a deposit/withdraw round trip can only lose dust.
"""

from __future__ import annotations
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_EVEN, DefaultContext, getcontext, InvalidOperation
from typing import Union

from .core import InvalidValue


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# The context is written to DefaultContext as well as the current thread's
# context. Decimal contexts are thread-local and new threads copy
# DefaultContext, so oracle fetches and concurrent settlements running on
# worker threads compute with the same precision.
#
DECIMAL_PRECISION = 50

DefaultContext.prec = DECIMAL_PRECISION
DefaultContext.rounding = ROUND_HALF_EVEN
_VAULT_DECIMAL_CONTEXT = getcontext()
_VAULT_DECIMAL_CONTEXT.prec = DECIMAL_PRECISION
_VAULT_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

SHARE_DECIMAL_PLACES = 6
ASSET_DECIMAL_PLACES = 6
PRICE_DECIMAL_PLACES = 18

ZERO = Decimal("0")
ONE = Decimal("1")
BPS_DENOMINATOR = Decimal("10000")

# Bootstrap share price when no shares are outstanding.
INITIAL_SHARE_PRICE = ONE

Numeric = Union[Decimal, int, str, float]


def _quantizer(places: int) -> Decimal:
    return Decimal(10) ** -places


# ============================================================================
# CONVERSION
# ============================================================================

def to_decimal(value: Numeric, name: str = "value") -> Decimal:
    """
    Admit a numeric value into Decimal arithmetic.

    Floats are converted through str() so that 0.1 becomes Decimal("0.1")
    rather than its binary expansion.

    Raises:
        InvalidValue: if the value is not numeric, NaN or infinite
    """
    if isinstance(value, bool):
        raise InvalidValue(f"{name} must be numeric, got bool")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation:
            raise InvalidValue(f"{name} is not a valid number: {value!r}") from None
    elif isinstance(value, float):
        result = Decimal(str(value))
    else:
        raise InvalidValue(f"{name} must be numeric, got {type(value).__name__}")
    if result.is_nan() or result.is_infinite():
        raise InvalidValue(f"{name} must be finite, got {result}")
    return result


def quantize_amount(value: Numeric, places: int = SHARE_DECIMAL_PLACES) -> Decimal:
    """Round a share or asset quantity toward zero at the given precision."""
    return to_decimal(value).quantize(_quantizer(places), rounding=ROUND_DOWN)


def quantize_price(value: Numeric) -> Decimal:
    """Round a price toward zero at PRICE_DECIMAL_PLACES."""
    return to_decimal(value).quantize(_quantizer(PRICE_DECIMAL_PLACES), rounding=ROUND_DOWN)


# ============================================================================
# ARITHMETIC
# ============================================================================

def div_down(numerator: Decimal, denominator: Decimal, places: int = SHARE_DECIMAL_PLACES) -> Decimal:
    """
    Divide and round the quotient toward zero.

    Raises:
        InvalidValue: if denominator is zero
    """
    if denominator == 0:
        raise InvalidValue(f"division by zero ({numerator} / 0)")
    return (numerator / denominator).quantize(_quantizer(places), rounding=ROUND_DOWN)


def mul_down(a: Decimal, b: Decimal, places: int = SHARE_DECIMAL_PLACES) -> Decimal:
    """Multiply and round the product toward zero."""
    return (a * b).quantize(_quantizer(places), rounding=ROUND_DOWN)


def share_price(nav: Decimal, total_shares: Decimal) -> Decimal:
    """
    Price of one share: nav / total_shares, or exactly 1 with no shares outstanding.

    The zero-share case is the bootstrap price, not an error.
    """
    if total_shares == 0:
        return INITIAL_SHARE_PRICE
    return div_down(nav, total_shares, PRICE_DECIMAL_PLACES)


def shares_for_assets(amount: Decimal, price: Decimal) -> Decimal:
    """Shares minted for an asset amount at a price (amount / price, toward zero)."""
    return div_down(amount, price, SHARE_DECIMAL_PLACES)


def assets_for_shares(shares: Decimal, price: Decimal) -> Decimal:
    """Asset value of a share quantity at a price (shares * price, toward zero)."""
    return mul_down(shares, price, ASSET_DECIMAL_PLACES)


def bps_to_fraction(bps: int) -> Decimal:
    """Basis points as a Decimal fraction (100 bps -> 0.01)."""
    return Decimal(bps) / BPS_DENOMINATOR


def apply_bps(amount: Decimal, bps: int, places: int = ASSET_DECIMAL_PLACES) -> Decimal:
    """amount * bps / 10000, toward zero."""
    return mul_down(amount, bps_to_fraction(bps), places)


def within_tolerance(actual: Decimal, expected: Decimal, tolerance_bps: int) -> bool:
    """
    True if actual lies within tolerance_bps of expected.

    The band is relative to expected. One unit in the last share place is
    always tolerated so that a zero-bps band still accepts the exact
    rounded value.
    """
    band = expected * bps_to_fraction(tolerance_bps)
    band = max(band, _quantizer(SHARE_DECIMAL_PLACES))
    return abs(actual - expected) <= band


def spread_bps(price: Decimal, reference: Decimal) -> Decimal:
    """
    Signed spread of price over reference in basis points.

    Negative when price trades below reference.
    """
    if reference == 0:
        raise InvalidValue("reference price is zero")
    return (price - reference) / reference * BPS_DENOMINATOR
