"""
pool.py - Secondary-market liquidity pool (shares vs. backing asset)

A constant-ratio reserve pair priced independently of NAV:

    price      = asset_reserve / share_reserve
    fee        = amount_in * swap_fee_bps / 10000
    net_in     = amount_in - fee
    sell:  out = net_in * asset_reserve / share_reserve     (shares in, asset out)
    buy:   out = net_in * share_reserve / asset_reserve     (asset in, shares out)

Trades execute at the pre-trade ratio; the ratio itself drifts as reserves
change, and an explicit rebalance re-anchors the asset side to a target
price (normally NAV).

The share reserve is not a free-floating number: it is backed by
HoldingRecords owned by POOL_PARTY, and the asset reserve by POOL_PARTY's
recorded asset balance. The ledger checks both at commit.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from .core import (
    LedgerView, Move, PendingTransaction, RecordChange, TransactionOrigin, OriginType,
    POOL_PARTY, POOL_RECORD_ID,
    InvalidValue, InvalidState, InsufficientBalance, InsufficientLiquidity, RecordNotFound,
    require_party, build_transaction,
)
from .fixed_point import (
    ZERO, apply_bps, div_down, mul_down, quantize_amount, quantize_price, to_decimal,
    ASSET_DECIMAL_PLACES, SHARE_DECIMAL_PLACES,
)
from .holdings import credit_records, spend_records


@dataclass(frozen=True, slots=True)
class PoolState:
    """Immutable snapshot of the pool's reserves and terms."""
    operator: str
    share_reserve: Decimal
    asset_reserve: Decimal
    swap_fee_bps: int
    last_rebalance: datetime
    version: int = 0

    def __post_init__(self):
        for name in ('share_reserve', 'asset_reserve'):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, to_decimal(value, name))
        if self.share_reserve <= 0:
            raise InvalidValue(f"share_reserve must be positive, got {self.share_reserve}")
        if self.asset_reserve <= 0:
            raise InvalidValue(f"asset_reserve must be positive, got {self.asset_reserve}")
        if isinstance(self.swap_fee_bps, bool) or not isinstance(self.swap_fee_bps, int) \
                or not 0 <= self.swap_fee_bps <= 10000:
            raise InvalidValue(f"swap_fee_bps must be an integer in [0, 10000], got {self.swap_fee_bps}")

    @property
    def record_id(self) -> str:
        return POOL_RECORD_ID

    @property
    def price(self) -> Decimal:
        return quantize_price(self.asset_reserve / self.share_reserve)


@dataclass(frozen=True, slots=True)
class SwapQuote:
    """Result of pricing a swap against a pool snapshot."""
    amount_in: Decimal
    fee: Decimal
    net_in: Decimal
    amount_out: Decimal


# ============================================================================
# PURE FUNCTIONS
# ============================================================================

def _fee_split(amount_in: Decimal, swap_fee_bps: int) -> tuple:
    amount_in = quantize_amount(amount_in)
    if amount_in <= 0:
        raise InvalidValue(f"swap amount must be positive, got {amount_in}")
    fee = apply_bps(amount_in, swap_fee_bps)
    return amount_in, fee, amount_in - fee


def quote_sell_shares(pool: PoolState, shares_in: Decimal) -> SwapQuote:
    """
    Price selling shares for asset.

    Raises:
        InsufficientLiquidity: if the output would empty the asset reserve
    """
    amount_in, fee, net_in = _fee_split(shares_in, pool.swap_fee_bps)
    out = div_down(net_in * pool.asset_reserve, pool.share_reserve, ASSET_DECIMAL_PLACES)
    if out >= pool.asset_reserve:
        raise InsufficientLiquidity(
            f"swap out {out} would exhaust asset reserve {pool.asset_reserve}"
        )
    if out <= 0:
        raise InvalidValue(f"swap of {amount_in} shares yields nothing")
    return SwapQuote(amount_in, fee, net_in, out)


def quote_buy_shares(pool: PoolState, assets_in: Decimal) -> SwapQuote:
    """
    Price buying shares with asset.

    Raises:
        InsufficientLiquidity: if the output would empty the share reserve
    """
    amount_in, fee, net_in = _fee_split(assets_in, pool.swap_fee_bps)
    out = div_down(net_in * pool.share_reserve, pool.asset_reserve, SHARE_DECIMAL_PLACES)
    if out >= pool.share_reserve:
        raise InsufficientLiquidity(
            f"swap out {out} would exhaust share reserve {pool.share_reserve}"
        )
    if out <= 0:
        raise InvalidValue(f"swap of {amount_in} asset yields nothing")
    return SwapQuote(amount_in, fee, net_in, out)


def apply_sell_shares(pool: PoolState, quote: SwapQuote) -> PoolState:
    return replace(
        pool,
        share_reserve=pool.share_reserve + quote.amount_in,
        asset_reserve=pool.asset_reserve - quote.amount_out,
        version=pool.version + 1,
    )


def apply_buy_shares(pool: PoolState, quote: SwapQuote) -> PoolState:
    return replace(
        pool,
        share_reserve=pool.share_reserve - quote.amount_out,
        asset_reserve=pool.asset_reserve + quote.amount_in,
        version=pool.version + 1,
    )


def rebalance_reserves(pool: PoolState, target_price: Decimal, at: datetime) -> PoolState:
    """
    Re-anchor the asset reserve so the pool price equals target_price.

    The share reserve is untouched; the asset difference is settled by the
    caller of compute_rebalance.
    """
    target_price = to_decimal(target_price, "target_price")
    if target_price <= 0:
        raise InvalidValue(f"target_price must be positive, got {target_price}")
    asset_reserve = mul_down(pool.share_reserve, target_price, ASSET_DECIMAL_PLACES)
    return replace(
        pool,
        asset_reserve=asset_reserve,
        last_rebalance=at,
        version=pool.version + 1,
    )


# ============================================================================
# CONVENIENCE FUNCTIONS (view -> PendingTransaction)
# ============================================================================

def _origin(caller: str, origin_type: OriginType, event: str) -> TransactionOrigin:
    return TransactionOrigin(origin_type, caller, POOL_RECORD_ID, event)


def _require_vault_active(view: LedgerView, operation: str) -> None:
    if view.get_vault().paused:
        raise InvalidState(f"{operation} blocked: vault is paused")


def compute_pool_creation(
    view: LedgerView,
    caller: str,
    shares: Decimal,
    assets: Decimal,
    swap_fee_bps: int,
) -> PendingTransaction:
    """
    Seed the pool from the operator's own shares and asset balance.

    Raises:
        InvalidState: pool already exists
        InsufficientBalance: operator does not hold the shares
    """
    vault = view.get_vault()
    require_party(caller, vault.operator, "CreatePool")
    try:
        view.get_pool()
    except RecordNotFound:
        pass
    else:
        raise InvalidState("pool already exists")
    shares = quantize_amount(shares)
    assets = quantize_amount(assets, ASSET_DECIMAL_PLACES)
    pool = PoolState(
        operator=caller,
        share_reserve=shares,
        asset_reserve=assets,
        swap_fee_bps=swap_fee_bps,
        last_rebalance=view.current_time,
    )
    changes, _ = spend_records(view, caller, shares, "pool_seed")
    changes += credit_records(view, POOL_PARTY, shares, "pool_seed", caller)
    changes.append(RecordChange(POOL_RECORD_ID, None, pool))
    moves = [Move(assets, caller, POOL_PARTY, "pool_seed")]
    return build_transaction(view, changes, moves, _origin(caller, OriginType.MAINTENANCE, "CREATE_POOL"))


def compute_sell_shares(
    view: LedgerView,
    trader: str,
    shares_in: Decimal,
    min_assets_out: Optional[Decimal] = None,
) -> PendingTransaction:
    """
    Sell trader's shares into the pool for asset.

    Raises:
        InsufficientBalance: trader does not hold shares_in
        InsufficientLiquidity: output exhausts the reserve or is below min_assets_out
    """
    _require_vault_active(view, "Swap")
    pool = view.get_pool()
    quote = quote_sell_shares(pool, shares_in)
    if min_assets_out is not None and quote.amount_out < min_assets_out:
        raise InsufficientLiquidity(f"swap out {quote.amount_out} below minimum {min_assets_out}")
    basis = ("sell", pool.version)
    changes: List[RecordChange] = []
    spent, _ = spend_records(view, trader, quote.amount_in, *basis)
    changes += spent
    changes += credit_records(view, POOL_PARTY, quote.amount_in, "swap", trader, *basis)
    changes.append(RecordChange(POOL_RECORD_ID, pool, apply_sell_shares(pool, quote)))
    moves = [Move(quote.amount_out, POOL_PARTY, trader, f"swap_sell:{pool.version}")]
    return build_transaction(view, changes, moves, _origin(trader, OriginType.USER_ACTION, "SELL_SHARES"))


def compute_buy_shares(
    view: LedgerView,
    trader: str,
    assets_in: Decimal,
    min_shares_out: Optional[Decimal] = None,
) -> PendingTransaction:
    """
    Buy shares from the pool with asset.

    Raises:
        InsufficientBalance: trader does not hold assets_in
        InsufficientLiquidity: output exhausts the reserve or is below min_shares_out
    """
    _require_vault_active(view, "Swap")
    pool = view.get_pool()
    quote = quote_buy_shares(pool, assets_in)
    held = view.get_asset_balance(trader)
    if held < quote.amount_in:
        raise InsufficientBalance(f"{trader} holds {held} asset, swap needs {quote.amount_in}")
    if min_shares_out is not None and quote.amount_out < min_shares_out:
        raise InsufficientLiquidity(f"swap out {quote.amount_out} below minimum {min_shares_out}")
    basis = ("buy", pool.version)
    changes: List[RecordChange] = []
    spent, _ = spend_records(view, POOL_PARTY, quote.amount_out, *basis)
    changes += spent
    changes += credit_records(view, trader, quote.amount_out, "swap", POOL_PARTY, *basis)
    changes.append(RecordChange(POOL_RECORD_ID, pool, apply_buy_shares(pool, quote)))
    moves = [Move(quote.amount_in, trader, POOL_PARTY, f"swap_buy:{pool.version}")]
    return build_transaction(view, changes, moves, _origin(trader, OriginType.USER_ACTION, "BUY_SHARES"))


def compute_rebalance(
    view: LedgerView,
    caller: str,
    target_price: Optional[Decimal] = None,
) -> PendingTransaction:
    """
    Re-anchor the pool to target_price (defaults to the vault share price).

    The operator funds an asset shortfall or receives an excess. Operator only.
    """
    vault = view.get_vault()
    require_party(caller, vault.operator, "Rebalance")
    if vault.paused:
        raise InvalidState("Rebalance blocked: vault is paused")
    pool = view.get_pool()
    target = vault.share_price if target_price is None else target_price
    rebalanced = rebalance_reserves(pool, target, view.current_time)
    delta = rebalanced.asset_reserve - pool.asset_reserve
    moves = []
    if delta > 0:
        moves.append(Move(delta, caller, POOL_PARTY, f"rebalance:{pool.version}"))
    elif delta < 0:
        moves.append(Move(-delta, POOL_PARTY, caller, f"rebalance:{pool.version}"))
    return build_transaction(
        view,
        [RecordChange(POOL_RECORD_ID, pool, rebalanced)],
        moves,
        _origin(caller, OriginType.MAINTENANCE, "REBALANCE"),
    )
