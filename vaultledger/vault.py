"""
vault.py - Vault Ledger: the singleton authoritative vault state

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASS:
   - VaultState: total shares, NAV, fee rate, pause flag, last update time.
     share_price is a property computed from nav and total_shares; it is
     never stored, so it can never drift from them.

2. PURE TRANSITIONS (state, args) -> new state:
   - update_nav, record_mint, record_burn, pause, unpause, set_fee_rate
   - Each returns a NEW VaultState with version + 1, or raises

3. CONVENIENCE FUNCTIONS (compute_*):
   - Take (view, caller, ...), check operator authority, wrap the
     transition in a PendingTransaction for Ledger.execute()

The ledger records share counts, it never derives them: mint and burn
amounts arrive pre-computed and pre-validated by the settlement
coordinator. That keeps this module bookkeeping only.

Key formulas:
    share_price = nav / total_shares     (1 when total_shares == 0)
    mint:  total_shares += shares, nav += deposit_amount
    burn:  total_shares -= shares, nav -= withdraw_amount
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal

from .core import (
    LedgerView, PendingTransaction, RecordChange, TransactionOrigin, OriginType,
    VAULT_RECORD_ID,
    InvalidValue, InvalidState, InsufficientShares, StaleUpdate, RecordNotFound,
    require_party, build_transaction,
)
from .fixed_point import ZERO, share_price, to_decimal


VAULT_STATUS_ACTIVE = "ACTIVE"
VAULT_STATUS_PAUSED = "PAUSED"

MAX_BPS = 10000


@dataclass(frozen=True, slots=True)
class VaultState:
    """
    Immutable snapshot of the vault ledger.

    Every mutation produces a successor with version + 1. The version is the
    compare-and-swap token: a settlement priced off version n can only
    commit while the slot still holds version n.
    """
    operator: str
    total_shares: Decimal
    nav: Decimal
    fee_rate_bps: int
    last_update: datetime
    paused: bool = False
    version: int = 0
    accrued_fees: Decimal = ZERO

    def __post_init__(self):
        for name in ('total_shares', 'nav', 'accrued_fees'):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, to_decimal(value, name))
        if not self.operator or not self.operator.strip():
            raise InvalidValue("operator cannot be empty")
        if self.total_shares < 0:
            raise InvalidValue(f"total_shares must be >= 0, got {self.total_shares}")
        if self.nav < 0:
            raise InvalidValue(f"nav must be >= 0, got {self.nav}")
        _validate_bps(self.fee_rate_bps, "fee_rate_bps")

    @property
    def record_id(self) -> str:
        return VAULT_RECORD_ID

    @property
    def share_price(self) -> Decimal:
        return share_price(self.nav, self.total_shares)

    @property
    def status(self) -> str:
        return VAULT_STATUS_PAUSED if self.paused else VAULT_STATUS_ACTIVE


def _validate_bps(value: int, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidValue(f"{name} must be an integer, got {value!r}")
    if not 0 <= value <= MAX_BPS:
        raise InvalidValue(f"{name} must be in [0, {MAX_BPS}], got {value}")


def _require_active(state: VaultState, operation: str) -> None:
    if state.paused:
        raise InvalidState(f"{operation} blocked: vault is paused")


# ============================================================================
# PURE TRANSITIONS
# ============================================================================

def initialize_vault(operator: str, fee_rate_bps: int, at: datetime) -> VaultState:
    """Genesis state: nav=0, total_shares=0, share price 1."""
    return VaultState(
        operator=operator,
        total_shares=ZERO,
        nav=ZERO,
        fee_rate_bps=fee_rate_bps,
        last_update=at,
    )


def update_nav(
    state: VaultState,
    new_nav: Decimal,
    at: datetime,
    accrued_fee: Decimal = ZERO,
) -> VaultState:
    """
    Post a new NAV.

    Raises:
        InvalidState: vault is paused
        InvalidValue: new_nav < 0 or accrued_fee < 0
        StaleUpdate: at is not strictly after last_update
    """
    _require_active(state, "UpdateNAV")
    new_nav = to_decimal(new_nav, "new_nav")
    accrued_fee = to_decimal(accrued_fee, "accrued_fee")
    if new_nav < 0:
        raise InvalidValue(f"new_nav must be >= 0, got {new_nav}")
    if accrued_fee < 0:
        raise InvalidValue(f"accrued_fee must be >= 0, got {accrued_fee}")
    if at <= state.last_update:
        raise StaleUpdate(f"NAV update at {at} is not after last update {state.last_update}")
    return replace(
        state,
        nav=new_nav,
        last_update=at,
        accrued_fees=state.accrued_fees + accrued_fee,
        version=state.version + 1,
    )


def record_mint(state: VaultState, shares: Decimal, deposit_amount: Decimal) -> VaultState:
    """
    Record newly minted shares against a deposit.

    Raises:
        InvalidState: vault is paused
        InvalidValue: shares <= 0 or deposit_amount <= 0
    """
    _require_active(state, "RecordMint")
    shares = to_decimal(shares, "shares")
    deposit_amount = to_decimal(deposit_amount, "deposit_amount")
    if shares <= 0:
        raise InvalidValue(f"shares must be positive, got {shares}")
    if deposit_amount <= 0:
        raise InvalidValue(f"deposit_amount must be positive, got {deposit_amount}")
    return replace(
        state,
        total_shares=state.total_shares + shares,
        nav=state.nav + deposit_amount,
        version=state.version + 1,
    )


def record_burn(state: VaultState, shares: Decimal, withdraw_amount: Decimal) -> VaultState:
    """
    Record burned shares against a redemption.

    Raises:
        InvalidState: vault is paused
        InvalidValue: shares <= 0, withdraw_amount <= 0, or withdraw_amount > nav
        InsufficientShares: shares > total_shares
    """
    _require_active(state, "RecordBurn")
    shares = to_decimal(shares, "shares")
    withdraw_amount = to_decimal(withdraw_amount, "withdraw_amount")
    if shares <= 0:
        raise InvalidValue(f"shares must be positive, got {shares}")
    if withdraw_amount <= 0:
        raise InvalidValue(f"withdraw_amount must be positive, got {withdraw_amount}")
    if shares > state.total_shares:
        raise InsufficientShares(
            f"cannot burn {shares} shares, only {state.total_shares} outstanding"
        )
    if withdraw_amount > state.nav:
        raise InvalidValue(f"withdraw_amount {withdraw_amount} exceeds nav {state.nav}")
    return replace(
        state,
        total_shares=state.total_shares - shares,
        nav=state.nav - withdraw_amount,
        version=state.version + 1,
    )


def pause(state: VaultState) -> VaultState:
    if state.paused:
        raise InvalidState("vault is already paused")
    return replace(state, paused=True, version=state.version + 1)


def unpause(state: VaultState) -> VaultState:
    if not state.paused:
        raise InvalidState("vault is not paused")
    return replace(state, paused=False, version=state.version + 1)


def set_fee_rate(state: VaultState, fee_rate_bps: int) -> VaultState:
    _require_active(state, "SetFeeRate")
    _validate_bps(fee_rate_bps, "fee_rate_bps")
    return replace(state, fee_rate_bps=fee_rate_bps, version=state.version + 1)


# ============================================================================
# CONVENIENCE FUNCTIONS (view -> PendingTransaction)
# ============================================================================

def _origin(caller: str, origin_type: OriginType, event: str) -> TransactionOrigin:
    return TransactionOrigin(origin_type, caller, VAULT_RECORD_ID, event)


def compute_vault_initialization(
    view: LedgerView,
    operator: str,
    fee_rate_bps: int,
) -> PendingTransaction:
    """
    Create the vault singleton.

    Raises:
        InvalidState: if the vault already exists
    """
    try:
        view.get_vault()
    except RecordNotFound:
        pass
    else:
        raise InvalidState("vault already initialized")
    genesis = initialize_vault(operator, fee_rate_bps, view.current_time)
    return build_transaction(
        view,
        [RecordChange(VAULT_RECORD_ID, None, genesis)],
        origin=_origin(operator, OriginType.SYSTEM, "INITIALIZE"),
    )


def compute_nav_update(
    view: LedgerView,
    caller: str,
    new_nav: Decimal,
    at: datetime,
    accrued_fee: Decimal = ZERO,
) -> PendingTransaction:
    """UpdateNAV choice. Operator only."""
    vault = view.get_vault()
    require_party(caller, vault.operator, "UpdateNAV")
    updated = update_nav(vault, new_nav, at, accrued_fee)
    return build_transaction(
        view,
        [RecordChange(VAULT_RECORD_ID, vault, updated)],
        origin=_origin(caller, OriginType.ORACLE, "UPDATE_NAV"),
    )


def compute_pause(view: LedgerView, caller: str) -> PendingTransaction:
    """Emergency stop. Operator only."""
    vault = view.get_vault()
    require_party(caller, vault.operator, "Pause")
    return build_transaction(
        view,
        [RecordChange(VAULT_RECORD_ID, vault, pause(vault))],
        origin=_origin(caller, OriginType.MAINTENANCE, "PAUSE"),
    )


def compute_unpause(view: LedgerView, caller: str) -> PendingTransaction:
    vault = view.get_vault()
    require_party(caller, vault.operator, "Unpause")
    return build_transaction(
        view,
        [RecordChange(VAULT_RECORD_ID, vault, unpause(vault))],
        origin=_origin(caller, OriginType.MAINTENANCE, "UNPAUSE"),
    )


def compute_fee_rate_change(view: LedgerView, caller: str, fee_rate_bps: int) -> PendingTransaction:
    vault = view.get_vault()
    require_party(caller, vault.operator, "SetFeeRate")
    return build_transaction(
        view,
        [RecordChange(VAULT_RECORD_ID, vault, set_fee_rate(vault, fee_rate_bps))],
        origin=_origin(caller, OriginType.MAINTENANCE, "SET_FEE_RATE"),
    )
