"""
settlement.py - Settlement Coordinator: atomic acceptance of workflow requests

Every acceptance is one PendingTransaction carrying three steps:

    1. WorkflowRequest  PENDING -> ACCEPTED
    2. HoldingRecords   created (deposit) or consumed with change (withdraw, yield)
    3. VaultState       record_mint / record_burn

plus the recorded asset Move. The ledger commits all of it or none of it,
so no observer ever sees the request accepted without the shares, or the
shares without the vault totals.

Pricing happens inside the pure compute functions, off the VaultState
snapshot the transaction replaces. If NAV or total_shares moved before the
commit, the vault slot no longer matches, the ledger raises
ConcurrencyConflict and the coordinator rebuilds from a fresh read.

Formulas (all toward zero, 6 places):
    deposit:  shares     = deposit_amount / share_price
    withdraw: redemption = shares_to_burn * share_price
    yield:    yield      = held * (1 - entry_price / share_price), floored at 0
              payout     = yield * share_price            (auto_compound=False)
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from .config import VaultConfig
from .core import (
    LedgerView, Move, PendingTransaction, RecordChange, TransactionOrigin, OriginType, ExecuteResult,
    VAULT_CUSTODY, VAULT_RECORD_ID,
    InvalidValue, InvalidState, AlreadyFinalized, PriceMismatch, InsufficientBalance,
    require_party, build_transaction,
)
from .fixed_point import (
    ZERO, ONE, assets_for_shares, quantize_amount, shares_for_assets, to_decimal, within_tolerance,
)
from .holdings import credit_records, spend_records, total_held
from .vault import record_burn, record_mint
from .workflows import RequestKind, WorkflowRequest, accept_request, compute_rejection


@dataclass(frozen=True, slots=True)
class SettlementReceipt:
    """Outcome of one coordinator acceptance."""
    request_id: str
    kind: RequestKind
    result: ExecuteResult
    shares: Decimal
    assets: Decimal
    price: Decimal
    attempts: int
    vault_version: int


# ============================================================================
# PURE FUNCTIONS
# ============================================================================

def compute_yield_shares(held_shares: Decimal, entry_price: Decimal, current_price: Decimal) -> Decimal:
    """
    held * (1 - entry / current), toward zero.

    A price at or below entry yields zero; a claim never debits the holder.
    """
    held_shares = to_decimal(held_shares, "held_shares")
    entry_price = to_decimal(entry_price, "entry_price")
    current_price = to_decimal(current_price, "current_price")
    if entry_price <= 0:
        raise InvalidValue(f"entry_price must be positive, got {entry_price}")
    if current_price <= entry_price:
        return ZERO
    return quantize_amount(held_shares * (ONE - entry_price / current_price))


def _settled_amount(
    implied: Decimal,
    supplied: Optional[Decimal],
    tolerance_bps: int,
    what: str,
) -> Decimal:
    """Operator-supplied amount if within tolerance of implied, else implied."""
    if supplied is None:
        return implied
    supplied = quantize_amount(supplied)
    if not within_tolerance(supplied, implied, tolerance_bps):
        raise PriceMismatch(
            f"accepted {what} {supplied} outside {tolerance_bps} bps of implied {implied}"
        )
    return supplied


def _open_request(view: LedgerView, caller: str, request_id: str, kind: RequestKind) -> tuple:
    request = view.get_request(request_id)
    if request.kind is not kind:
        raise InvalidValue(f"{request_id} is a {request.kind.value} request, not {kind.value}")
    if request.is_terminal:
        raise AlreadyFinalized(f"{request_id} already {request.status.value}")
    vault = view.get_vault()
    require_party(caller, vault.operator, f"Accept{kind.name.title().replace('_', '')}")
    if vault.paused:
        raise InvalidState("settlement blocked: vault is paused")
    return request, vault


def _origin(caller: str, request_id: str, event: str) -> TransactionOrigin:
    return TransactionOrigin(OriginType.SETTLEMENT, caller, request_id, event)


# ============================================================================
# CONVENIENCE FUNCTIONS (view -> PendingTransaction)
# ============================================================================

def compute_deposit_settlement(
    view: LedgerView,
    caller: str,
    request_id: str,
    config: VaultConfig,
    accepted_shares: Optional[Decimal] = None,
) -> PendingTransaction:
    """
    Accept a deposit offer: mint shares to the requester at the current price.

    Args:
        accepted_shares: Operator-supplied share count; must lie within
            config.price_tolerance_bps of the price-implied count. Omit to
            mint exactly the implied count.

    Raises:
        PriceMismatch: share price is zero, or accepted_shares outside tolerance
        InvalidValue: the deposit is too small to mint a share unit
        InsufficientBalance: the requester does not hold the deposit amount
    """
    request, vault = _open_request(view, caller, request_id, RequestKind.DEPOSIT)
    price = vault.share_price
    if price <= 0:
        raise PriceMismatch("share price is zero; a deposit cannot be priced")
    implied = shares_for_assets(request.amount, price)
    shares = _settled_amount(implied, accepted_shares, config.price_tolerance_bps, "shares")
    if shares <= 0:
        raise InvalidValue(f"deposit of {request.amount} mints no shares at price {price}")
    held = view.get_asset_balance(request.requester)
    if held < request.amount:
        raise InsufficientBalance(
            f"{request.requester} holds {held} asset, deposit needs {request.amount}"
        )

    accepted = accept_request(
        request, caller, view.current_time,
        settled_shares=shares, settled_assets=request.amount, settled_price=price,
    )
    changes = [RecordChange(request_id, request, accepted)]
    changes += credit_records(view, request.requester, shares, "mint", request_id)
    changes.append(RecordChange(VAULT_RECORD_ID, vault, record_mint(vault, shares, request.amount)))
    moves = [Move(request.amount, request.requester, VAULT_CUSTODY, f"deposit:{request_id}")]
    return build_transaction(view, changes, moves, _origin(caller, request_id, "ACCEPT_DEPOSIT"))


def compute_withdraw_settlement(
    view: LedgerView,
    caller: str,
    request_id: str,
    config: VaultConfig,
    accepted_redemption: Optional[Decimal] = None,
) -> PendingTransaction:
    """
    Accept a withdraw request: burn the requester's shares and pay out their value.

    Raises:
        InsufficientBalance: requester's records do not cover the shares
        PriceMismatch: accepted_redemption outside tolerance
        InvalidValue: redemption would be zero (share price zero)
    """
    request, vault = _open_request(view, caller, request_id, RequestKind.WITHDRAW)
    price = vault.share_price
    shares = request.amount
    implied = assets_for_shares(shares, price)
    redemption = _settled_amount(implied, accepted_redemption, config.price_tolerance_bps, "redemption")

    burned = record_burn(vault, shares, redemption)
    accepted = accept_request(
        request, caller, view.current_time,
        settled_shares=shares, settled_assets=redemption, settled_price=price,
    )
    changes = [RecordChange(request_id, request, accepted)]
    spent, _ = spend_records(view, request.requester, shares, "burn", request_id)
    changes += spent
    changes.append(RecordChange(VAULT_RECORD_ID, vault, burned))
    moves = [Move(redemption, VAULT_CUSTODY, request.requester, f"withdraw:{request_id}")]
    return build_transaction(view, changes, moves, _origin(caller, request_id, "ACCEPT_WITHDRAW"))


def compute_yield_claim_settlement(
    view: LedgerView,
    caller: str,
    request_id: str,
    config: VaultConfig,
) -> PendingTransaction:
    """
    Accept a yield claim.

    The yield shares are burned from the holder's records. With
    auto_compound they are minted straight back as a fresh record (the
    vault totals are unchanged); otherwise their value is paid out. A claim
    with no yield is accepted with nothing else changing.

    Raises:
        InsufficientBalance: holder no longer holds the claimed shares
    """
    request, vault = _open_request(view, caller, request_id, RequestKind.YIELD_CLAIM)
    price = vault.share_price
    held = total_held(view.holdings_of(request.requester))
    if held < request.amount:
        raise InsufficientBalance(
            f"{request.requester} holds {held}, yield claim is on {request.amount}"
        )
    yield_shares = compute_yield_shares(request.amount, request.entry_price, price)
    payout = assets_for_shares(yield_shares, price)
    if payout <= 0:
        yield_shares = ZERO

    changes = []
    moves = []
    if yield_shares > 0:
        spent, _ = spend_records(view, request.requester, yield_shares, "yield", request_id)
        changes += spent
        burned = record_burn(vault, yield_shares, payout)
        if request.auto_compound:
            changes += credit_records(view, request.requester, yield_shares, "compound", request_id)
            changes.append(RecordChange(VAULT_RECORD_ID, vault, record_mint(burned, yield_shares, payout)))
        else:
            changes.append(RecordChange(VAULT_RECORD_ID, vault, burned))
            moves.append(Move(payout, VAULT_CUSTODY, request.requester, f"yield:{request_id}"))

    accepted = accept_request(
        request, caller, view.current_time,
        settled_shares=yield_shares,
        settled_assets=payout if yield_shares > 0 else ZERO,
        settled_price=price,
    )
    changes.insert(0, RecordChange(request_id, request, accepted))
    return build_transaction(view, changes, moves, _origin(caller, request_id, "ACCEPT_YIELD_CLAIM"))


# ============================================================================
# COORDINATOR
# ============================================================================

class SettlementCoordinator:
    """
    Operator-side driver of acceptances.

    Holds the requester's owner lock across read, compute and commit, so
    settlement never races a consolidation or another settlement of the same
    owner. Version conflicts against the vault slot (another owner's
    settlement or an oracle update landing first) are retried from a fresh
    read up to config.max_settlement_retries times.

    Example:
        coordinator = SettlementCoordinator(ledger, VaultConfig(), "operator")
        receipt = coordinator.accept_deposit(request_id)
    """

    def __init__(self, ledger, config: Optional[VaultConfig] = None, operator: Optional[str] = None):
        self.ledger = ledger
        self.config = config or VaultConfig()
        self._operator = operator

    @property
    def operator(self) -> str:
        return self._operator or self.ledger.get_vault().operator

    def accept_deposit(self, request_id: str, accepted_shares: Optional[Decimal] = None) -> SettlementReceipt:
        return self._settle(
            request_id,
            lambda view: compute_deposit_settlement(
                view, self.operator, request_id, self.config, accepted_shares,
            ),
        )

    def accept_withdraw(self, request_id: str, accepted_redemption: Optional[Decimal] = None) -> SettlementReceipt:
        return self._settle(
            request_id,
            lambda view: compute_withdraw_settlement(
                view, self.operator, request_id, self.config, accepted_redemption,
            ),
        )

    def accept_yield_claim(self, request_id: str) -> SettlementReceipt:
        return self._settle(
            request_id,
            lambda view: compute_yield_claim_settlement(view, self.operator, request_id, self.config),
        )

    def reject(self, request_id: str, reason: str = "") -> WorkflowRequest:
        """Reject a pending deposit or withdraw request."""
        request = self.ledger.get_request(request_id)
        with self.ledger.owner_lock(request.requester):
            self.ledger.execute(compute_rejection(self.ledger, self.operator, request_id, reason))
        return self.ledger.get_request(request_id)

    def _settle(self, request_id: str, build: Callable[[LedgerView], PendingTransaction]) -> SettlementReceipt:
        request = self.ledger.get_request(request_id)
        with self.ledger.owner_lock(request.requester):
            result, attempts = self.ledger.execute_with_retry(
                build, self.config.max_settlement_retries, f"accept {request_id}",
            )
        settled = self.ledger.get_request(request_id)
        receipt = SettlementReceipt(
            request_id=request_id,
            kind=settled.kind,
            result=result,
            shares=settled.settled_shares if settled.settled_shares is not None else ZERO,
            assets=settled.settled_assets if settled.settled_assets is not None else ZERO,
            price=settled.settled_price if settled.settled_price is not None else ZERO,
            attempts=attempts,
            vault_version=self.ledger.get_vault().version,
        )
        if self.ledger.verbose:
            print(
                f"✓ SETTLED {receipt.kind.value} {request_id}: shares={receipt.shares} "
                f"assets={receipt.assets} price={receipt.price} attempts={attempts}"
            )
        return receipt
