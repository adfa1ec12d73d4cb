"""
helpers.py - Shared builders for vault tests

Thin wrappers that submit requests and run settlements the way an
operator and its users would, so scenario tests read as sequences of
business steps.
"""

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from vaultledger import (
    Ledger, SettlementCoordinator, SettlementReceipt, VaultConfig,
    compute_bridge_transfer, compute_nav_update, compute_request_submission,
    compute_vault_initialization,
    deposit_offer, withdraw_request, yield_claim,
    RecordNotFound,
)


OPERATOR = "operator"
T0 = datetime(2025, 1, 1)


def submit_deposit(ledger: Ledger, requester: str, amount, reference: str = "") -> str:
    request = deposit_offer(requester, OPERATOR, Decimal(str(amount)), ledger.current_time, reference)
    ledger.execute(compute_request_submission(ledger, requester, request))
    return request.record_id


def submit_withdraw(ledger: Ledger, requester: str, shares, reference: str = "") -> str:
    request = withdraw_request(requester, OPERATOR, Decimal(str(shares)), ledger.current_time, reference)
    ledger.execute(compute_request_submission(ledger, requester, request))
    return request.record_id


def submit_yield_claim(
    ledger: Ledger,
    requester: str,
    held_shares,
    entry_price,
    auto_compound: bool = False,
    reference: str = "",
) -> str:
    request = yield_claim(
        requester, OPERATOR, Decimal(str(held_shares)), Decimal(str(entry_price)),
        ledger.current_time, auto_compound, reference,
    )
    ledger.execute(compute_request_submission(ledger, requester, request))
    return request.record_id


def deposit(
    ledger: Ledger,
    coordinator: SettlementCoordinator,
    requester: str,
    amount,
    reference: str = "",
) -> SettlementReceipt:
    """Submit and settle a deposit in one go, bridging in any shortfall first."""
    shortfall = Decimal(str(amount)) - ledger.get_asset_balance(requester)
    if shortfall > 0:
        fund(ledger, requester, shortfall, f"shortfall:{len(ledger.transaction_log)}")
    return coordinator.accept_deposit(submit_deposit(ledger, requester, amount, reference))


def withdraw(
    ledger: Ledger,
    coordinator: SettlementCoordinator,
    requester: str,
    shares,
    reference: str = "",
) -> SettlementReceipt:
    """Submit and settle a withdrawal in one go."""
    return coordinator.accept_withdraw(submit_withdraw(ledger, requester, shares, reference))


def post_nav(ledger: Ledger, nav, at: Optional[datetime] = None, fee=Decimal("0")) -> None:
    """Advance time to at and post a NAV as the operator."""
    if at is not None and at > ledger.current_time:
        ledger.advance_time(at)
    ledger.execute(compute_nav_update(ledger, OPERATOR, Decimal(str(nav)), at or ledger.current_time, fee))


def fund(ledger: Ledger, party: str, amount, reference: str = "") -> None:
    """Bridge backing asset in for a party."""
    ledger.execute(compute_bridge_transfer(ledger, party, Decimal(str(amount)), reference=reference))


def new_vault(config: Optional[VaultConfig] = None, name: str = "test") -> Tuple[Ledger, SettlementCoordinator]:
    """Fresh quiet ledger with an initialized vault, and its coordinator."""
    config = config or VaultConfig()
    ledger = Ledger(name, initial_time=T0, verbose=False, test_mode=True)
    ledger.execute(compute_vault_initialization(ledger, OPERATOR, config.fee_rate_bps))
    return ledger, SettlementCoordinator(ledger, config, OPERATOR)


def snapshot(ledger: Ledger) -> tuple:
    """Comparable image of everything a commit can change."""
    owners = sorted(ledger.list_owners())
    try:
        pool = ledger.get_pool()
    except RecordNotFound:
        pool = None
    return (
        ledger.get_vault(),
        pool,
        tuple((owner, tuple(ledger.holdings_of(owner))) for owner in owners),
        tuple(sorted((p, b) for p, b in ledger.asset_balances.items() if b != 0)),
        tuple(r.status for r in ledger.list_requests()),
        len(ledger.transaction_log),
    )
