"""
test_vault_lifecycle.py - A month in the life of a vault

Several parties go through every request outcome (accepted, cancelled,
rejected), a share transfer, an auto-compounding yield claim and an
emergency pause. The final state is checked against hand-computed totals
and against a replay of the transaction log.
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from vaultledger import (
    RequestStatus, VAULT_CUSTODY,
    compute_cancellation, compute_holding_transfer, compute_pause, compute_unpause,
    compute_fee_rate_change,
    InvalidState,
)

from tests.helpers import (
    OPERATOR, T0, deposit, withdraw, fund, post_nav, submit_deposit, submit_yield_claim,
)


MONTH = T0 + timedelta(days=30)


@pytest.fixture
def lived_in(vault_ledger, coordinator):
    ledger = vault_ledger
    fund(ledger, "alice", 10000)
    fund(ledger, "bob", 5000)

    deposit(ledger, coordinator, "alice", 1000)
    deposit(ledger, coordinator, "bob", 500)

    cancelled = submit_deposit(ledger, "carol", 200)
    ledger.execute(compute_cancellation(ledger, "carol", cancelled))
    rejected = submit_deposit(ledger, "dave", 300)
    coordinator.reject(rejected, "over limit")

    post_nav(ledger, 1650, MONTH)
    ledger.execute(compute_holding_transfer(ledger, "alice", "carol", Decimal("100")))
    withdraw(ledger, coordinator, "carol", 100)

    claim = submit_yield_claim(ledger, "bob", 500, 1, auto_compound=True)
    coordinator.accept_yield_claim(claim)

    ledger.execute(compute_pause(ledger, OPERATOR))
    fund(ledger, "eve", 110)
    eve = submit_deposit(ledger, "eve", 110)
    with pytest.raises(InvalidState):
        coordinator.accept_deposit(eve)
    ledger.advance_time(MONTH + timedelta(hours=1))
    ledger.execute(compute_unpause(ledger, OPERATOR))
    coordinator.accept_deposit(eve)

    ledger.execute(compute_fee_rate_change(ledger, OPERATOR, 150))
    return ledger


class TestLifecycle:

    def test_vault_totals(self, lived_in):
        vault = lived_in.get_vault()
        assert vault.total_shares == Decimal("1500")
        assert vault.nav == Decimal("1650")
        assert vault.share_price == Decimal("1.1")
        assert vault.fee_rate_bps == 150
        assert not vault.paused

    def test_holder_balances(self, lived_in):
        assert lived_in.balance_of("alice") == Decimal("900")
        assert lived_in.balance_of("bob") == Decimal("500")
        assert lived_in.balance_of("carol") == 0
        assert lived_in.balance_of("eve") == Decimal("100")
        assert lived_in.record_count("bob") == 2

    def test_asset_balances(self, lived_in):
        assert lived_in.get_asset_balance("alice") == Decimal("9000")
        assert lived_in.get_asset_balance("carol") == Decimal("110")
        assert lived_in.get_asset_balance(VAULT_CUSTODY) == Decimal("1500")

    def test_request_outcomes(self, lived_in):
        def count(status):
            return len(lived_in.list_requests(status=status))

        assert count(RequestStatus.ACCEPTED) == 5
        assert count(RequestStatus.CANCELLED) == 1
        assert count(RequestStatus.REJECTED) == 1
        assert count(RequestStatus.PENDING) == 0

    def test_invariants(self, lived_in):
        result = lived_in.verify_invariants()
        assert result['valid'], result['discrepancies']
        assert result['total_holdings'] == Decimal("1500")

    def test_replay_reproduces_state(self, lived_in):
        replayed = lived_in.replay()
        assert replayed.get_vault() == lived_in.get_vault()
        for party in ("alice", "bob", "carol", "dave", "eve"):
            assert replayed.balance_of(party) == lived_in.balance_of(party)
            assert replayed.get_asset_balance(party) == lived_in.get_asset_balance(party)
        assert len(replayed.transaction_log) == len(lived_in.transaction_log)
        assert replayed.verify_invariants()['valid']
