"""
Idempotency Conformance Tests

INVARIANT: The same intent commits at most once.

    ∀ PendingTransaction P:
        execute(P) = APPLIED ⟹ execute(P) = ALREADY_APPLIED, state unchanged

Finalized requests cannot be settled again, and maintenance operations
(consolidation, sweeps) are no-ops when repeated.
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from datetime import timedelta
from decimal import Decimal

from vaultledger import (
    ConsolidationScheduler, ExecuteResult, RequestStatus, VaultConfig,
    compute_bridge_transfer, compute_cancellation, compute_consolidation,
    compute_deposit_settlement, compute_holding_transfer, compute_request_submission,
    deposit_offer,
    AlreadyFinalized,
)

from tests.helpers import (
    OPERATOR, deposit, fund, new_vault, snapshot, submit_deposit, submit_withdraw,
)


class TestDuplicateIntent:

    def test_settlement_replay_is_already_applied(self):
        ledger, coordinator = new_vault()
        fund(ledger, "alice", 1000)
        request_id = submit_deposit(ledger, "alice", 1000)
        pending = compute_deposit_settlement(ledger, OPERATOR, request_id, coordinator.config)

        assert ledger.execute(pending) is ExecuteResult.APPLIED
        after = snapshot(ledger)
        assert ledger.execute(pending) is ExecuteResult.ALREADY_APPLIED
        assert snapshot(ledger) == after
        assert ledger.get_vault().total_shares == Decimal("1000")

    def test_bridge_transfer_replay(self):
        ledger, _ = new_vault()
        pending = compute_bridge_transfer(ledger, "alice", Decimal("250"), reference="wire-1")
        ledger.execute(pending)
        assert ledger.execute(pending) is ExecuteResult.ALREADY_APPLIED
        assert ledger.get_asset_balance("alice") == Decimal("250")

    def test_recomputed_bridge_transfer_is_same_intent(self):
        """Same party, amount and reference describe the same transfer."""
        ledger, _ = new_vault()
        ledger.execute(compute_bridge_transfer(ledger, "alice", Decimal("250"), reference="wire-1"))
        again = compute_bridge_transfer(ledger, "alice", Decimal("250"), reference="wire-1")
        assert ledger.execute(again) is ExecuteResult.ALREADY_APPLIED
        other = compute_bridge_transfer(ledger, "alice", Decimal("250"), reference="wire-2")
        assert ledger.execute(other) is ExecuteResult.APPLIED
        assert ledger.get_asset_balance("alice") == Decimal("500")

    def test_transfer_replay(self):
        ledger, coordinator = new_vault()
        deposit(ledger, coordinator, "alice", 1000)
        pending = compute_holding_transfer(ledger, "alice", "bob", Decimal("100"))
        ledger.execute(pending)
        assert ledger.execute(pending) is ExecuteResult.ALREADY_APPLIED
        assert ledger.balance_of("bob") == Decimal("100")

    @given(st.integers(min_value=2, max_value=10))
    @settings(max_examples=20, deadline=None)
    def test_n_replays_commit_once(self, repeats):
        ledger, coordinator = new_vault()
        fund(ledger, "alice", 500)
        request_id = submit_deposit(ledger, "alice", 500)
        pending = compute_deposit_settlement(ledger, OPERATOR, request_id, coordinator.config)
        log_length = len(ledger.transaction_log)

        results = [ledger.execute(pending) for _ in range(repeats)]

        assert results[0] is ExecuteResult.APPLIED
        assert all(r is ExecuteResult.ALREADY_APPLIED for r in results[1:])
        assert len(ledger.transaction_log) == log_length + 1
        assert ledger.balance_of("alice") == Decimal("500")


class TestFinalizedRequests:

    def test_double_accept(self):
        ledger, coordinator = new_vault()
        fund(ledger, "alice", 1000)
        request_id = submit_deposit(ledger, "alice", 1000)
        coordinator.accept_deposit(request_id)
        after = snapshot(ledger)

        with pytest.raises(AlreadyFinalized):
            coordinator.accept_deposit(request_id)
        assert snapshot(ledger) == after

    def test_accept_after_cancel(self):
        ledger, coordinator = new_vault()
        deposit(ledger, coordinator, "alice", 1000)
        request_id = submit_withdraw(ledger, "alice", 100)
        ledger.execute(compute_cancellation(ledger, "alice", request_id))

        with pytest.raises(AlreadyFinalized):
            coordinator.accept_withdraw(request_id)
        assert ledger.get_request(request_id).status is RequestStatus.CANCELLED
        assert ledger.balance_of("alice") == Decimal("1000")

    def test_reject_after_accept(self):
        ledger, coordinator = new_vault()
        fund(ledger, "alice", 1000)
        request_id = submit_deposit(ledger, "alice", 1000)
        coordinator.accept_deposit(request_id)
        with pytest.raises(AlreadyFinalized):
            coordinator.reject(request_id)
        assert ledger.get_request(request_id).status is RequestStatus.ACCEPTED

    def test_resubmitting_a_settled_request(self):
        """The same offer again is the same intent; the settled request stays settled."""
        ledger, coordinator = new_vault()
        fund(ledger, "alice", 1000)
        offer = deposit_offer("alice", OPERATOR, Decimal("1000"), ledger.current_time)
        ledger.execute(compute_request_submission(ledger, "alice", offer))
        coordinator.accept_deposit(offer.record_id)

        again = compute_request_submission(ledger, "alice", offer)
        assert ledger.execute(again) is ExecuteResult.ALREADY_APPLIED
        assert ledger.get_request(offer.record_id).status is RequestStatus.ACCEPTED
        assert ledger.balance_of("alice") == Decimal("1000")


class TestMaintenanceIdempotency:

    def _fragmented(self):
        ledger, coordinator = new_vault()
        for i in range(6):
            deposit(ledger, coordinator, "alice", 10, f"d{i}")
        return ledger

    def test_consolidation_twice(self):
        ledger = self._fragmented()
        ledger.execute(compute_consolidation(ledger, OPERATOR, "alice", 2))
        after = snapshot(ledger)

        assert compute_consolidation(ledger, OPERATOR, "alice", 2).is_empty()
        assert ledger.execute(compute_consolidation(ledger, OPERATOR, "alice", 2)) is ExecuteResult.APPLIED
        assert snapshot(ledger) == after

    def test_sweep_twice(self):
        ledger = self._fragmented()
        scheduler = ConsolidationScheduler(ledger, VaultConfig(fragmentation_threshold=2), OPERATOR)
        scheduler.run_sweep()
        after = snapshot(ledger)

        ledger.advance_time(ledger.current_time + timedelta(days=1))
        report = scheduler.run_sweep()
        assert report.consolidated == {}
        assert snapshot(ledger) == after
        assert ledger.balance_of("alice") == Decimal("60")
