"""
test_record_store.py - Unit tests for the Ledger record store

Tests:
- Read views (records, requests, archive, owners, balances)
- Compare-and-swap rejection of stale changes
- Conservation gate at commit
- Idempotent execution by intent id
- Two-phase prepare/commit/abort
- Bridge transfers, overdraft rejection and test-mode balance setting
"""

import threading

import pytest
from datetime import timedelta
from decimal import Decimal

from vaultledger import (
    Ledger, ExecuteResult, Move, RecordChange, RequestStatus, SYSTEM_WALLET, VAULT_CUSTODY,
    build_transaction, new_holding, record_mint, compute_bridge_transfer,
    compute_cancellation, compute_pause,
    VaultError, InvalidValue, InvalidState, ConcurrencyConflict, ConservationViolation,
    RecordNotFound, InsufficientBalance,
)

from tests.helpers import OPERATOR, T0, post_nav, submit_deposit


def _runs_on_other_thread(fn, timeout=2.0):
    """True when fn completes on a second thread, i.e. no lock is left held."""
    done = threading.Event()

    def target():
        fn()
        done.set()

    worker = threading.Thread(target=target, daemon=True)
    worker.start()
    worker.join(timeout)
    return done.is_set()


class TestViews:

    def test_empty_ledger(self, ledger):
        with pytest.raises(RecordNotFound, match="vault not initialized"):
            ledger.get_vault()
        with pytest.raises(RecordNotFound):
            ledger.get_pool()
        assert ledger.list_owners() == set()
        assert ledger.total_holdings() == 0

    def test_vault_initialized(self, vault_ledger):
        vault = vault_ledger.get_vault()
        assert vault.operator == OPERATOR
        assert vault.total_shares == 0
        assert vault.share_price == Decimal("1")

    def test_holdings_and_balance(self, funded_vault):
        assert funded_vault.balance_of("alice") == Decimal("1000")
        assert funded_vault.list_owners() == {"alice"}
        assert funded_vault.record_count("alice") == 1
        assert funded_vault.record_count() == 1

    def test_terminal_request_is_archived(self, vault_ledger):
        request_id = submit_deposit(vault_ledger, "alice", 100)
        vault_ledger.execute(compute_cancellation(vault_ledger, "alice", request_id))
        with pytest.raises(RecordNotFound):
            vault_ledger.get_record(request_id)
        assert vault_ledger.get_request(request_id).status is RequestStatus.CANCELLED

    def test_list_requests_filters(self, vault_ledger):
        first = submit_deposit(vault_ledger, "alice", 100, "a")
        submit_deposit(vault_ledger, "bob", 100, "b")
        vault_ledger.execute(compute_cancellation(vault_ledger, "alice", first))
        pending = vault_ledger.list_requests(status=RequestStatus.PENDING)
        assert [r.requester for r in pending] == ["bob"]
        assert len(vault_ledger.list_requests()) == 2

    def test_unknown_request(self, vault_ledger):
        with pytest.raises(RecordNotFound):
            vault_ledger.get_request("R:nope")


class TestCompareAndSwap:

    def test_stale_replace_conflicts(self, vault_ledger):
        stale = compute_pause(vault_ledger, OPERATOR)
        post_nav(vault_ledger, 0, T0 + timedelta(hours=1))
        with pytest.raises(ConcurrencyConflict):
            vault_ledger.execute(stale)
        assert not vault_ledger.get_vault().paused

    def test_create_over_existing_conflicts(self, funded_vault):
        (record,) = funded_vault.holdings_of("alice")
        vault = funded_vault.get_vault()
        pending = build_transaction(funded_vault, [
            RecordChange(record.record_id, None, record),
            RecordChange(vault.record_id, vault, record_mint(vault, record.amount, Decimal("1"))),
        ])
        with pytest.raises(ConcurrencyConflict, match="already exists"):
            funded_vault.execute(pending)

    def test_double_consume_conflicts(self, funded_vault):
        (record,) = funded_vault.holdings_of("alice")

        def merge_into(basis):
            replacement = new_holding("alice", record.amount, T0, "merge", basis)
            return build_transaction(funded_vault, [
                RecordChange(record.record_id, record, None),
                RecordChange(replacement.record_id, None, replacement),
            ])

        first, second = merge_into("x"), merge_into("y")
        funded_vault.execute(first)
        with pytest.raises(ConcurrencyConflict, match="consumed"):
            funded_vault.execute(second)
        assert funded_vault.balance_of("alice") == record.amount

    def test_same_record_twice_in_one_transaction(self, funded_vault):
        (record,) = funded_vault.holdings_of("alice")
        pending = build_transaction(funded_vault, [
            RecordChange(record.record_id, record, None),
            RecordChange(record.record_id, record, None),
        ])
        with pytest.raises(InvalidValue, match="twice"):
            funded_vault.execute(pending)


class TestConservation:

    def test_unbacked_holding_rejected(self, funded_vault):
        forged = new_holding("mallory", Decimal("1"), T0, "mint", "forged")
        with pytest.raises(ConservationViolation):
            funded_vault.execute(build_transaction(
                funded_vault, [RecordChange(forged.record_id, None, forged)],
            ))
        assert funded_vault.balance_of("mallory") == 0
        assert funded_vault.verify_invariants()['valid']

    def test_mint_without_holding_rejected(self, funded_vault):
        vault = funded_vault.get_vault()
        with pytest.raises(ConservationViolation):
            funded_vault.execute(build_transaction(funded_vault, [
                RecordChange(vault.record_id, vault, record_mint(vault, Decimal("5"), Decimal("5"))),
            ]))

    def test_vault_cannot_be_consumed(self, vault_ledger):
        vault = vault_ledger.get_vault()
        with pytest.raises(InvalidValue):
            vault_ledger.execute(build_transaction(
                vault_ledger, [RecordChange(vault.record_id, vault, None)],
            ))

    def test_verify_invariants_report(self, funded_vault):
        result = funded_vault.verify_invariants()
        assert result['valid']
        assert result['total_holdings'] == result['total_shares'] == Decimal("1000")
        assert result['discrepancies'] == []


class TestExecution:

    def test_duplicate_intent_already_applied(self, vault_ledger):
        pending = compute_bridge_transfer(vault_ledger, "alice", Decimal("10"), reference="r1")
        assert vault_ledger.execute(pending) is ExecuteResult.APPLIED
        assert vault_ledger.execute(pending) is ExecuteResult.ALREADY_APPLIED
        assert vault_ledger.get_asset_balance("alice") == Decimal("10")

    def test_empty_transaction_is_noop(self, vault_ledger):
        before = len(vault_ledger.transaction_log)
        pending = build_transaction(vault_ledger, [])
        assert vault_ledger.execute(pending) is ExecuteResult.APPLIED
        assert len(vault_ledger.transaction_log) == before

    def test_future_timestamp_rejected(self, vault_ledger):
        ahead = vault_ledger.clone()
        ahead.advance_time(T0 + timedelta(days=1))
        future = compute_bridge_transfer(ahead, "alice", Decimal("1"))
        with pytest.raises(InvalidState, match="after ledger time"):
            vault_ledger.execute(future)

    def test_transaction_log_sequence(self, funded_vault):
        sequences = [tx.sequence_number for tx in funded_vault.transaction_log]
        assert sequences == list(range(len(sequences)))
        assert funded_vault.last_transaction is funded_vault.transaction_log[-1]

    def test_time_cannot_go_backwards(self, ledger):
        with pytest.raises(ValueError):
            ledger.advance_time(T0 - timedelta(seconds=1))


class TestTwoPhase:

    def test_prepare_then_commit(self, vault_ledger):
        prepared = vault_ledger.prepare(compute_bridge_transfer(vault_ledger, "alice", Decimal("5")))
        assert prepared.is_open
        tx = vault_ledger.commit(prepared)
        assert not prepared.is_open
        assert tx.moves[0].dest == "alice"
        assert vault_ledger.get_asset_balance("alice") == Decimal("5")

    def test_abort_leaves_state_untouched(self, vault_ledger):
        prepared = vault_ledger.prepare(compute_bridge_transfer(vault_ledger, "alice", Decimal("5")))
        vault_ledger.abort(prepared)
        vault_ledger.abort(prepared)
        assert vault_ledger.get_asset_balance("alice") == 0
        assert _runs_on_other_thread(
            lambda: vault_ledger.execute(compute_bridge_transfer(vault_ledger, "bob", Decimal("1")))
        )

    def test_commit_closed_transaction(self, vault_ledger):
        prepared = vault_ledger.prepare(compute_bridge_transfer(vault_ledger, "alice", Decimal("5")))
        vault_ledger.commit(prepared)
        with pytest.raises(InvalidState):
            vault_ledger.commit(prepared)

    def test_failed_prepare_releases_lock(self, funded_vault):
        forged = new_holding("mallory", Decimal("1"), T0, "mint", "forged")
        with pytest.raises(ConservationViolation):
            funded_vault.prepare(build_transaction(
                funded_vault, [RecordChange(forged.record_id, None, forged)],
            ))
        assert _runs_on_other_thread(
            lambda: funded_vault.execute(compute_bridge_transfer(funded_vault, "bob", Decimal("1")))
        )


class TestAssets:

    def test_bridge_in_and_out(self, vault_ledger):
        vault_ledger.execute(compute_bridge_transfer(vault_ledger, "alice", Decimal("100")))
        vault_ledger.execute(compute_bridge_transfer(
            vault_ledger, "alice", Decimal("40"), inbound=False, reference="out",
        ))
        assert vault_ledger.get_asset_balance("alice") == Decimal("60")
        assert vault_ledger.get_asset_balance(SYSTEM_WALLET) == Decimal("-60")

    def test_bridge_rejects_zero(self, vault_ledger):
        with pytest.raises(InvalidValue):
            compute_bridge_transfer(vault_ledger, "alice", Decimal("0"))

    def test_set_asset_balance_test_mode(self, ledger):
        ledger.set_asset_balance("alice", Decimal("7"))
        assert ledger.get_asset_balance("alice") == Decimal("7")

    def test_set_asset_balance_production(self):
        with pytest.raises(VaultError, match="production"):
            Ledger("prod", T0, verbose=False).set_asset_balance("alice", Decimal("7"))

    def test_bridge_out_beyond_balance(self, vault_ledger):
        vault_ledger.execute(compute_bridge_transfer(vault_ledger, "alice", Decimal("100")))
        with pytest.raises(InsufficientBalance, match="alice holds 100"):
            vault_ledger.execute(compute_bridge_transfer(
                vault_ledger, "alice", Decimal("100.000001"), inbound=False, reference="out",
            ))
        assert vault_ledger.get_asset_balance("alice") == Decimal("100")
        assert vault_ledger.get_asset_balance(SYSTEM_WALLET) == Decimal("-100")

    def test_move_from_unfunded_party_rejected(self, vault_ledger):
        before = len(vault_ledger.transaction_log)
        pending = build_transaction(vault_ledger, [], [Move(Decimal("5"), "mallory", "bob", "gift")])
        with pytest.raises(InsufficientBalance):
            vault_ledger.execute(pending)
        assert vault_ledger.get_asset_balance("bob") == 0
        assert "mallory" not in vault_ledger.asset_balances
        assert len(vault_ledger.transaction_log) == before

    def test_netted_moves_checked_per_party(self, vault_ledger):
        """alice may pass on asset received in the same transaction."""
        pending = build_transaction(vault_ledger, [], [
            Move(Decimal("5"), SYSTEM_WALLET, "alice", "in"),
            Move(Decimal("5"), "alice", "bob", "out"),
        ])
        vault_ledger.execute(pending)
        assert vault_ledger.get_asset_balance("alice") == 0
        assert vault_ledger.get_asset_balance("bob") == Decimal("5")

    def test_custody_may_overdraw(self, vault_ledger):
        vault_ledger.execute(build_transaction(
            vault_ledger, [], [Move(Decimal("5"), VAULT_CUSTODY, "alice", "gain")],
        ))
        assert vault_ledger.get_asset_balance(VAULT_CUSTODY) == Decimal("-5")
        assert vault_ledger.verify_invariants()['valid']

    def test_overdrawn_balance_is_a_discrepancy(self, vault_ledger):
        vault_ledger.set_asset_balance("alice", Decimal("-1"))
        result = vault_ledger.verify_invariants()
        assert not result['valid']
        assert result['discrepancies'] == [
            {'invariant': 'asset_balance', 'party': 'alice', 'actual': Decimal("-1")},
        ]
