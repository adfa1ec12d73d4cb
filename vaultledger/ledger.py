"""
ledger.py - Versioned record store with atomic, validated commits

The Ledger class is the central state manager of the vault engine.
It is the only module that mutates state, ensuring controlled and auditable changes.

Key responsibilities:
    - Implements LedgerView protocol for safe read-only access by pure functions
    - Commits PendingTransactions atomically (every change applies or none does)
    - Optimistic concurrency: a change commits only if its slot still holds
      the record it was computed from
    - Enforces conservation at commit: holdings move with total_shares, pool
      holdings and asset balance move with the pool reserves, and no party
      outside OVERDRAFT_PARTIES spends asset it does not hold
    - Serializes per-owner work through re-entrant owner locks
    - Always validates and always logs - no exceptions
"""

from __future__ import annotations
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple, Any
import threading

from .core import (
    # Types
    Move, Transaction, PendingTransaction, RecordChange, ExecuteResult, LedgerView, Record,
    TransactionOrigin, OriginType, build_transaction,
    # Constants
    SYSTEM_WALLET, VAULT_CUSTODY, POOL_PARTY, VAULT_RECORD_ID, POOL_RECORD_ID,
    # Exceptions
    VaultError, InvalidValue, InvalidState, ConcurrencyConflict, ConservationViolation,
    RecordNotFound, InsufficientBalance,
)
from .fixed_point import ZERO, quantize_amount, share_price, to_decimal
from .holdings import HoldingRecord
from .pool import PoolState
from .vault import VaultState
from .workflows import RequestKind, RequestStatus, WorkflowRequest


# Parties whose asset balance may go below zero
OVERDRAFT_PARTIES = frozenset({SYSTEM_WALLET, VAULT_CUSTODY})


@dataclass
class PreparedTransaction:
    """
    A validated, staged transaction holding the ledger's commit lock.

    Produced by Ledger.prepare(); must be closed with exactly one of
    Ledger.commit() or Ledger.abort().
    """
    pending: PendingTransaction
    writes: Dict[str, Optional[Record]] = field(default_factory=dict)
    asset_deltas: Dict[str, Decimal] = field(default_factory=dict)
    duplicate: bool = False
    is_open: bool = True


class Ledger:
    """
    Arena of immutable vault records with full validation and audit trail.

    Implements the LedgerView protocol, allowing the ledger to be passed to pure
    compute_* functions that access only read-only methods.

    Design Principles:
        - Always validates: every change is checked against the slot it replaces,
          and every commit against the conservation laws. No shortcuts.
        - Always logs: every commit is recorded in the transaction log, enabling
          replay() for state reconstruction.

    Thread Safety:
        Commits are serialized by a single re-entrant commit lock held from
        prepare() to commit()/abort(). Reads take the same lock, so no reader
        observes a half-applied commit. owner_lock() provides the per-owner
        serialization settlement and consolidation need across their
        read-compute-commit cycle.

    Example:
        ledger = Ledger("main")
        ledger.execute(compute_vault_initialization(ledger, "operator", 100))
        ledger.execute(compute_request_submission(
            ledger, "alice", deposit_offer("alice", "operator", Decimal("1000"), ledger.current_time)
        ))
    """

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
        test_mode: bool = False,
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting time for the ledger (default: 1970-01-01)
            verbose: Enable debug output (default: True)
            test_mode: Enable test mode to allow set_asset_balance() calls (default: False)
        """
        self.name = name
        self.verbose = verbose
        self._test_mode = test_mode
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self._records: Dict[str, Record] = {}
        self._archive: Dict[str, WorkflowRequest] = {}
        # Inverted index owner -> {record_id -> HoldingRecord}
        self._holdings_by_owner: Dict[str, Dict[str, HoldingRecord]] = defaultdict(dict)
        self.asset_balances: Dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
        self.seen_intent_ids: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self._next_sequence: int = 0
        self._commit_lock = threading.RLock()
        self._owner_locks: Dict[str, threading.RLock] = {}
        self._owner_locks_guard = threading.Lock()

    # ========================================================================
    # LedgerView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    def get_record(self, record_id: str) -> Record:
        """
        Get the active record in a slot.

        Raises:
            RecordNotFound: if the slot is empty
        """
        with self._commit_lock:
            record = self._records.get(record_id)
        if record is None:
            raise RecordNotFound(f"no active record {record_id}")
        return record

    def get_vault(self) -> VaultState:
        try:
            return self.get_record(VAULT_RECORD_ID)
        except RecordNotFound:
            raise RecordNotFound("vault not initialized") from None

    def get_pool(self) -> PoolState:
        try:
            return self.get_record(POOL_RECORD_ID)
        except RecordNotFound:
            raise RecordNotFound("no liquidity pool") from None

    def get_request(self, request_id: str) -> WorkflowRequest:
        """Get a workflow request, active or archived."""
        with self._commit_lock:
            record = self._records.get(request_id) or self._archive.get(request_id)
        if not isinstance(record, WorkflowRequest):
            raise RecordNotFound(f"no workflow request {request_id}")
        return record

    def holdings_of(self, owner: str) -> List[HoldingRecord]:
        """An owner's records in (created_at, record_id) order."""
        with self._commit_lock:
            records = list(self._holdings_by_owner.get(owner, {}).values())
        return sorted(records, key=lambda r: (r.created_at, r.record_id))

    def balance_of(self, owner: str) -> Decimal:
        """Total shares held by owner across all records."""
        return sum((r.amount for r in self.holdings_of(owner)), ZERO)

    def list_owners(self) -> Set[str]:
        with self._commit_lock:
            return {owner for owner, records in self._holdings_by_owner.items() if records}

    def list_requests(
        self,
        kind: Optional[RequestKind] = None,
        status: Optional[RequestStatus] = None,
    ) -> List[WorkflowRequest]:
        """Workflow requests (active and archived), optionally filtered."""
        with self._commit_lock:
            candidates = [r for r in self._records.values() if isinstance(r, WorkflowRequest)]
            candidates += list(self._archive.values())
        return sorted(
            (r for r in candidates
             if (kind is None or r.kind is kind) and (status is None or r.status is status)),
            key=lambda r: (r.created_at, r.record_id),
        )

    def get_asset_balance(self, party: str) -> Decimal:
        with self._commit_lock:
            return self.asset_balances.get(party, Decimal("0"))

    def total_holdings(self) -> Decimal:
        """Sum of every HoldingRecord amount, owners in sorted order."""
        with self._commit_lock:
            return sum(
                (r.amount for owner in sorted(self._holdings_by_owner)
                 for r in self._holdings_by_owner[owner].values()),
                ZERO,
            )

    def record_count(self, owner: Optional[str] = None) -> int:
        """Number of HoldingRecords, for one owner or overall."""
        with self._commit_lock:
            if owner is not None:
                return len(self._holdings_by_owner.get(owner, {}))
            return sum(len(records) for records in self._holdings_by_owner.values())

    def verify_invariants(self) -> Dict[str, Any]:
        """
        Verify the settled-state invariants.

        Checks:
        - sum(HoldingRecord.amount) == VaultState.total_shares
        - share_price == nav / total_shares (1 when no shares)
        - pool share reserve == POOL_PARTY holdings, asset reserve == POOL_PARTY balance
        - no asset balance below zero outside OVERDRAFT_PARTIES

        Returns:
            Dict with keys:
            - 'valid': bool - True if every invariant holds
            - 'total_holdings': Decimal
            - 'total_shares': Decimal (None before initialization)
            - 'discrepancies': List[Dict] describing each violation

        Example:
            result = ledger.verify_invariants()
            assert result['valid'], result['discrepancies']
        """
        with self._commit_lock:
            holdings = self.total_holdings()
            vault = self._records.get(VAULT_RECORD_ID)
            pool = self._records.get(POOL_RECORD_ID)
            pool_shares = sum((r.amount for r in self._holdings_by_owner.get(POOL_PARTY, {}).values()), ZERO)
            pool_assets = self.asset_balances.get(POOL_PARTY, ZERO)
            overdrawn = {
                party: balance for party, balance in self.asset_balances.items()
                if balance < 0 and party not in OVERDRAFT_PARTIES
            }

        discrepancies = []
        total_shares = None
        if vault is not None:
            total_shares = vault.total_shares
            if holdings != total_shares:
                discrepancies.append({
                    'invariant': 'share_sum',
                    'expected': total_shares,
                    'actual': holdings,
                    'difference': holdings - total_shares,
                })
            expected_price = share_price(vault.nav, total_shares)
            if vault.share_price != expected_price:
                discrepancies.append({
                    'invariant': 'share_price',
                    'expected': expected_price,
                    'actual': vault.share_price,
                })
        elif holdings != 0:
            discrepancies.append({'invariant': 'share_sum', 'expected': ZERO, 'actual': holdings})

        if pool is not None:
            if pool.share_reserve != pool_shares:
                discrepancies.append({
                    'invariant': 'pool_shares',
                    'expected': pool.share_reserve,
                    'actual': pool_shares,
                })
            if pool.asset_reserve != pool_assets:
                discrepancies.append({
                    'invariant': 'pool_assets',
                    'expected': pool.asset_reserve,
                    'actual': pool_assets,
                })

        for party, balance in sorted(overdrawn.items()):
            discrepancies.append({'invariant': 'asset_balance', 'party': party, 'actual': balance})

        return {
            'valid': len(discrepancies) == 0,
            'total_holdings': holdings,
            'total_shares': total_shares,
            'discrepancies': discrepancies,
        }

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the ledger's logical clock. Time only moves forward.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # LOCKING
    # ========================================================================

    def _lock_for(self, owner: str) -> threading.RLock:
        with self._owner_locks_guard:
            lock = self._owner_locks.get(owner)
            if lock is None:
                lock = self._owner_locks[owner] = threading.RLock()
            return lock

    @contextmanager
    def owner_lock(self, *owners: str) -> Iterator[None]:
        """
        Hold the per-owner locks of every listed owner.

        Locks are taken in sorted order so two callers locking overlapping
        owner sets cannot deadlock. Unrelated owners proceed independently.
        """
        locks = [self._lock_for(owner) for owner in sorted(set(owners))]
        acquired = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    # ========================================================================
    # TEST SUPPORT (Mutating)
    # ========================================================================

    def set_asset_balance(self, party: str, amount: Decimal) -> None:
        """
        Set a party's asset balance directly.

        WARNING: bypasses the transaction log and is only available in
        test mode. In production, fund parties with a Move from SYSTEM_WALLET.

        Raises:
            VaultError: If called when test_mode is False
        """
        if not self._test_mode:
            raise VaultError(
                "set_asset_balance() is disabled in production mode. "
                "Record a Move from SYSTEM_WALLET instead. "
                "Set test_mode=True when creating Ledger for testing."
            )
        with self._commit_lock:
            self.asset_balances[party] = to_decimal(amount, "amount")

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """
        Generate a unique execution ID.

        Format: exec:{ledger_name}:{sequence:012d}:{timestamp_micros}
        """
        micros = int(self._current_time.timestamp() * 1_000_000)
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def prepare(self, pending: PendingTransaction) -> PreparedTransaction:
        """
        Validate and stage a transaction, taking the commit lock.

        The lock stays held until commit() or abort() closes the returned
        PreparedTransaction. A duplicate intent is returned with
        duplicate=True and nothing staged.

        Raises:
            ConcurrencyConflict: a replaced/consumed record changed since it
                was read, or a created id is already taken
            ConservationViolation: the changes break share or pool conservation
            InvalidValue / InvalidState: malformed transaction
        """
        self._commit_lock.acquire()
        try:
            if pending.intent_id in self.seen_intent_ids:
                return PreparedTransaction(pending, duplicate=True)
            writes, asset_deltas = self._stage(pending)
        except BaseException:
            self._commit_lock.release()
            raise
        return PreparedTransaction(pending, writes, asset_deltas)

    def commit(self, prepared: PreparedTransaction) -> Transaction:
        """Apply a prepared transaction and release the commit lock."""
        if not prepared.is_open:
            raise InvalidState("prepared transaction already closed")
        if prepared.duplicate:
            raise InvalidState("cannot commit a duplicate intent")
        try:
            return self._apply(prepared)
        finally:
            prepared.is_open = False
            self._commit_lock.release()

    def abort(self, prepared: PreparedTransaction) -> None:
        """Discard a prepared transaction and release the commit lock."""
        if not prepared.is_open:
            return
        prepared.is_open = False
        self._commit_lock.release()

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        Every record change and move succeeds together or none is applied.
        Execution is idempotent: a pending transaction with the same intent_id
        will not be applied twice.

        Returns:
            ExecuteResult.APPLIED if committed
            ExecuteResult.ALREADY_APPLIED if the intent was already committed

        Raises:
            VaultError subclasses on rejection; state is unchanged.
        """
        if pending.is_empty():
            return ExecuteResult.APPLIED

        prepared = self.prepare(pending)
        if prepared.duplicate:
            self.abort(prepared)
            if self.verbose:
                print(f"⚠️  ALREADY_APPLIED: intent_id={pending.intent_id}")
            return ExecuteResult.ALREADY_APPLIED
        self.commit(prepared)
        return ExecuteResult.APPLIED

    def execute_with_retry(
        self,
        build: Callable[[LedgerView], PendingTransaction],
        max_retries: int,
        label: str = "transaction",
    ) -> Tuple[ExecuteResult, int]:
        """
        Build from a fresh read and execute, retrying on ConcurrencyConflict.

        Args:
            build: Pure function from the current view to a PendingTransaction
            max_retries: Retries after the first attempt
            label: Name used in diagnostics

        Returns:
            (ExecuteResult, attempts made)

        Raises:
            ConcurrencyConflict: when every attempt conflicted
            Any other VaultError from build() or execute(), unchanged
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.execute(build(self)), attempt
            except ConcurrencyConflict as exc:
                if attempt > max_retries:
                    raise
                if self.verbose:
                    print(f"↻ RETRY {label} (attempt {attempt}): {exc}")

    @property
    def last_transaction(self) -> Optional[Transaction]:
        return self.transaction_log[-1] if self.transaction_log else None

    def _stage(self, pending: PendingTransaction) -> Tuple[Dict[str, Optional[Record]], Dict[str, Decimal]]:
        """
        Validate a pending transaction against the current arena.

        Checks performed:
        1. Timestamp validation (transaction must not be from the future)
        2. Compare-and-swap of every change against its slot
        3. Record type consistency
        4. Share conservation (holdings delta == total_shares delta)
        5. Pool backing (pool holdings/asset deltas == reserve deltas)
        6. Asset balances (no party but OVERDRAFT_PARTIES goes below zero)

        Returns:
            (writes by record_id, asset balance deltas by party)
        """
        if pending.timestamp > self._current_time:
            raise InvalidState(
                f"transaction timestamp {pending.timestamp} is after ledger time {self._current_time}"
            )

        writes: Dict[str, Optional[Record]] = {}
        holding_delta = ZERO
        pool_holding_delta = ZERO
        shares_delta = ZERO
        vault_changed = False
        pool_change: Optional[RecordChange] = None

        for change in pending.changes:
            rid = change.record_id
            if rid in writes:
                raise InvalidValue(f"record {rid} changed twice in one transaction")
            current = self._records.get(rid)
            if change.is_create:
                if current is not None or rid in self._archive:
                    raise ConcurrencyConflict(f"record {rid} already exists")
            elif current is None:
                raise ConcurrencyConflict(f"record {rid} was consumed concurrently")
            elif current != change.old:
                raise ConcurrencyConflict(f"record {rid} changed since it was read")
            if change.old is not None and change.new is not None \
                    and type(change.old) is not type(change.new):
                raise InvalidValue(f"record {rid} cannot change type")
            writes[rid] = change.new

            for record, sign in ((change.old, -1), (change.new, 1)):
                if isinstance(record, HoldingRecord):
                    holding_delta += sign * record.amount
                    if record.owner == POOL_PARTY:
                        pool_holding_delta += sign * record.amount

            if rid == VAULT_RECORD_ID:
                if change.is_consume:
                    raise InvalidValue("the vault record cannot be consumed")
                vault_changed = True
                old_shares = change.old.total_shares if change.old is not None else ZERO
                shares_delta = change.new.total_shares - old_shares
            elif rid == POOL_RECORD_ID:
                if change.is_consume:
                    raise InvalidValue("the pool record cannot be consumed")
                pool_change = change

        if holding_delta != shares_delta:
            raise ConservationViolation(
                f"holdings change by {holding_delta} but total_shares by "
                f"{shares_delta if vault_changed else 0}"
            )

        asset_deltas: Dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
        for move in pending.moves:
            asset_deltas[move.source] -= move.quantity
            asset_deltas[move.dest] += move.quantity

        pool_asset_delta = asset_deltas.get(POOL_PARTY, ZERO)
        if pool_change is None:
            expected_pool_shares = ZERO
            expected_pool_assets = ZERO
        elif pool_change.is_create:
            expected_pool_shares = pool_change.new.share_reserve
            expected_pool_assets = pool_change.new.asset_reserve
        else:
            expected_pool_shares = pool_change.new.share_reserve - pool_change.old.share_reserve
            expected_pool_assets = pool_change.new.asset_reserve - pool_change.old.asset_reserve
        if pool_holding_delta != expected_pool_shares:
            raise ConservationViolation(
                f"pool holdings change by {pool_holding_delta}, share reserve by {expected_pool_shares}"
            )
        if pool_asset_delta != expected_pool_assets:
            raise ConservationViolation(
                f"pool assets change by {pool_asset_delta}, asset reserve by {expected_pool_assets}"
            )

        # Check balance constraints
        # Note: SYSTEM_WALLET and VAULT_CUSTODY are exempt. The system wallet
        # issues bridged asset; custody pays out NAV gains it never received
        # through the bridge.
        for party, delta in asset_deltas.items():
            if delta >= 0 or party in OVERDRAFT_PARTIES:
                continue
            current = self.asset_balances.get(party, ZERO)
            if current + delta < 0:
                raise InsufficientBalance(f"{party} holds {current} asset, needs {-delta}")

        return writes, dict(asset_deltas)

    def _apply(self, prepared: PreparedTransaction) -> Transaction:
        """Apply staged writes. Cannot fail once _stage() has passed."""
        pending = prepared.pending
        sequence = self._next_sequence
        self._next_sequence += 1
        tx = Transaction(
            changes=pending.changes,
            moves=pending.moves,
            origin=pending.origin,
            timestamp=pending.timestamp,
            intent_id=pending.intent_id,
            exec_id=self._generate_exec_id(sequence),
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
        )

        for rid, new in prepared.writes.items():
            old = self._records.pop(rid, None)
            if isinstance(old, HoldingRecord):
                self._holdings_by_owner[old.owner].pop(rid, None)
            if new is None:
                if isinstance(old, WorkflowRequest):
                    self._archive[rid] = old
                continue
            if isinstance(new, WorkflowRequest) and new.is_terminal:
                self._archive[rid] = new
                continue
            self._records[rid] = new
            if isinstance(new, HoldingRecord):
                self._holdings_by_owner[new.owner][rid] = new

        for party, delta in prepared.asset_deltas.items():
            self.asset_balances[party] += delta

        self.transaction_log.append(tx)
        self.seen_intent_ids.add(pending.intent_id)

        if self.verbose:
            self._print_tx_result(tx, "APPLIED", "✓")
        return tx

    def _print_tx_result(self, tx: Transaction, result: str, icon: str) -> None:
        """Print transaction details with a result line appended."""
        lines = repr(tx).split('\n')
        w = 100
        bar = "─" * w
        text = ' ' + icon + ' ' + result
        lines[-1] = f"├{bar}┤"
        lines.append(f"│{text[:w]:<{w}}│")
        lines.append(f"└{bar}┘")
        print("\n".join(lines))

    # ========================================================================
    # LEDGER OPERATIONS
    # ========================================================================

    def clone(self) -> Ledger:
        """
        Create an independent copy of this ledger.

        Records are immutable, so the arena and index copy shallowly.
        Locks are fresh; the clone shares no synchronization with the original.
        """
        with self._commit_lock:
            cloned = Ledger(self.name, self._current_time, self.verbose, self._test_mode)
            cloned._records = dict(self._records)
            cloned._archive = dict(self._archive)
            for owner, records in self._holdings_by_owner.items():
                cloned._holdings_by_owner[owner] = dict(records)
            cloned.asset_balances = defaultdict(lambda: Decimal("0"), self.asset_balances)
            cloned.seen_intent_ids = set(self.seen_intent_ids)
            cloned.transaction_log = list(self.transaction_log)
            cloned._next_sequence = self._next_sequence
        return cloned

    def replay(self, from_tx: int = 0) -> Ledger:
        """
        Create a new ledger by re-executing the transaction log.

        Asset balances set via set_asset_balance() are NOT replayed because
        they are not part of the log; fund through SYSTEM_WALLET moves to make
        a history fully replayable.

        Raises:
            VaultError: If any logged transaction fails to re-apply
        """
        log = self.transaction_log[from_tx:]
        start = log[0].timestamp if log else self._current_time
        new_ledger = Ledger(
            name=f"{self.name}_replayed",
            initial_time=min(start, self._current_time),
            verbose=self.verbose,
            test_mode=self._test_mode,
        )
        for tx in log:
            if tx.execution_time > new_ledger.current_time:
                new_ledger.advance_time(tx.execution_time)
            pending = PendingTransaction(
                changes=tx.changes,
                moves=tx.moves,
                origin=tx.origin,
                timestamp=tx.timestamp,
            )
            new_ledger.execute(pending)
        return new_ledger


def compute_bridge_transfer(
    view: LedgerView,
    party: str,
    amount: Decimal,
    inbound: bool = True,
    reference: str = "",
) -> PendingTransaction:
    """
    Record the bridge moving backing asset into (or out of) a party's balance.

    The core only records that the transfer happened; SYSTEM_WALLET stands
    for the other custody domain. Distinct transfers of the same amount at
    the same time need distinct references, otherwise the second is an
    idempotent replay of the first. An outbound transfer larger than the
    party's balance is rejected at commit with InsufficientBalance.
    """
    amount = quantize_amount(amount)
    if amount <= 0:
        raise InvalidValue(f"bridge amount must be positive, got {amount}")
    source, dest = (SYSTEM_WALLET, party) if inbound else (party, SYSTEM_WALLET)
    move = Move(amount, source, dest, f"bridge:{party}:{reference or view.current_time.isoformat()}")
    return build_transaction(
        view, [], [move],
        TransactionOrigin(OriginType.SYSTEM, party, None, "BRIDGE_IN" if inbound else "BRIDGE_OUT"),
    )
