"""
Core types and pure functions for the vault settlement engine.

This module provides the foundational data structures and protocols:
1. Protocols: LedgerView for read-only access to the record store
2. Immutable data structures: Move, RecordChange, PendingTransaction, Transaction
3. Exceptions: VaultError and the settlement error taxonomy
4. Authorization: require_party capability check
5. Identity: content-addressed intent ids and derived record ids

All functions in this module are pure and operate on read-only views.
No function can mutate ledger state directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
import hashlib
from typing import (
    Dict, List, Set, Optional, Any, Protocol,
    Tuple, FrozenSet, runtime_checkable,
)


# ============================================================================
# CONSTANTS
# ============================================================================

# External side of the bridge/settlement rail. Assets enter and leave the
# recorded world through this wallet; it is exempt from every balance rule.
SYSTEM_WALLET = "system"

# Custody wallet holding the backing asset received by deposits.
VAULT_CUSTODY = "vault"

# Party that owns the liquidity pool's share reserve and asset reserve.
POOL_PARTY = "pool"

# Fixed arena slots for the two singleton records.
VAULT_RECORD_ID = "vault"
POOL_RECORD_ID = "pool"

# Record kind tags (strings, not enum, matching record_id prefixes).
RECORD_KIND_VAULT = "VAULT"
RECORD_KIND_HOLDING = "HOLDING"
RECORD_KIND_REQUEST = "REQUEST"
RECORD_KIND_POOL = "POOL"

# Quantities with absolute value below this threshold are treated as zero.
QUANTITY_EPSILON = Decimal("1e-12")


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Mapping from party id to asset balance.
AssetBalances = Dict[str, Decimal]

# Any arena record: VaultState, HoldingRecord, WorkflowRequest, PoolState.
Record = Any


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to the record store.

    Settlement, workflow, pool and consolidation functions accept a
    LedgerView to declare that they only read state. They return a
    PendingTransaction describing the change; only Ledger.execute applies it.
    """

    @property
    def current_time(self) -> datetime:
        """Return the current logical time of the ledger."""
        ...

    def get_record(self, record_id: str) -> Record:
        """Return the active record in a slot. Raises RecordNotFound."""
        ...

    def get_vault(self) -> Any:
        """Return the current VaultState. Raises RecordNotFound before initialization."""
        ...

    def get_pool(self) -> Any:
        """Return the current PoolState. Raises RecordNotFound if no pool exists."""
        ...

    def get_request(self, request_id: str) -> Any:
        """Return a workflow request, active or archived."""
        ...

    def holdings_of(self, owner: str) -> List[Any]:
        """Return the owner's HoldingRecords in deterministic (created_at, id) order."""
        ...

    def list_owners(self) -> Set[str]:
        """Return every party that holds at least one HoldingRecord."""
        ...

    def get_asset_balance(self, party: str) -> Decimal:
        """Return a party's recorded backing-asset balance."""
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: Transaction was validated and committed.
    ALREADY_APPLIED: Transaction intent was previously committed (idempotent behavior).

    Rejections are raised as VaultError subclasses, never returned, so a
    caller cannot mistake a failed settlement for a successful one.
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"


class OriginType(Enum):
    """
    Classification of where a transaction originated.

    Used for audit trails and reconciliation.
    """
    USER_ACTION = "user_action"           # Requester-authored choice (submit, cancel, transfer, swap)
    SETTLEMENT = "settlement"             # Operator acceptance through the settlement coordinator
    ORACLE = "oracle"                     # NAV oracle cycle
    MAINTENANCE = "maintenance"           # Consolidation, rebalance, pause, configuration
    SYSTEM = "system"                     # Initialization and bridge funding


# ============================================================================
# EXCEPTIONS
# ============================================================================

class VaultError(Exception):
    """Base exception for all vault errors."""
    pass


class InvalidValue(VaultError):
    """Non-positive or out-of-range numeric input. Caller error, never retried."""
    pass


class InvalidState(VaultError):
    """Operation not permitted in the current lifecycle state (e.g. paused)."""
    pass


class AlreadyFinalized(InvalidState):
    """Transition attempted out of a terminal workflow state."""
    pass


class Unauthorized(VaultError):
    """Caller is not the party the operation requires."""
    pass


class InsufficientShares(VaultError):
    """Burn would exceed the vault's outstanding shares."""
    pass


class InsufficientBalance(VaultError):
    """Holder's records do not cover the requested share amount."""
    pass


class InsufficientLiquidity(VaultError):
    """Swap would exhaust a pool reserve."""
    pass


class PriceMismatch(VaultError):
    """Operator-supplied settlement amount outside tolerance of the oracle-implied value."""
    pass


class StaleUpdate(VaultError):
    """NAV update timestamp is not strictly after the last update."""
    pass


class ConcurrencyConflict(VaultError):
    """Record version mismatch at commit. Safe to retry from a fresh read."""
    pass


class ConservationViolation(VaultError):
    """Committed changes would break the share-sum or pool-backing invariant."""
    pass


class RecordNotFound(VaultError):
    """No record in the requested slot."""
    pass


class ValuationUnavailable(VaultError):
    """External valuation source could not produce a valuation."""
    pass


# ============================================================================
# AUTHORIZATION
# ============================================================================

def require_party(caller: str, required: str, operation: str) -> None:
    """
    Capability check placed at the top of every choice.

    Raises:
        Unauthorized: if caller is not the required party
    """
    if caller != required:
        raise Unauthorized(f"{operation} requires {required}, called by {caller}")


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Immutable record of a transaction's origin for audit purposes.

    Attributes:
        origin_type: Classification of the origin source
        source_id: Party that authorized the transaction
        record_id: Primary record the transaction acts on (if applicable)
        event_type: Specific choice (e.g., "ACCEPT_DEPOSIT", "UPDATE_NAV")
    """
    origin_type: OriginType
    source_id: str
    record_id: Optional[str] = None
    event_type: Optional[str] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.record_id:
            parts.append(f"record={self.record_id}")
        if self.event_type:
            parts.append(f"event={self.event_type}")
        return f"Origin({', '.join(parts)})"


# ============================================================================
# RECORD CHANGE
# ============================================================================

@dataclass(frozen=True, slots=True)
class RecordChange:
    """
    Replace-by-new-set entry for one arena slot.

    old is None  -> create the record
    new is None  -> consume (archive) the record
    both set     -> replace old with new

    old doubles as the compare-and-swap guard: the ledger commits only if
    the slot still holds exactly old.
    """
    record_id: str
    old: Record
    new: Record

    def __post_init__(self):
        if not self.record_id or not self.record_id.strip():
            raise ValueError("RecordChange record_id cannot be empty")
        if self.old is None and self.new is None:
            raise ValueError(f"RecordChange {self.record_id} has neither old nor new record")
        for rec in (self.old, self.new):
            if rec is not None and rec.record_id != self.record_id:
                raise ValueError(
                    f"RecordChange {self.record_id} carries record {rec.record_id}"
                )

    @property
    def is_create(self) -> bool:
        return self.old is None

    @property
    def is_consume(self) -> bool:
        return self.new is None

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """
        Compute fields that differ between old and new record.

        Returns:
            Dict mapping field name to (old_value, new_value) tuples.
        """
        old = _record_fields(self.old)
        new = _record_fields(self.new)
        changes = {}
        for key in sorted(set(old) | set(new)):
            if old.get(key) != new.get(key):
                changes[key] = (old.get(key), new.get(key))
        return changes


def _record_fields(record: Record) -> Dict[str, Any]:
    if record is None:
        return {}
    return {f.name: getattr(record, f.name) for f in fields(record)}


# ============================================================================
# MOVE
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A recorded transfer of the backing asset between two parties.

    The engine does not custody assets; a Move records that the bridge or
    settlement rail moved value, and the ledger tracks the resulting balances.

    Attributes:
        quantity: The amount transferred (must be finite and positive).
        source: The party debited.
        dest: The party credited.
        contract_id: Identifier of the choice generating this move.
    """
    quantity: Decimal
    source: str
    dest: str
    contract_id: str

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.contract_id or not self.contract_id.strip():
            raise ValueError("Move contract_id cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity)}")
        if self.quantity.is_infinite() or self.quantity.is_nan():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if self.quantity < QUANTITY_EPSILON:
            raise ValueError(f"Move quantity must be positive, got {self.quantity}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity}: {self.source}→{self.dest})"


# ============================================================================
# CANONICAL IDENTITY
# ============================================================================

def _normalize_decimal(d: Decimal) -> str:
    """
    Normalize a Decimal to a canonical string representation.

    Decimal("1.0") and Decimal("1.00") both become "1".
    """
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def _canonicalize(value: Any) -> str:
    """
    Produce a canonical string representation of a value for hashing.

    Deterministic regardless of dict insertion order or Decimal
    representation. Dataclass records serialize field by field.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return f"E:{value.value}"
    if isinstance(value, Decimal):
        return f"D:{_normalize_decimal(value)}"
    if isinstance(value, int):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, datetime):
        return f"T:{value.isoformat()}"
    if isinstance(value, timedelta):
        return f"TD:{value.total_seconds()}"
    if is_dataclass(value) and not isinstance(value, type):
        return f"{type(value).__name__}{_canonicalize(_record_fields(value))}"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        serialized = ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        serialized = ",".join(_canonicalize(item) for item in value)
        return f"[{serialized}]"
    return f"R:{repr(value)}"


def derive_record_id(prefix: str, *parts: Any) -> str:
    """
    Deterministic record id from the content that creates the record.

    Two choices that create a record from identical inputs derive the same
    id, which the ledger's create guard turns into a conflict rather than
    a duplicate.
    """
    content = "|".join(_canonicalize(p) for p in parts)
    return f"{prefix}:{hashlib.sha256(content.encode()).hexdigest()[:16]}"


def _compute_intent_id(
    changes: Tuple[RecordChange, ...],
    moves: Tuple[Move, ...],
    origin: TransactionOrigin,
) -> str:
    """
    Deterministic content hash for a transaction's intent.

    Based solely on the semantic content (changes, moves, origin), not on
    execution metadata. Used for idempotency: the same intent commits once.
    """
    content_parts = [f"origin:{origin.origin_type.value}:{origin.source_id}"]
    if origin.record_id:
        content_parts.append(f"record:{origin.record_id}")
    if origin.event_type:
        content_parts.append(f"event:{origin.event_type}")

    for m in sorted(moves, key=lambda m: (_normalize_decimal(m.quantity), m.source, m.dest, m.contract_id)):
        content_parts.append(
            f"move:{_normalize_decimal(m.quantity)}|{m.source}|{m.dest}|{m.contract_id}"
        )

    for rc in sorted(changes, key=lambda c: c.record_id):
        content_parts.append(
            f"change:{rc.record_id}|{_canonicalize(rc.old)}|{_canonicalize(rc.new)}"
        )

    content = "|".join(content_parts)
    return hashlib.sha256(content.encode()).hexdigest()[:16]


# ============================================================================
# PENDING TRANSACTION
# ============================================================================

@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A transaction specification before execution - represents INTENT.

    Built by pure compute_* functions from a LedgerView and submitted to
    Ledger.execute(). Carries every record change and asset move of one
    indivisible unit: a settlement's request acceptance, holding changes and
    vault transition travel together in a single PendingTransaction.

    Attributes:
        changes: Record changes (create / replace / consume)
        moves: Recorded backing-asset transfers
        origin: Who/what created this transaction and why
        timestamp: Ledger time the intent was built at
        intent_id: Content-addressable hash of the intent (auto-computed)
    """
    changes: Tuple[RecordChange, ...]
    moves: Tuple[Move, ...]
    origin: TransactionOrigin
    timestamp: datetime
    intent_id: str = field(default="")

    def __post_init__(self):
        if not self.intent_id:
            object.__setattr__(
                self, 'intent_id',
                _compute_intent_id(self.changes, self.moves, self.origin),
            )

    def is_empty(self) -> bool:
        """Return True if this pending transaction changes nothing."""
        return not self.changes and not self.moves

    def touched_records(self) -> FrozenSet[str]:
        return frozenset(c.record_id for c in self.changes)

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.changes)} changes, {len(self.moves)} moves, {self.origin})"


def build_transaction(
    view: LedgerView,
    changes: List[RecordChange],
    moves: Optional[List[Move]] = None,
    origin: Optional[TransactionOrigin] = None,
) -> PendingTransaction:
    """
    Build a PendingTransaction from record changes and moves.

    This is the standard way to create transactions. Records are frozen
    dataclasses and are carried without copying.

    Example:
        def compute_pause(view, caller):
            vault = view.get_vault()
            require_party(caller, vault.operator, "Pause")
            changes = [RecordChange(vault.record_id, vault, pause(vault))]
            return build_transaction(view, changes)
    """
    if origin is None:
        origin = TransactionOrigin(
            origin_type=OriginType.USER_ACTION,
            source_id="unknown",
        )
    return PendingTransaction(
        changes=tuple(changes),
        moves=tuple(moves or ()),
        origin=origin,
        timestamp=view.current_time,
    )


def empty_pending_transaction(view: LedgerView) -> PendingTransaction:
    """
    Create an empty PendingTransaction (nothing to do).

    Args:
        view: Read-only ledger view (provides current_time)
    """
    return PendingTransaction(
        changes=(),
        moves=(),
        origin=TransactionOrigin(OriginType.SYSTEM, "noop"),
        timestamp=view.current_time,
    )


# ============================================================================
# TRANSACTION
# ============================================================================

@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of ledger changes - represents FACT.

    Attributes:
        changes: Record changes that were committed
        moves: Asset moves that were recorded
        origin: Who/what created this transaction and why
        timestamp: When the PendingTransaction was built
        intent_id: Content hash (from PendingTransaction)
        exec_id: Unique execution identifier
        ledger_name: Name of the ledger that committed this
        execution_time: Ledger time at commit
        sequence_number: Monotonic sequence within the ledger
    """
    changes: Tuple[RecordChange, ...]
    moves: Tuple[Move, ...]
    origin: TransactionOrigin
    timestamp: datetime
    intent_id: str
    exec_id: str
    ledger_name: str
    execution_time: datetime
    sequence_number: int

    def __post_init__(self):
        if not self.changes and not self.moves:
            raise ValueError("Transaction must have changes or moves")

    def __repr__(self) -> str:
        w = 100

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))

        bar = "─" * w
        lines = [
            "",
            f"┌{bar}┐",
            f"│{pad(' Transaction: ' + self.exec_id)}│",
            f"├{bar}┤",
            f"│{pad('   intent_id      : ' + self.intent_id)}│",
            f"│{pad('   timestamp      : ' + str(self.timestamp))}│",
            f"│{pad('   sequence       : ' + str(self.sequence_number))}│",
            f"│{pad('   origin         : ' + str(self.origin))}│",
        ]
        if self.moves:
            lines.append(f"├{bar}┤")
            lines.append(f"│{pad(' Moves (' + str(len(self.moves)) + '):')}│")
            for i, move in enumerate(self.moves):
                lines.append(f"│{pad(f'   [{i}] {move.quantity}: {move.source} → {move.dest}')}│")
        if self.changes:
            lines.append(f"├{bar}┤")
            lines.append(f"│{pad(' Record Changes (' + str(len(self.changes)) + '):')}│")
            for rc in self.changes:
                verb = "create" if rc.is_create else "consume" if rc.is_consume else "replace"
                lines.append(f"│{pad(f'   [{rc.record_id}] {verb}')}│")
                if not rc.is_create and not rc.is_consume:
                    for name, (old_val, new_val) in rc.changed_fields().items():
                        lines.append(f"│{pad(f'      {name}: {old_val!r} → {new_val!r}')}│")
        lines.append(f"└{bar}┘")
        return "\n".join(lines)
