"""
holdings.py - Holding Ledger: fragmented per-owner share records

Shares are held as UTXO-style HoldingRecords. A record is never partially
mutated: spending consumes whole records and creates a change record for
any remainder (replace-by-new-set).

Functions:
1. new_holding() - Factory with a content-derived record id
2. select_records() - Deterministic coin selection for a spend
3. spend_records() - Consume records for an amount, returning change
4. merge_records() - Pure consolidation of many records into one
5. compute_holding_transfer() - Owner-to-party share transfer
6. compute_consolidation() - Operator sweep for one fragmented owner

Invariant: the sum of every record's amount equals VaultState.total_shares
at every committed state. The ledger enforces it at commit.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Sequence, Tuple

from .core import (
    LedgerView, PendingTransaction, RecordChange, TransactionOrigin, OriginType,
    InvalidValue, InsufficientBalance,
    derive_record_id, require_party, build_transaction, empty_pending_transaction,
)
from .fixed_point import ZERO, quantize_amount, to_decimal


HOLDING_PREFIX = "H"


@dataclass(frozen=True, slots=True)
class HoldingRecord:
    """
    One fragment of an owner's share balance.

    Attributes:
        record_id: Opaque unique id
        owner: Holding party
        amount: Share quantity (> 0, 6 decimal places)
        created_at: Ledger time the record was created
        source: Tag of the choice that created it ("mint", "change", "merge", ...)
    """
    record_id: str
    owner: str
    amount: Decimal
    created_at: datetime
    source: str = "mint"

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', to_decimal(self.amount, "amount"))
        if not self.owner or not self.owner.strip():
            raise InvalidValue("holding owner cannot be empty")
        if self.amount <= 0:
            raise InvalidValue(f"holding amount must be positive, got {self.amount}")
        if quantize_amount(self.amount) != self.amount:
            raise InvalidValue(f"holding amount {self.amount} exceeds share precision")


def new_holding(
    owner: str,
    amount: Decimal,
    created_at: datetime,
    source: str,
    *basis,
) -> HoldingRecord:
    """
    Create a HoldingRecord whose id is derived from its creating content.

    basis should identify the creating choice (request id, consumed record
    ids, ...) so that distinct choices never collide.
    """
    record_id = derive_record_id(HOLDING_PREFIX, owner, amount, created_at, source, *basis)
    return HoldingRecord(
        record_id=record_id,
        owner=owner,
        amount=amount,
        created_at=created_at,
        source=source,
    )


def total_held(records: Iterable[HoldingRecord]) -> Decimal:
    return sum((r.amount for r in records), ZERO)


def select_records(
    records: Sequence[HoldingRecord],
    amount: Decimal,
) -> Tuple[List[HoldingRecord], Decimal]:
    """
    Pick records, oldest first, until they cover amount.

    Returns:
        (selected records, change) where change = sum(selected) - amount

    Raises:
        InvalidValue: amount <= 0
        InsufficientBalance: records do not cover amount
    """
    if amount <= 0:
        raise InvalidValue(f"spend amount must be positive, got {amount}")
    ordered = sorted(records, key=lambda r: (r.created_at, r.record_id))
    selected: List[HoldingRecord] = []
    covered = ZERO
    for record in ordered:
        if covered >= amount:
            break
        selected.append(record)
        covered += record.amount
    if covered < amount:
        owner = ordered[0].owner if ordered else "?"
        raise InsufficientBalance(f"{owner} holds {covered}, needs {amount}")
    return selected, covered - amount


def spend_records(
    view: LedgerView,
    owner: str,
    amount: Decimal,
    *basis,
) -> Tuple[List[RecordChange], Decimal]:
    """
    Build the record changes that remove amount shares from owner.

    Every selected record is consumed; any remainder comes back as one
    change record for the same owner.

    Returns:
        (record changes, amount actually removed)
    """
    selected, change = select_records(view.holdings_of(owner), amount)
    changes = [RecordChange(r.record_id, r, None) for r in selected]
    if change > 0:
        remainder = new_holding(
            owner, change, view.current_time, "change",
            *basis, *(r.record_id for r in selected),
        )
        changes.append(RecordChange(remainder.record_id, None, remainder))
    return changes, amount


def credit_records(
    view: LedgerView,
    owner: str,
    amount: Decimal,
    source: str,
    *basis,
) -> List[RecordChange]:
    """Record changes that add a fresh record of amount shares for owner."""
    record = new_holding(owner, amount, view.current_time, source, *basis)
    return [RecordChange(record.record_id, None, record)]


def merge_records(records: Sequence[HoldingRecord], at: datetime) -> HoldingRecord:
    """
    Merge one owner's records into a single record of the exact sum.

    Raises:
        InvalidValue: fewer than two records, or mixed owners
    """
    if len(records) < 2:
        raise InvalidValue("merge needs at least two records")
    owners = {r.owner for r in records}
    if len(owners) != 1:
        raise InvalidValue(f"cannot merge records of different owners: {sorted(owners)}")
    ids = sorted(r.record_id for r in records)
    return new_holding(records[0].owner, total_held(records), at, "merge", *ids)


# ============================================================================
# CONVENIENCE FUNCTIONS (view -> PendingTransaction)
# ============================================================================

def compute_holding_transfer(
    view: LedgerView,
    caller: str,
    receiver: str,
    amount: Decimal,
) -> PendingTransaction:
    """
    Transfer shares from caller to receiver.

    Raises:
        InvalidValue: amount <= 0 or receiver == caller
        InsufficientBalance: caller's records do not cover amount
    """
    amount = quantize_amount(amount)
    if amount <= 0:
        raise InvalidValue(f"transfer amount must be positive, got {amount}")
    if receiver == caller:
        raise InvalidValue("receiver must differ from sender")
    changes, _ = spend_records(view, caller, amount, "transfer", receiver)
    changes += credit_records(
        view, receiver, amount, "transfer", caller,
        *(c.record_id for c in changes),
    )
    return build_transaction(
        view, changes,
        origin=TransactionOrigin(OriginType.USER_ACTION, caller, None, "TRANSFER"),
    )


def compute_consolidation(
    view: LedgerView,
    caller: str,
    owner: str,
    threshold: int,
) -> PendingTransaction:
    """
    Replace an owner's records with one record of the summed amount.

    Operator only. Returns an empty transaction when the owner holds no more
    than threshold records, so running it twice is a no-op after the first.
    """
    vault = view.get_vault()
    require_party(caller, vault.operator, "Consolidate")
    if threshold < 1:
        raise InvalidValue(f"threshold must be >= 1, got {threshold}")
    records = view.holdings_of(owner)
    if len(records) <= threshold:
        return empty_pending_transaction(view)
    merged = merge_records(records, view.current_time)
    changes = [RecordChange(r.record_id, r, None) for r in records]
    changes.append(RecordChange(merged.record_id, None, merged))
    return build_transaction(
        view, changes,
        origin=TransactionOrigin(OriginType.MAINTENANCE, caller, None, "CONSOLIDATE"),
    )
