"""
workflows.py - Asynchronous request/accept workflows

Three request kinds share one lifecycle:

    PENDING ──accept (operator)──▶ ACCEPTED   (only inside a settlement)
       │
       ├──cancel (requester)─────▶ CANCELLED
       │
       └──reject (operator)──────▶ REJECTED   (DEPOSIT and WITHDRAW only)

Terminal states admit no further transition (AlreadyFinalized). A terminal
request leaves the active arena and is archived by the ledger.

Amounts:
    DEPOSIT      amount = backing asset offered
    WITHDRAW     amount = shares to burn
    YIELD_CLAIM  amount = shares held at entry_price; auto_compound fixed at creation

Acceptance never happens here on its own. accept_request() is the pure
transition the settlement coordinator composes with the holding and vault
changes of the same transaction.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from .core import (
    LedgerView, PendingTransaction, RecordChange, TransactionOrigin, OriginType,
    InvalidValue, InvalidState, AlreadyFinalized,
    derive_record_id, require_party, build_transaction,
)
from .fixed_point import ZERO, quantize_amount, to_decimal


REQUEST_PREFIX = "R"


class RequestKind(Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    YIELD_CLAIM = "yield_claim"


class RequestStatus(Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    CANCELLED = "cancelled"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.PENDING


@dataclass(frozen=True, slots=True)
class WorkflowRequest:
    """
    A deposit offer, withdraw request or yield claim.

    The requester authors the request; the operator is the sole authority
    to accept or reject it. Settlement outcome fields (settled_shares,
    settled_assets, settled_price) are filled in on acceptance.
    """
    record_id: str
    kind: RequestKind
    requester: str
    operator: str
    amount: Decimal
    created_at: datetime
    status: RequestStatus = RequestStatus.PENDING
    auto_compound: bool = False
    entry_price: Optional[Decimal] = None
    finalized_at: Optional[datetime] = None
    reason: Optional[str] = None
    settled_shares: Optional[Decimal] = None
    settled_assets: Optional[Decimal] = None
    settled_price: Optional[Decimal] = None

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', to_decimal(self.amount, "amount"))
        if self.entry_price is not None and not isinstance(self.entry_price, Decimal):
            object.__setattr__(self, 'entry_price', to_decimal(self.entry_price, "entry_price"))
        if not self.requester or not self.requester.strip():
            raise InvalidValue("requester cannot be empty")
        if not self.operator or not self.operator.strip():
            raise InvalidValue("operator cannot be empty")
        if self.amount <= 0:
            raise InvalidValue(f"request amount must be positive, got {self.amount}")
        if self.kind is RequestKind.YIELD_CLAIM:
            if self.entry_price is None or self.entry_price <= 0:
                raise InvalidValue(f"yield claim entry_price must be positive, got {self.entry_price}")
        elif self.auto_compound:
            raise InvalidValue("auto_compound applies to yield claims only")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


# ============================================================================
# FACTORIES
# ============================================================================

def _new_request(
    kind: RequestKind,
    requester: str,
    operator: str,
    amount: Decimal,
    created_at: datetime,
    reference: str,
    **extra,
) -> WorkflowRequest:
    amount = quantize_amount(amount)
    record_id = derive_record_id(
        f"{REQUEST_PREFIX}:{kind.value}", requester, operator, amount, created_at, reference,
        *sorted(extra.items()),
    )
    return WorkflowRequest(
        record_id=record_id,
        kind=kind,
        requester=requester,
        operator=operator,
        amount=amount,
        created_at=created_at,
        **extra,
    )


def deposit_offer(
    requester: str,
    operator: str,
    amount: Decimal,
    created_at: datetime,
    reference: str = "",
) -> WorkflowRequest:
    """Offer amount of backing asset for shares priced at acceptance time."""
    return _new_request(RequestKind.DEPOSIT, requester, operator, amount, created_at, reference)


def withdraw_request(
    requester: str,
    operator: str,
    shares: Decimal,
    created_at: datetime,
    reference: str = "",
) -> WorkflowRequest:
    """Request to burn shares for their value at acceptance time."""
    return _new_request(RequestKind.WITHDRAW, requester, operator, shares, created_at, reference)


def yield_claim(
    requester: str,
    operator: str,
    held_shares: Decimal,
    entry_price: Decimal,
    created_at: datetime,
    auto_compound: bool = False,
    reference: str = "",
) -> WorkflowRequest:
    """Claim the appreciation of held_shares since entry_price."""
    return _new_request(
        RequestKind.YIELD_CLAIM, requester, operator, held_shares, created_at, reference,
        auto_compound=auto_compound,
        entry_price=to_decimal(entry_price, "entry_price"),
    )


# ============================================================================
# PURE TRANSITIONS
# ============================================================================

def _require_pending(request: WorkflowRequest, operation: str) -> None:
    if request.is_terminal:
        raise AlreadyFinalized(
            f"{operation} on {request.record_id}: request already {request.status.value}"
        )


def accept_request(
    request: WorkflowRequest,
    caller: str,
    at: datetime,
    settled_shares: Decimal = ZERO,
    settled_assets: Decimal = ZERO,
    settled_price: Optional[Decimal] = None,
) -> WorkflowRequest:
    """PENDING -> ACCEPTED. Operator only."""
    _require_pending(request, "Accept")
    require_party(caller, request.operator, "Accept")
    return replace(
        request,
        status=RequestStatus.ACCEPTED,
        finalized_at=at,
        settled_shares=settled_shares,
        settled_assets=settled_assets,
        settled_price=settled_price,
    )


def cancel_request(request: WorkflowRequest, caller: str, at: datetime) -> WorkflowRequest:
    """PENDING -> CANCELLED. Requester only."""
    _require_pending(request, "Cancel")
    require_party(caller, request.requester, "Cancel")
    return replace(request, status=RequestStatus.CANCELLED, finalized_at=at)


def reject_request(
    request: WorkflowRequest,
    caller: str,
    at: datetime,
    reason: str = "",
) -> WorkflowRequest:
    """PENDING -> REJECTED. Operator only; yield claims cannot be rejected."""
    _require_pending(request, "Reject")
    require_party(caller, request.operator, "Reject")
    if request.kind is RequestKind.YIELD_CLAIM:
        raise InvalidState("yield claims cannot be rejected")
    return replace(request, status=RequestStatus.REJECTED, finalized_at=at, reason=reason or None)


# ============================================================================
# CONVENIENCE FUNCTIONS (view -> PendingTransaction)
# ============================================================================

def compute_request_submission(
    view: LedgerView,
    caller: str,
    request: WorkflowRequest,
) -> PendingTransaction:
    """
    Publish a new request. The caller must be its requester, and the
    request must name the vault's operator.
    """
    require_party(caller, request.requester, "Submit")
    vault = view.get_vault()
    if request.operator != vault.operator:
        raise InvalidValue(f"request names operator {request.operator}, vault operator is {vault.operator}")
    if request.is_terminal:
        raise AlreadyFinalized(f"cannot submit a {request.status.value} request")
    return build_transaction(
        view,
        [RecordChange(request.record_id, None, request)],
        origin=TransactionOrigin(
            OriginType.USER_ACTION, caller, request.record_id, f"SUBMIT_{request.kind.name}",
        ),
    )


def compute_cancellation(view: LedgerView, caller: str, request_id: str) -> PendingTransaction:
    request = view.get_request(request_id)
    cancelled = cancel_request(request, caller, view.current_time)
    return build_transaction(
        view,
        [RecordChange(request_id, request, cancelled)],
        origin=TransactionOrigin(OriginType.USER_ACTION, caller, request_id, "CANCEL"),
    )


def compute_rejection(
    view: LedgerView,
    caller: str,
    request_id: str,
    reason: str = "",
) -> PendingTransaction:
    request = view.get_request(request_id)
    rejected = reject_request(request, caller, view.current_time, reason)
    return build_transaction(
        view,
        [RecordChange(request_id, request, rejected)],
        origin=TransactionOrigin(OriginType.SETTLEMENT, caller, request_id, "REJECT"),
    )
