"""
Ledger model - payment history embedded in a booking.

Design principles:
- Append-only: entries are never deleted
- Immutable once settled: only pending entries may change status
- reference_id (gateway charge/refund id) is unique within a booking
- All amounts in integer cents, always >= 0; kind decides the sign
"""

from typing import Any, Dict, FrozenSet, Optional
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from app.models.base import _utcnow, new_entry_id


class EntryKind(str, Enum):
    PAYMENT = "payment"
    REFUND = "refund"
    LINK = "link"
    ADJUSTMENT = "adjustment"


class EntryMethod(str, Enum):
    STRIPE = "stripe"
    CASH = "cash"
    MANUAL = "manual"
    SYSTEM = "system"


class EntryStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


# Allowed status changes. A terminal status only "transitions" to itself.
ENTRY_TRANSITIONS: Dict[EntryStatus, FrozenSet[EntryStatus]] = {
    EntryStatus.PENDING: frozenset({
        EntryStatus.PENDING,
        EntryStatus.SUCCEEDED,
        EntryStatus.FAILED,
        EntryStatus.CANCELLED,
        EntryStatus.EXPIRED,
    }),
    EntryStatus.SUCCEEDED: frozenset({EntryStatus.SUCCEEDED}),
    EntryStatus.FAILED: frozenset({EntryStatus.FAILED}),
    EntryStatus.CANCELLED: frozenset({EntryStatus.CANCELLED}),
    EntryStatus.EXPIRED: frozenset({EntryStatus.EXPIRED}),
}

MONEY_IN_KINDS = frozenset({EntryKind.PAYMENT, EntryKind.LINK})


def can_transition(current: EntryStatus, new: EntryStatus) -> bool:
    return new in ENTRY_TRANSITIONS[current]


class LedgerEntry(BaseModel):
    """
    One payment event or payment intent tied to a booking.

    Invariants:
    - amount_cents >= 0
    - status transitions follow ENTRY_TRANSITIONS
    - metadata is passed through untouched
    """
    id: str = Field(default_factory=new_entry_id)
    kind: EntryKind
    method: EntryMethod = EntryMethod.STRIPE
    label: Optional[str] = None
    note: Optional[str] = None

    amount_cents: int = Field(ge=0)
    status: EntryStatus = EntryStatus.PENDING

    # Gateway correlation
    reference_id: Optional[str] = None      # idempotency key
    session_id: Optional[str] = None        # hosted checkout session
    source_reference_id: Optional[str] = None  # refunds: the charge being reversed

    metadata: Dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    def signed_effect(self) -> int:
        """Effect of this entry on the booking's paid amount."""
        if self.status != EntryStatus.SUCCEEDED:
            return 0
        if self.kind in MONEY_IN_KINDS:
            return self.amount_cents
        if self.kind == EntryKind.REFUND:
            return -self.amount_cents
        return 0

    def is_settled_payment(self) -> bool:
        return self.status == EntryStatus.SUCCEEDED and self.kind in MONEY_IN_KINDS

    def to_document(self) -> dict:
        doc = self.model_dump()
        for key in ("kind", "method", "status"):
            doc[key] = doc[key].value
        return doc
