"""Booking payment status derived from totals and the ledger."""
from datetime import datetime
from typing import Iterable, Optional

from app.models.ledger import EntryKind, EntryStatus, LedgerEntry, PaymentStatus


def derive_status(total: int, paid: int) -> PaymentStatus:
    """Map (total, paid) in cents to a payment status. Never returns REFUNDED."""
    if total == 0:
        return PaymentStatus.PAID if paid > 0 else PaymentStatus.PENDING
    if paid >= total:
        return PaymentStatus.PAID
    if paid > 0:
        return PaymentStatus.PARTIALLY_PAID
    return PaymentStatus.PENDING


def resolve_status(total: int, paid: int, history: Iterable[LedgerEntry]) -> PaymentStatus:
    """derive_status plus the refund override: refunded back to zero -> REFUNDED."""
    if paid <= 0 and any(
        e.kind == EntryKind.REFUND and e.status == EntryStatus.SUCCEEDED
        for e in history
    ):
        return PaymentStatus.REFUNDED
    return derive_status(total, paid)


def settled_balance(history: Iterable[LedgerEntry]) -> int:
    """Sum of succeeded payments minus succeeded refunds, clamped at zero."""
    return max(0, sum(e.signed_effect() for e in history))


def last_paid_at(history: Iterable[LedgerEntry]) -> Optional[datetime]:
    stamps = [
        e.completed_at or e.created_at
        for e in history
        if e.is_settled_payment() and e.amount_cents > 0
    ]
    return max(stamps) if stamps else None
