"""
Ledger recording for booking payments.

Two writers share the booking's embedded payment_history:

- LedgerRecorder appends entries. reference_id is the idempotency key: a
  second delivery of the same gateway event never appends, it only
  reconciles the derived amount_paid_cents / payment_status.
- EntryStatusUpdater moves a pending entry to a terminal status and
  backfills gateway ids. It never writes amount_paid_cents.

Both read the booking fresh, decide, and write with a version check;
losing the race means re-reading and deciding again.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from app.core.config import settings
from app.core.exceptions import InvalidAmount, InvalidTransition, LedgerConflict, NotFound
from app.models.booking import Booking
from app.models.ledger import EntryStatus, LedgerEntry, can_transition
from app.repositories.booking_repo import BookingRepository
from app.services.payment_status import last_paid_at, resolve_status, settled_balance

logger = logging.getLogger(__name__)


class RecordOutcome(str, Enum):
    APPENDED = "appended"
    DUPLICATE = "duplicate"


class UpdateOutcome(str, Enum):
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SUPERSEDED = "superseded"  # reference already owned by another entry


@dataclass
class RecordResult:
    booking: Booking
    outcome: RecordOutcome
    entry: LedgerEntry


@dataclass
class UpdateResult:
    booking: Booking
    outcome: UpdateOutcome
    entry: LedgerEntry


def derived_fields(total_cents: int, history: List[LedgerEntry]) -> Dict[str, Any]:
    """Scalar booking fields computed from the ledger."""
    paid = settled_balance(history)
    return {
        "amount_paid_cents": paid,
        "payment_status": resolve_status(total_cents, paid, history).value,
        "last_paid_at": last_paid_at(history),
    }


def _scalars_match(booking: Booking, fields: Dict[str, Any]) -> bool:
    return (
        booking.amount_paid_cents == fields["amount_paid_cents"]
        and booking.payment_status.value == fields["payment_status"]
        and booking.last_paid_at == fields["last_paid_at"]
    )


class LedgerRecorder:
    """Idempotent append of ledger entries."""

    def __init__(self, repo: BookingRepository, max_retries: Optional[int] = None):
        self.repo = repo
        self.max_retries = max_retries or settings.LEDGER_MAX_RETRIES

    async def record_entry(
        self,
        booking_id: Any,
        entry: LedgerEntry,
        amount_delta: int,
    ) -> RecordResult:
        """
        Record entry against the booking.

        amount_delta is the signed change to the paid amount this entry
        represents (+ for payments, - for refunds, 0 for pending links and
        failures) and must agree with the entry's kind and status. A
        negative delta larger than the balance on the fresh read raises
        InvalidAmount, so a refund that lost a race is never counted.

        Returns the booking as persisted after this call.
        """
        if amount_delta != entry.signed_effect():
            raise InvalidAmount(
                f"Amount delta {amount_delta} does not match a {entry.status.value} "
                f"{entry.kind.value} of {entry.amount_cents} cents"
            )

        for attempt in range(self.max_retries):
            booking = await self.repo.get_booking(booking_id)
            if booking is None:
                raise NotFound("Booking not found")

            existing = booking.find_entry(reference_id=entry.reference_id) if entry.reference_id else None

            if existing is not None:
                logger.info(
                    "Duplicate ledger event %s for booking %s", entry.reference_id, booking.id
                )
                if amount_delta == 0:
                    return RecordResult(booking, RecordOutcome.DUPLICATE, existing)
                fields = derived_fields(booking.total_amount_cents, booking.payment_history)
                if _scalars_match(booking, fields):
                    return RecordResult(booking, RecordOutcome.DUPLICATE, existing)
                updated = await self.repo.compare_and_set(booking, fields)
                if updated is not None:
                    logger.info(
                        "Reconciled booking %s: paid=%s status=%s",
                        booking.id, fields["amount_paid_cents"], fields["payment_status"],
                    )
                    return RecordResult(updated, RecordOutcome.DUPLICATE, existing)
            else:
                balance = settled_balance(booking.payment_history)
                if amount_delta < 0 and balance + amount_delta < 0:
                    logger.error(
                        "Refund %s of %s cents exceeds the %s cents paid on booking %s; not recorded",
                        entry.reference_id or entry.id, -amount_delta, balance, booking.id,
                    )
                    raise InvalidAmount(
                        f"Refund of {-amount_delta} cents exceeds the {balance} cents paid"
                    )
                fields = None
                if amount_delta != 0:
                    fields = derived_fields(
                        booking.total_amount_cents, booking.payment_history + [entry]
                    )
                updated = await self.repo.compare_and_set(booking, fields, push_entry=entry)
                if updated is not None:
                    logger.info(
                        "Recorded %s %s (%s cents, %s) on booking %s",
                        entry.status.value, entry.kind.value, entry.amount_cents,
                        entry.reference_id or entry.id, booking.id,
                    )
                    return RecordResult(updated, RecordOutcome.APPENDED, entry)

            logger.warning(
                "Ledger write on booking %s lost a concurrent update (attempt %s)",
                booking_id, attempt + 1,
            )

        raise LedgerConflict(f"Could not record ledger entry on booking {booking_id}")


class EntryStatusUpdater:
    """Lifecycle transitions of existing ledger entries."""

    def __init__(self, repo: BookingRepository, max_retries: Optional[int] = None):
        self.repo = repo
        self.max_retries = max_retries or settings.LEDGER_MAX_RETRIES

    async def update_entry_status(
        self,
        booking_id: Any,
        new_status: EntryStatus,
        entry_id: Optional[str] = None,
        reference_id: Optional[str] = None,
        session_id: Optional[str] = None,
        backfill_reference_id: Optional[str] = None,
        backfill_session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UpdateResult:
        """
        Find an entry (local id first, then reference_id, then session_id)
        and move it to new_status, filling in gateway ids it did not have.

        Settled entries are immutable: asking for their current status is a
        no-op, anything else raises InvalidTransition.
        """
        for attempt in range(self.max_retries):
            booking = await self.repo.get_booking(booking_id)
            if booking is None:
                raise NotFound("Booking not found")

            entry = booking.find_entry(entry_id, reference_id, session_id)
            if entry is None:
                raise NotFound("Ledger entry not found")

            if not can_transition(entry.status, new_status):
                raise InvalidTransition(
                    f"Ledger entry {entry.id} cannot go from "
                    f"{entry.status.value} to {new_status.value}"
                )
            if entry.status != EntryStatus.PENDING:
                return UpdateResult(booking, UpdateOutcome.UNCHANGED, entry)

            fields: Dict[str, Any] = {}
            if backfill_reference_id and entry.reference_id != backfill_reference_id:
                if entry.reference_id:
                    raise InvalidTransition(
                        f"Ledger entry {entry.id} is already tied to {entry.reference_id}"
                    )
                if booking.has_reference(backfill_reference_id):
                    logger.info(
                        "Reference %s already recorded on booking %s; entry %s left as is",
                        backfill_reference_id, booking.id, entry.id,
                    )
                    return UpdateResult(booking, UpdateOutcome.SUPERSEDED, entry)
                fields["reference_id"] = backfill_reference_id
            if backfill_session_id and not entry.session_id:
                fields["session_id"] = backfill_session_id
            for key, value in (metadata or {}).items():
                if entry.metadata.get(key) != value:
                    fields[f"metadata.{key}"] = value
            if new_status != entry.status:
                fields["status"] = new_status.value
                fields["completed_at"] = datetime.now(timezone.utc)

            if not fields:
                return UpdateResult(booking, UpdateOutcome.UNCHANGED, entry)

            updated = await self.repo.update_entry_fields(booking, entry.id, fields)
            if updated is not None:
                logger.info(
                    "Ledger entry %s on booking %s: %s -> %s",
                    entry.id, booking.id, entry.status.value, new_status.value,
                )
                return UpdateResult(updated, UpdateOutcome.UPDATED, updated.find_entry(entry_id=entry.id))

            logger.warning(
                "Entry update on booking %s lost a concurrent update (attempt %s)",
                booking_id, attempt + 1,
            )

        raise LedgerConflict(f"Could not update ledger entry on booking {booking_id}")
