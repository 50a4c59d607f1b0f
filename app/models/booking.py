from typing import List, Optional
from datetime import datetime

from pydantic import Field

from app.models.base import MongoModel
from app.models.ledger import LedgerEntry, PaymentStatus


class Booking(MongoModel):
    """Booking document, restricted to the fields the payment core reads or owns."""

    service: Optional[str] = None
    description: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None

    # All monetary values in integer cents
    total_amount_cents: int = Field(default=0, ge=0)
    amount_paid_cents: int = Field(default=0, ge=0)
    amount_cents: int = 0  # amount the customer intends to pay next

    # Derived from the ledger; written by the ledger service only
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_history: List[LedgerEntry] = []
    last_paid_at: Optional[datetime] = None
    ledger_version: int = 0

    payment_method: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    stripe_checkout_session_id: Optional[str] = None

    def find_entry(
        self,
        entry_id: Optional[str] = None,
        reference_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Optional[LedgerEntry]:
        """Look an entry up by local id, then reference id, then session id."""
        for key, value in (
            ("id", entry_id),
            ("reference_id", reference_id),
            ("session_id", session_id),
        ):
            if not value:
                continue
            for entry in self.payment_history:
                if getattr(entry, key) == value:
                    return entry
        return None

    def has_reference(self, reference_id: Optional[str]) -> bool:
        if not reference_id:
            return False
        return any(e.reference_id == reference_id for e in self.payment_history)

    @property
    def remaining_cents(self) -> int:
        return max(0, self.total_amount_cents - self.amount_paid_cents)
