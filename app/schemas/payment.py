"""
Payment API schemas.

Amounts cross this boundary as decimal major units (dollars) and are
converted to integer cents before reaching the services. Field names are
camelCase on the wire; snake_case is accepted on input too.
"""

from decimal import Decimal
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.models.booking import Booking
from app.models.ledger import LedgerEntry
from app.utils.money import to_major_units, to_minor_units


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ===== REQUESTS =====

class CreateIntentRequest(CamelModel):
    booking_id: str
    amount: Decimal = Field(gt=0)

    @property
    def amount_cents(self) -> int:
        return to_minor_units(self.amount)


class ConfirmPaymentRequest(CamelModel):
    booking_id: str
    intent_id: str


class CheckoutSessionRequest(CamelModel):
    booking_id: str
    amount: Decimal = Field(gt=0)
    return_url: Optional[str] = None

    @property
    def amount_cents(self) -> int:
        return to_minor_units(self.amount)


class VerifySessionRequest(CamelModel):
    session_id: str


class RefundRequest(CamelModel):
    booking_id: str
    amount: Optional[Decimal] = None
    reason: Optional[str] = None

    @property
    def amount_cents(self) -> Optional[int]:
        return to_minor_units(self.amount) if self.amount is not None else None


class PaymentLinkRequest(CamelModel):
    booking_id: str
    option: Literal["second_third", "full", "custom"] = "second_third"
    custom_amount: Optional[Decimal] = None
    note: Optional[str] = None
    return_url: Optional[str] = None

    @property
    def custom_amount_cents(self) -> Optional[int]:
        return to_minor_units(self.custom_amount) if self.custom_amount is not None else None


class CancelLinkRequest(CamelModel):
    booking_id: str
    entry_id: str


class ManualPaymentRequest(CamelModel):
    booking_id: str
    amount: Decimal = Field(gt=0)
    method: Literal["cash", "manual"] = "cash"
    note: Optional[str] = None
    reference_id: Optional[str] = None

    @property
    def amount_cents(self) -> int:
        return to_minor_units(self.amount)


# ===== RESPONSES =====

class LedgerEntryResponse(CamelModel):
    id: str
    kind: str
    method: str
    label: Optional[str] = None
    note: Optional[str] = None
    amount: float
    status: str
    reference_id: Optional[str] = None
    session_id: Optional[str] = None
    source_reference_id: Optional[str] = None
    metadata: Dict[str, Any] = {}
    created_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> "LedgerEntryResponse":
        return cls(
            id=entry.id,
            kind=entry.kind.value,
            method=entry.method.value,
            label=entry.label,
            note=entry.note,
            amount=float(to_major_units(entry.amount_cents)),
            status=entry.status.value,
            reference_id=entry.reference_id,
            session_id=entry.session_id,
            source_reference_id=entry.source_reference_id,
            metadata=entry.metadata,
            created_at=entry.created_at,
            completed_at=entry.completed_at,
        )


class BookingPaymentResponse(CamelModel):
    id: str
    total_amount: float
    amount_paid: float
    remaining_amount: float
    amount: float
    payment_status: str
    payment_method: Optional[str] = None
    last_paid_at: Optional[datetime] = None
    payment_history: List[LedgerEntryResponse] = []

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingPaymentResponse":
        return cls(
            id=str(booking.id),
            total_amount=float(to_major_units(booking.total_amount_cents)),
            amount_paid=float(to_major_units(booking.amount_paid_cents)),
            remaining_amount=float(to_major_units(booking.remaining_cents)),
            amount=float(to_major_units(booking.amount_cents)),
            payment_status=booking.payment_status.value,
            payment_method=booking.payment_method,
            last_paid_at=booking.last_paid_at,
            payment_history=[LedgerEntryResponse.from_entry(e) for e in booking.payment_history],
        )


class CreateIntentResponse(CamelModel):
    client_secret: str
    intent_id: str


class PaymentStatusResponse(CamelModel):
    payment_status: str
    booking: Optional[BookingPaymentResponse] = None


class CheckoutSessionResponse(CamelModel):
    checkout_url: str
    session_id: str


class WebhookResponse(CamelModel):
    received: bool = True


class RefundResponse(CamelModel):
    refund_id: str
    refund_ids: List[str]
    payment_status: str
    booking: BookingPaymentResponse


class PaymentLinkResponse(CamelModel):
    checkout_url: str
    session_id: str
    entry_id: str
    amount: float
    booking: BookingPaymentResponse
