"""Payment completion notices.

Delivery (email) lives outside this service; here a completed payment is
turned into an event and handed to a notifier. Notifier failures are logged
and never reach the payment flow.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal
from typing import Optional, Protocol

from app.models.booking import Booking
from app.utils.money import to_major_units

logger = logging.getLogger(__name__)


@dataclass
class PaymentCompletedEvent:
    booking_id: str
    customer_name: Optional[str]
    customer_email: Optional[str]
    service: Optional[str]
    amount: Decimal
    currency: str
    method: str
    paid_at: Optional[datetime]
    payment_status: str


def build_completion_event(booking: Booking, amount_cents: int, currency: str, method: str) -> PaymentCompletedEvent:
    return PaymentCompletedEvent(
        booking_id=str(booking.id),
        customer_name=booking.name,
        customer_email=booking.email,
        service=booking.service,
        amount=to_major_units(amount_cents),
        currency=currency,
        method=method,
        paid_at=booking.last_paid_at,
        payment_status=booking.payment_status.value,
    )


class PaymentNotifier(Protocol):
    async def payment_completed(self, event: PaymentCompletedEvent) -> None:
        ...


class LoggingNotifier:
    """Default notifier: writes the completion event to the application log."""

    async def payment_completed(self, event: PaymentCompletedEvent) -> None:
        logger.info("Payment completed: %s", asdict(event))


async def dispatch_completion(notifier: PaymentNotifier, event: PaymentCompletedEvent) -> None:
    """Run as a background task after the response is sent."""
    try:
        await notifier.payment_completed(event)
    except Exception:
        logger.exception("Payment notification failed for booking %s", event.booking_id)
