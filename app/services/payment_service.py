"""
PaymentService - gateway ingress adapters.

Every path that learns about money moving for a booking ends up here:

- create_intent / confirm_payment      card payment confirmed by the client
- create_checkout_session / verify     hosted checkout, polled after redirect
- handle_webhook                       gateway-initiated, signature verified
- refund                               admin refund
- generate_payment_link / cancel       admin installment links
- record_manual_payment                cash or manual entries by staff

Successful payments are keyed by the PaymentIntent id, so the confirm,
verify and webhook paths agree on the idempotency key no matter which one
arrives first. Failed attempts are keyed by the failed charge id.

Gateway calls always happen before the ledger write of the same step, so a
gateway failure leaves the booking untouched.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple

from app.core.config import settings
from app.core.exceptions import (
    AlreadyRefunded,
    InvalidAmount,
    InvalidTransition,
    NotFound,
    NotYetPaid,
)
from app.models.base import new_entry_id
from app.models.booking import Booking
from app.models.ledger import (
    EntryKind,
    EntryMethod,
    EntryStatus,
    LedgerEntry,
    PaymentStatus,
    can_transition,
)
from app.repositories.booking_repo import BookingRepository
from app.services.gateway import StripeGateway
from app.services.ledger_service import (
    EntryStatusUpdater,
    LedgerRecorder,
    RecordOutcome,
    UpdateOutcome,
)
from app.services.notification_service import PaymentCompletedEvent, build_completion_event

logger = logging.getLogger(__name__)

LINK_OPTIONS = ("second_third", "full", "custom")
_LINK_LABELS = {
    "second_third": "Installment payment link",
    "full": "Balance payment link",
    "custom": "Custom payment link",
}
_FAILED_INTENT_STATUSES = ("canceled", "requires_payment_method")


@dataclass
class LedgerResult:
    booking: Booking
    notifications: List[PaymentCompletedEvent] = field(default_factory=list)


@dataclass
class IntentResult:
    client_secret: str
    intent_id: str
    booking: Booking


@dataclass
class CheckoutResult:
    checkout_url: str
    session_id: str
    booking: Booking


@dataclass
class LinkResult:
    checkout_url: str
    session_id: str
    entry_id: str
    amount_cents: int
    booking: Booking


@dataclass
class RefundResult:
    refund_ids: List[str]
    booking: Booking


@dataclass
class WebhookResult:
    event_type: str
    handled: bool
    notifications: List[PaymentCompletedEvent] = field(default_factory=list)


def _id_of(value: Any) -> Optional[str]:
    """Stripe expandable field: either an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _intent_failure_charge(intent: Dict[str, Any]) -> Optional[str]:
    error = intent.get("last_payment_error") or {}
    return _id_of(error.get("charge")) or _id_of(intent.get("latest_charge"))


def _third_of(total_cents: int) -> int:
    return int((Decimal(total_cents) / 3).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentService:
    def __init__(
        self,
        repo: BookingRepository,
        gateway: StripeGateway,
        recorder: Optional[LedgerRecorder] = None,
        updater: Optional[EntryStatusUpdater] = None,
        currency: Optional[str] = None,
    ):
        self.repo = repo
        self.gateway = gateway
        self.recorder = recorder or LedgerRecorder(repo)
        self.updater = updater or EntryStatusUpdater(repo)
        self.currency = currency or settings.CURRENCY

    # ===== LOOKUPS =====

    async def get_booking(self, booking_id: Any) -> Booking:
        booking = await self.repo.get_booking(booking_id)
        if booking is None:
            raise NotFound("Booking not found")
        return booking

    async def get_payment_summary(self, booking_id: str) -> Booking:
        return await self.get_booking(booking_id)

    def _gateway_metadata(self, booking: Booking, **extra: str) -> Dict[str, str]:
        metadata = {
            "booking_id": str(booking.id),
            "service": booking.service,
            "customer_name": booking.name,
            "customer_email": booking.email,
            **extra,
        }
        return {key: str(value) for key, value in metadata.items() if value}

    def _return_urls(self, booking: Booking, return_url: Optional[str]) -> Tuple[str, str]:
        origin = (return_url or settings.FRONTEND_BASE_URL).rstrip("/")
        success_url = f"{origin}/payment-success?bid={booking.id}&session_id={{CHECKOUT_SESSION_ID}}"
        cancel_url = f"{origin}/payment-cancel?bid={booking.id}"
        return success_url, cancel_url

    # ===== CARD PAYMENT (client confirmed) =====

    async def create_intent(self, booking_id: str, amount_cents: int) -> IntentResult:
        """Open a PaymentIntent. No money has moved, so no ledger entry."""
        if amount_cents <= 0:
            raise InvalidAmount("Amount must be greater than zero")
        booking = await self.get_booking(booking_id)

        intent = await self.gateway.create_payment_intent(
            amount_cents, self._gateway_metadata(booking)
        )
        updated = await self.repo.update_fields(booking.id, {
            "stripe_payment_intent_id": intent["id"],
            "payment_method": EntryMethod.STRIPE.value,
            "amount_cents": amount_cents,
        })
        return IntentResult(intent["client_secret"], intent["id"], updated or booking)

    async def confirm_payment(self, booking_id: str, intent_id: str) -> LedgerResult:
        booking = await self.get_booking(booking_id)
        intent = await self.gateway.retrieve_payment_intent(intent_id)

        owner = (intent.get("metadata") or {}).get("booking_id")
        if owner and owner != str(booking.id):
            raise NotFound("Payment intent does not belong to this booking")

        status = intent.get("status")
        if status == "succeeded":
            return await self._settle_charge(
                booking.id,
                reference_id=intent["id"],
                amount_cents=intent.get("amount_received") or intent["amount"],
                link_entry_id=(intent.get("metadata") or {}).get("ledger_entry_id"),
            )
        if status in _FAILED_INTENT_STATUSES:
            return await self._record_failure(booking.id, intent, _intent_failure_charge(intent))

        logger.info("Payment intent %s is %s; nothing to record yet", intent_id, status)
        return LedgerResult(booking)

    # ===== HOSTED CHECKOUT =====

    async def create_checkout_session(
        self, booking_id: str, amount_cents: int, return_url: Optional[str] = None
    ) -> CheckoutResult:
        if amount_cents <= 0:
            raise InvalidAmount("Amount must be greater than zero")
        booking = await self.get_booking(booking_id)
        success_url, cancel_url = self._return_urls(booking, return_url)

        session = await self.gateway.create_checkout_session(
            amount_cents,
            product_name=booking.service or "Service",
            description=booking.description,
            metadata=self._gateway_metadata(booking),
            client_reference_id=str(booking.id),
            success_url=success_url,
            cancel_url=cancel_url,
        )
        updated = await self.repo.update_fields(booking.id, {
            "stripe_checkout_session_id": session["id"],
            "payment_method": EntryMethod.STRIPE.value,
            "amount_cents": amount_cents,
        })
        return CheckoutResult(session["url"], session["id"], updated or booking)

    async def verify_checkout_session(self, session_id: str) -> LedgerResult:
        """Polled by the browser after the checkout redirect."""
        session = await self.gateway.retrieve_checkout_session(session_id)
        booking_id = await self._resolve_booking_id(session, session_id=session["id"])
        if booking_id is None:
            raise NotFound("Booking not found for checkout session")
        return await self._apply_checkout_session(booking_id, session)

    async def _apply_checkout_session(self, booking_id: Any, session: Dict[str, Any]) -> LedgerResult:
        metadata = session.get("metadata") or {}
        if session.get("payment_status") == "paid":
            return await self._settle_charge(
                booking_id,
                reference_id=_id_of(session.get("payment_intent")) or session["id"],
                amount_cents=session["amount_total"],
                session_id=session["id"],
                link_entry_id=metadata.get("ledger_entry_id"),
            )
        if session.get("status") == "expired":
            return await self._close_link(
                booking_id, EntryStatus.EXPIRED,
                entry_id=metadata.get("ledger_entry_id"), session_id=session["id"],
            )
        return LedgerResult(await self.get_booking(booking_id))

    # ===== WEBHOOK =====

    async def handle_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        """
        Verify and apply one gateway delivery. An invalid signature rejects
        the delivery before anything is read from it.
        """
        event = self.gateway.construct_event(payload, signature)
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        logger.info("Webhook %s (%s)", event_type, event.get("id"))

        if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded",
                          "checkout.session.expired"):
            booking_id = await self._resolve_booking_id(obj, session_id=obj.get("id"))
            if booking_id is None:
                return self._unmatched(event_type, obj)
            result = await self._apply_checkout_session(booking_id, obj)
            return WebhookResult(event_type, True, result.notifications)

        if event_type == "payment_intent.succeeded":
            booking_id = await self._resolve_booking_id(obj, reference_id=obj.get("id"))
            if booking_id is None:
                return self._unmatched(event_type, obj)
            result = await self._settle_charge(
                booking_id,
                reference_id=obj["id"],
                amount_cents=obj.get("amount_received") or obj["amount"],
                link_entry_id=(obj.get("metadata") or {}).get("ledger_entry_id"),
            )
            return WebhookResult(event_type, True, result.notifications)

        if event_type == "charge.succeeded":
            reference_id = _id_of(obj.get("payment_intent")) or obj["id"]
            booking_id = await self._resolve_booking_id(obj, reference_id=reference_id)
            if booking_id is None:
                return self._unmatched(event_type, obj)
            result = await self._settle_charge(
                booking_id,
                reference_id=reference_id,
                amount_cents=obj["amount"],
                link_entry_id=(obj.get("metadata") or {}).get("ledger_entry_id"),
            )
            return WebhookResult(event_type, True, result.notifications)

        if event_type in ("payment_intent.payment_failed", "charge.failed"):
            if event_type == "charge.failed":
                charge_id = obj["id"]
                intent_id = _id_of(obj.get("payment_intent"))
            else:
                charge_id = _intent_failure_charge(obj)
                intent_id = obj.get("id")
            booking_id = await self._resolve_booking_id(obj, reference_id=intent_id)
            if booking_id is None:
                return self._unmatched(event_type, obj)
            await self._record_failure(booking_id, obj, charge_id)
            return WebhookResult(event_type, True)

        logger.warning("Unhandled webhook event type %s", event_type)
        return WebhookResult(event_type, False)

    def _unmatched(self, event_type: str, obj: Dict[str, Any]) -> WebhookResult:
        logger.warning("Webhook %s for %s matches no booking", event_type, obj.get("id"))
        return WebhookResult(event_type, False)

    async def _resolve_booking_id(
        self,
        obj: Dict[str, Any],
        reference_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Optional[Any]:
        candidate = (obj.get("metadata") or {}).get("booking_id") or obj.get("client_reference_id")
        if candidate:
            return candidate
        booking = None
        if session_id:
            booking = await self.repo.find_by_session(session_id)
        if booking is None and reference_id:
            booking = (
                await self.repo.find_by_payment_intent(reference_id)
                or await self.repo.find_by_reference(reference_id)
            )
        return booking.id if booking else None

    # ===== LEDGER STEPS SHARED BY THE INGRESS PATHS =====

    async def _settle_charge(
        self,
        booking_id: Any,
        reference_id: str,
        amount_cents: int,
        session_id: Optional[str] = None,
        link_entry_id: Optional[str] = None,
    ) -> LedgerResult:
        """
        Record a succeeded charge once. A pending link correlated by entry id
        or session id becomes the payment entry itself instead of getting a
        sibling.
        """
        booking = await self.get_booking(booking_id)
        settled_link = False

        if not booking.has_reference(reference_id):
            link = None
            if link_entry_id:
                link = booking.find_entry(entry_id=link_entry_id)
            if link is None and session_id:
                link = booking.find_entry(session_id=session_id)

            if link is not None and link.kind == EntryKind.LINK and link.status == EntryStatus.PENDING:
                if link.amount_cents == amount_cents:
                    update = await self.updater.update_entry_status(
                        booking.id,
                        EntryStatus.SUCCEEDED,
                        entry_id=link.id,
                        backfill_reference_id=reference_id,
                        backfill_session_id=session_id,
                    )
                    settled_link = update.outcome == UpdateOutcome.UPDATED
                else:
                    logger.warning(
                        "Charge %s paid %s cents against link %s of %s cents; recording separately",
                        reference_id, amount_cents, link.id, link.amount_cents,
                    )
                    await self.updater.update_entry_status(
                        booking.id, EntryStatus.CANCELLED, entry_id=link.id,
                        metadata={"superseded_by": reference_id},
                    )

        now = datetime.now(timezone.utc)
        candidate = LedgerEntry(
            kind=EntryKind.PAYMENT,
            method=EntryMethod.STRIPE,
            label="Card payment",
            amount_cents=amount_cents,
            status=EntryStatus.SUCCEEDED,
            reference_id=reference_id,
            session_id=session_id,
            created_at=now,
            completed_at=now,
        )
        recorded = await self.recorder.record_entry(booking.id, candidate, amount_cents)

        notifications = []
        if recorded.outcome == RecordOutcome.APPENDED or settled_link:
            notifications.append(build_completion_event(
                recorded.booking, amount_cents, self.currency, EntryMethod.STRIPE.value
            ))
        return LedgerResult(recorded.booking, notifications)

    async def _record_failure(
        self, booking_id: Any, obj: Dict[str, Any], charge_id: Optional[str]
    ) -> LedgerResult:
        """A failed attempt moves no money; it is kept for the history view."""
        if not charge_id:
            logger.info("Failed payment %s has no charge to record", obj.get("id"))
            return LedgerResult(await self.get_booking(booking_id))

        error = obj.get("last_payment_error") or {}
        entry = LedgerEntry(
            kind=EntryKind.PAYMENT,
            method=EntryMethod.STRIPE,
            label="Card payment failed",
            note=error.get("message") or obj.get("failure_message"),
            amount_cents=obj.get("amount") or 0,
            status=EntryStatus.FAILED,
            reference_id=charge_id,
            completed_at=datetime.now(timezone.utc),
        )
        recorded = await self.recorder.record_entry(booking_id, entry, 0)
        return LedgerResult(recorded.booking)

    async def _close_link(
        self,
        booking_id: Any,
        status: EntryStatus,
        entry_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> LedgerResult:
        booking = await self.get_booking(booking_id)
        link = booking.find_entry(entry_id=entry_id, session_id=session_id)
        if link is None or link.kind != EntryKind.LINK or link.status != EntryStatus.PENDING:
            return LedgerResult(booking)
        try:
            result = await self.updater.update_entry_status(booking.id, status, entry_id=link.id)
        except InvalidTransition:
            # settled or cancelled concurrently; the other writer wins
            logger.info("Link %s on booking %s already closed", link.id, booking.id)
            return LedgerResult(await self.get_booking(booking.id))
        return LedgerResult(result.booking)

    # ===== REFUNDS =====

    def _refundable_charges(self, booking: Booking) -> List[Tuple[str, int]]:
        """(reference_id, unrefunded cents) for card charges, newest first."""
        refunded: Dict[str, int] = {}
        for entry in booking.payment_history:
            if entry.kind == EntryKind.REFUND and entry.status == EntryStatus.SUCCEEDED:
                key = entry.source_reference_id or ""
                refunded[key] = refunded.get(key, 0) + entry.amount_cents

        charges = []
        for entry in reversed(booking.payment_history):
            if (
                entry.is_settled_payment()
                and entry.method == EntryMethod.STRIPE
                and entry.reference_id
            ):
                remaining = entry.amount_cents - refunded.get(entry.reference_id, 0)
                if remaining > 0:
                    charges.append((entry.reference_id, remaining))
        return charges

    def _allocate_refund(self, booking: Booking, amount_cents: int) -> List[Tuple[str, int]]:
        allocations = []
        outstanding = amount_cents
        for reference_id, remaining in self._refundable_charges(booking):
            if outstanding <= 0:
                break
            part = min(outstanding, remaining)
            allocations.append((reference_id, part))
            outstanding -= part
        if outstanding > 0:
            raise InvalidAmount(
                f"Refund exceeds the refundable card payments by {outstanding} cents"
            )
        return allocations

    async def refund(
        self,
        booking_id: str,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund part or all of what was paid. Every precondition is checked
        before the first gateway call. A refund spanning several charges
        records each gateway refund as soon as it executes.
        """
        booking = await self.get_booking(booking_id)
        if booking.payment_status == PaymentStatus.REFUNDED:
            raise AlreadyRefunded("Booking has already been refunded")
        if amount_cents is not None and amount_cents <= 0:
            raise InvalidAmount("Refund amount must be greater than zero")
        if booking.amount_paid_cents <= 0 or not any(
            e.is_settled_payment() for e in booking.payment_history
        ):
            raise NotYetPaid("Booking has no successful payment to refund")

        amount = amount_cents if amount_cents is not None else booking.amount_paid_cents
        if amount > booking.amount_paid_cents:
            raise InvalidAmount(
                f"Refund of {amount} cents exceeds the {booking.amount_paid_cents} cents paid"
            )
        allocations = self._allocate_refund(booking, amount)

        refund_ids = []
        latest = booking
        for reference_id, part in allocations:
            refund = await self.gateway.create_refund(
                reference_id, part, reason,
                metadata=self._gateway_metadata(booking),
            )
            succeeded = refund.get("status") in ("succeeded", "pending")
            now = datetime.now(timezone.utc)
            entry = LedgerEntry(
                kind=EntryKind.REFUND,
                method=EntryMethod.STRIPE,
                label="Refund",
                note=reason,
                amount_cents=part,
                status=EntryStatus.SUCCEEDED if succeeded else EntryStatus.FAILED,
                reference_id=refund["id"],
                source_reference_id=reference_id,
                created_at=now,
                completed_at=now,
            )
            recorded = await self.recorder.record_entry(booking.id, entry, -part if succeeded else 0)
            refund_ids.append(refund["id"])
            latest = recorded.booking

        return RefundResult(refund_ids, latest)

    # ===== PAYMENT LINKS =====

    def _link_amount(self, booking: Booking, option: str, custom_amount_cents: Optional[int]) -> int:
        if option not in LINK_OPTIONS:
            raise InvalidAmount(f"Unknown payment option '{option}'")
        total = booking.total_amount_cents
        remaining = booking.remaining_cents
        if option == "second_third":
            third = _third_of(total)
            return min(third, remaining) if remaining > 0 else third
        if option == "full":
            return remaining or total
        return custom_amount_cents or 0

    async def generate_payment_link(
        self,
        booking_id: str,
        option: str = "second_third",
        custom_amount_cents: Optional[int] = None,
        note: Optional[str] = None,
        return_url: Optional[str] = None,
    ) -> LinkResult:
        """
        Create a hosted checkout link and a pending link entry for it. The
        entry id travels in the session metadata so the eventual payment
        settles this entry rather than adding a new one.
        """
        booking = await self.get_booking(booking_id)
        amount = self._link_amount(booking, option, custom_amount_cents)
        if amount <= 0:
            raise InvalidAmount("Payment link amount must be greater than zero")

        entry_id = new_entry_id()
        success_url, cancel_url = self._return_urls(booking, return_url)
        session = await self.gateway.create_checkout_session(
            amount,
            product_name=booking.service or "Service",
            description=note or booking.description,
            metadata=self._gateway_metadata(booking, ledger_entry_id=entry_id, payment_option=option),
            client_reference_id=str(booking.id),
            success_url=success_url,
            cancel_url=cancel_url,
        )

        entry = LedgerEntry(
            id=entry_id,
            kind=EntryKind.LINK,
            method=EntryMethod.STRIPE,
            label=_LINK_LABELS[option],
            note=note,
            amount_cents=amount,
            status=EntryStatus.PENDING,
            session_id=session["id"],
            metadata={"checkout_url": session["url"], "option": option},
        )
        recorded = await self.recorder.record_entry(booking.id, entry, 0)
        return LinkResult(session["url"], session["id"], entry_id, amount, recorded.booking)

    async def cancel_payment_link(self, booking_id: str, entry_id: str) -> LedgerResult:
        booking = await self.get_booking(booking_id)
        entry = booking.find_entry(entry_id=entry_id)
        if entry is None or entry.kind != EntryKind.LINK:
            raise NotFound("Payment link not found")
        if not can_transition(entry.status, EntryStatus.CANCELLED):
            raise InvalidTransition(f"Payment link is already {entry.status.value}")

        if entry.status == EntryStatus.PENDING and entry.session_id:
            await self.gateway.expire_checkout_session(entry.session_id)
        result = await self.updater.update_entry_status(
            booking.id, EntryStatus.CANCELLED, entry_id=entry.id
        )
        return LedgerResult(result.booking)

    # ===== MANUAL ENTRIES =====

    async def record_manual_payment(
        self,
        booking_id: str,
        amount_cents: int,
        method: EntryMethod = EntryMethod.CASH,
        note: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> LedgerResult:
        """Cash or manually confirmed payment. Reusing reference_id makes retries safe."""
        if amount_cents <= 0:
            raise InvalidAmount("Amount must be greater than zero")
        if method not in (EntryMethod.CASH, EntryMethod.MANUAL):
            raise InvalidAmount(f"Manual payments cannot use method '{method.value}'")

        now = datetime.now(timezone.utc)
        entry = LedgerEntry(
            kind=EntryKind.PAYMENT,
            method=method,
            label="Cash payment" if method == EntryMethod.CASH else "Manual payment",
            note=note,
            amount_cents=amount_cents,
            status=EntryStatus.SUCCEEDED,
            reference_id=reference_id or f"manual_{uuid.uuid4().hex}",
            created_at=now,
            completed_at=now,
        )
        recorded = await self.recorder.record_entry(booking_id, entry, amount_cents)

        notifications = []
        if recorded.outcome == RecordOutcome.APPENDED:
            notifications.append(build_completion_event(
                recorded.booking, amount_cents, self.currency, method.value
            ))
        return LedgerResult(recorded.booking, notifications)
