from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request

from app.db.session import get_notifier, get_payment_service
from app.models.ledger import EntryMethod
from app.schemas.payment import (
    BookingPaymentResponse,
    CancelLinkRequest,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    ConfirmPaymentRequest,
    CreateIntentRequest,
    CreateIntentResponse,
    ManualPaymentRequest,
    PaymentLinkRequest,
    PaymentLinkResponse,
    PaymentStatusResponse,
    RefundRequest,
    RefundResponse,
    VerifySessionRequest,
    WebhookResponse,
)
from app.services.notification_service import (
    PaymentCompletedEvent,
    PaymentNotifier,
    dispatch_completion,
)
from app.services.payment_service import LedgerResult, PaymentService
from app.utils.money import to_major_units

router = APIRouter()


def _notify(
    background_tasks: BackgroundTasks,
    notifier: PaymentNotifier,
    events: List[PaymentCompletedEvent],
) -> None:
    for event in events:
        background_tasks.add_task(dispatch_completion, notifier, event)


def _status_response(result: LedgerResult) -> PaymentStatusResponse:
    return PaymentStatusResponse(
        payment_status=result.booking.payment_status.value,
        booking=BookingPaymentResponse.from_booking(result.booking),
    )


@router.post("/create-intent", response_model=CreateIntentResponse)
async def create_intent(
    payload: CreateIntentRequest,
    service: PaymentService = Depends(get_payment_service),
):
    """Create a card payment intent for a booking."""
    result = await service.create_intent(payload.booking_id, payload.amount_cents)
    return CreateIntentResponse(client_secret=result.client_secret, intent_id=result.intent_id)


@router.post("/confirm", response_model=PaymentStatusResponse)
async def confirm_payment(
    payload: ConfirmPaymentRequest,
    background_tasks: BackgroundTasks,
    service: PaymentService = Depends(get_payment_service),
    notifier: PaymentNotifier = Depends(get_notifier),
):
    """Record the outcome of a client-confirmed card payment."""
    result = await service.confirm_payment(payload.booking_id, payload.intent_id)
    _notify(background_tasks, notifier, result.notifications)
    return _status_response(result)


@router.post("/checkout-session", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    payload: CheckoutSessionRequest,
    service: PaymentService = Depends(get_payment_service),
):
    """Create a hosted checkout session and return its URL."""
    result = await service.create_checkout_session(
        payload.booking_id, payload.amount_cents, payload.return_url
    )
    return CheckoutSessionResponse(checkout_url=result.checkout_url, session_id=result.session_id)


@router.get("/verify-session", response_model=PaymentStatusResponse)
async def verify_checkout_session(
    background_tasks: BackgroundTasks,
    session_id: str = Query(...),
    service: PaymentService = Depends(get_payment_service),
    notifier: PaymentNotifier = Depends(get_notifier),
):
    """Check a checkout session after redirect, without waiting for the webhook."""
    result = await service.verify_checkout_session(session_id)
    _notify(background_tasks, notifier, result.notifications)
    return _status_response(result)


@router.post("/verify-session", response_model=PaymentStatusResponse)
async def verify_checkout_session_post(
    payload: VerifySessionRequest,
    background_tasks: BackgroundTasks,
    service: PaymentService = Depends(get_payment_service),
    notifier: PaymentNotifier = Depends(get_notifier),
):
    result = await service.verify_checkout_session(payload.session_id)
    _notify(background_tasks, notifier, result.notifications)
    return _status_response(result)


@router.post("/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    service: PaymentService = Depends(get_payment_service),
    notifier: PaymentNotifier = Depends(get_notifier),
):
    """Gateway webhook. The raw body is needed for signature verification."""
    payload = await request.body()
    result = await service.handle_webhook(payload, request.headers.get("stripe-signature"))
    _notify(background_tasks, notifier, result.notifications)
    return WebhookResponse(received=True)


@router.post("/refund", response_model=RefundResponse)
async def refund_payment(
    payload: RefundRequest,
    service: PaymentService = Depends(get_payment_service),
):
    """Refund all or part of the amount paid on a booking."""
    result = await service.refund(payload.booking_id, payload.amount_cents, payload.reason)
    return RefundResponse(
        refund_id=result.refund_ids[-1],
        refund_ids=result.refund_ids,
        payment_status=result.booking.payment_status.value,
        booking=BookingPaymentResponse.from_booking(result.booking),
    )


@router.post("/generate-link", response_model=PaymentLinkResponse)
async def generate_payment_link(
    payload: PaymentLinkRequest,
    service: PaymentService = Depends(get_payment_service),
):
    """Create a shareable checkout link for the next installment."""
    result = await service.generate_payment_link(
        payload.booking_id,
        option=payload.option,
        custom_amount_cents=payload.custom_amount_cents,
        note=payload.note,
        return_url=payload.return_url,
    )
    return PaymentLinkResponse(
        checkout_url=result.checkout_url,
        session_id=result.session_id,
        entry_id=result.entry_id,
        amount=float(to_major_units(result.amount_cents)),
        booking=BookingPaymentResponse.from_booking(result.booking),
    )


@router.post("/links/cancel", response_model=PaymentStatusResponse)
async def cancel_payment_link(
    payload: CancelLinkRequest,
    service: PaymentService = Depends(get_payment_service),
):
    result = await service.cancel_payment_link(payload.booking_id, payload.entry_id)
    return _status_response(result)


@router.post("/manual", response_model=PaymentStatusResponse)
async def record_manual_payment(
    payload: ManualPaymentRequest,
    background_tasks: BackgroundTasks,
    service: PaymentService = Depends(get_payment_service),
    notifier: PaymentNotifier = Depends(get_notifier),
):
    """Record a cash or manually confirmed payment."""
    result = await service.record_manual_payment(
        payload.booking_id,
        payload.amount_cents,
        method=EntryMethod(payload.method),
        note=payload.note,
        reference_id=payload.reference_id,
    )
    _notify(background_tasks, notifier, result.notifications)
    return _status_response(result)


@router.get("/{booking_id}", response_model=BookingPaymentResponse)
async def get_payment_summary(
    booking_id: str,
    service: PaymentService = Depends(get_payment_service),
):
    """Payment totals and ledger history for a booking."""
    booking = await service.get_payment_summary(booking_id)
    return BookingPaymentResponse.from_booking(booking)
