import hashlib
import hmac
import json
import logging
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import stripe

from app.core.exceptions import GatewayUnavailable, SignatureInvalid
from app.models.booking import Booking
from app.services.gateway import StripeGateway
from app.services.notification_service import (
    LoggingNotifier,
    build_completion_event,
    dispatch_completion,
)

SECRET = "whsec_test"


def _sign(payload: bytes, secret: str = SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def test_construct_event_accepts_signed_payload():
    gateway = StripeGateway(api_key="sk_test", webhook_secret=SECRET)
    payload = json.dumps({
        "id": "evt_1",
        "object": "event",
        "type": "charge.succeeded",
        "data": {"object": {"id": "ch_1", "object": "charge", "amount": 3000}},
    }).encode()

    event = gateway.construct_event(payload, _sign(payload))

    assert event["type"] == "charge.succeeded"
    assert event["data"]["object"]["amount"] == 3000


@pytest.mark.parametrize("signature", [None, "", "t=1,v1=deadbeef"])
def test_construct_event_rejects_bad_signature(signature):
    gateway = StripeGateway(api_key="sk_test", webhook_secret=SECRET)
    with pytest.raises(SignatureInvalid):
        gateway.construct_event(b'{"id": "evt_1"}', signature)


def test_construct_event_rejects_other_secret():
    gateway = StripeGateway(api_key="sk_test", webhook_secret=SECRET)
    payload = b'{"id": "evt_1", "object": "event"}'
    with pytest.raises(SignatureInvalid):
        gateway.construct_event(payload, _sign(payload, "whsec_other"))


def test_construct_event_without_secret():
    gateway = StripeGateway(api_key="sk_test", webhook_secret="")
    with pytest.raises(GatewayUnavailable):
        gateway.construct_event(b"{}", "t=1,v1=abc")


@pytest.mark.asyncio
async def test_missing_api_key_is_unavailable():
    gateway = StripeGateway(api_key="", webhook_secret=SECRET)
    with patch("stripe.PaymentIntent.create") as create:
        with pytest.raises(GatewayUnavailable):
            await gateway.create_payment_intent(100, {"booking_id": "b1"})
    create.assert_not_called()


@pytest.mark.asyncio
async def test_stripe_errors_become_gateway_unavailable():
    gateway = StripeGateway(api_key="sk_test", webhook_secret=SECRET)
    with patch("stripe.PaymentIntent.create", side_effect=stripe.APIConnectionError("timeout")):
        with pytest.raises(GatewayUnavailable):
            await gateway.create_payment_intent(100, {"booking_id": "b1"})


@pytest.mark.asyncio
async def test_refund_targets_intent_or_charge():
    gateway = StripeGateway(api_key="sk_test", webhook_secret=SECRET, api_version="2024-06-20")
    with patch("stripe.Refund.create", return_value={"id": "re_1", "status": "succeeded"}) as create:
        refund = await gateway.create_refund("pi_1", 500, "requested_by_customer", {"booking_id": "b1"})
        await gateway.create_refund("ch_1", 200, "changed my mind", {"booking_id": "b1"})

    assert refund == {"id": "re_1", "status": "succeeded"}
    first, second = create.call_args_list
    assert first.kwargs["payment_intent"] == "pi_1"
    assert first.kwargs["reason"] == "requested_by_customer"
    assert first.kwargs["api_key"] == "sk_test"
    assert first.kwargs["stripe_version"] == "2024-06-20"
    assert second.kwargs["charge"] == "ch_1"
    assert "reason" not in second.kwargs


@pytest.mark.asyncio
async def test_notifier_failure_is_contained():
    booking = Booking(name="Jane Customer", email="jane@example.com", total_amount_cents=9000)
    event = build_completion_event(booking, 9000, "usd", "stripe")
    notifier = MagicMock()
    notifier.payment_completed = AsyncMock(side_effect=RuntimeError("smtp down"))

    await dispatch_completion(notifier, event)

    notifier.payment_completed.assert_awaited_once_with(event)
    assert str(event.amount) == "90.00"


@pytest.mark.asyncio
async def test_logging_notifier_writes_completion_to_log(caplog):
    booking = Booking(name="Jane Customer", email="jane@example.com", total_amount_cents=9000)
    event = build_completion_event(booking, 3000, "usd", "cash")

    with caplog.at_level(logging.INFO, logger="app.services.notification_service"):
        await LoggingNotifier().payment_completed(event)

    [record] = [r for r in caplog.records if r.name == "app.services.notification_service"]
    assert "Payment completed" in record.getMessage()
    assert str(booking.id) in record.getMessage()
