"""
tests/test_payments.py
Tests for Stripe payments: intents, checkout sessions, webhooks
(signature, idempotency, booking confirmation), refunds and customers.
Outbound Stripe calls are mocked; webhook deliveries are signed and
verified with the real SDK.
"""

import hashlib
import hmac
import json
import time
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import stripe
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.payment.router import _to_cents, stripe_breaker
from shared.models.models import (
    Booking,
    BookingStatus,
    Notification,
    NotificationType,
    User,
)
from tests.conftest import auth_headers, make_booking


WEBHOOK_SECRET = "whsec_test"


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)


def _event(event_id: str, event_type: str, obj: dict) -> dict:
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


def _signature(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """Stripe-Signature header the way Stripe signs deliveries."""
    timestamp = int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


async def _post_webhook(client: AsyncClient, event: dict):
    payload = json.dumps(event).encode()
    return await client.post(
        "/payments/webhooks", content=payload, headers={"stripe-signature": _signature(payload)}
    )


def test_to_cents_rounds_half_up():
    assert _to_cents(Decimal("600.00")) == 60000
    assert _to_cents(Decimal("19.995")) == 2000


# ── Payment Intents ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_payment_intent(
    client: AsyncClient, db: AsyncSession, user: User, booking: Booking
):
    intent = MagicMock(id="pi_123", status="requires_payment_method", client_secret="pi_123_secret")
    with patch.object(stripe.PaymentIntent, "create", return_value=intent) as create:
        response = await client.post(
            "/payments/payment-intent", headers=auth_headers(user), json={"booking_id": str(booking.id)}
        )

    assert response.status_code == 200
    assert response.json() == {"client_secret": "pi_123_secret", "id": "pi_123"}

    kwargs = create.call_args.kwargs
    assert kwargs["amount"] == 60000
    assert kwargs["currency"] == "usd"
    assert kwargs["metadata"]["bookingId"] == str(booking.id)
    assert kwargs["metadata"]["userId"] == str(user.id)

    await db.refresh(booking)
    assert booking.payment_intent_id == "pi_123"


@pytest.mark.asyncio
async def test_payment_intent_for_someone_elses_booking(
    client: AsyncClient, other_user: User, booking: Booking
):
    response = await client.post(
        "/payments/payment-intent", headers=auth_headers(other_user), json={"booking_id": str(booking.id)}
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_payment_intent_for_processed_booking(
    client: AsyncClient, db: AsyncSession, user: User, property_
):
    confirmed = await make_booking(db, user, property_, status=BookingStatus.CONFIRMED)
    response = await client.post(
        "/payments/payment-intent", headers=auth_headers(user), json={"booking_id": str(confirmed.id)}
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "This booking is already processed"


@pytest.mark.asyncio
async def test_payment_intent_stripe_error(client: AsyncClient, user: User, booking: Booking):
    error = stripe.InvalidRequestError("Amount must be at least 50 cents", "amount")
    with patch.object(stripe.PaymentIntent, "create", side_effect=error):
        response = await client.post(
            "/payments/payment-intent", headers=auth_headers(user), json={"booking_id": str(booking.id)}
        )
    assert response.status_code == 400
    assert response.json()["detail"].startswith("Failed to create payment intent:")


@pytest.mark.asyncio
async def test_open_circuit_returns_503(client: AsyncClient, user: User, booking: Booking):
    stripe_breaker.open()
    try:
        response = await client.post(
            "/payments/payment-intent", headers=auth_headers(user), json={"booking_id": str(booking.id)}
        )
    finally:
        stripe_breaker.close()
    assert response.status_code == 503
    assert response.json()["status"] == "degraded"


# ── Checkout Sessions ─────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_checkout_session(client: AsyncClient, user: User, booking: Booking):
    session = MagicMock(id="cs_123", url="https://checkout.stripe.com/c/cs_123")
    with patch.object(stripe.checkout.Session, "create", return_value=session) as create:
        response = await client.post(
            "/payments/checkout-session", headers=auth_headers(user), json={"booking_id": str(booking.id)}
        )

    assert response.status_code == 200
    assert response.json() == {"session_id": "cs_123", "url": "https://checkout.stripe.com/c/cs_123"}
    kwargs = create.call_args.kwargs
    assert kwargs["mode"] == "payment"
    assert kwargs["customer_email"] == user.email
    assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 60000
    assert kwargs["client_reference_id"] == str(booking.id)


@pytest.mark.asyncio
async def test_get_checkout_session_owner_check(
    client: AsyncClient, user: User, other_user: User, admin_user: User
):
    session = MagicMock(
        id="cs_1", status="complete", payment_status="paid", amount_total=60000,
        currency="usd", customer_email=user.email, metadata={"userId": str(user.id)},
    )
    with patch.object(stripe.checkout.Session, "retrieve", return_value=session):
        mine = await client.get("/payments/sessions/cs_1", headers=auth_headers(user))
        theirs = await client.get("/payments/sessions/cs_1", headers=auth_headers(other_user))
        admin = await client.get("/payments/sessions/cs_1", headers=auth_headers(admin_user))

    assert mine.status_code == 200
    assert mine.json()["payment_status"] == "paid"
    assert theirs.status_code == 403
    assert admin.status_code == 200


# ── Webhooks ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_webhook_requires_signature_header(client: AsyncClient):
    response = await client.post("/payments/webhooks", content=b"{}")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_webhook_without_secret_is_acknowledged(client: AsyncClient):
    response = await client.post(
        "/payments/webhooks", content=b"{}", headers={"stripe-signature": "t=1,v1=abc"}
    )
    assert response.status_code == 200
    assert response.json() == {"received": True}


@pytest.mark.asyncio
async def test_webhook_bad_signature(client: AsyncClient, webhook_secret):
    payload = json.dumps(_event("evt_forged", "payment_intent.succeeded", {"id": "pi_x"})).encode()
    response = await client.post(
        "/payments/webhooks",
        content=payload,
        headers={"stripe-signature": _signature(payload, secret="whsec_someone_else")},
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid signature"


@pytest.mark.asyncio
async def test_payment_succeeded_confirms_booking(
    client: AsyncClient, db: AsyncSession, user: User, landlord_user: User, booking: Booking,
    webhook_secret, sent_emails,
):
    event = _event("evt_1", "payment_intent.succeeded", {
        "id": "pi_999",
        "object": "payment_intent",
        "amount_received": 60000,
        "payment_method_types": ["card"],
        "metadata": {"bookingId": str(booking.id)},
    })
    response = await _post_webhook(client, event)
    assert response.status_code == 200

    await db.refresh(booking)
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.is_paid is True
    assert booking.payment_intent_id == "pi_999"
    assert booking.payment_status == "succeeded"
    assert booking.confirmed_at is not None

    result = await db.execute(
        select(Notification.user_id).where(Notification.type == NotificationType.PAYMENT_SUCCESS)
    )
    assert set(result.scalars()) == {user.id, landlord_user.id}

    template, to_email, context = sent_emails.call_args.args
    assert template == "payment_confirmation"
    assert to_email == user.email
    assert context["amount"] == "600.00"


@pytest.mark.asyncio
async def test_checkout_completed_confirms_booking(
    client: AsyncClient, db: AsyncSession, booking: Booking, webhook_secret
):
    event = _event("evt_cs", "checkout.session.completed", {
        "id": "cs_1",
        "object": "checkout.session",
        "client_reference_id": str(booking.id),
        "payment_intent": "pi_from_checkout",
        "amount_total": 60000,
        "metadata": {},
    })
    response = await _post_webhook(client, event)
    assert response.status_code == 200

    await db.refresh(booking)
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.payment_intent_id == "pi_from_checkout"


@pytest.mark.asyncio
async def test_duplicate_webhook_processed_once(
    client: AsyncClient, db: AsyncSession, booking: Booking, webhook_secret
):
    event = _event("evt_dup", "payment_intent.succeeded", {
        "id": "pi_dup", "amount": 60000, "metadata": {"bookingId": str(booking.id)},
    })
    assert (await _post_webhook(client, event)).status_code == 200
    assert (await _post_webhook(client, event)).status_code == 200

    result = await db.execute(
        select(Notification.id).where(
            Notification.booking_id == booking.id,
            Notification.type == NotificationType.BOOKING_CONFIRMED,
        )
    )
    assert len(list(result.scalars())) == 1


@pytest.mark.asyncio
async def test_payment_failed_marks_booking(
    client: AsyncClient, db: AsyncSession, booking: Booking, webhook_secret
):
    event = _event("evt_fail", "payment_intent.payment_failed", {
        "id": "pi_fail",
        "object": "payment_intent",
        "metadata": {"bookingId": str(booking.id)},
        "last_payment_error": {"message": "Your card was declined."},
    })
    response = await _post_webhook(client, event)
    assert response.status_code == 200

    await db.refresh(booking)
    assert booking.status == BookingStatus.PENDING
    assert booking.payment_status == "failed"


@pytest.mark.asyncio
async def test_webhook_unknown_booking_is_acknowledged(client: AsyncClient, webhook_secret):
    event = _event("evt_x", "payment_intent.succeeded", {"id": "pi_x", "metadata": {"bookingId": "not-a-uuid"}})
    response = await _post_webhook(client, event)
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_short_payment_is_refunded_and_booking_stays_pending(
    client: AsyncClient, db: AsyncSession, booking: Booking, webhook_secret, sent_emails
):
    event = _event("evt_short", "payment_intent.succeeded", {
        "id": "pi_short",
        "object": "payment_intent",
        "amount_received": 100,
        "metadata": {"bookingId": str(booking.id)},
    })
    refund = MagicMock(id="re_short", status="succeeded", amount=100)
    with patch.object(stripe.Refund, "create", return_value=refund) as create:
        response = await _post_webhook(client, event)

    assert response.status_code == 200
    assert create.call_args.kwargs["payment_intent"] == "pi_short"

    await db.refresh(booking)
    assert booking.status == BookingStatus.PENDING
    assert booking.is_paid is False
    assert booking.payment_status == "refunded"
    sent_emails.assert_not_called()


@pytest.mark.asyncio
async def test_payment_on_cancelled_booking_is_refunded(
    client: AsyncClient, db: AsyncSession, user: User, property_, webhook_secret
):
    expired = await make_booking(db, user, property_, status=BookingStatus.CANCELLED)
    event = _event("evt_late", "payment_intent.succeeded", {
        "id": "pi_late",
        "object": "payment_intent",
        "amount_received": 60000,
        "metadata": {"bookingId": str(expired.id)},
    })
    refund = MagicMock(id="re_late", status="succeeded", amount=60000)
    with patch.object(stripe.Refund, "create", return_value=refund) as create:
        response = await _post_webhook(client, event)

    assert response.status_code == 200
    create.assert_called_once()
    await db.refresh(expired)
    assert expired.status == BookingStatus.CANCELLED
    assert expired.payment_status == "refunded"


@pytest.mark.asyncio
async def test_failed_refund_is_flagged_for_manual_handling(
    client: AsyncClient, db: AsyncSession, user: User, property_, webhook_secret
):
    expired = await make_booking(db, user, property_, status=BookingStatus.CANCELLED)
    event = _event("evt_late_2", "payment_intent.succeeded", {
        "id": "pi_late_2", "amount_received": 60000, "metadata": {"bookingId": str(expired.id)},
    })
    error = stripe.InvalidRequestError("Charge already refunded", "payment_intent")
    with patch.object(stripe.Refund, "create", side_effect=error):
        response = await _post_webhook(client, event)

    assert response.status_code == 200
    await db.refresh(expired)
    assert expired.payment_status == "refund_required"


# ── Refunds ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_refund_confirmed_booking(
    client: AsyncClient, db: AsyncSession, user: User, property_, sent_emails
):
    paid = await make_booking(
        db, user, property_, status=BookingStatus.CONFIRMED, is_paid=True, payment_intent_id="pi_paid"
    )
    refund = MagicMock(id="re_1", status="succeeded", amount=60000)
    with patch.object(stripe.Refund, "create", return_value=refund) as create:
        response = await client.post(f"/payments/refunds/{paid.id}", headers=auth_headers(user))

    assert response.status_code == 200
    data = response.json()
    assert data["refund_id"] == "re_1"
    assert Decimal(data["amount"]) == Decimal("600")
    assert create.call_args.kwargs["payment_intent"] == "pi_paid"
    assert "amount" not in create.call_args.kwargs

    await db.refresh(paid)
    assert paid.status == BookingStatus.CANCELLED
    assert paid.payment_status == "refunded"
    assert paid.cancellation_reason == "Refunded"
    assert {c.args[0] for c in sent_emails.call_args_list} == {
        "booking_cancelled_guest", "booking_cancelled_host"
    }


@pytest.mark.asyncio
async def test_partial_refund_sends_amount(client: AsyncClient, db: AsyncSession, user: User, property_):
    paid = await make_booking(db, user, property_, status=BookingStatus.CONFIRMED, payment_intent_id="pi_paid")
    refund = MagicMock(id="re_2", status="succeeded", amount=10000)
    with patch.object(stripe.Refund, "create", return_value=refund) as create:
        response = await client.post(
            f"/payments/refunds/{paid.id}", headers=auth_headers(user), json={"amount": "100.00"}
        )
    assert response.status_code == 200
    assert create.call_args.kwargs["amount"] == 10000


@pytest.mark.asyncio
async def test_refund_requires_confirmed_booking(client: AsyncClient, user: User, booking: Booking):
    response = await client.post(f"/payments/refunds/{booking.id}", headers=auth_headers(user))
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_refund_requires_payment(client: AsyncClient, db: AsyncSession, user: User, property_):
    confirmed = await make_booking(db, user, property_, status=BookingStatus.CONFIRMED)
    response = await client.post(f"/payments/refunds/{confirmed.id}", headers=auth_headers(user))
    assert response.status_code == 400
    assert response.json()["detail"] == "No payment found for this booking"


# ── Customers ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_customer_is_idempotent(client: AsyncClient, user: User):
    with patch.object(stripe.Customer, "create", return_value=MagicMock(id="cus_1")) as create:
        first = await client.post("/payments/customers", headers=auth_headers(user))
        second = await client.post("/payments/customers", headers=auth_headers(user))

    assert first.json() == {"customer_id": "cus_1"}
    assert second.json() == {"customer_id": "cus_1"}
    create.assert_called_once()
