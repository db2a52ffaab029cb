"""
services/payment/router.py
Stripe payments: PaymentIntents, Checkout Sessions, webhooks, refunds
and customers.

Flow:
1. Guest creates a PENDING booking
2. Client gets a PaymentIntent (or a hosted Checkout Session) for it
3. Stripe confirms via webhook → booking CONFIRMED, is_paid
4. Refund → booking CANCELLED, payment_status "refunded"

Every Stripe call goes through the "stripe" circuit breaker; when it is
open the app answers 503 (see main.py).
"""

import logging
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.booking.router import (
    booking_vars,
    cancellation_emails,
    change_booking_status,
    get_booking_or_404,
    queue_emails,
    role_in_booking,
    with_parties,
)
from services.notification.router import dispatch_notification, queue_email
from shared.middleware.auth import get_current_user, is_admin
from shared.models.models import Booking, BookingStatus, NotificationType, User
from shared.schemas.schemas import (
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    CustomerResponse,
    PaymentIntentRequest,
    PaymentIntentResponse,
    RefundRequest,
    RefundResponse,
)
from shared.utils.circuit_breaker import circuit_breaker_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])

stripe.api_key = settings.STRIPE_SECRET_KEY
stripe.api_version = settings.STRIPE_API_VERSION

# Request errors are the caller's fault and must not open the breaker
stripe_breaker = circuit_breaker_manager.get_breaker(
    "stripe", exclude=(stripe.InvalidRequestError, stripe.CardError)
)


# ── Helpers ───────────────────────────────────────────────────

async def _stripe(fn, *args, **kwargs):
    """Run a blocking Stripe SDK call through the breaker, off the event loop."""
    return await run_in_threadpool(stripe_breaker.call, fn, *args, **kwargs)


def _to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _stripe_error(action: str, e: stripe.StripeError) -> HTTPException:
    message = getattr(e, "user_message", None) or str(e)
    logger.warning(f"Stripe error while trying to {action}: {message}")
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=f"Failed to {action}: {message}",
    )


def _payment_metadata(booking: Booking) -> dict:
    return {
        "bookingId": str(booking.id),
        "propertyId": str(booking.property_id),
        "userId": str(booking.user_id),
        "propertyTitle": booking.property.title,
    }


async def _get_payable_booking(booking_id: uuid.UUID, user: User, db: AsyncSession) -> Booking:
    booking = await get_booking_or_404(booking_id, db)
    if booking.user_id != user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only pay for your own bookings",
        )
    if booking.status != BookingStatus.PENDING:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="This booking is already processed",
        )
    return booking


# ── Payment Creation ──────────────────────────────────────────

@router.post("/payment-intent", response_model=PaymentIntentResponse)
async def create_payment_intent(
    data: PaymentIntentRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Create a Stripe PaymentIntent for a PENDING booking.
    Amount defaults to the booking total; it is sent to Stripe in cents.
    """
    booking = await _get_payable_booking(data.booking_id, current_user, db)
    amount = data.amount if data.amount is not None else booking.total_price
    currency = (data.currency or settings.STRIPE_CURRENCY).lower()

    try:
        intent = await _stripe(
            stripe.PaymentIntent.create,
            amount=_to_cents(amount),
            currency=currency,
            payment_method_types=data.payment_method_types or ["card"],
            metadata=_payment_metadata(booking),
        )
    except stripe.StripeError as e:
        raise _stripe_error("create payment intent", e)

    booking.payment_intent_id = intent.id
    booking.payment_status = intent.status
    await db.commit()

    return PaymentIntentResponse(client_secret=intent.client_secret, id=intent.id)


@router.post("/checkout-session", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    data: CheckoutSessionRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Hosted Stripe Checkout for a PENDING booking, one line item."""
    booking = await _get_payable_booking(data.booking_id, current_user, db)
    amount = data.amount if data.amount is not None else booking.total_price
    currency = (data.currency or settings.STRIPE_CURRENCY).lower()
    metadata = _payment_metadata(booking)

    params = {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": [{
            "price_data": {
                "currency": currency,
                "unit_amount": _to_cents(amount),
                "product_data": {
                    "name": f"Booking for {booking.property.title}",
                    "description": f"{booking.start_date.isoformat()} to {booking.end_date.isoformat()}",
                },
            },
            "quantity": 1,
        }],
        "success_url": str(data.success_url) if data.success_url
        else f"{settings.FRONTEND_URL}/bookings/success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": str(data.cancel_url) if data.cancel_url
        else f"{settings.FRONTEND_URL}/bookings/cancel?session_id={{CHECKOUT_SESSION_ID}}",
        "client_reference_id": str(booking.id),
        "metadata": metadata,
        "payment_intent_data": {"metadata": metadata},
    }
    # Stripe accepts either an existing customer or an email, not both
    if data.customer_id:
        params["customer"] = data.customer_id
    else:
        params["customer_email"] = data.customer_email or booking.user.email

    try:
        session = await _stripe(stripe.checkout.Session.create, **params)
    except stripe.StripeError as e:
        raise _stripe_error("create checkout session", e)

    booking.payment_status = "checkout_pending"
    await db.commit()

    return CheckoutSessionResponse(session_id=session.id, url=session.url)


@router.get("/sessions/{session_id}")
async def get_checkout_session(
    session_id: str,
    current_user: User = Depends(get_current_user),
):
    try:
        session = await _stripe(stripe.checkout.Session.retrieve, session_id)
    except stripe.StripeError as e:
        raise _stripe_error("retrieve checkout session", e)

    metadata = dict(session.metadata or {})
    owner_id = metadata.get("userId")
    if owner_id and owner_id != str(current_user.id) and not is_admin(current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized to view this session")

    return {
        "id": session.id,
        "status": session.status,
        "payment_status": session.payment_status,
        "amount_total": session.amount_total,
        "currency": session.currency,
        "customer_email": session.customer_email,
        "metadata": metadata,
    }


# ── Webhooks ──────────────────────────────────────────────────

@router.post("/webhooks")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Stripe webhook receiver. Verifies the signature, then processes each
    event id at most once (Redis marker kept for WEBHOOK_EVENT_TTL).
    """
    if not stripe_signature:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing stripe-signature header")

    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.warning("STRIPE_WEBHOOK_SECRET not configured, acknowledging webhook without processing")
        return {"received": True}

    payload = await request.body()
    try:
        event = stripe.Webhook.construct_event(payload, stripe_signature, settings.STRIPE_WEBHOOK_SECRET)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    event = event.to_dict()
    event_id, event_type = event["id"], event["type"]
    logger.info(f"Stripe webhook received: {event_type} ({event_id})")

    cache = RedisCache(redis)
    if not await cache.mark_event_processed("stripe", event_id):
        logger.info(f"Stripe event {event_id} already processed, skipping")
        return {"received": True}

    try:
        await _handle_event(db, event_type, event["data"]["object"])
    except Exception:
        # Let Stripe's retry reprocess it
        await cache.unmark_event("stripe", event_id)
        logger.exception(f"Stripe webhook processing failed for {event_type} ({event_id})")
        raise

    return {"received": True}


async def _handle_event(db: AsyncSession, event_type: str, obj) -> None:
    if event_type == "checkout.session.completed":
        methods = obj.get("payment_method_types") or ["card"]
        await _confirm_paid_booking(
            db,
            booking_ref=(obj.get("metadata") or {}).get("bookingId") or obj.get("client_reference_id"),
            payment_intent_id=obj.get("payment_intent"),
            payment_method=methods[0],
            amount_cents=obj.get("amount_total"),
            source=event_type,
        )
    elif event_type == "payment_intent.succeeded":
        methods = obj.get("payment_method_types") or ["card"]
        await _confirm_paid_booking(
            db,
            booking_ref=(obj.get("metadata") or {}).get("bookingId"),
            payment_intent_id=obj.get("id"),
            payment_method=methods[0],
            amount_cents=obj.get("amount_received") or obj.get("amount"),
            source=event_type,
        )
    elif event_type == "payment_intent.payment_failed":
        await _mark_payment_failed(db, (obj.get("metadata") or {}).get("bookingId"), obj)
    else:
        logger.info(f"Unhandled Stripe event type {event_type}")


async def _load_booking_ref(db: AsyncSession, booking_ref: Optional[str]) -> Optional[Booking]:
    if not booking_ref:
        logger.warning("Stripe event without a booking reference")
        return None
    try:
        booking_id = uuid.UUID(str(booking_ref))
    except ValueError:
        logger.warning(f"Stripe event with malformed booking reference '{booking_ref}'")
        return None

    booking = await db.scalar(with_parties(select(Booking).where(Booking.id == booking_id)))
    if not booking:
        logger.warning(f"Stripe event for unknown booking {booking_id}")
    return booking


async def _confirm_paid_booking(
    db: AsyncSession,
    booking_ref: Optional[str],
    payment_intent_id: Optional[str],
    payment_method: str,
    amount_cents: Optional[int],
    source: str,
) -> None:
    booking = await _load_booking_ref(db, booking_ref)
    if not booking:
        return
    if booking.status == BookingStatus.CANCELLED:
        logger.warning(
            f"Payment {payment_intent_id} landed on cancelled booking {booking.id}, refunding"
        )
        await _refund_unusable_payment(db, booking, payment_intent_id)
        return
    if booking.status != BookingStatus.PENDING:
        logger.info(f"Booking {booking.id} is {booking.status.value}, payment event ignored")
        return

    due = _to_cents(booking.total_price)
    if amount_cents is None or amount_cents < due:
        logger.warning(
            f"Payment {payment_intent_id} of {amount_cents} does not cover booking "
            f"{booking.id} ({due} due), refunding"
        )
        await _refund_unusable_payment(db, booking, payment_intent_id)
        return

    booking.is_paid = True
    booking.payment_intent_id = payment_intent_id or booking.payment_intent_id
    booking.payment_method = payment_method
    booking.payment_status = "succeeded"
    await change_booking_status(
        db, booking, BookingStatus.CONFIRMED, None,
        metadata={"source": "stripe", "event": source, "payment_intent_id": payment_intent_id},
    )

    amount = (Decimal(amount_cents) / 100) if amount_cents else booking.total_price
    vars_ = {**booking_vars(booking), "amount": f"{amount:.2f} {settings.STRIPE_CURRENCY.upper()}"}
    await dispatch_notification(db, booking.user, NotificationType.PAYMENT_SUCCESS, vars_, booking.id)
    await dispatch_notification(db, booking.property.owner, NotificationType.PAYMENT_SUCCESS, vars_, booking.id)

    guest_email, guest_name = booking.user.email, booking.user.first_name
    await db.commit()

    email_context = {**vars_, "amount": f"{amount:.2f}", "first_name": guest_name}
    queue_email("payment_confirmation", guest_email, **email_context)
    logger.info(f"Booking {booking.id} confirmed by {source}")


async def _refund_unusable_payment(
    db: AsyncSession, booking: Booking, payment_intent_id: Optional[str]
) -> None:
    """
    Return a payment that cannot be applied to the booking. The booking
    status is left alone; a failed refund is flagged for manual handling.
    """
    if not payment_intent_id:
        logger.error(f"Unusable payment on booking {booking.id} has no payment intent, manual refund needed")
        booking.payment_status = "refund_required"
        await db.commit()
        return

    try:
        refund = await _stripe(
            stripe.Refund.create,
            payment_intent=payment_intent_id,
            metadata={"bookingId": str(booking.id)},
        )
    except stripe.StripeError as e:
        logger.error(f"Refund of {payment_intent_id} for booking {booking.id} failed: {e}")
        booking.payment_status = "refund_required"
    else:
        logger.info(f"Refund {refund.id} issued for booking {booking.id}")
        booking.payment_status = "refunded"

    await db.commit()


async def _mark_payment_failed(db: AsyncSession, booking_ref: Optional[str], obj) -> None:
    booking = await _load_booking_ref(db, booking_ref)
    if not booking:
        return

    error = (obj.get("last_payment_error") or {}).get("message", "unknown error")
    logger.warning(f"Payment failed for booking {booking.id}: {error}")

    booking.payment_status = "failed"
    await dispatch_notification(db, booking.user, NotificationType.PAYMENT_FAILED, booking_vars(booking), booking.id)
    await db.commit()


# ── Refunds & Customers ───────────────────────────────────────

@router.post("/refunds/{booking_id}", response_model=RefundResponse)
async def refund_booking(
    booking_id: uuid.UUID,
    data: Optional[RefundRequest] = None,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Refund a CONFIRMED booking (fully, or partially when an amount is given).
    The booking is cancelled and both parties are emailed.
    """
    booking = await get_booking_or_404(booking_id, db)
    is_booker, can_manage = role_in_booking(booking, current_user)
    if not (is_booker or can_manage):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized to refund this booking")
    if booking.status != BookingStatus.CONFIRMED:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only confirmed bookings can be refunded")
    if not booking.payment_intent_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No payment found for this booking")

    params = {
        "payment_intent": booking.payment_intent_id,
        "metadata": {"bookingId": str(booking.id)},
    }
    if data and data.amount is not None:
        params["amount"] = _to_cents(data.amount)

    try:
        refund = await _stripe(stripe.Refund.create, **params)
    except stripe.StripeError as e:
        raise _stripe_error("create refund", e)

    reason = "Refunded"
    booking.payment_status = "refunded"
    await change_booking_status(
        db, booking, BookingStatus.CANCELLED, current_user, reason,
        metadata={"refund_id": refund.id},
    )
    await dispatch_notification(db, booking.user, NotificationType.PAYMENT_REFUNDED, booking_vars(booking), booking.id)
    emails = cancellation_emails(booking, reason)

    await db.commit()
    queue_emails(emails)

    return RefundResponse(
        refund_id=refund.id,
        status=refund.status,
        amount=(Decimal(refund.amount) / 100) if refund.amount is not None else None,
        booking_id=booking.id,
    )


@router.post("/customers", response_model=CustomerResponse)
async def create_customer(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Create (once) and return the caller's Stripe customer."""
    if current_user.stripe_customer_id:
        return CustomerResponse(customer_id=current_user.stripe_customer_id)

    try:
        customer = await _stripe(
            stripe.Customer.create,
            email=current_user.email,
            name=current_user.full_name,
            metadata={"userId": str(current_user.id)},
        )
    except stripe.StripeError as e:
        raise _stripe_error("create customer", e)

    current_user.stripe_customer_id = customer.id
    await db.commit()
    return CustomerResponse(customer_id=customer.id)
