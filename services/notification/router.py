"""
services/notification/router.py
In-app notifications (stored rows) and queued transactional email.
Email delivery itself happens in tasks/email_tasks.py.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from kombu.exceptions import OperationalError
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import get_current_user
from shared.models.models import Notification, NotificationType, User
from shared.schemas.schemas import CountResponse, NotificationResponse, StatusMessage
from tasks.email_tasks import send_templated_email

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["Notifications"])


# ── Notification Templates ────────────────────────────────────

TEMPLATES = {
    NotificationType.BOOKING_CREATED: {
        "title": "New booking request",
        "body": "{guest_name} requested {property_title} from {start_date} to {end_date}.",
    },
    NotificationType.BOOKING_CONFIRMED: {
        "title": "Booking confirmed",
        "body": "Your stay at {property_title} from {start_date} to {end_date} is confirmed.",
    },
    NotificationType.BOOKING_CANCELLED: {
        "title": "Booking cancelled",
        "body": "The booking for {property_title} ({start_date} to {end_date}) was cancelled.",
    },
    NotificationType.BOOKING_COMPLETED: {
        "title": "Stay completed",
        "body": "Your stay at {property_title} is complete. We hope you enjoyed it.",
    },
    NotificationType.PAYMENT_SUCCESS: {
        "title": "Payment received",
        "body": "Payment of {amount} for {property_title} was received.",
    },
    NotificationType.PAYMENT_FAILED: {
        "title": "Payment failed",
        "body": "The payment for {property_title} did not go through. Please try again.",
    },
    NotificationType.PAYMENT_REFUNDED: {
        "title": "Payment refunded",
        "body": "Your payment for {property_title} has been refunded.",
    },
}


def _render(template: str, vars_: dict) -> str:
    for key, value in vars_.items():
        template = template.replace(f"{{{key}}}", str(value))
    return template


async def dispatch_notification(
    db: AsyncSession,
    user: User,
    notification_type: NotificationType,
    template_vars: Optional[dict] = None,
    booking_id: Optional[UUID] = None,
) -> Notification:
    """Store an in-app notification for `user`. Flushed, committed by the caller."""
    template = TEMPLATES[notification_type]
    vars_ = template_vars or {}

    notif = Notification(
        user_id=user.id,
        booking_id=booking_id,
        type=notification_type,
        title=_render(template["title"], vars_),
        body=_render(template["body"], vars_),
        data={k: str(v) for k, v in vars_.items()},
    )
    db.add(notif)
    await db.flush()
    return notif


def queue_email(template_name: str, to_email: str, **context) -> bool:
    """
    Queue a templated email on the Celery `emails` queue.
    A broker failure is logged and reported as False, never raised.
    """
    try:
        send_templated_email.delay(template_name, to_email, {k: str(v) for k, v in context.items()})
        return True
    except OperationalError as e:
        logger.error(f"Failed to queue '{template_name}' email to {to_email}: {e}")
        return False


# ── REST Endpoints ────────────────────────────────────────────

@router.get("", response_model=list[NotificationResponse])
async def get_my_notifications(
    unread_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get authenticated user's in-app notifications."""
    query = (
        select(Notification)
        .where(Notification.user_id == current_user.id)
        .order_by(Notification.created_at.desc())
    )

    if unread_only:
        query = query.where(Notification.is_read == False)  # noqa: E712

    query = query.offset((page - 1) * page_size).limit(page_size)
    result = await db.execute(query)
    return [NotificationResponse.model_validate(n) for n in result.scalars()]


@router.post("/read-all", response_model=StatusMessage)
async def mark_all_read(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await db.execute(
        update(Notification)
        .where(Notification.user_id == current_user.id, Notification.is_read == False)  # noqa: E712
        .values(is_read=True, read_at=datetime.now(timezone.utc))
    )
    await db.commit()
    return StatusMessage(message="All notifications marked as read")


@router.get("/unread-count", response_model=CountResponse)
async def unread_count(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    count = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == current_user.id,
            Notification.is_read == False,  # noqa: E712
        )
    )
    return CountResponse(count=count or 0)


@router.post("/{notification_id}/read", response_model=StatusMessage)
async def mark_read(
    notification_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.user_id == current_user.id)
        .values(is_read=True, read_at=datetime.now(timezone.utc))
    )
    if result.rowcount == 0:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    await db.commit()
    return StatusMessage(message="Marked as read")
