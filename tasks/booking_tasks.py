"""
tasks/booking_tasks.py
Beat tasks that move bookings along their lifecycle without a user action:
- PENDING bookings that never got paid are cancelled
- CONFIRMED bookings whose stay has ended are completed

Every transition is written to booking_audit_logs with a NULL actor.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from config.settings import settings
from shared.models.models import Booking, BookingAuditLog, BookingStatus, Property
from tasks.base import DatabaseTask
from tasks.celery_app import celery_app
from tasks.email_tasks import send_templated_email

logger = logging.getLogger(__name__)

EXPIRED_REASON = "Payment not completed"


def _audit(db: Session, booking: Booking, from_status: BookingStatus, reason: Optional[str]) -> None:
    db.add(BookingAuditLog(
        booking_id=booking.id,
        from_status=from_status.value,
        to_status=booking.status.value,
        changed_by_id=None,
        reason=reason,
        audit_metadata={"source": "scheduler"},
    ))


def expire_pending(db: Session, now: Optional[datetime] = None) -> list[Booking]:
    """Cancel PENDING bookings older than BOOKING_PENDING_EXPIRY_HOURS. Returns them."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(hours=settings.BOOKING_PENDING_EXPIRY_HOURS)

    bookings = db.execute(
        select(Booking)
        .options(selectinload(Booking.user), selectinload(Booking.property))
        .where(Booking.status == BookingStatus.PENDING, Booking.created_at < cutoff)
    ).scalars().all()

    for booking in bookings:
        booking.status = BookingStatus.CANCELLED
        booking.cancellation_reason = EXPIRED_REASON
        booking.cancelled_at = now
        _audit(db, booking, BookingStatus.PENDING, EXPIRED_REASON)

    db.commit()
    return list(bookings)


def complete_finished(db: Session, today: Optional[date] = None) -> list[Booking]:
    """Mark CONFIRMED bookings whose end_date has passed as COMPLETED."""
    today = today or datetime.now(timezone.utc).date()
    now = datetime.now(timezone.utc)

    bookings = db.execute(
        select(Booking).where(
            Booking.status == BookingStatus.CONFIRMED,
            Booking.end_date < today,
        )
    ).scalars().all()

    for booking in bookings:
        booking.status = BookingStatus.COMPLETED
        booking.completed_at = now
        _audit(db, booking, BookingStatus.CONFIRMED, None)

    db.commit()
    return list(bookings)


@celery_app.task(bind=True, base=DatabaseTask)
def expire_pending_bookings(self):
    """Beat task: runs every 15 minutes."""
    db = self.get_session()
    try:
        expired = expire_pending(db)
        for booking in expired:
            prop: Property = booking.property
            send_templated_email.delay(
                "booking_cancelled_guest",
                booking.user.email,
                {
                    "first_name": booking.user.first_name,
                    "property_title": prop.title,
                    "start_date": booking.start_date.isoformat(),
                    "end_date": booking.end_date.isoformat(),
                    "reason": EXPIRED_REASON,
                },
            )
        logger.info(f"Expired {len(expired)} unpaid bookings")
        return len(expired)
    except Exception as e:
        db.rollback()
        logger.exception(f"expire_pending_bookings failed: {e}")
        raise
    finally:
        db.close()


@celery_app.task(bind=True, base=DatabaseTask)
def complete_finished_bookings(self):
    """Beat task: runs nightly."""
    db = self.get_session()
    try:
        completed = complete_finished(db)
        logger.info(f"Completed {len(completed)} finished bookings")
        return len(completed)
    except Exception as e:
        db.rollback()
        logger.exception(f"complete_finished_bookings failed: {e}")
        raise
    finally:
        db.close()
