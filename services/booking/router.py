"""
services/booking/router.py
Booking lifecycle management.
States: PENDING → CONFIRMED → COMPLETED, with CANCELLED reachable
from PENDING and CONFIRMED. Every transition is audited.

Date overlap is checked with a query while the property row is locked
(SELECT ... FOR UPDATE), so two concurrent requests for the same dates
cannot both succeed on PostgreSQL.
"""

import logging
from datetime import date, datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from config.database import get_db
from services.notification.router import dispatch_notification, queue_email
from shared.middleware.auth import get_current_user, is_admin
from shared.models.models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    BookingAuditLog,
    BookingStatus,
    NotificationType,
    Property,
    User,
)
from shared.schemas.schemas import (
    BookingCancelRequest,
    BookingCreateRequest,
    BookingResponse,
    BookingStatusUpdateRequest,
    PaginatedResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])

ALLOWED_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.CANCELLED: set(),
    BookingStatus.COMPLETED: set(),
}

_STATUS_NOTIFICATIONS = {
    BookingStatus.CONFIRMED: NotificationType.BOOKING_CONFIRMED,
    BookingStatus.CANCELLED: NotificationType.BOOKING_CANCELLED,
    BookingStatus.COMPLETED: NotificationType.BOOKING_COMPLETED,
}


# ── Helpers ───────────────────────────────────────────────────

def with_parties(query):
    return query.options(
        selectinload(Booking.user),
        selectinload(Booking.property).selectinload(Property.owner),
    )


async def get_booking_or_404(booking_id: UUID, db: AsyncSession) -> Booking:
    """Booking with guest, property and host loaded."""
    booking = await db.scalar(with_parties(select(Booking).where(Booking.id == booking_id)))
    if not booking:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return booking


def _log_status_change(
    db: AsyncSession,
    booking: Booking,
    from_status: Optional[BookingStatus],
    to_status: BookingStatus,
    changed_by: Optional[User],
    reason: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> None:
    """Append an immutable audit log entry for every status change."""
    db.add(BookingAuditLog(
        booking_id=booking.id,
        from_status=from_status.value if from_status else None,
        to_status=to_status.value,
        changed_by_id=changed_by.id if changed_by else None,
        reason=reason,
        audit_metadata=metadata,
    ))


def booking_vars(booking: Booking) -> dict:
    """Template variables shared by notifications and emails. Needs parties loaded."""
    return {
        "property_title": booking.property.title,
        "start_date": booking.start_date.isoformat(),
        "end_date": booking.end_date.isoformat(),
        "nights": booking.nights,
        "total_price": booking.total_price,
        "guest_name": booking.user.full_name,
    }


def cancellation_emails(booking: Booking, reason: Optional[str]) -> list[tuple[str, str, dict]]:
    """(template, recipient, context) for the guest and the host. Queue after commit."""
    vars_ = {**booking_vars(booking), "reason": reason or "Not specified"}
    host = booking.property.owner
    return [
        ("booking_cancelled_guest", booking.user.email, {**vars_, "first_name": booking.user.first_name}),
        ("booking_cancelled_host", host.email, {**vars_, "first_name": host.first_name}),
    ]


def queue_emails(emails: list[tuple[str, str, dict]]) -> None:
    for template_name, to_email, context in emails:
        queue_email(template_name, to_email, **context)


def role_in_booking(booking: Booking, user: User) -> tuple[bool, bool]:
    """Returns (is_booker, can_manage) where managers are the host and admins."""
    is_booker = booking.user_id == user.id
    can_manage = booking.property.owner_id == user.id or is_admin(user)
    return is_booker, can_manage


async def change_booking_status(
    db: AsyncSession,
    booking: Booking,
    new_status: BookingStatus,
    actor: Optional[User],
    reason: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> None:
    """
    Validate and apply a transition: timestamps, audit entry and in-app
    notifications. Emails are left to the caller (sent after commit).
    Raises 400 for transitions outside ALLOWED_TRANSITIONS.
    """
    old_status = BookingStatus(booking.status)
    if new_status not in ALLOWED_TRANSITIONS[old_status]:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot change status from '{old_status.value}' to '{new_status.value}'",
        )

    now = datetime.now(timezone.utc)
    booking.status = new_status
    if new_status == BookingStatus.CONFIRMED:
        booking.confirmed_at = now
    elif new_status == BookingStatus.COMPLETED:
        booking.completed_at = now
    elif new_status == BookingStatus.CANCELLED:
        booking.cancelled_at = now
        booking.cancellation_reason = reason

    _log_status_change(db, booking, old_status, new_status, actor, reason, metadata)

    vars_ = booking_vars(booking)
    notification_type = _STATUS_NOTIFICATIONS[new_status]
    await dispatch_notification(db, booking.user, notification_type, vars_, booking.id)
    if new_status == BookingStatus.CANCELLED:
        await dispatch_notification(db, booking.property.owner, notification_type, vars_, booking.id)


# ── Booking Creation ──────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Reserve a property for [start_date, end_date]. Steps:
    1. Lock the property row and validate it is bookable
    2. Validate the dates
    3. Reject overlaps with PENDING/CONFIRMED bookings (bounds inclusive)
    4. Create a PENDING booking priced on the server
    """
    prop = await db.scalar(
        select(Property)
        .options(selectinload(Property.owner))
        .where(Property.id == data.property_id)
        .with_for_update()
    )
    if not prop:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Property not found")
    if not prop.available:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Property is not available for booking",
        )

    if data.start_date >= data.end_date:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="End date must be after start date",
        )
    if data.start_date < date.today():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Start date cannot be in the past",
        )

    conflict = await db.scalar(
        select(Booking.id).where(
            Booking.property_id == prop.id,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            Booking.start_date <= data.end_date,
            Booking.end_date >= data.start_date,
        ).limit(1)
    )
    if conflict:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="The property is already booked for the selected dates",
        )

    nights = (data.end_date - data.start_date).days
    booking = Booking(
        user_id=current_user.id,
        property_id=prop.id,
        start_date=data.start_date,
        end_date=data.end_date,
        nights=nights,
        total_price=prop.price * nights,
        status=BookingStatus.PENDING,
    )
    booking.user = current_user
    booking.property = prop
    db.add(booking)
    await db.flush()

    _log_status_change(db, booking, None, BookingStatus.PENDING, current_user)
    vars_ = booking_vars(booking)
    await dispatch_notification(db, prop.owner, NotificationType.BOOKING_CREATED, vars_, booking.id)

    guest_email, host_email, host_name = current_user.email, prop.owner.email, prop.owner.first_name
    await db.commit()
    await db.refresh(booking)

    queue_email("booking_confirmation", guest_email, first_name=current_user.first_name, **vars_)
    queue_email("new_booking", host_email, first_name=host_name, **vars_)

    logger.info(f"Booking {booking.id} created for property {prop.id} ({nights} nights)")
    return BookingResponse.model_validate(booking)


# ── Queries ───────────────────────────────────────────────────

@router.get("", response_model=PaginatedResponse)
async def list_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    property_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Admins see every booking; everyone else sees their own."""
    query = select(Booking)
    if not is_admin(current_user):
        query = query.where(Booking.user_id == current_user.id)
    if status_filter:
        query = query.where(Booking.status == status_filter)
    if property_id:
        query = query.where(Booking.property_id == property_id)

    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
    result = await db.execute(
        query.order_by(Booking.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    )

    return PaginatedResponse(
        items=[BookingResponse.model_validate(b) for b in result.scalars()],
        total=total,
        page=page,
        page_size=page_size,
        pages=-(-total // page_size),
    )


@router.get("/my-bookings", response_model=list[BookingResponse])
async def my_bookings(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Booking)
        .where(Booking.user_id == current_user.id)
        .order_by(Booking.created_at.desc())
    )
    return [BookingResponse.model_validate(b) for b in result.scalars()]


@router.get("/property/{property_id}", response_model=list[BookingResponse])
async def property_bookings(
    property_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """All bookings of a property, for its owner or an admin."""
    prop = await db.scalar(select(Property).where(Property.id == property_id))
    if not prop:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Property not found")
    if prop.owner_id != current_user.id and not is_admin(current_user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have permission to view bookings for this property",
        )

    result = await db.execute(
        select(Booking)
        .where(Booking.property_id == property_id)
        .order_by(Booking.start_date.asc())
    )
    return [BookingResponse.model_validate(b) for b in result.scalars()]


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    booking = await get_booking_or_404(booking_id, db)
    is_booker, can_manage = role_in_booking(booking, current_user)
    if not (is_booker or can_manage):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized to view this booking")
    return BookingResponse.model_validate(booking)


# ── Status Changes ────────────────────────────────────────────

async def _update_status(
    booking_id: UUID,
    new_status: BookingStatus,
    reason: Optional[str],
    current_user: User,
    db: AsyncSession,
) -> BookingResponse:
    booking = await get_booking_or_404(booking_id, db)
    is_booker, can_manage = role_in_booking(booking, current_user)

    if not (is_booker or can_manage):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized to update this booking")
    if not can_manage and new_status != BookingStatus.CANCELLED:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Guests can only cancel their bookings",
        )

    await change_booking_status(db, booking, new_status, current_user, reason)
    emails = cancellation_emails(booking, reason) if new_status == BookingStatus.CANCELLED else []

    await db.commit()
    await db.refresh(booking)
    queue_emails(emails)
    return BookingResponse.model_validate(booking)


@router.put("/{booking_id}/status", response_model=BookingResponse)
async def update_booking_status(
    booking_id: UUID,
    data: BookingStatusUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Host/admin: confirm, complete or cancel.
    Guest: cancel only.
    """
    return await _update_status(booking_id, BookingStatus(data.status), data.reason, current_user, db)


@router.put("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: UUID,
    data: Optional[BookingCancelRequest] = None,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    reason = data.reason if data else None
    return await _update_status(booking_id, BookingStatus.CANCELLED, reason, current_user, db)
