"""
services/messaging/service.py
Conversation and message persistence shared by the REST router and the
WebSocket gateway. Failures raise HTTPException; the gateway turns the
detail into an error ack.
"""

import math
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from shared.models.models import (
    Booking,
    Conversation,
    Message,
    Property,
    User,
    conversation_participants,
)
from shared.schemas.schemas import (
    ConversationCreateRequest,
    ConversationResponse,
    MessageListResponse,
    MessagePagination,
    MessageResponse,
    UserSummary,
)

DEFAULT_TITLE = "New Conversation"


# ── Lookups ───────────────────────────────────────────────────

async def get_conversation_or_404(db: AsyncSession, conversation_id: UUID) -> Conversation:
    conversation = await db.scalar(
        select(Conversation)
        .options(selectinload(Conversation.participants))
        .where(Conversation.id == conversation_id)
    )
    if not conversation:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conversation


def ensure_participant(conversation: Conversation, user_id: UUID) -> None:
    if not any(p.id == user_id for p in conversation.participants):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not a participant in this conversation",
        )


async def get_participant_conversation(
    db: AsyncSession, conversation_id: UUID, user_id: UUID
) -> Conversation:
    conversation = await get_conversation_or_404(db, conversation_id)
    ensure_participant(conversation, user_id)
    return conversation


async def user_conversation_ids(db: AsyncSession, user_id: UUID) -> List[UUID]:
    result = await db.execute(
        select(conversation_participants.c.conversation_id).where(
            conversation_participants.c.user_id == user_id
        )
    )
    return list(result.scalars())


def message_response(message: Message, sender: Optional[User] = None) -> MessageResponse:
    """Build from columns; the sender relationship is only read when passed in."""
    return MessageResponse(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        content=message.content,
        read_at=message.read_at,
        created_at=message.created_at,
        sender=UserSummary.model_validate(sender) if sender is not None else None,
    )


# ── Conversations ─────────────────────────────────────────────

async def create_conversation(
    db: AsyncSession, creator: User, data: ConversationCreateRequest
) -> Conversation:
    """
    Create a conversation with the creator plus the requested participants,
    optionally linked to a property or a booking (one conversation per booking).
    """
    if data.property_id and not await db.scalar(
        select(Property.id).where(Property.id == data.property_id)
    ):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Property not found")

    if data.booking_id:
        if not await db.scalar(select(Booking.id).where(Booking.id == data.booking_id)):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
        existing = await db.scalar(
            select(Conversation.id).where(Conversation.booking_id == data.booking_id)
        )
        if existing:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="A conversation for this booking already exists",
            )

    wanted_ids = {pid for pid in data.participant_ids if pid != creator.id}
    participants = [creator]
    if wanted_ids:
        result = await db.execute(select(User).where(User.id.in_(wanted_ids)))
        found = list(result.scalars())
        if len(found) != len(wanted_ids):
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="One or more participants not found",
            )
        participants.extend(found)

    conversation = Conversation(
        title=data.title or DEFAULT_TITLE,
        property_id=data.property_id,
        booking_id=data.booking_id,
        participants=participants,
    )
    db.add(conversation)
    await db.flush()

    if data.initial_message:
        db.add(
            Message(
                conversation_id=conversation.id,
                sender_id=creator.id,
                content=data.initial_message,
            )
        )

    await db.commit()
    return await get_conversation_or_404(db, conversation.id)


async def conversation_response(
    db: AsyncSession,
    conversation: Conversation,
    user_id: UUID,
    online_ids: Optional[List[UUID]] = None,
) -> ConversationResponse:
    last = await db.scalar(
        select(Message)
        .options(selectinload(Message.sender))
        .where(Message.conversation_id == conversation.id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(1)
    )
    unread = await db.scalar(
        select(func.count(Message.id)).where(
            Message.conversation_id == conversation.id,
            Message.sender_id != user_id,
            Message.read_at.is_(None),
        )
    )
    return ConversationResponse(
        id=conversation.id,
        title=conversation.title,
        property_id=conversation.property_id,
        booking_id=conversation.booking_id,
        participants=[UserSummary.model_validate(p) for p in conversation.participants],
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
        last_message=message_response(last, last.sender) if last else None,
        unread_count=unread or 0,
        online_participant_ids=online_ids or [],
    )


async def list_conversations(db: AsyncSession, user_id: UUID) -> List[ConversationResponse]:
    result = await db.execute(
        select(Conversation)
        .options(selectinload(Conversation.participants))
        .join(
            conversation_participants,
            conversation_participants.c.conversation_id == Conversation.id,
        )
        .where(conversation_participants.c.user_id == user_id)
        .order_by(Conversation.updated_at.desc())
    )
    return [await conversation_response(db, c, user_id) for c in result.scalars().unique()]


# ── Messages ──────────────────────────────────────────────────

async def send_message(
    db: AsyncSession, sender: User, conversation_id: UUID, content: str
) -> tuple[Message, Conversation]:
    """Persist a message from a participant and bump the conversation."""
    conversation = await get_participant_conversation(db, conversation_id, sender.id)
    if not content or not content.strip():
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Message content cannot be blank",
        )

    message = Message(conversation_id=conversation.id, sender_id=sender.id, content=content)
    db.add(message)
    conversation.updated_at = datetime.now(timezone.utc)

    await db.commit()
    await db.refresh(message)
    return message, conversation


async def get_messages(
    db: AsyncSession, user_id: UUID, conversation_id: UUID, page: int, limit: int
) -> MessageListResponse:
    await get_participant_conversation(db, conversation_id, user_id)

    total = await db.scalar(
        select(func.count(Message.id)).where(Message.conversation_id == conversation_id)
    ) or 0
    result = await db.execute(
        select(Message)
        .options(selectinload(Message.sender))
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return MessageListResponse(
        messages=[message_response(m, m.sender) for m in result.scalars()],
        pagination=MessagePagination(
            page=page,
            limit=limit,
            total_count=total,
            total_pages=math.ceil(total / limit) if total else 0,
        ),
    )


async def mark_as_read(db: AsyncSession, user_id: UUID, conversation_id: UUID) -> int:
    """Stamp read_at on every unread message from other senders. Returns the count."""
    await get_participant_conversation(db, conversation_id, user_id)
    result = await db.execute(
        update(Message)
        .where(
            Message.conversation_id == conversation_id,
            Message.sender_id != user_id,
            Message.read_at.is_(None),
        )
        .values(read_at=datetime.now(timezone.utc))
    )
    await db.commit()
    return result.rowcount or 0


async def unread_count(db: AsyncSession, user_id: UUID) -> int:
    conversation_ids = select(conversation_participants.c.conversation_id).where(
        conversation_participants.c.user_id == user_id
    )
    return await db.scalar(
        select(func.count(Message.id)).where(
            Message.conversation_id.in_(conversation_ids),
            Message.sender_id != user_id,
            Message.read_at.is_(None),
        )
    ) or 0
