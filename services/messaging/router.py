"""
services/messaging/router.py
Conversations and messages over REST. New messages and read receipts
are also pushed to connected sockets through the gateway.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.messaging import service
from services.messaging.gateway import broadcast_messages_read, broadcast_new_message, manager
from shared.middleware.auth import get_current_user
from shared.models.models import User
from shared.schemas.schemas import (
    ConversationCreateRequest,
    ConversationResponse,
    CountResponse,
    MessageCreateRequest,
    MessageListResponse,
    MessageResponse,
)

router = APIRouter(prefix="/messaging", tags=["Messaging"])


# ── Conversations ─────────────────────────────────────────────

@router.post("/conversations", response_model=ConversationResponse, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    data: ConversationCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Start a conversation. The caller is always a participant.
    A booking can have at most one conversation.
    """
    conversation = await service.create_conversation(db, current_user, data)
    return await service.conversation_response(db, conversation, current_user.id)


@router.get("/conversations", response_model=List[ConversationResponse])
async def list_conversations(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await service.list_conversations(db, current_user.id)


@router.get("/conversations/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    conversation = await service.get_participant_conversation(db, conversation_id, current_user.id)
    online = await manager.online_user_ids([p.id for p in conversation.participants])
    return await service.conversation_response(db, conversation, current_user.id, online)


@router.get("/conversations/{conversation_id}/messages", response_model=MessageListResponse)
async def get_conversation_messages(
    conversation_id: UUID,
    page: int = Query(1, ge=1),
    limit: int = Query(settings.MESSAGES_PAGE_SIZE, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Messages newest first."""
    return await service.get_messages(db, current_user.id, conversation_id, page, limit)


@router.post("/conversations/{conversation_id}/read", response_model=CountResponse)
async def mark_conversation_read(
    conversation_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    count = await service.mark_as_read(db, current_user.id, conversation_id)
    await broadcast_messages_read(conversation_id, current_user.id, count)
    return CountResponse(count=count)


# ── Messages ──────────────────────────────────────────────────

@router.post("/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    data: MessageCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    message, conversation = await service.send_message(
        db, current_user, data.conversation_id, data.content
    )
    await broadcast_new_message(message, conversation, current_user)
    return service.message_response(message, current_user)


@router.get("/unread-count", response_model=CountResponse)
async def unread_count(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return CountResponse(count=await service.unread_count(db, current_user.id))
