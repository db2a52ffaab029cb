"""
services/messaging/gateway.py
Real-time messaging over a native WebSocket at /messaging/ws.

Frames in both directions are JSON objects:
    client → server  {"event": "createMessage", "data": {...}}
    server → client  {"event": "createMessage", "ack": {...}}     (reply)
                     {"event": "newMessage", "data": {...}}       (push)

Sockets join rooms ("user:{id}", "conversation:{id}"). Every emit is
delivered to local sockets and published on a redis channel so other
app instances deliver it to theirs. Presence is a per-user connection
counter in a redis hash.
"""

import asyncio
import contextlib
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set
from uuid import UUID

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError
from redis.exceptions import RedisError
from sqlalchemy import select
from tenacity import before_sleep_log, retry, retry_if_exception_type, wait_exponential

from config.database import get_db_context
from config.redis_client import get_redis
from services.messaging import service
from shared.middleware.auth import authenticate_token
from shared.models.models import Conversation, Message, User
from shared.schemas.schemas import MessageCreateRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messaging", tags=["Messaging"])

PRESENCE_KEY = "messaging:presence"
EVENTS_CHANNEL = "messaging:events"


def user_room(user_id) -> str:
    return f"user:{user_id}"


def conversation_room(conversation_id) -> str:
    return f"conversation:{conversation_id}"


# ── Connection Manager ────────────────────────────────────────

class ConnectionManager:
    """Local socket registry plus the redis presence/fan-out backplane."""

    def __init__(self) -> None:
        self.instance_id = uuid.uuid4().hex
        self._sockets: Dict[str, WebSocket] = {}
        self._users: Dict[str, UUID] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()
        self._listener: Optional[asyncio.Task] = None

    # sessions
    async def connect(self, ws: WebSocket, user_id: UUID, conversation_ids: Iterable[UUID]) -> str:
        sid = uuid.uuid4().hex
        async with self._lock:
            self._sockets[sid] = ws
            self._users[sid] = user_id
            for room in [user_room(user_id)] + [conversation_room(c) for c in conversation_ids]:
                self._rooms.setdefault(room, set()).add(sid)
        await get_redis().hincrby(PRESENCE_KEY, str(user_id), 1)
        logger.info(f"Socket {sid} connected for user {user_id}")
        return sid

    async def disconnect(self, sid: str) -> None:
        async with self._lock:
            self._sockets.pop(sid, None)
            user_id = self._users.pop(sid, None)
            for room in list(self._rooms):
                members = self._rooms[room]
                members.discard(sid)
                if not members:
                    self._rooms.pop(room, None)
        if user_id is None:
            return

        redis = get_redis()
        remaining = await redis.hincrby(PRESENCE_KEY, str(user_id), -1)
        if remaining <= 0:
            await redis.hdel(PRESENCE_KEY, str(user_id))
        logger.info(f"Socket {sid} disconnected for user {user_id}")

    def user_for(self, sid: str) -> Optional[UUID]:
        return self._users.get(sid)

    def rooms_of(self, sid: str) -> Set[str]:
        return {room for room, members in self._rooms.items() if sid in members}

    async def join(self, sid: str, room: str) -> None:
        async with self._lock:
            if sid in self._sockets:
                self._rooms.setdefault(room, set()).add(sid)

    async def leave(self, sid: str, room: str) -> None:
        async with self._lock:
            members = self._rooms.get(room)
            if members:
                members.discard(sid)
                if not members:
                    self._rooms.pop(room, None)

    # presence
    async def online_user_ids(self, user_ids: List[UUID]) -> List[UUID]:
        if not user_ids:
            return []
        counts = await get_redis().hmget(PRESENCE_KEY, [str(u) for u in user_ids])
        return [u for u, c in zip(user_ids, counts) if c and int(c) > 0]

    # fan-out
    async def emit(self, room: str, event: str, data: Any, skip_sid: Optional[str] = None) -> None:
        """Deliver to local sockets in the room and publish for other instances."""
        await self._deliver(room, event, data, skip_sid)
        payload = json.dumps(
            {
                "origin": self.instance_id,
                "room": room,
                "event": event,
                "data": data,
                "skip_sid": skip_sid,
            },
            default=str,
        )
        try:
            await get_redis().publish(EVENTS_CHANNEL, payload)
        except RedisError as e:
            logger.warning(f"Publishing {event} to {room} failed: {e}")

    async def _deliver(self, room: str, event: str, data: Any, skip_sid: Optional[str]) -> None:
        async with self._lock:
            targets = [
                (sid, self._sockets[sid])
                for sid in self._rooms.get(room, set())
                if sid != skip_sid and sid in self._sockets
            ]
        dead = []
        for sid, ws in targets:
            try:
                await ws.send_json({"event": event, "data": data})
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.warning(f"Dropping socket {sid}: {e}")
                dead.append(sid)
        for sid in dead:
            await self.disconnect(sid)

    async def _on_published(self, raw: Any) -> None:
        try:
            payload = json.loads(raw)
            if payload.get("origin") == self.instance_id:
                return
            room, event, data = payload["room"], payload["event"], payload["data"]
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning(f"Ignoring malformed fan-out message: {e}")
            return
        await self._deliver(room, event, data, payload.get("skip_sid"))

    @retry(
        wait=wait_exponential(multiplier=0.5, max=30),
        retry=retry_if_exception_type(RedisError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )
    async def _listen(self) -> None:
        # Resubscribes with backoff whenever the redis connection drops
        pubsub = get_redis().pubsub()
        try:
            await pubsub.subscribe(EVENTS_CHANNEL)
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                await self._on_published(message["data"])
        finally:
            with contextlib.suppress(RedisError):
                await pubsub.aclose()

    def start_listener(self) -> None:
        if self._listener is None or self._listener.done():
            self._listener = asyncio.create_task(self._listen(), name="messaging-fanout")
            logger.info(f"Messaging fan-out listener started ({self.instance_id})")

    async def stop_listener(self) -> None:
        if self._listener is None:
            return
        self._listener.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._listener
        self._listener = None


manager = ConnectionManager()


# ── Broadcast helpers (shared with the REST router) ───────────

async def broadcast_new_message(
    message: Message, conversation: Conversation, sender: User
) -> dict:
    payload = service.message_response(message, sender).model_dump(mode="json")
    await manager.emit(conversation_room(conversation.id), "newMessage", payload)
    for participant in conversation.participants:
        if participant.id == sender.id:
            continue
        await manager.emit(
            user_room(participant.id),
            "notification",
            {
                "type": "newMessage",
                "conversation_id": str(conversation.id),
                "message": payload,
            },
        )
    return payload


async def broadcast_messages_read(conversation_id: UUID, user_id: UUID, count: int) -> None:
    await manager.emit(
        conversation_room(conversation_id),
        "messagesRead",
        {"conversation_id": str(conversation_id), "user_id": str(user_id), "count": count},
    )


# ── Event Handlers ────────────────────────────────────────────

def _conversation_id(data: dict) -> UUID:
    try:
        return UUID(str(data["conversation_id"]))
    except (KeyError, ValueError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid conversation_id")


async def _load_user(db, user_id: UUID) -> User:
    user = await db.scalar(select(User).where(User.id == user_id))
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return user


async def on_create_message(sid: str, user_id: UUID, data: dict) -> dict:
    request = MessageCreateRequest(**data)
    async with get_db_context() as db:
        sender = await _load_user(db, user_id)
        message, conversation = await service.send_message(
            db, sender, request.conversation_id, request.content
        )
        await manager.join(sid, conversation_room(conversation.id))
        payload = await broadcast_new_message(message, conversation, sender)
    return {"success": True, "message": payload}


async def on_mark_as_read(sid: str, user_id: UUID, data: dict) -> dict:
    conversation_id = _conversation_id(data)
    async with get_db_context() as db:
        count = await service.mark_as_read(db, user_id, conversation_id)
    await broadcast_messages_read(conversation_id, user_id, count)
    return {"success": True, "count": count}


async def on_typing(sid: str, user_id: UUID, data: dict) -> dict:
    conversation_id = _conversation_id(data)
    async with get_db_context() as db:
        await service.get_participant_conversation(db, conversation_id, user_id)
    await manager.emit(
        conversation_room(conversation_id),
        "userTyping",
        {
            "conversation_id": str(conversation_id),
            "user_id": str(user_id),
            "is_typing": bool(data.get("is_typing", True)),
        },
        skip_sid=sid,
    )
    return {"success": True}


async def on_join_conversation(sid: str, user_id: UUID, data: dict) -> dict:
    conversation_id = _conversation_id(data)
    async with get_db_context() as db:
        await service.get_participant_conversation(db, conversation_id, user_id)
    await manager.join(sid, conversation_room(conversation_id))
    return {"success": True, "conversation_id": str(conversation_id)}


async def on_leave_conversation(sid: str, user_id: UUID, data: dict) -> dict:
    conversation_id = _conversation_id(data)
    await manager.leave(sid, conversation_room(conversation_id))
    return {"success": True, "conversation_id": str(conversation_id)}


EVENT_HANDLERS: Dict[str, Callable[[str, UUID, dict], Awaitable[dict]]] = {
    "createMessage": on_create_message,
    "markAsRead": on_mark_as_read,
    "typing": on_typing,
    "joinConversation": on_join_conversation,
    "leaveConversation": on_leave_conversation,
}


async def handle_event(sid: str, user_id: UUID, event: Optional[str], data: Any) -> dict:
    """Run one inbound event and return its ack."""
    handler = EVENT_HANDLERS.get(event or "")
    if handler is None:
        return {"error": f"Unknown event '{event}'"}
    if not isinstance(data, dict):
        return {"error": "Event data must be an object"}
    try:
        return await handler(sid, user_id, data)
    except HTTPException as e:
        return {"error": e.detail}
    except ValidationError as e:
        return {"error": e.errors()[0]["msg"] if e.errors() else "Invalid payload"}


# ── Endpoint ──────────────────────────────────────────────────

def _extract_token(websocket: WebSocket) -> Optional[str]:
    token = websocket.query_params.get("token")
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value:
        return value
    return None


@router.websocket("/ws")
async def messaging_socket(websocket: WebSocket):
    async with get_db_context() as db:
        user = await authenticate_token(_extract_token(websocket), db, get_redis())
        conversation_ids = await service.user_conversation_ids(db, user.id) if user else []

    await websocket.accept()
    if not user:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    sid = await manager.connect(websocket, user.id, conversation_ids)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                await websocket.send_json({"event": None, "ack": {"error": "Invalid JSON"}})
                continue
            if not isinstance(frame, dict):
                await websocket.send_json({"event": None, "ack": {"error": "Invalid frame"}})
                continue
            event = frame.get("event")
            ack = await handle_event(sid, user.id, event, frame.get("data") or {})
            await websocket.send_json({"event": event, "ack": ack})
    except WebSocketDisconnect:
        logger.debug(f"Socket {sid} closed by client")
    finally:
        await manager.disconnect(sid)
