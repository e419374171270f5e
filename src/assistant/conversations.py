"""Conversation store.

Conversations and their messages are persisted outside the orchestrator. The
chat loop reads at turn start (to resolve the conversation) and appends the
user and assistant messages at turn end. All reads and mutations are scoped to
the owning user; a conversation owned by someone else behaves as missing.
Every conversation has a non-empty owner, so guests have no stored history.

Concurrent turns on the same conversation are not serialized: messages are
appended in arrival order and metadata updates are last-write-wins.
"""

import asyncio
import logging
import uuid
from datetime import UTC, datetime
from typing import Literal, Protocol

from pydantic import Field
from redis import asyncio as aioredis

from src.assistant.models import CamelModel

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 60


def _now() -> datetime:
    return datetime.now(UTC)


class Conversation(CamelModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str = Field(..., min_length=1)
    title: str = "New conversation"
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class Message(CamelModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    conversation_id: str
    role: Literal["user", "assistant"]
    content: str
    created_at: datetime = Field(default_factory=_now)


def title_from_message(message: str) -> str:
    """Derive a conversation title from its first user message."""
    title = " ".join(message.split())[:TITLE_MAX_LENGTH]
    return title or "New conversation"


class ConversationStore(Protocol):
    """Persistence interface consumed by the chat loop and HTTP API."""

    async def create(self, owner_id: str, title: str) -> Conversation: ...

    async def get(self, conversation_id: str, owner_id: str) -> Conversation | None: ...

    async def append(
        self, conversation_id: str, role: Literal["user", "assistant"], content: str
    ) -> Message: ...

    async def messages(
        self, conversation_id: str, owner_id: str, limit: int | None = None
    ) -> list[Message]: ...

    async def list(self, owner_id: str, limit: int = 20) -> list[Conversation]: ...

    async def delete(self, conversation_id: str, owner_id: str) -> bool: ...

    async def rename(
        self, conversation_id: str, owner_id: str, title: str
    ) -> Conversation | None: ...


class InMemoryConversationStore:
    """Process-local conversation store for development and tests."""

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = {}
        self._lock = asyncio.Lock()

    async def create(self, owner_id: str, title: str) -> Conversation:
        conversation = Conversation(owner_id=owner_id, title=title)
        async with self._lock:
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
        return conversation

    async def get(self, conversation_id: str, owner_id: str) -> Conversation | None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None or conversation.owner_id != owner_id:
            return None
        return conversation

    async def append(
        self, conversation_id: str, role: Literal["user", "assistant"], content: str
    ) -> Message:
        message = Message(conversation_id=conversation_id, role=role, content=content)
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise KeyError(f"Conversation not found: {conversation_id}")
            self._messages[conversation_id].append(message)
            conversation.updated_at = message.created_at
        return message

    async def messages(
        self, conversation_id: str, owner_id: str, limit: int | None = None
    ) -> list[Message]:
        if await self.get(conversation_id, owner_id) is None:
            return []
        messages = self._messages.get(conversation_id, [])
        return list(messages[-limit:] if limit else messages)

    async def list(self, owner_id: str, limit: int = 20) -> list[Conversation]:
        owned = [c for c in self._conversations.values() if c.owner_id == owner_id]
        owned.sort(key=lambda c: c.updated_at, reverse=True)
        return owned[:limit]

    async def delete(self, conversation_id: str, owner_id: str) -> bool:
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None or conversation.owner_id != owner_id:
                return False
            del self._conversations[conversation_id]
            self._messages.pop(conversation_id, None)
        return True

    async def rename(
        self, conversation_id: str, owner_id: str, title: str
    ) -> Conversation | None:
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None or conversation.owner_id != owner_id:
                return None
            conversation.title = title
            conversation.updated_at = _now()
        return conversation


class RedisConversationStore:
    """Redis-backed conversation store.

    Layout (all keys under ``key_prefix``):
    - ``conversation:{id}``: conversation JSON
    - ``conversation:{id}:messages``: list of message JSON, arrival order
    - ``owner:{owner}:conversations``: sorted set of ids scored by updated_at
    """

    def __init__(
        self, redis_url: str, key_prefix: str = "assistant:", ttl_seconds: int | None = None
    ) -> None:
        """Initialize store.

        Args:
            redis_url: Redis connection URL
            key_prefix: Prefix for every key written by the store
            ttl_seconds: Optional idle expiry applied on each write
        """
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds
        self._redis: aioredis.Redis | None = None

    async def connect(self) -> None:
        """Open the Redis connection pool and verify connectivity."""
        self._redis = aioredis.from_url(self.redis_url, decode_responses=True)
        await self._redis.ping()
        logger.info("Conversation store connected", extra={"redis_url": self.redis_url})

    async def disconnect(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def health_check(self) -> bool:
        if self._redis is None:
            return False
        return bool(await self._redis.ping())

    @property
    def redis(self) -> aioredis.Redis:
        if self._redis is None:
            raise RuntimeError("Conversation store not connected")
        return self._redis

    def _conversation_key(self, conversation_id: str) -> str:
        return f"{self.key_prefix}conversation:{conversation_id}"

    def _messages_key(self, conversation_id: str) -> str:
        return f"{self.key_prefix}conversation:{conversation_id}:messages"

    def _owner_key(self, owner_id: str) -> str:
        return f"{self.key_prefix}owner:{owner_id}:conversations"

    async def _save(self, conversation: Conversation) -> None:
        pipe = self.redis.pipeline()
        pipe.set(self._conversation_key(conversation.id), conversation.model_dump_json())
        pipe.zadd(
            self._owner_key(conversation.owner_id),
            {conversation.id: conversation.updated_at.timestamp()},
        )
        if self.ttl_seconds:
            pipe.expire(self._conversation_key(conversation.id), self.ttl_seconds)
            pipe.expire(self._messages_key(conversation.id), self.ttl_seconds)
        await pipe.execute()

    async def _load(self, conversation_id: str) -> Conversation | None:
        raw = await self.redis.get(self._conversation_key(conversation_id))
        if raw is None:
            return None
        return Conversation.model_validate_json(raw)

    async def create(self, owner_id: str, title: str) -> Conversation:
        conversation = Conversation(owner_id=owner_id, title=title)
        await self._save(conversation)
        return conversation

    async def get(self, conversation_id: str, owner_id: str) -> Conversation | None:
        conversation = await self._load(conversation_id)
        if conversation is None or conversation.owner_id != owner_id:
            return None
        return conversation

    async def append(
        self, conversation_id: str, role: Literal["user", "assistant"], content: str
    ) -> Message:
        conversation = await self._load(conversation_id)
        if conversation is None:
            raise KeyError(f"Conversation not found: {conversation_id}")
        message = Message(conversation_id=conversation_id, role=role, content=content)
        await self.redis.rpush(self._messages_key(conversation_id), message.model_dump_json())
        conversation.updated_at = message.created_at
        await self._save(conversation)
        return message

    async def messages(
        self, conversation_id: str, owner_id: str, limit: int | None = None
    ) -> list[Message]:
        if await self.get(conversation_id, owner_id) is None:
            return []
        start = -limit if limit else 0
        raw = await self.redis.lrange(self._messages_key(conversation_id), start, -1)
        return [Message.model_validate_json(item) for item in raw]

    async def list(self, owner_id: str, limit: int = 20) -> list[Conversation]:
        ids = await self.redis.zrevrange(self._owner_key(owner_id), 0, limit - 1)
        conversations = []
        for conversation_id in ids:
            conversation = await self._load(conversation_id)
            if conversation is None:
                # Expired; drop the stale index entry
                await self.redis.zrem(self._owner_key(owner_id), conversation_id)
                continue
            conversations.append(conversation)
        return conversations

    async def delete(self, conversation_id: str, owner_id: str) -> bool:
        if await self.get(conversation_id, owner_id) is None:
            return False
        pipe = self.redis.pipeline()
        pipe.delete(self._conversation_key(conversation_id), self._messages_key(conversation_id))
        pipe.zrem(self._owner_key(owner_id), conversation_id)
        await pipe.execute()
        return True

    async def rename(
        self, conversation_id: str, owner_id: str, title: str
    ) -> Conversation | None:
        conversation = await self.get(conversation_id, owner_id)
        if conversation is None:
            return None
        conversation.title = title
        conversation.updated_at = _now()
        await self._save(conversation)
        return conversation
