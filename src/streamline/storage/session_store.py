"""Session-continuity store

Maps a conversation to the opaque session/thread id a CLI provider handed
back, so the next turn can resume the provider's native history. The id is
stored and returned verbatim.
"""

from datetime import datetime
from typing import Optional

import redis.asyncio as redis
import structlog
from pydantic import BaseModel, Field

from .redis_store import get_redis

logger = structlog.get_logger(__name__)


class ProviderSession(BaseModel):
    """Stored session id with bookkeeping"""

    conversation_id: str
    provider: str
    session_id: str
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class SessionStore:
    """Redis-backed ``(conversation, provider) -> session id`` map"""

    def __init__(self, client: Optional[redis.Redis] = None, key_prefix: str = "session:"):
        self._client = client
        self.key_prefix = key_prefix

    @property
    def redis(self) -> redis.Redis:
        return self._client or get_redis()

    def _get_key(self, conversation_id: str, provider: str) -> str:
        return f"{self.key_prefix}{conversation_id}:{provider}"

    async def get(self, conversation_id: str, provider: str) -> Optional[ProviderSession]:
        try:
            raw = await self.redis.get(self._get_key(conversation_id, provider))
        except redis.RedisError as e:
            logger.error("Failed to read session id", conversation_id=conversation_id, provider=provider, error=str(e))
            raise
        if not raw:
            return None
        return ProviderSession.model_validate_json(raw)

    async def get_session_id(self, conversation_id: str, provider: str) -> Optional[str]:
        record = await self.get(conversation_id, provider)
        return record.session_id if record else None

    async def set_session_id(self, conversation_id: str, provider: str, session_id: str) -> ProviderSession:
        record = ProviderSession(conversation_id=conversation_id, provider=provider, session_id=session_id)
        try:
            await self.redis.set(self._get_key(conversation_id, provider), record.model_dump_json())
        except redis.RedisError as e:
            logger.error("Failed to store session id", conversation_id=conversation_id, provider=provider, error=str(e))
            raise
        logger.info("Session id stored", conversation_id=conversation_id, provider=provider, session_id=session_id)
        return record

    async def clear(self, conversation_id: str, provider: str) -> bool:
        deleted = await self.redis.delete(self._get_key(conversation_id, provider))
        return bool(deleted)
