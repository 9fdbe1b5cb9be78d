"""
Unit tests for the session-continuity store
"""
from unittest.mock import AsyncMock

import pytest
import redis.asyncio as redis

from streamline.storage.session_store import SessionStore


class TestSessionStore:

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, session_store):
        assert await session_store.get_session_id("conv-1", "codex") is None

    @pytest.mark.asyncio
    async def test_round_trip_is_verbatim(self, session_store):
        session_id = "0199a213-81c0-7800-8aa1-bbab2a035a53"

        record = await session_store.set_session_id("conv-1", "codex", session_id)

        assert record.session_id == session_id
        assert await session_store.get_session_id("conv-1", "codex") == session_id

    @pytest.mark.asyncio
    async def test_keyed_by_provider(self, session_store):
        await session_store.set_session_id("conv-1", "codex", "thread-1")
        await session_store.set_session_id("conv-1", "claude_code", "sess-1")

        assert await session_store.get_session_id("conv-1", "codex") == "thread-1"
        assert await session_store.get_session_id("conv-1", "claude_code") == "sess-1"
        assert await session_store.get_session_id("conv-2", "codex") is None

    @pytest.mark.asyncio
    async def test_overwrite_and_clear(self, session_store):
        await session_store.set_session_id("conv-1", "codex", "thread-1")
        await session_store.set_session_id("conv-1", "codex", "thread-2")

        record = await session_store.get("conv-1", "codex")
        assert record.session_id == "thread-2"
        assert record.conversation_id == "conv-1"

        assert await session_store.clear("conv-1", "codex")
        assert await session_store.get_session_id("conv-1", "codex") is None

    @pytest.mark.asyncio
    async def test_uses_global_client_when_none_given(self, redis_client):
        store = SessionStore(key_prefix="test-session:")

        await store.set_session_id("conv-1", "codex", "thread-1")

        assert await redis_client.exists("test-session:conv-1:codex")

    @pytest.mark.asyncio
    async def test_redis_errors_propagate(self):
        client = AsyncMock()
        client.get.side_effect = redis.ConnectionError("down")
        store = SessionStore(client)

        with pytest.raises(redis.ConnectionError):
            await store.get_session_id("conv-1", "codex")
