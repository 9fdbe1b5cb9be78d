"""Redis-backed event journal

Append-only, indexed, replayable log of NormalizedEvents per conversation.
The producer appends while the turn runs; any number of readers replay from
an index and then tail live entries until the stream reaches a terminal
status. Keys:

- ``stream:{cid}:events``   list of JSON entries, list position is the index
- ``stream:{cid}:status``   streaming | completed | failed | aborted | timeout
- ``stream:{cid}:metadata`` JSON, includes ``started_at``
- ``stream:{cid}:abort`` / ``stream:{cid}:abort_skip_sync`` abort flags
"""

import asyncio
import json
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

import redis.asyncio as redis
import structlog

from streamline.config import Settings, get_settings
from streamline.models.events import EventType, NormalizedEvent
from streamline.models.session import TerminalStatus

from .redis_store import get_redis

logger = structlog.get_logger(__name__)

KEY_PREFIX = "stream:"


@dataclass(frozen=True)
class JournalEntry:
    """A NormalizedEvent as stored in the journal"""
    index: int
    event_id: str
    event: NormalizedEvent
    conversation_id: str

    def to_wire(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "event_id": self.event_id,
            "conversation_id": self.conversation_id,
            **self.event.to_dict(),
        }

    @classmethod
    def from_stored(cls, raw: str, index: int, conversation_id: str) -> "JournalEntry":
        data = json.loads(raw)
        event_id = data.pop("event_id", None) or ""
        return cls(index, event_id, NormalizedEvent.from_dict(data), conversation_id)


class EventJournal:
    """Per-conversation event log over Redis lists plus pub/sub notifications"""

    def __init__(self, client: Optional[redis.Redis] = None, settings: Optional[Settings] = None):
        self._client = client
        self.settings = settings or get_settings()

    @property
    def redis(self) -> redis.Redis:
        return self._client or get_redis()

    @staticmethod
    def key(conversation_id: str) -> str:
        return f"{KEY_PREFIX}{conversation_id}"

    @staticmethod
    def channel(conversation_id: str) -> str:
        return f"{KEY_PREFIX}{conversation_id}"

    async def start(self, conversation_id: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Mark a stream as running and drop events and abort flags left from a previous turn"""
        key = self.key(conversation_id)
        ttl = self.settings.stream_ttl_streaming
        payload = {**(metadata or {}), "started_at": datetime.utcnow().isoformat()}
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(f"{key}:status", TerminalStatus.RUNNING.value)
                pipe.set(f"{key}:metadata", json.dumps(payload))
                pipe.delete(f"{key}:events", f"{key}:abort", f"{key}:abort_skip_sync")
                pipe.expire(f"{key}:status", ttl)
                pipe.expire(f"{key}:metadata", ttl)
                await pipe.execute()
        except redis.RedisError as e:
            logger.error("Failed to start stream", conversation_id=conversation_id, error=str(e))
            raise
        logger.info("Stream started", conversation_id=conversation_id)

    async def append(self, conversation_id: str, event: NormalizedEvent) -> JournalEntry:
        """Store an event and notify subscribers. Single writer per conversation."""
        key = self.key(conversation_id)
        event_id = uuid.uuid4().hex
        stored = json.dumps({"event_id": event_id, **event.to_dict()})

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.rpush(f"{key}:events", stored)
                pipe.expire(f"{key}:events", self.settings.stream_ttl_streaming)
                length, _ = await pipe.execute()
            entry = JournalEntry(length - 1, event_id, event, conversation_id)
            # Publish only after the list holds the entry
            await self.redis.publish(self.channel(conversation_id), json.dumps(entry.to_wire()))
        except redis.RedisError as e:
            logger.error(
                "Failed to append event",
                conversation_id=conversation_id,
                event_type=event.type.value,
                error=str(e),
            )
            raise

        if event.type is not EventType.TEXT_DELTA and event.type is not EventType.THINKING_DELTA:
            logger.debug(
                "Event appended",
                conversation_id=conversation_id,
                index=entry.index,
                event_type=event.type.value,
            )
        return entry

    async def complete(self, conversation_id: str, status: TerminalStatus = TerminalStatus.COMPLETED) -> None:
        """Record a terminal status and shorten key lifetimes"""
        if status is TerminalStatus.RUNNING:
            raise ValueError("complete() needs a terminal status")
        await self._set_terminal(conversation_id, status)
        await self.redis.publish(
            self.channel(conversation_id),
            json.dumps({"type": "stream_completed", "status": status.value}),
        )
        logger.info("Stream completed", conversation_id=conversation_id, status=status.value)

    async def fail(self, conversation_id: str, error: str) -> None:
        """Append an error event, then mark the stream failed"""
        await self.append(conversation_id, NormalizedEvent.error(error))
        await self._set_terminal(conversation_id, TerminalStatus.FAILED)
        await self.redis.publish(
            self.channel(conversation_id),
            json.dumps({"type": "stream_failed", "error": error}),
        )
        logger.warning("Stream failed", conversation_id=conversation_id, error=error)

    async def _set_terminal(self, conversation_id: str, status: TerminalStatus) -> None:
        key = self.key(conversation_id)
        ttl = self.settings.stream_ttl_completed
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(f"{key}:status", status.value)
                pipe.expire(f"{key}:status", ttl)
                pipe.expire(f"{key}:events", ttl)
                pipe.expire(f"{key}:metadata", ttl)
                await pipe.execute()
        except redis.RedisError as e:
            logger.error("Failed to set stream status", conversation_id=conversation_id, error=str(e))
            raise

    async def get_status(self, conversation_id: str) -> Optional[str]:
        return await self.redis.get(f"{self.key(conversation_id)}:status")

    async def is_streaming(self, conversation_id: str) -> bool:
        return await self.get_status(conversation_id) == TerminalStatus.RUNNING.value

    async def get_metadata(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        data = await self.redis.get(f"{self.key(conversation_id)}:metadata")
        return json.loads(data) if data else None

    async def event_count(self, conversation_id: str) -> int:
        return int(await self.redis.llen(f"{self.key(conversation_id)}:events"))

    async def entries(self, conversation_id: str, from_index: int = 0) -> List[JournalEntry]:
        """Stored entries with index >= from_index"""
        from_index = max(from_index, 0)
        raw = await self.redis.lrange(f"{self.key(conversation_id)}:events", from_index, -1)
        return [
            JournalEntry.from_stored(item, from_index + offset, conversation_id)
            for offset, item in enumerate(raw)
        ]

    async def last_entry(self, conversation_id: str) -> Optional[JournalEntry]:
        key = f"{self.key(conversation_id)}:events"
        length = await self.redis.llen(key)
        if not length:
            return None
        raw = await self.redis.lindex(key, -1)
        return JournalEntry.from_stored(raw, length - 1, conversation_id) if raw else None

    async def read(self, conversation_id: str, from_index: int = 0) -> AsyncIterator[Dict[str, Any]]:
        """Replay stored entries, then tail live ones until the stream ends.

        Yields wire dicts: journal entries, ``keepalive`` markers during quiet
        periods, ``timeout`` after prolonged inactivity (the reader should
        reconnect), and a final ``stream_status``.
        """
        loop = asyncio.get_running_loop()
        index = max(from_index, 0)
        log = logger.bind(conversation_id=conversation_id)

        status = await self.get_status(conversation_id)
        if status is None:
            log.info("No stream to read", from_index=from_index)
            yield self._status_marker(conversation_id, None, index - 1)
            return

        last_activity = loop.time()
        last_keepalive = last_activity
        replayed = 0

        while True:
            # Status before events: anything appended before completion is already in the list
            status = await self.get_status(conversation_id)
            new_entries = await self.entries(conversation_id, index)
            for entry in new_entries:
                yield entry.to_wire()
            index += len(new_entries)
            if replayed == 0 and new_entries:
                replayed = len(new_entries)
                log.debug("Replayed stored events", from_index=from_index, count=replayed)

            if status != TerminalStatus.RUNNING.value:
                yield self._status_marker(conversation_id, status, index - 1)
                return

            now = loop.time()
            if new_entries:
                last_activity = now
                last_keepalive = now
            elif now - last_activity >= self.settings.reader_inactivity_timeout:
                log.warning("Reader timed out waiting for events", next_index=index)
                yield {"type": "timeout", "conversation_id": conversation_id, "next_index": index}
                return
            elif now - last_keepalive >= self.settings.reader_keepalive_interval:
                last_keepalive = now
                yield {"type": "keepalive"}

            await asyncio.sleep(self.settings.reader_poll_interval)

    @staticmethod
    def _status_marker(conversation_id: str, status: Optional[str], final_index: int) -> Dict[str, Any]:
        return {
            "type": "stream_status",
            "status": status or "not_found",
            "final_index": final_index,
            "conversation_id": conversation_id,
        }

    async def set_abort(self, conversation_id: str, skip_sync: bool = False) -> None:
        key = self.key(conversation_id)
        ttl = self.settings.stream_ttl_streaming
        await self.redis.set(f"{key}:abort", "true", ex=ttl)
        if skip_sync:
            await self.redis.set(f"{key}:abort_skip_sync", "true", ex=ttl)
        logger.info("Abort flag set", conversation_id=conversation_id, skip_sync=skip_sync)

    async def is_abort_requested(self, conversation_id: str) -> bool:
        return await self.redis.get(f"{self.key(conversation_id)}:abort") == "true"

    async def should_skip_sync(self, conversation_id: str) -> bool:
        return await self.redis.get(f"{self.key(conversation_id)}:abort_skip_sync") == "true"

    async def clear_abort(self, conversation_id: str) -> None:
        key = self.key(conversation_id)
        await self.redis.delete(f"{key}:abort", f"{key}:abort_skip_sync")

    async def cleanup(self, conversation_id: str) -> None:
        """Remove every key of a conversation's stream"""
        key = self.key(conversation_id)
        await self.redis.delete(
            f"{key}:events",
            f"{key}:status",
            f"{key}:metadata",
            f"{key}:abort",
            f"{key}:abort_skip_sync",
        )
