"""Journal stream consumer

Reads a conversation's SSE stream, reconnecting from the last processed
index whenever the server ends a read with ``timeout`` or the connection
drops. Events already handled are recognised by ``event_id`` and skipped.
"""

import asyncio
import json
from collections import deque
from typing import Any, AsyncIterator, Callable, Deque, Dict, Optional, Set

import httpx
import structlog

from streamline.config import get_settings
from streamline.models.events import NormalizedEvent
from streamline.providers.supervisor import AbortGate

logger = structlog.get_logger(__name__)

# Server-side markers that are not journal entries
CONTROL_TYPES = {"stream_status", "timeout", "keepalive"}


class EventDeduplicator:
    """Remembers the most recent event ids"""

    def __init__(self, window: int = 200):
        self.window = window
        self._order: Deque[str] = deque()
        self._seen: Set[str] = set()

    def seen(self, event_id: Optional[str]) -> bool:
        """True if the id was already recorded; records it otherwise"""
        if not event_id:
            return False
        if event_id in self._seen:
            logger.debug("Skipping duplicate event", event_id=event_id)
            return True
        self._seen.add(event_id)
        self._order.append(event_id)
        while len(self._order) > self.window:
            self._seen.discard(self._order.popleft())
        return False

    def __len__(self) -> int:
        return len(self._order)


class ToolProgressTracker:
    """Client view of tool progress, for deciding when an abort may be sent"""

    def __init__(self) -> None:
        self._gate = AbortGate()

    @property
    def tool_in_progress(self) -> bool:
        return self._gate.tool_in_progress

    @property
    def waiting_for_tool_results(self) -> Set[str]:
        return set(self._gate.waiting_for_results)

    @property
    def abort_pending(self) -> bool:
        return self._gate.pending

    @property
    def skip_sync(self) -> bool:
        return self._gate.skip_sync

    def request_abort(self) -> bool:
        """True when the abort can be sent now, otherwise it is deferred"""
        return self._gate.request()

    def observe(self, wire_event: Dict[str, Any]) -> bool:
        """Feed a received event. True when a deferred abort should now be sent."""
        if wire_event.get("type") in CONTROL_TYPES:
            return False
        return self._gate.observe(NormalizedEvent.from_dict(wire_event))


class StreamConsumer:
    """Follows one conversation's journal over HTTP"""

    def __init__(
        self,
        base_url: str,
        conversation_id: str,
        api_prefix: Optional[str] = None,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        dedup_window: Optional[int] = None,
        max_network_retries: int = 3,
        not_found_retries: int = 5,
        retry_delay: float = 0.2,
    ):
        settings = get_settings()
        self.base_url = base_url.rstrip("/")
        self.conversation_id = conversation_id
        self.api_prefix = settings.api_prefix if api_prefix is None else api_prefix
        self.client_factory = client_factory or self._default_client
        self.dedup = EventDeduplicator(dedup_window or settings.dedup_window)
        self.max_network_retries = max_network_retries
        self.not_found_retries = not_found_retries
        self.retry_delay = retry_delay
        self.next_index = 0
        self.final_status: Optional[str] = None

    @staticmethod
    def _default_client() -> httpx.AsyncClient:
        settings = get_settings()
        # Reads stay open until the server ends the stream
        return httpx.AsyncClient(timeout=httpx.Timeout(settings.http_connect_timeout, read=None))

    def _url(self, suffix: str) -> str:
        return f"{self.base_url}{self.api_prefix}/conversations/{self.conversation_id}/{suffix}"

    async def status(self) -> Dict[str, Any]:
        async with self.client_factory() as client:
            response = await client.get(self._url("stream/status"))
            response.raise_for_status()
            return response.json()

    async def abort(self, skip_sync: bool = False) -> Dict[str, Any]:
        async with self.client_factory() as client:
            response = await client.post(self._url("abort"), json={"skip_sync": skip_sync})
            response.raise_for_status()
            return response.json()

    async def events(self, from_index: int = 0, replay: bool = False) -> AsyncIterator[Dict[str, Any]]:
        """Yield journal entries until the stream reports a terminal status.

        With ``replay`` the stream is read from the start and every entry
        that already existed when reading began carries ``replayed=True``.
        The final ``stream_status`` marker is yielded as well.
        """
        replay_until = -1
        if replay:
            from_index = 0
            replay_until = (await self.status()).get("event_count", 0)
        self.next_index = from_index
        self.final_status = None
        network_retries = 0
        not_found = 0

        async with self.client_factory() as client:
            while True:
                try:
                    async with client.stream(
                        "GET", self._url("stream"), params={"from_index": self.next_index}
                    ) as response:
                        response.raise_for_status()
                        async for line in response.aiter_lines():
                            if not line.startswith("data: "):
                                continue
                            try:
                                event = json.loads(line[6:])
                            except json.JSONDecodeError:
                                logger.warning("Unparseable stream line", line=line[:200])
                                continue

                            network_retries = 0
                            if "index" in event:
                                self.next_index = event["index"] + 1
                            if self.dedup.seen(event.get("event_id")):
                                continue

                            event_type = event.get("type")
                            if event_type == "keepalive":
                                continue
                            if event_type == "timeout":
                                self.next_index = event.get("next_index", self.next_index)
                                logger.info("Read timed out, reconnecting", next_index=self.next_index)
                                break
                            if event_type == "stream_status":
                                if event.get("status") == "not_found" and not_found < self.not_found_retries:
                                    # The producer may not have opened the stream yet
                                    not_found += 1
                                    await asyncio.sleep(self.retry_delay)
                                    break
                                self.final_status = event.get("status")
                                yield event
                                return

                            if event.get("index", replay_until) < replay_until:
                                event["replayed"] = True
                            yield event
                        else:
                            network_retries += 1
                            if network_retries > self.max_network_retries:
                                logger.error("Stream keeps closing without a status", next_index=self.next_index)
                                return
                            logger.info("Stream closed without status, reconnecting", next_index=self.next_index)
                except httpx.TransportError as e:
                    if network_retries >= self.max_network_retries:
                        logger.error("Giving up on stream", error=str(e), retries=network_retries)
                        raise
                    delay = min(self.retry_delay * 2 ** network_retries, 8.0)
                    network_retries += 1
                    logger.warning("Stream connection error, retrying", error=str(e), delay=delay)
                    await asyncio.sleep(delay)
