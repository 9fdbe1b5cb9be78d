"""
HTTP/SSE Provider Base

Shared plumbing for hosted streaming APIs: a streaming POST through httpx,
Server-Sent-Events framing, and translation of transport failures into a
single error event.
"""

import json
from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Optional, Set, Tuple

import httpx
import structlog

from streamline.config import get_settings
from streamline.models.events import NormalizedEvent

from .base import (
    BaseProvider,
    ConversationTurn,
    ProviderCapabilities,
    StreamOptions,
    guard_stream,
)

logger = structlog.get_logger(__name__)


@dataclass
class SseFrame:
    """One dispatched Server-Sent-Events message"""
    event: Optional[str]
    data: str


class SseDecoder:
    """Incremental SSE decoder.

    Frames are dispatched on a blank line. With ``dispatch_each_data_line``
    every ``data:`` line becomes its own frame, which tolerates servers that
    omit the blank line between Chat-Completions chunks.
    """

    def __init__(self, dispatch_each_data_line: bool = False):
        self.dispatch_each_data_line = dispatch_each_data_line
        self._buffer = ""
        self._event: Optional[str] = None
        self._data: List[str] = []

    def feed(self, chunk: str) -> List[SseFrame]:
        self._buffer += chunk
        frames: List[SseFrame] = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            frame = self._process_line(line.rstrip("\r"))
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> List[SseFrame]:
        frames: List[SseFrame] = []
        if self._buffer:
            line, self._buffer = self._buffer, ""
            frame = self._process_line(line.rstrip("\r"))
            if frame is not None:
                frames.append(frame)
        frame = self._dispatch()
        if frame is not None:
            frames.append(frame)
        return frames

    def _process_line(self, line: str) -> Optional[SseFrame]:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        name, _, value = line.partition(":")
        value = value.strip()
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
            if self.dispatch_each_data_line:
                return self._dispatch()
        return None

    def _dispatch(self) -> Optional[SseFrame]:
        if not self._data:
            self._event = None
            return None
        frame = SseFrame(event=self._event, data="".join(self._data))
        self._event = None
        self._data = []
        return frame


def error_message_from_body(body: str, status_code: Optional[int] = None) -> str:
    """Pull a human-readable message out of an API error body"""
    try:
        payload = json.loads(body)
    except (TypeError, ValueError):
        payload = None

    if isinstance(payload, dict) and "error" in payload:
        error = payload["error"]
        if isinstance(error, dict):
            return str(error.get("message") or error.get("type") or "Unknown error")
        return str(error)

    if status_code is not None:
        return f"HTTP {status_code}"
    return body.strip()[:500] or "Unknown error"


class BaseHttpProvider(BaseProvider):
    """Base class for providers reached over an HTTP streaming API"""

    # Chat-Completions servers sometimes skip the blank line between chunks
    sse_dispatch_each_data_line = False

    def __init__(
        self,
        name: str,
        config: Optional[Dict[str, Any]] = None,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ):
        super().__init__(name, config)
        self.settings = get_settings()
        self._client_factory = client_factory or self._default_client
        # conversation ids whose in-flight stream should stop
        self._aborted: Set[str] = set()

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(supports_streaming=True, supports_tools=True)

    @property
    @abstractmethod
    def base_url(self) -> str:
        pass

    @abstractmethod
    def build_request(
        self,
        turns: List[ConversationTurn],
        options: StreamOptions,
    ) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        """Return ``(url, headers, json_body)`` for the streaming request"""
        pass

    @abstractmethod
    def new_parse_state(self) -> Any:
        pass

    @abstractmethod
    def handle_frame(self, frame: SseFrame, state: Any) -> Iterator[NormalizedEvent]:
        """Translate one SSE frame into NormalizedEvents"""
        pass

    def finish(self, state: Any) -> Iterator[NormalizedEvent]:
        """Events to emit when the body ends. Nothing by default."""
        return iter(())

    def _default_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            self.settings.http_read_timeout,
            connect=self.settings.http_connect_timeout,
        )
        return httpx.AsyncClient(timeout=timeout)

    async def abort(self, conversation_id: str) -> None:
        self._aborted.add(conversation_id)

    def stream_turn(
        self,
        conversation_id: str,
        turns: List[ConversationTurn],
        options: StreamOptions,
    ) -> AsyncIterator[NormalizedEvent]:
        return guard_stream(self._stream(conversation_id, turns, options), self.name)

    async def _stream(
        self,
        conversation_id: str,
        turns: List[ConversationTurn],
        options: StreamOptions,
    ) -> AsyncIterator[NormalizedEvent]:
        self._aborted.discard(conversation_id)
        events = self._request(conversation_id, turns, options)
        try:
            async for event in events:
                yield event
        finally:
            await events.aclose()
            self._aborted.discard(conversation_id)

    async def _request(
        self,
        conversation_id: str,
        turns: List[ConversationTurn],
        options: StreamOptions,
    ) -> AsyncIterator[NormalizedEvent]:
        if not await self.is_available():
            yield NormalizedEvent.error(f"{self.name} provider is not configured")
            return

        url, headers, body = self.build_request(turns, options)
        logger.info(
            "Starting HTTP stream",
            provider=self.name,
            conversation_id=conversation_id,
            url=url,
            model=body.get("model"),
            message_count=len(body.get("messages", [])),
        )

        try:
            async with self._client_factory() as client:
                async with client.stream("POST", url, headers=headers, json=body) as response:
                    if response.status_code >= 400:
                        raw = (await response.aread()).decode("utf-8", errors="replace")
                        message = error_message_from_body(raw, response.status_code)
                        logger.error(
                            "HTTP provider returned an error status",
                            provider=self.name,
                            status=response.status_code,
                            error=message,
                        )
                        yield NormalizedEvent.error(message, status=response.status_code)
                        return

                    events = self._parse_body(response.aiter_text())
                    try:
                        async for event in events:
                            yield event
                            if conversation_id in self._aborted:
                                logger.info("HTTP stream aborted", provider=self.name, conversation_id=conversation_id)
                                return
                    finally:
                        await events.aclose()

        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            logger.error("HTTP provider connection failed", provider=self.name, url=url, error=str(e))
            yield NormalizedEvent.error(f"Failed to connect to {self.base_url}: {e}")
        except httpx.TimeoutException as e:
            logger.error("HTTP provider timed out", provider=self.name, url=url, error=str(e))
            yield NormalizedEvent.error(f"Request to {self.base_url} timed out")
        except httpx.HTTPError as e:
            logger.error("HTTP provider transport error", provider=self.name, error=str(e))
            yield NormalizedEvent.error(str(e) or e.__class__.__name__)

    async def _parse_body(self, chunks: AsyncIterator[str]) -> AsyncIterator[NormalizedEvent]:
        """Decode SSE frames, or a bare JSON error object sent instead of a stream"""
        decoder = SseDecoder(self.sse_dispatch_each_data_line)
        state = self.new_parse_state()
        sniffed = False
        raw_body: List[str] = []
        bare_json = False
        frame_count = 0

        async for chunk in chunks:
            if not sniffed:
                stripped = chunk.lstrip()
                if not stripped:
                    continue
                sniffed = True
                bare_json = stripped.startswith("{")
            if bare_json:
                raw_body.append(chunk)
                continue
            for frame in decoder.feed(chunk):
                frame_count += 1
                for event in self.handle_frame(frame, state):
                    yield event

        if bare_json:
            body = "".join(raw_body)
            message = error_message_from_body(body)
            logger.error("HTTP provider sent a JSON body instead of a stream", provider=self.name, error=message)
            yield NormalizedEvent.error(message)
            return

        for frame in decoder.flush():
            frame_count += 1
            for event in self.handle_frame(frame, state):
                yield event
        for event in self.finish(state):
            yield event

        logger.debug("HTTP stream completed", provider=self.name, frame_count=frame_count)

    @staticmethod
    def decode_json(data: str, provider: str) -> Optional[Dict[str, Any]]:
        """Decode a frame payload, logging and skipping anything that is not an object"""
        try:
            payload = json.loads(data)
        except ValueError:
            logger.warning("Failed to parse SSE payload", provider=provider, data=data[:500])
            return None
        if not isinstance(payload, dict):
            logger.warning("Non-object SSE payload", provider=provider, data=data[:500])
            return None
        return payload
