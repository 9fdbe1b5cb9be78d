"""
Base Provider Interface

Abstract base classes and shared types for streaming AI providers.
Every provider turns a conversation turn into a sequence of NormalizedEvents.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import structlog

from streamline.models.events import BLOCK_PAIRS, STOP_TYPES, EventType, NormalizedEvent

logger = structlog.get_logger(__name__)


AUTH_REQUIRED_SUFFIX = "_AUTH_REQUIRED:"


@dataclass
class ProviderCapabilities:
    """Capabilities of a provider"""
    supports_streaming: bool = True
    supports_tools: bool = True
    supports_thinking: bool = False
    executes_tools_internally: bool = False
    native_sessions: bool = False


@dataclass
class ConversationTurn:
    """One stored message of a conversation"""
    role: str
    content: Union[str, List[Dict[str, Any]]]

    def text(self) -> str:
        """Plain text of the turn, joining text blocks with newlines"""
        if isinstance(self.content, str):
            return self.content
        parts = [
            block.get("text", "")
            for block in self.content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        return "\n".join(parts)

    def without_markers(self) -> "ConversationTurn":
        """Copy without UI-only ``interrupted`` blocks"""
        if isinstance(self.content, str):
            return self
        return ConversationTurn(
            role=self.role,
            content=[b for b in self.content if b.get("type") != "interrupted"],
        )


@dataclass
class StreamOptions:
    """Per-turn options handed to a provider"""
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    tools: List[Dict[str, Any]] = field(default_factory=list)
    allowed_tools: List[str] = field(default_factory=list)
    thinking_budget: int = 0
    reasoning_effort: Optional[str] = None
    response_tokens: Optional[int] = None
    interruption_reminder: Optional[str] = None
    working_directory: Optional[Path] = None
    environment: Dict[str, str] = field(default_factory=dict)
    context_window_size: Optional[int] = None


class BlockLedger:
    """Tracks which content blocks are open so a stream can be closed cleanly"""

    def __init__(self) -> None:
        self._open: Dict[int, EventType] = {}

    @property
    def open_blocks(self) -> Dict[int, EventType]:
        return dict(self._open)

    @property
    def has_open_tool_use(self) -> bool:
        return EventType.TOOL_USE_START in self._open.values()

    def observe(self, event: NormalizedEvent) -> bool:
        """Record an event. Returns False for a stop with no matching start."""
        if event.type in BLOCK_PAIRS:
            if event.block_index in self._open:
                logger.warning(
                    "Block index reused while still open",
                    block_index=event.block_index,
                    event_type=event.type.value,
                )
            self._open[event.block_index] = event.type
        elif event.type in STOP_TYPES:
            started = self._open.get(event.block_index)
            if started is None or BLOCK_PAIRS[started] is not event.type:
                return False
            del self._open[event.block_index]
        return True

    def closing_events(self) -> List[NormalizedEvent]:
        """Synthesize stops for every open block, lowest index first"""
        events = [
            NormalizedEvent(BLOCK_PAIRS[start], index)
            for index, start in sorted(self._open.items())
        ]
        self._open.clear()
        return events


async def guard_stream(
    events: AsyncIterator[NormalizedEvent],
    provider: str,
    errors_are_terminal: bool = True,
) -> AsyncIterator[NormalizedEvent]:
    """Enforce the stream contract on a provider's raw event sequence.

    Unmatched stops are dropped, open blocks are closed before the terminal
    event, nothing is forwarded after it, and a ``done`` is synthesized if the
    provider ended without one. Subprocess providers report grammar-level
    errors mid-stream and still finish with ``done``, so for them only
    ``done`` ends the stream; a lone error with nothing open is left as is.
    """
    ledger = BlockLedger()
    last: Optional[NormalizedEvent] = None
    try:
        async for event in events:
            terminal = event.type is EventType.DONE or (
                errors_are_terminal and event.type is EventType.ERROR
            )
            if terminal:
                for closing in ledger.closing_events():
                    yield closing
                yield event
                return
            if not ledger.observe(event):
                logger.debug(
                    "Dropping unmatched stop event",
                    provider=provider,
                    event_type=event.type.value,
                    block_index=event.block_index,
                )
                continue
            last = event
            yield event
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()

    if last is not None and last.type is EventType.ERROR and not ledger.open_blocks:
        return
    for closing in ledger.closing_events():
        yield closing
    logger.warning("Provider stream ended without a terminal event", provider=provider)
    yield NormalizedEvent.done("end_turn")


def latest_user_message(turns: List[ConversationTurn]) -> Optional[str]:
    """Return the text of the most recent user turn, if any"""
    for turn in reversed(turns):
        if turn.role == "user":
            return turn.text()
    return None


def is_auth_error(message: Optional[str]) -> bool:
    """Whether an error message asks the user to re-authenticate"""
    if not message:
        return False
    head, sep, _ = message.partition(":")
    return bool(sep) and head.endswith(AUTH_REQUIRED_SUFFIX[:-1])


class BaseProvider(ABC):
    """Abstract base class for streaming providers"""

    def __init__(self, name: str, config: Optional[Dict[str, Any]] = None):
        self.name = name
        self.config = config or {}

    @property
    @abstractmethod
    def capabilities(self) -> ProviderCapabilities:
        """Get provider capabilities"""
        pass

    @abstractmethod
    async def is_available(self) -> bool:
        """Whether the provider can be used right now"""
        pass

    @abstractmethod
    def stream_turn(
        self,
        conversation_id: str,
        turns: List[ConversationTurn],
        options: StreamOptions,
    ) -> AsyncIterator[NormalizedEvent]:
        """Stream one assistant turn as NormalizedEvents.

        The sequence always ends with exactly one ``done`` or, when the turn
        could not start at all, a single ``error``.
        """
        pass

    async def abort(self, conversation_id: str) -> None:
        """Stop the in-flight turn of one conversation. Nothing to stop by default."""
        return None

    async def sync_aborted_message(
        self,
        conversation_id: str,
        user_message: Dict[str, Any],
        assistant_message: Dict[str, Any],
        options: Optional[StreamOptions] = None,
    ) -> bool:
        """Write an aborted turn into the provider's native history. No-op by default."""
        return True

    async def health_check(self) -> Dict[str, Any]:
        """Check provider health"""
        available = await self.is_available()
        return {
            "provider": self.name,
            "status": "healthy" if available else "unavailable",
        }


class ProviderError(Exception):
    """Base exception for provider errors"""
    def __init__(self, message: str, provider: str, conversation_id: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
        self.conversation_id = conversation_id


class ProviderUnavailableError(ProviderError):
    """Provider is unavailable"""
    pass


class AuthenticationRequiredError(ProviderError):
    """Provider credentials are missing"""

    def __init__(self, prefix: str, message: str, provider: str, conversation_id: Optional[str] = None):
        super().__init__(f"{prefix}{message}", provider, conversation_id)
        self.prefix = prefix


class PromptTooLargeError(ProviderError):
    """System prompt exceeds what the provider accepts"""

    def __init__(self, size: int, limit: int, provider: str, conversation_id: Optional[str] = None):
        super().__init__(
            f"System prompt is {size} bytes, {provider} accepts at most {limit}",
            provider,
            conversation_id,
        )
        self.size = size
        self.limit = limit
