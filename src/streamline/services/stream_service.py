"""Stream Service

Runs one assistant turn end to end: provider events go into the journal as
they arrive, content blocks are assembled for persistence, and a
caller-initiated abort is honoured between events.
"""

import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog
from structlog.contextvars import bound_contextvars

from streamline.models.events import EventType, NormalizedEvent
from streamline.models.session import TerminalStatus
from streamline.providers.base import BaseProvider, ConversationTurn, StreamOptions
from streamline.providers.factory import ProviderFactory, get_provider_factory
from streamline.providers.supervisor import AbortGate
from streamline.storage.conversation import ConversationRecorder, InMemoryConversationRecorder, StoredMessage
from streamline.storage.journal import EventJournal

logger = structlog.get_logger(__name__)

INTERRUPTED_MARKER = {"type": "interrupted", "reason": "user_abort"}


@dataclass
class TurnOutcome:
    """What a finished turn left behind"""
    conversation_id: str
    status: TerminalStatus
    stop_reason: Optional[str] = None
    content: List[Dict[str, Any]] = field(default_factory=list)
    event_count: int = 0
    error: Optional[str] = None


class ContentTracker:
    """Assembles persisted content blocks from a turn's events"""

    def __init__(self) -> None:
        self.blocks: Dict[int, Dict[str, Any]] = {}
        self.tool_inputs: Dict[int, str] = {}
        self.tool_results: List[Dict[str, Any]] = []
        self.usage: Optional[Dict[str, Any]] = None
        self.compaction: Optional[Dict[str, Any]] = None
        self.stop_reason: Optional[str] = None
        self.error: Optional[str] = None

    @property
    def has_tool_use(self) -> bool:
        return any(block["type"] == "tool_use" for block in self.blocks.values())

    def track(self, event: NormalizedEvent) -> None:
        index = event.block_index
        metadata = event.metadata or {}

        if event.type is EventType.THINKING_START:
            self.blocks[index] = {"type": "thinking", "thinking": ""}
        elif event.type is EventType.THINKING_DELTA:
            if index in self.blocks:
                self.blocks[index]["thinking"] += event.content or ""
        elif event.type is EventType.THINKING_SIGNATURE:
            if index in self.blocks:
                self.blocks[index]["signature"] = event.content
        elif event.type is EventType.TEXT_START:
            self.blocks[index] = {"type": "text", "text": ""}
        elif event.type is EventType.TEXT_DELTA:
            if index in self.blocks:
                self.blocks[index]["text"] += event.content or ""
        elif event.type is EventType.TOOL_USE_START:
            self.blocks[index] = {
                "type": "tool_use",
                "id": metadata.get("tool_id"),
                "name": metadata.get("tool_name"),
                "input": None,
            }
            self.tool_inputs[index] = ""
        elif event.type is EventType.TOOL_USE_DELTA:
            if index in self.tool_inputs:
                self.tool_inputs[index] += event.content or ""
        elif event.type is EventType.TOOL_USE_STOP:
            if index in self.tool_inputs:
                self.blocks[index]["input"] = self._parse_tool_input(index)
        elif event.type is EventType.TOOL_RESULT:
            tool_id = metadata.get("tool_id")
            if tool_id:
                self.tool_results.append({
                    "tool_use_id": tool_id,
                    "content": event.content,
                    "is_error": metadata.get("is_error", False),
                })
            else:
                logger.warning("Tool result without tool_id")
        elif event.type is EventType.USAGE:
            self.usage = dict(metadata)
        elif event.type is EventType.COMPACTION_SUMMARY:
            self.compaction = {
                "summary": event.content,
                "pre_tokens": metadata.get("pre_tokens"),
                "trigger": metadata.get("trigger", "auto"),
            }
        elif event.type is EventType.DONE:
            self.stop_reason = event.stop_reason or "end_turn"
        elif event.type is EventType.ERROR:
            self.error = event.content or "Unknown streaming error"

    def content(self, complete_only: bool = False) -> List[Dict[str, Any]]:
        """Blocks in stream order.

        With ``complete_only`` thinking without a signature and tool calls
        whose input never finished are left out.
        """
        result = []
        for block in self.blocks.values():
            block = dict(block)
            if block["type"] == "thinking" and complete_only and not block.get("signature"):
                continue
            if block["type"] == "tool_use" and block["input"] is None:
                if complete_only:
                    continue
                block["input"] = {}
            result.append(block)
        return result

    def _parse_tool_input(self, index: int) -> Dict[str, Any]:
        raw = self.tool_inputs[index]
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(
                "Failed to parse tool input JSON",
                block_index=index,
                tool_name=self.blocks[index].get("name"),
                error=str(e),
                input_preview=raw[:200],
            )
            return {}
        return parsed if isinstance(parsed, dict) else {}


class StreamService:
    """Drives provider turns into the event journal"""

    def __init__(
        self,
        journal: Optional[EventJournal] = None,
        factory: Optional[ProviderFactory] = None,
        recorder: Optional[ConversationRecorder] = None,
        session_store=None,
    ):
        self.journal = journal or EventJournal()
        self.factory = factory or get_provider_factory()
        self.recorder = recorder or InMemoryConversationRecorder()
        self.session_store = session_store if session_store is not None else self.factory.session_store

    async def run_turn(
        self,
        conversation_id: str,
        provider_name: str,
        turns: List[ConversationTurn],
        options: Optional[StreamOptions] = None,
    ) -> TurnOutcome:
        """Stream one turn into the journal and persist the result.

        Configuration errors such as an oversized system prompt are raised
        before the journal stream is opened.
        """
        options = options or StreamOptions()
        provider = self.factory.get_provider(provider_name)
        events = provider.stream_turn(conversation_id, turns, options)
        try:
            with bound_contextvars(conversation_id=conversation_id, provider=provider.name):
                return await self._run(conversation_id, provider, events, turns, options)
        finally:
            await events.aclose()

    async def _run(
        self,
        conversation_id: str,
        provider: BaseProvider,
        events: AsyncIterator[NormalizedEvent],
        turns: List[ConversationTurn],
        options: StreamOptions,
    ) -> TurnOutcome:
        session_id = None
        if provider.capabilities.native_sessions and self.session_store is not None:
            session_id = await self.session_store.get_session_id(conversation_id, provider.name)

        await self.journal.start(
            conversation_id,
            {"provider": provider.name, "model": options.model, "provider_session_id": session_id},
        )
        logger.info("Turn started", model=options.model, session_id=session_id or "new")

        tracker = ContentTracker()
        # Only providers that run tools themselves can be caught mid tool call
        gate = AbortGate() if provider.capabilities.executes_tools_internally else None
        event_count = 0
        aborting = False
        skip_sync = False

        try:
            async for event in events:
                if (gate is None or not gate.pending) and await self.journal.is_abort_requested(conversation_id):
                    skip_sync = await self.journal.should_skip_sync(conversation_id)
                    if gate is None or gate.request(skip_sync):
                        aborting = True
                        break

                if event.type is EventType.USAGE:
                    event = self._enrich_usage(event, options)
                await self.journal.append(conversation_id, event)
                tracker.track(event)
                event_count += 1

                if gate is not None and gate.observe(event):
                    aborting = True
                    break
        except Exception as e:
            logger.error("Turn failed", error=str(e), event_count=event_count)
            await self.journal.fail(conversation_id, str(e))
            raise

        if aborting:
            if gate is not None:
                skip_sync = skip_sync or gate.skip_sync
            return await self._abort(conversation_id, provider, events, turns, options, tracker, event_count, skip_sync)
        return await self._finish(conversation_id, provider, options, tracker, event_count)

    async def _finish(
        self,
        conversation_id: str,
        provider: BaseProvider,
        options: StreamOptions,
        tracker: ContentTracker,
        event_count: int,
    ) -> TurnOutcome:
        if tracker.stop_reason == "timeout":
            status = TerminalStatus.TIMEOUT
        elif tracker.stop_reason is None and tracker.error is not None:
            status = TerminalStatus.FAILED
        else:
            status = TerminalStatus.COMPLETED

        content = tracker.content()
        if content or status is not TerminalStatus.FAILED:
            await self._persist(conversation_id, provider, options, tracker, content, tracker.stop_reason)

        await self.journal.complete(conversation_id, status)
        # an abort that arrived after the last event has nothing left to stop
        await self.journal.clear_abort(conversation_id)
        logger.info(
            "Turn finished",
            status=status.value,
            stop_reason=tracker.stop_reason,
            event_count=event_count,
            block_count=len(content),
        )
        return TurnOutcome(
            conversation_id,
            status,
            stop_reason=tracker.stop_reason,
            content=content,
            event_count=event_count,
            error=tracker.error,
        )

    async def _abort(
        self,
        conversation_id: str,
        provider: BaseProvider,
        events: AsyncIterator[NormalizedEvent],
        turns: List[ConversationTurn],
        options: StreamOptions,
        tracker: ContentTracker,
        event_count: int,
        skip_sync: bool,
    ) -> TurnOutcome:
        logger.info("Abort requested", event_count=event_count, skip_sync=skip_sync)
        await provider.abort(conversation_id)
        await events.aclose()

        content = tracker.content(complete_only=True)
        content.append(dict(INTERRUPTED_MARKER))
        # The CLI already recorded any tool exchange that finished
        if tracker.has_tool_use:
            skip_sync = True

        try:
            message = await self._persist(conversation_id, provider, options, tracker, content, "aborted")
            if skip_sync:
                logger.info("Skipping native history sync after abort")
            else:
                user_message = await self._user_message(conversation_id, turns)
                assistant_message = self._assistant_message(message, tracker)
                await provider.sync_aborted_message(conversation_id, user_message, assistant_message, options)
        finally:
            await self.journal.append(conversation_id, NormalizedEvent.done("aborted"))
            await self.journal.complete(conversation_id, TerminalStatus.ABORTED)
            await self.journal.clear_abort(conversation_id)

        return TurnOutcome(
            conversation_id,
            TerminalStatus.ABORTED,
            stop_reason="aborted",
            content=content,
            event_count=event_count + 1,
        )

    async def _persist(
        self,
        conversation_id: str,
        provider: BaseProvider,
        options: StreamOptions,
        tracker: ContentTracker,
        content: List[Dict[str, Any]],
        stop_reason: Optional[str],
    ) -> StoredMessage:
        usage = tracker.usage or {}
        metadata: Dict[str, Any] = {
            "provider": provider.name,
            "model": options.model,
            "stop_reason": stop_reason,
            "input_tokens": usage.get("input_tokens", 0),
            "output_tokens": usage.get("output_tokens", 0),
            "cache_creation_tokens": usage.get("cache_creation_tokens"),
            "cache_read_tokens": usage.get("cache_read_tokens"),
            "cost": usage.get("cost"),
        }
        if tracker.compaction is not None:
            metadata["compaction"] = tracker.compaction

        message = await self.recorder.save_assistant_message(conversation_id, content, metadata)
        if tracker.tool_results:
            await self.recorder.save_tool_results(conversation_id, tracker.tool_results)
        if tracker.usage is not None:
            await self.recorder.record_usage(
                conversation_id,
                usage.get("input_tokens", 0),
                usage.get("output_tokens", 0),
                usage.get("cost"),
            )
        return message

    async def _user_message(self, conversation_id: str, turns: List[ConversationTurn]) -> Dict[str, Any]:
        stored = await self.recorder.last_user_message(conversation_id)
        if stored is not None:
            return {
                "role": "user",
                "content": ConversationTurn("user", stored.content).text(),
                "created_at": stored.created_at.isoformat(),
            }
        for turn in reversed(turns):
            if turn.role == "user":
                return {"role": "user", "content": turn.text()}
        return {"role": "user", "content": ""}

    @staticmethod
    def _assistant_message(message: StoredMessage, tracker: ContentTracker) -> Dict[str, Any]:
        usage = tracker.usage or {}
        return {
            "role": "assistant",
            "content": message.content,
            "input_tokens": usage.get("input_tokens", 0),
            "output_tokens": usage.get("output_tokens", 0),
            "created_at": message.created_at.isoformat(),
        }

    @staticmethod
    def _enrich_usage(event: NormalizedEvent, options: StreamOptions) -> NormalizedEvent:
        metadata = event.metadata or {}
        if not options.context_window_size or "context_window_size" in metadata:
            return event
        return NormalizedEvent.usage(
            metadata.get("input_tokens", 0),
            metadata.get("output_tokens", 0),
            cache_creation_tokens=metadata.get("cache_creation_tokens"),
            cache_read_tokens=metadata.get("cache_read_tokens"),
            cost=metadata.get("cost"),
            context_window_size=options.context_window_size,
        )
