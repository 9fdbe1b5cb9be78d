"""Normalized stream events

Every provider, whatever its wire grammar, reduces its output to this
vocabulary. Events are immutable once built; the journal owns them after
append.
"""
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class EventType(str, Enum):
    """Normalized event type enumeration"""
    THINKING_START = "thinking_start"
    THINKING_DELTA = "thinking_delta"
    THINKING_SIGNATURE = "thinking_signature"
    THINKING_STOP = "thinking_stop"
    TEXT_START = "text_start"
    TEXT_DELTA = "text_delta"
    TEXT_STOP = "text_stop"
    TOOL_USE_START = "tool_use_start"
    TOOL_USE_DELTA = "tool_use_delta"
    TOOL_USE_STOP = "tool_use_stop"
    TOOL_RESULT = "tool_result"
    USAGE = "usage"
    SYSTEM_INFO = "system_info"
    COMPACTION_SUMMARY = "compaction_summary"
    ERROR = "error"
    DONE = "done"


START_TYPES = {EventType.THINKING_START, EventType.TEXT_START, EventType.TOOL_USE_START}
STOP_TYPES = {EventType.THINKING_STOP, EventType.TEXT_STOP, EventType.TOOL_USE_STOP}
TERMINAL_TYPES = {EventType.DONE, EventType.ERROR}

# start -> matching stop
BLOCK_PAIRS = {
    EventType.THINKING_START: EventType.THINKING_STOP,
    EventType.TEXT_START: EventType.TEXT_STOP,
    EventType.TOOL_USE_START: EventType.TOOL_USE_STOP,
}


@dataclass(frozen=True)
class NormalizedEvent:
    """Canonical, provider-agnostic unit of streamed output"""
    type: EventType
    block_index: Optional[int] = None
    content: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = field(default=None, hash=False, compare=True)

    # ---- factories -------------------------------------------------------

    @classmethod
    def thinking_start(cls, block_index: int) -> "NormalizedEvent":
        return cls(EventType.THINKING_START, block_index)

    @classmethod
    def thinking_delta(cls, block_index: int, content: str) -> "NormalizedEvent":
        return cls(EventType.THINKING_DELTA, block_index, content)

    @classmethod
    def thinking_signature(cls, block_index: int, signature: str) -> "NormalizedEvent":
        return cls(EventType.THINKING_SIGNATURE, block_index, signature)

    @classmethod
    def thinking_stop(cls, block_index: int) -> "NormalizedEvent":
        return cls(EventType.THINKING_STOP, block_index)

    @classmethod
    def text_start(cls, block_index: int) -> "NormalizedEvent":
        return cls(EventType.TEXT_START, block_index)

    @classmethod
    def text_delta(cls, block_index: int, content: str) -> "NormalizedEvent":
        return cls(EventType.TEXT_DELTA, block_index, content)

    @classmethod
    def text_stop(cls, block_index: int) -> "NormalizedEvent":
        return cls(EventType.TEXT_STOP, block_index)

    @classmethod
    def tool_use_start(cls, block_index: int, tool_id: str, tool_name: str) -> "NormalizedEvent":
        return cls(
            EventType.TOOL_USE_START,
            block_index,
            metadata={"tool_id": tool_id, "tool_name": tool_name},
        )

    @classmethod
    def tool_use_delta(cls, block_index: int, partial_json: str) -> "NormalizedEvent":
        return cls(EventType.TOOL_USE_DELTA, block_index, partial_json)

    @classmethod
    def tool_use_stop(cls, block_index: int) -> "NormalizedEvent":
        return cls(EventType.TOOL_USE_STOP, block_index)

    @classmethod
    def tool_result(cls, tool_id: str, content: Any, is_error: bool = False) -> "NormalizedEvent":
        if not isinstance(content, str):
            content = json.dumps(content)
        return cls(
            EventType.TOOL_RESULT,
            None,
            content,
            {"tool_id": tool_id, "is_error": bool(is_error)},
        )

    @classmethod
    def usage(
        cls,
        input_tokens: int,
        output_tokens: int,
        cache_creation_tokens: Optional[int] = None,
        cache_read_tokens: Optional[int] = None,
        cost: Optional[float] = None,
        context_window_size: Optional[int] = None,
    ) -> "NormalizedEvent":
        metadata: Dict[str, Any] = {
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
        }
        if cache_creation_tokens is not None:
            metadata["cache_creation_tokens"] = cache_creation_tokens
        if cache_read_tokens is not None:
            metadata["cache_read_tokens"] = cache_read_tokens
        if cost is not None:
            metadata["cost"] = cost
        if context_window_size is not None:
            metadata["context_window_size"] = context_window_size
            if context_window_size > 0:
                metadata["context_percentage"] = round(input_tokens / context_window_size * 100, 1)
        return cls(EventType.USAGE, metadata=metadata)

    @classmethod
    def system_info(cls, content: str, command: Optional[str] = None) -> "NormalizedEvent":
        return cls(EventType.SYSTEM_INFO, content=content, metadata={"command": command})

    @classmethod
    def compaction_summary(
        cls,
        summary: str,
        pre_tokens: Optional[int] = None,
        trigger: str = "auto",
    ) -> "NormalizedEvent":
        return cls(
            EventType.COMPACTION_SUMMARY,
            content=summary,
            metadata={"pre_tokens": pre_tokens, "trigger": trigger},
        )

    @classmethod
    def error(cls, message: str, **metadata: Any) -> "NormalizedEvent":
        return cls(EventType.ERROR, content=message, metadata=metadata or None)

    @classmethod
    def done(cls, stop_reason: str = "end_turn") -> "NormalizedEvent":
        return cls(EventType.DONE, metadata={"stop_reason": stop_reason})

    # ---- helpers ---------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_TYPES

    @property
    def stop_reason(self) -> Optional[str]:
        if self.type is EventType.DONE and self.metadata:
            return self.metadata.get("stop_reason")
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the wire, dropping empty fields"""
        data: Dict[str, Any] = {"type": self.type.value}
        if self.block_index is not None:
            data["block_index"] = self.block_index
        if self.content is not None:
            data["content"] = self.content
        if self.metadata is not None:
            data["metadata"] = self.metadata
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NormalizedEvent":
        return cls(
            type=EventType(data["type"]),
            block_index=data.get("block_index"),
            content=data.get("content"),
            metadata=data.get("metadata"),
        )
