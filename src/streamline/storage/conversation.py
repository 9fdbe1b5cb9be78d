"""Conversation persistence collaborator

The streaming core does not own conversation storage. It hands finished or
partial assistant messages and token usage to a ``ConversationRecorder``;
applications plug in their own backend.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class UsageRecord:
    input_tokens: int
    output_tokens: int
    cost: Optional[float] = None
    recorded_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class StoredMessage:
    role: str
    content: List[Dict[str, Any]]
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)


class ConversationRecorder(ABC):
    """Outbound persistence calls made while a turn streams"""

    @abstractmethod
    async def save_assistant_message(
        self,
        conversation_id: str,
        content: List[Dict[str, Any]],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StoredMessage:
        pass

    @abstractmethod
    async def save_tool_results(
        self,
        conversation_id: str,
        results: List[Dict[str, Any]],
    ) -> StoredMessage:
        """Persist tool results produced by a provider that runs tools itself"""
        pass

    @abstractmethod
    async def record_usage(
        self,
        conversation_id: str,
        input_tokens: int,
        output_tokens: int,
        cost: Optional[float] = None,
    ) -> None:
        pass

    @abstractmethod
    async def last_user_message(self, conversation_id: str) -> Optional[StoredMessage]:
        pass


class InMemoryConversationRecorder(ConversationRecorder):
    """Process-local recorder for development and tests"""

    def __init__(self) -> None:
        self.messages: Dict[str, List[StoredMessage]] = {}
        self.usage: Dict[str, List[UsageRecord]] = {}

    async def add_user_message(self, conversation_id: str, content: Any) -> StoredMessage:
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]
        message = StoredMessage(role="user", content=list(content))
        self.messages.setdefault(conversation_id, []).append(message)
        return message

    async def save_assistant_message(
        self,
        conversation_id: str,
        content: List[Dict[str, Any]],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StoredMessage:
        message = StoredMessage(role="assistant", content=list(content), metadata=dict(metadata or {}))
        self.messages.setdefault(conversation_id, []).append(message)
        logger.debug(
            "Assistant message saved",
            conversation_id=conversation_id,
            block_count=len(content),
        )
        return message

    async def save_tool_results(
        self,
        conversation_id: str,
        results: List[Dict[str, Any]],
    ) -> StoredMessage:
        content = [{"type": "tool_result", **result} for result in results]
        message = StoredMessage(role="user", content=content)
        self.messages.setdefault(conversation_id, []).append(message)
        return message

    async def record_usage(
        self,
        conversation_id: str,
        input_tokens: int,
        output_tokens: int,
        cost: Optional[float] = None,
    ) -> None:
        self.usage.setdefault(conversation_id, []).append(UsageRecord(input_tokens, output_tokens, cost))

    async def last_user_message(self, conversation_id: str) -> Optional[StoredMessage]:
        for message in reversed(self.messages.get(conversation_id, [])):
            if message.role != "user":
                continue
            # tool results ride on user messages but are not something the user typed
            if message.content and all(block.get("type") == "tool_result" for block in message.content):
                continue
            return message
        return None
