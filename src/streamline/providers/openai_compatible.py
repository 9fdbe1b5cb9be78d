"""
OpenAI-compatible Chat Completions Provider

Delta-oriented grammar: each chunk carries ``choices[0].delta`` with text
and/or tool-call fragments keyed by a provider-assigned index. The stream is
terminated by a literal ``data: [DONE]`` line.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

import structlog

from streamline.models.events import NormalizedEvent

from .base import ConversationTurn, StreamOptions
from .http_base import BaseHttpProvider, SseFrame

logger = structlog.get_logger(__name__)


@dataclass
class PendingToolCall:
    id: str
    name: str
    block_index: int
    arguments: str = ""


@dataclass
class ChatCompletionsParseState:
    next_block: int = 0
    text_block: Optional[int] = None
    tool_calls: Dict[int, PendingToolCall] = field(default_factory=dict)
    has_tool_calls: bool = False
    done_emitted: bool = False

    def allocate_block(self) -> int:
        index = self.next_block
        self.next_block += 1
        return index


class OpenAICompatibleProvider(BaseHttpProvider):
    """Any server speaking the Chat Completions streaming protocol"""

    sse_dispatch_each_data_line = True

    def __init__(self, config: Optional[Dict[str, Any]] = None, client_factory=None):
        super().__init__("openai_compatible", config, client_factory)
        self.api_key = self.config.get("api_key", self.settings.openai_compatible_api_key)
        self._base_url = self.config.get("base_url", self.settings.openai_compatible_base_url)
        self.default_model = self.config.get("default_model", self.settings.openai_compatible_default_model)

    @property
    def base_url(self) -> str:
        return self._base_url

    async def is_available(self) -> bool:
        # API key is optional for local servers
        return bool(self.base_url)

    def build_messages(self, turns: List[ConversationTurn], options: StreamOptions) -> List[Dict[str, Any]]:
        """Flatten block-structured turns into Chat Completions messages"""
        messages: List[Dict[str, Any]] = []
        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})

        last_user = max((i for i, t in enumerate(turns) if t.role == "user"), default=None)

        for position, turn in enumerate(turns):
            if turn.role == "system":
                continue
            turn = turn.without_markers()

            if isinstance(turn.content, str):
                text = turn.content
                if position == last_user and options.interruption_reminder:
                    text = f"{options.interruption_reminder}\n\n{text}"
                messages.append({"role": turn.role, "content": text})
                continue

            text_parts: List[str] = []
            tool_calls: List[Dict[str, Any]] = []
            tool_results: List[Dict[str, Any]] = []
            for block in turn.content:
                block_type = block.get("type")
                if block_type == "text":
                    text_parts.append(block.get("text", ""))
                elif block_type == "tool_use":
                    tool_calls.append({
                        "id": block["id"],
                        "type": "function",
                        "function": {
                            "name": block["name"],
                            "arguments": json.dumps(block.get("input") or {}),
                        },
                    })
                elif block_type == "tool_result":
                    content = block.get("content", "")
                    tool_results.append({
                        "role": "tool",
                        "tool_call_id": block["tool_use_id"],
                        "content": content if isinstance(content, str) else json.dumps(content),
                    })
                # thinking blocks have no Chat Completions equivalent

            if position == last_user and options.interruption_reminder:
                text_parts.insert(0, options.interruption_reminder)
            if text_parts:
                messages.append({"role": turn.role, "content": "\n".join(text_parts)})
            if tool_calls:
                messages.append({"role": "assistant", "content": None, "tool_calls": tool_calls})
            messages.extend(tool_results)

        return messages

    @staticmethod
    def convert_tools(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool.get("description", ""),
                    "parameters": tool.get("input_schema", {"type": "object", "properties": {}}),
                },
            }
            for tool in tools
        ]

    def build_request(
        self,
        turns: List[ConversationTurn],
        options: StreamOptions,
    ) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        body: Dict[str, Any] = {
            "model": options.model or self.default_model or "default",
            "messages": self.build_messages(turns, options),
            "stream": True,
            "max_tokens": options.response_tokens or self.settings.default_response_tokens,
        }
        if options.tools:
            body["tools"] = self.convert_tools(options.tools)
            body["tool_choice"] = "auto"
        if options.reasoning_effort and options.reasoning_effort != "none":
            body["reasoning_effort"] = options.reasoning_effort

        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return f"{self.base_url.rstrip('/')}/v1/chat/completions", headers, body

    def new_parse_state(self) -> ChatCompletionsParseState:
        return ChatCompletionsParseState()

    def handle_frame(self, frame: SseFrame, state: ChatCompletionsParseState) -> Iterator[NormalizedEvent]:
        if frame.data == "[DONE]":
            logger.info("Chat Completions stream finished", provider=self.name)
            yield from self._close(state)
            return

        payload = self.decode_json(frame.data, self.name)
        if payload is None:
            return

        if "error" in payload and not payload.get("choices"):
            error = payload["error"]
            message = error.get("message", "Unknown error") if isinstance(error, dict) else str(error)
            yield NormalizedEvent.error(message)
            return

        choices = payload.get("choices") or []
        if choices:
            yield from self._handle_choice(choices[0], state)

        usage = payload.get("usage")
        if usage:
            yield NormalizedEvent.usage(usage.get("prompt_tokens", 0), usage.get("completion_tokens", 0))

    def _handle_choice(self, choice: Dict[str, Any], state: ChatCompletionsParseState) -> Iterator[NormalizedEvent]:
        delta = choice.get("delta") or {}

        content = delta.get("content")
        if content:
            if state.text_block is None:
                state.text_block = state.allocate_block()
                yield NormalizedEvent.text_start(state.text_block)
            yield NormalizedEvent.text_delta(state.text_block, content)

        for tool_call in delta.get("tool_calls") or []:
            index = tool_call.get("index", 0)
            function = tool_call.get("function") or {}

            if tool_call.get("id"):
                state.has_tool_calls = True
                if state.text_block is not None:
                    yield NormalizedEvent.text_stop(state.text_block)
                    state.text_block = None
                pending = PendingToolCall(
                    id=tool_call["id"],
                    name=function.get("name", ""),
                    block_index=state.allocate_block(),
                )
                state.tool_calls[index] = pending
                yield NormalizedEvent.tool_use_start(pending.block_index, pending.id, pending.name)

            arguments = function.get("arguments")
            if arguments:
                pending = state.tool_calls.get(index)
                if pending is None:
                    logger.warning("Tool call fragment for unknown index", provider=self.name, index=index)
                    continue
                pending.arguments += arguments
                yield NormalizedEvent.tool_use_delta(pending.block_index, arguments)

        finish_reason = choice.get("finish_reason")
        if finish_reason is not None:
            yield from self._close_tool_calls(state)
            if finish_reason in ("tool_calls", "function_call"):
                state.has_tool_calls = True

    def _close_tool_calls(self, state: ChatCompletionsParseState) -> Iterator[NormalizedEvent]:
        for index in sorted(state.tool_calls):
            yield NormalizedEvent.tool_use_stop(state.tool_calls[index].block_index)
        state.tool_calls.clear()

    def _close(self, state: ChatCompletionsParseState) -> Iterator[NormalizedEvent]:
        if state.done_emitted:
            return
        if state.text_block is not None:
            yield NormalizedEvent.text_stop(state.text_block)
            state.text_block = None
        yield from self._close_tool_calls(state)
        state.done_emitted = True
        yield NormalizedEvent.done("tool_use" if state.has_tool_calls else "end_turn")

    def finish(self, state: ChatCompletionsParseState) -> Iterator[NormalizedEvent]:
        # Stream ended without [DONE]
        return self._close(state)
