"""
Anthropic Messages API Provider

Block-oriented SSE grammar: content_block_start/delta/stop carry an index
and the block type is only announced on start, so open block types are
tracked per index.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

import structlog

from streamline.models.events import NormalizedEvent

from .base import ConversationTurn, ProviderCapabilities, StreamOptions
from .http_base import BaseHttpProvider, SseFrame

logger = structlog.get_logger(__name__)


@dataclass
class AnthropicParseState:
    blocks: Dict[int, str] = field(default_factory=dict)
    done_emitted: bool = False


class AnthropicProvider(BaseHttpProvider):
    """Anthropic Messages API over SSE"""

    def __init__(self, config: Optional[Dict[str, Any]] = None, client_factory=None):
        super().__init__("anthropic", config, client_factory)
        self.api_key = self.config.get("api_key", self.settings.anthropic_api_key)
        self._base_url = self.config.get("base_url", self.settings.anthropic_base_url)
        self.api_version = self.config.get("api_version", self.settings.anthropic_api_version)
        self.default_model = self.config.get("default_model", self.settings.anthropic_default_model)

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(supports_streaming=True, supports_tools=True, supports_thinking=True)

    async def is_available(self) -> bool:
        return bool(self.api_key)

    def build_messages(self, turns: List[ConversationTurn], options: StreamOptions) -> List[Dict[str, Any]]:
        messages = []
        for turn in turns:
            if turn.role == "system":
                continue
            turn = turn.without_markers()
            content = turn.content
            if turn.role == "user" and isinstance(content, str):
                content = [{"type": "text", "text": content}]
            messages.append({"role": turn.role, "content": list(content)})

        if options.interruption_reminder:
            for message in reversed(messages):
                if message["role"] == "user":
                    message["content"].insert(0, {"type": "text", "text": options.interruption_reminder})
                    break
        return messages

    def build_request(
        self,
        turns: List[ConversationTurn],
        options: StreamOptions,
    ) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        budget = max(options.thinking_budget, 0)
        response_tokens = options.response_tokens or self.settings.default_response_tokens

        body: Dict[str, Any] = {
            "model": options.model or self.default_model,
            "max_tokens": budget + response_tokens,
            "stream": True,
            "messages": self.build_messages(turns, options),
        }
        if options.system_prompt:
            body["system"] = options.system_prompt
        if options.tools:
            body["tools"] = options.tools
        if budget > 0:
            body["thinking"] = {"type": "enabled", "budget_tokens": budget}

        headers = {
            "content-type": "application/json",
            "x-api-key": self.api_key or "",
            "anthropic-version": self.api_version,
        }
        return f"{self.base_url.rstrip('/')}/v1/messages", headers, body

    def new_parse_state(self) -> AnthropicParseState:
        return AnthropicParseState()

    def handle_frame(self, frame: SseFrame, state: AnthropicParseState) -> Iterator[NormalizedEvent]:
        payload = self.decode_json(frame.data, self.name)
        if payload is None:
            return
        event_type = frame.event or payload.get("type")

        if event_type != "content_block_delta":
            logger.debug("SSE event", provider=self.name, event_type=event_type)

        if event_type == "message_start":
            usage = payload.get("message", {}).get("usage")
            if usage:
                yield NormalizedEvent.usage(
                    usage.get("input_tokens", 0),
                    usage.get("output_tokens", 0),
                    usage.get("cache_creation_input_tokens"),
                    usage.get("cache_read_input_tokens"),
                )

        elif event_type == "content_block_start":
            index = payload.get("index", 0)
            block = payload.get("content_block", {})
            block_type = block.get("type")
            state.blocks[index] = block_type
            if block_type == "thinking":
                yield NormalizedEvent.thinking_start(index)
            elif block_type == "text":
                yield NormalizedEvent.text_start(index)
            elif block_type == "tool_use":
                yield NormalizedEvent.tool_use_start(index, block.get("id", f"tool_{index}"), block.get("name", "unknown"))

        elif event_type == "content_block_delta":
            index = payload.get("index", 0)
            delta = payload.get("delta", {})
            delta_type = delta.get("type")
            if delta_type == "thinking_delta":
                yield NormalizedEvent.thinking_delta(index, delta.get("thinking", ""))
            elif delta_type == "signature_delta":
                yield NormalizedEvent.thinking_signature(index, delta.get("signature", ""))
            elif delta_type == "text_delta":
                yield NormalizedEvent.text_delta(index, delta.get("text", ""))
            elif delta_type == "input_json_delta":
                yield NormalizedEvent.tool_use_delta(index, delta.get("partial_json", ""))

        elif event_type == "content_block_stop":
            index = payload.get("index", 0)
            block_type = state.blocks.pop(index, None)
            if block_type == "thinking":
                yield NormalizedEvent.thinking_stop(index)
            elif block_type == "text":
                yield NormalizedEvent.text_stop(index)
            elif block_type == "tool_use":
                yield NormalizedEvent.tool_use_stop(index)

        elif event_type == "message_delta":
            usage = payload.get("usage")
            if usage:
                yield NormalizedEvent.usage(usage.get("input_tokens", 0), usage.get("output_tokens", 0))
            stop_reason = payload.get("delta", {}).get("stop_reason")
            if stop_reason:
                state.done_emitted = True
                yield NormalizedEvent.done(stop_reason)

        elif event_type == "message_stop":
            if not state.done_emitted:
                state.done_emitted = True
                yield NormalizedEvent.done("end_turn")

        elif event_type == "error":
            error = payload.get("error", {})
            message = error.get("message", "Unknown error") if isinstance(error, dict) else str(error)
            logger.error("Anthropic stream error", error=message)
            yield NormalizedEvent.error(message)
