"""
Claude Code Provider

Wraps the ``claude`` CLI in ``--print --output-format stream-json`` mode.
With ``--include-partial-messages`` most output arrives as ``stream_event``
envelopes mirroring the Messages API block protocol; a coarser ``assistant``
line repeats the same content and is ignored once any ``stream_event`` has
been seen.
"""

import json
import os
import re
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import structlog

from streamline.models.events import NormalizedEvent
from streamline.models.session import StreamPhase

from .base import StreamOptions
from .cli_base import BaseCliProvider
from .supervisor import LineClassification, LineGrammar, ProcessInvocation

logger = structlog.get_logger(__name__)

LOCAL_COMMAND_STDOUT = re.compile(r"<local-command-stdout>(.*?)</local-command-stdout>", re.DOTALL)
COMMAND_NAME = re.compile(r"<command-name>(.*?)</command-name>")

SESSION_FILE_VERSION = "2.0.76"


@dataclass
class ToolUseAccumulator:
    id: str
    name: str
    input_json: str = ""


@dataclass
class ClaudeCodeParseState:
    """Mutable per-stream state for the envelope grammar"""
    block_index: int = 0
    text_started: bool = False
    thinking_started: bool = False
    current_tool_use: Optional[ToolUseAccumulator] = None
    session_id: Optional[str] = None
    total_cost: Optional[float] = None
    got_stream_events: bool = False
    awaiting_compaction_summary: bool = False
    compaction_metadata: Dict[str, Any] = field(default_factory=dict)
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0


class ClaudeCodeGrammar(LineGrammar):
    """Envelope grammar emitted by ``claude --output-format stream-json``"""

    name = "claude_code"

    def new_state(self) -> ClaudeCodeParseState:
        return ClaudeCodeParseState()

    def session_id(self, state: ClaudeCodeParseState) -> Optional[str]:
        return state.session_id

    def should_log(self, data: Dict[str, Any]) -> bool:
        # Deltas are far too chatty outside debug tracing
        if data.get("type") != "stream_event":
            return True
        return data.get("event", {}).get("type") != "content_block_delta"

    def classify(self, data: Dict[str, Any], state: ClaudeCodeParseState) -> LineClassification:
        line_type = data.get("type")

        if line_type == "system":
            return LineClassification(StreamPhase.INITIAL)
        if line_type == "assistant" and state.got_stream_events:
            return LineClassification(skip=True)
        if line_type in ("user", "result"):
            return LineClassification(StreamPhase.PENDING_RESPONSE)
        if line_type != "stream_event":
            return LineClassification()

        event = data.get("event") or {}
        event_type = event.get("type")
        if event_type in ("content_block_start", "content_block_delta"):
            return LineClassification(StreamPhase.STREAMING)
        if event_type == "content_block_stop":
            closing_tool = (
                state.current_tool_use is not None
                and not state.thinking_started
                and not state.text_started
            )
            return LineClassification(StreamPhase.TOOL_EXECUTION if closing_tool else StreamPhase.STREAMING)
        if event_type == "message_delta" and (event.get("delta") or {}).get("stop_reason") == "tool_use":
            return LineClassification(StreamPhase.TOOL_EXECUTION)
        return LineClassification()

    def parse(self, data: Dict[str, Any], state: ClaudeCodeParseState) -> Iterator[NormalizedEvent]:
        line_type = data.get("type", "")

        if line_type == "user":
            yield from self._parse_user(data, state)

        elif line_type == "assistant":
            if not state.got_stream_events:
                yield from self._parse_assistant(data, state)

        elif line_type == "result":
            if data.get("session_id"):
                state.session_id = data["session_id"]
            if data.get("total_cost_usd") is not None:
                state.total_cost = float(data["total_cost_usd"])
            logger.info(
                "Result received",
                subtype=data.get("subtype", "unknown"),
                session_id=state.session_id,
                total_cost=state.total_cost,
                num_turns=data.get("num_turns"),
            )

        elif line_type == "stream_event":
            state.got_stream_events = True
            yield from self._parse_stream_event(data.get("event") or {}, state)

        elif line_type == "system":
            if data.get("session_id"):
                state.session_id = data["session_id"]
            if data.get("subtype") == "compact_boundary":
                compact = data.get("compact_metadata")
                compact = compact if isinstance(compact, dict) else {}
                state.awaiting_compaction_summary = True
                state.compaction_metadata = {
                    "pre_tokens": compact.get("pre_tokens"),
                    "trigger": compact.get("trigger", "auto"),
                }
                logger.info("Context compaction detected", **state.compaction_metadata)

        else:
            logger.debug("Unknown line type", line_type=line_type)

    def close_open_blocks(self, state: ClaudeCodeParseState) -> Iterator[NormalizedEvent]:
        if state.thinking_started:
            yield NormalizedEvent.thinking_stop(state.block_index)
            state.thinking_started = False
            state.block_index += 1
        if state.text_started:
            yield NormalizedEvent.text_stop(state.block_index)
            state.text_started = False
            state.block_index += 1
        if state.current_tool_use is not None:
            yield NormalizedEvent.tool_use_stop(state.block_index)
            state.current_tool_use = None
            state.block_index += 1

    def final_usage(self, state: ClaudeCodeParseState) -> Iterator[NormalizedEvent]:
        if state.total_cost is None and state.input_tokens <= 0:
            return
        yield NormalizedEvent.usage(
            state.input_tokens,
            state.output_tokens,
            state.cache_creation_tokens,
            state.cache_read_tokens,
            state.total_cost,
        )

    # ---- envelope sub-protocol -------------------------------------------

    def _close_text(self, state: ClaudeCodeParseState) -> Iterator[NormalizedEvent]:
        if state.text_started:
            yield NormalizedEvent.text_stop(state.block_index)
            state.text_started = False
            state.block_index += 1

    def _close_thinking(self, state: ClaudeCodeParseState) -> Iterator[NormalizedEvent]:
        if state.thinking_started:
            yield NormalizedEvent.thinking_stop(state.block_index)
            state.thinking_started = False
            state.block_index += 1

    def _parse_stream_event(self, event: Dict[str, Any], state: ClaudeCodeParseState) -> Iterator[NormalizedEvent]:
        event_type = event.get("type", "")

        if event_type == "content_block_start":
            block = event.get("content_block") or {}
            block_type = block.get("type")
            if block_type == "thinking":
                yield from self._close_text(state)
                if not state.thinking_started:
                    yield NormalizedEvent.thinking_start(state.block_index)
                    state.thinking_started = True
            elif block_type == "tool_use":
                yield from self._close_text(state)
                yield from self._close_thinking(state)
                tool = ToolUseAccumulator(
                    id=block.get("id") or f"tool_{state.block_index}",
                    name=block.get("name") or "unknown",
                )
                state.current_tool_use = tool
                yield NormalizedEvent.tool_use_start(state.block_index, tool.id, tool.name)
            elif block_type == "text":
                yield from self._close_thinking(state)
                if not state.text_started:
                    yield NormalizedEvent.text_start(state.block_index)
                    state.text_started = True

        elif event_type == "content_block_delta":
            delta = event.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "thinking_delta":
                thinking = delta.get("thinking", "")
                if thinking:
                    if not state.thinking_started:
                        yield NormalizedEvent.thinking_start(state.block_index)
                        state.thinking_started = True
                    yield NormalizedEvent.thinking_delta(state.block_index, thinking)
            elif delta_type == "text_delta":
                text = delta.get("text", "")
                if text:
                    if not state.text_started:
                        yield NormalizedEvent.text_start(state.block_index)
                        state.text_started = True
                    yield NormalizedEvent.text_delta(state.block_index, text)
            elif delta_type == "input_json_delta":
                partial = delta.get("partial_json", "")
                if partial and state.current_tool_use is not None:
                    state.current_tool_use.input_json += partial
                    yield NormalizedEvent.tool_use_delta(state.block_index, partial)
            elif delta_type == "signature_delta":
                signature = delta.get("signature", "")
                if signature:
                    yield NormalizedEvent.thinking_signature(state.block_index, signature)

        elif event_type == "content_block_stop":
            if state.thinking_started:
                yield from self._close_thinking(state)
            elif state.text_started:
                yield from self._close_text(state)
            elif state.current_tool_use is not None:
                yield NormalizedEvent.tool_use_stop(state.block_index)
                state.current_tool_use = None
                state.block_index += 1

        elif event_type in ("message_start", "message_delta"):
            usage = (event.get("message") or {}).get("usage")
            if usage:
                # Context size is fresh input plus both cache buckets
                cache_creation = usage.get("cache_creation_input_tokens") or 0
                cache_read = usage.get("cache_read_input_tokens") or 0
                state.input_tokens = (usage.get("input_tokens") or 0) + cache_creation + cache_read
                state.output_tokens = usage.get("output_tokens") or 0
                state.cache_creation_tokens = cache_creation
                state.cache_read_tokens = cache_read
            elif event_type == "message_delta" and event.get("usage"):
                state.output_tokens = event["usage"].get("output_tokens") or state.output_tokens

    def _parse_assistant(self, data: Dict[str, Any], state: ClaudeCodeParseState) -> Iterator[NormalizedEvent]:
        content = (data.get("message") or {}).get("content")
        if not isinstance(content, list):
            return

        for block in content:
            block_type = block.get("type")

            if block_type == "text":
                if not state.text_started:
                    yield from self._close_thinking(state)
                    yield NormalizedEvent.text_start(state.block_index)
                    state.text_started = True
                if block.get("text"):
                    yield NormalizedEvent.text_delta(state.block_index, block["text"])

            elif block_type == "thinking":
                if not state.thinking_started:
                    yield from self._close_text(state)
                    yield NormalizedEvent.thinking_start(state.block_index)
                    state.thinking_started = True
                if block.get("thinking"):
                    yield NormalizedEvent.thinking_delta(state.block_index, block["thinking"])

            elif block_type == "tool_use":
                yield from self._close_text(state)
                yield from self._close_thinking(state)
                tool_id = block.get("id") or f"tool_{state.block_index}"
                tool_input = block.get("input") or {}
                yield NormalizedEvent.tool_use_start(state.block_index, tool_id, block.get("name") or "unknown")
                yield NormalizedEvent.tool_use_delta(
                    state.block_index,
                    tool_input if isinstance(tool_input, str) else json.dumps(tool_input),
                )
                yield NormalizedEvent.tool_use_stop(state.block_index)
                state.block_index += 1

            elif block_type == "tool_result":
                yield NormalizedEvent.tool_result(
                    block.get("tool_use_id", "unknown"),
                    block.get("content", ""),
                    block.get("is_error", False),
                )

    def _parse_user(self, data: Dict[str, Any], state: ClaudeCodeParseState) -> Iterator[NormalizedEvent]:
        content = (data.get("message") or {}).get("content")

        if state.awaiting_compaction_summary:
            state.awaiting_compaction_summary = False
            summary = ""
            if isinstance(content, str):
                summary = content
            elif isinstance(content, list):
                summary = next(
                    (b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text"),
                    "",
                )
            if summary:
                metadata, state.compaction_metadata = state.compaction_metadata, {}
                logger.info("Compaction summary captured", summary_length=len(summary), **metadata)
                yield NormalizedEvent.compaction_summary(
                    summary,
                    metadata.get("pre_tokens"),
                    metadata.get("trigger") or "auto",
                )
                return

        if isinstance(content, str):
            match = LOCAL_COMMAND_STDOUT.search(content)
            if match:
                command = COMMAND_NAME.search(content)
                yield NormalizedEvent.system_info(match.group(1).strip(), command.group(1) if command else None)
            return

        if not isinstance(content, list):
            return

        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            result = block.get("content", "")
            if isinstance(result, (str, list, dict)):
                yield NormalizedEvent.tool_result(
                    block.get("tool_use_id", "unknown"),
                    result,
                    block.get("is_error", False),
                )


class ClaudeCodeProvider(BaseCliProvider):
    """Claude Code CLI provider"""

    auth_error_prefix = "CLAUDE_CODE_AUTH_REQUIRED:"

    def __init__(self, config: Optional[Dict[str, Any]] = None, session_store=None, supervisor_config=None):
        super().__init__("claude_code", config, session_store, supervisor_config)
        self._binary = self.config.get("claude_bin", self.settings.claude_code_bin)
        self.default_model = self.config.get("default_model", self.settings.claude_code_default_model)
        self._grammar = ClaudeCodeGrammar()

    @property
    def binary(self) -> str:
        return self._binary

    @property
    def grammar(self) -> ClaudeCodeGrammar:
        return self._grammar

    @property
    def claude_home(self) -> Path:
        return Path.home() / ".claude"

    @property
    def credentials_path(self) -> Path:
        return self.claude_home / ".credentials.json"

    def auth_required_message(self) -> str:
        return 'Claude Code authentication required. Please run "claude login" in the container.'

    def build_invocation(
        self,
        user_message: str,
        options: StreamOptions,
        session_id: Optional[str],
    ) -> ProcessInvocation:
        argv = [
            self.binary,
            "--print",
            "--verbose",
            "--output-format", "stream-json",
            "--include-partial-messages",
            "--dangerously-skip-permissions",
            "--model", options.model or self.default_model,
        ]
        if session_id:
            argv += ["--resume", session_id]
        if options.allowed_tools:
            argv += ["--tools", ",".join(options.allowed_tools)]
        if options.system_prompt:
            argv += ["--system-prompt", options.system_prompt]

        env = dict(options.environment)
        if options.thinking_budget > 0:
            env["MAX_THINKING_TOKENS"] = str(options.thinking_budget)

        # --tools breaks positional prompt parsing, so the turn goes to stdin
        return ProcessInvocation(
            argv=argv,
            stdin=user_message,
            cwd=self.working_directory(options),
            env=env,
        )

    async def on_process_complete(
        self,
        invocation: ProcessInvocation,
        options: StreamOptions,
        exit_code: Optional[int],
    ) -> None:
        """Keep CLI config files usable from both interactive and background runs"""
        home = Path.home()
        for path, mode in (
            (home / ".claude.json", 0o660),
            (home / ".claude.json.backup", 0o660),
            (self.claude_home / "settings.json", 0o664),
        ):
            try:
                os.chmod(path, mode)
            except FileNotFoundError:
                continue
            except PermissionError as e:
                logger.warning("Could not fix config file permissions", path=str(path), error=str(e))

    def session_file_path(self, working_dir: Path, session_id: str) -> Path:
        """~/.claude/projects/<cwd with / replaced by ->/<session>.jsonl"""
        encoded = str(working_dir).replace("/", "-")
        return self.claude_home / "projects" / encoded / f"{session_id}.jsonl"

    @staticmethod
    def last_uuid(session_file: Path) -> Optional[str]:
        """uuid of the last entry that has one; metadata lines have none"""
        if not session_file.exists():
            return None
        lines = session_file.read_text(encoding="utf-8").splitlines()
        for line in reversed(lines):
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except ValueError:
                continue
            if isinstance(data, dict) and data.get("uuid"):
                return data["uuid"]
        return None

    async def sync_aborted_message(
        self,
        conversation_id: str,
        user_message: Dict[str, Any],
        assistant_message: Dict[str, Any],
        options: Optional[StreamOptions] = None,
    ) -> bool:
        """Append an aborted exchange to the CLI's own session file so ``--resume`` sees it.

        Raises RuntimeError when the assistant content holds a ``tool_use``
        block: a correct abort either happens before any tool call or waits
        for its result and skips sync.
        """
        options = options or StreamOptions()
        content = [
            block for block in assistant_message.get("content") or []
            if block.get("type") != "interrupted"
        ]
        if any(block.get("type") == "tool_use" for block in content):
            raise RuntimeError(
                "BUG: Attempting to sync tool_use block without tool_result. "
                "Abort must wait for tool completion or skip sync."
            )

        session_id = None
        if self.session_store is not None:
            session_id = await self.session_store.get_session_id(conversation_id, self.name)
        if not session_id:
            logger.warning("No session ID for sync", conversation_id=conversation_id)
            return False

        working_dir = self.working_directory(options)
        session_file = self.session_file_path(working_dir, session_id)
        try:
            session_file.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("Failed to create session directory", dir=str(session_file.parent), error=str(e))
            return False

        logger.info(
            "Syncing aborted message",
            conversation_id=conversation_id,
            session_id=session_id,
            session_file=str(session_file),
        )

        user_uuid = str(uuid.uuid4())
        entries = [
            self._session_entry(
                "user",
                {
                    "role": "user",
                    "content": self._user_content(user_message.get("content")),
                },
                session_id,
                self.last_uuid(session_file),
                user_uuid,
                working_dir,
                user_message.get("created_at"),
            ),
            self._session_entry(
                "assistant",
                {
                    "model": options.model or self.default_model,
                    "id": f"msg_{secrets.token_hex(12)}",
                    "type": "message",
                    "role": "assistant",
                    "content": content,
                    "stop_reason": "end_turn",
                    "stop_sequence": None,
                    "usage": {
                        "input_tokens": assistant_message.get("input_tokens") or 0,
                        "output_tokens": assistant_message.get("output_tokens") or 0,
                    },
                },
                session_id,
                user_uuid,
                str(uuid.uuid4()),
                working_dir,
                assistant_message.get("created_at"),
                request_id=f"req_{secrets.token_hex(12)}",
            ),
        ]

        try:
            with session_file.open("a", encoding="utf-8") as handle:
                handle.write("".join(json.dumps(entry) + "\n" for entry in entries))
        except OSError as e:
            logger.error("Failed to write session file", session_file=str(session_file), error=str(e))
            return False

        logger.info("Synced aborted message", session_file=str(session_file), entries_written=len(entries))
        return True

    @staticmethod
    def _user_content(content: Any) -> str:
        if isinstance(content, str):
            return content
        return json.dumps(content)

    @staticmethod
    def _session_entry(
        entry_type: str,
        message: Dict[str, Any],
        session_id: str,
        parent_uuid: Optional[str],
        entry_uuid: str,
        working_dir: Path,
        created_at: Optional[str],
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "parentUuid": parent_uuid,
            "isSidechain": False,
            "userType": "external",
            "cwd": str(working_dir),
            "sessionId": session_id,
            "version": SESSION_FILE_VERSION,
            "gitBranch": "",
            "type": entry_type,
            "message": message,
            "uuid": entry_uuid,
            "timestamp": created_at or datetime.now(timezone.utc).isoformat(),
        }
        if request_id:
            entry["requestId"] = request_id
        return entry
