"""
Codex Provider

Wraps ``codex exec --json``. Output is a flat item grammar: thread and turn
lifecycle lines plus ``item.started`` / ``item.completed`` for reasoning,
agent messages and shell commands. Items arrive fully assembled, so every
block is emitted as an atomic start/delta/stop run.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import structlog

from streamline.models.events import NormalizedEvent
from streamline.models.session import StreamPhase

from .base import StreamOptions
from .cli_base import BaseCliProvider
from .supervisor import LineClassification, LineGrammar, ProcessInvocation

logger = structlog.get_logger(__name__)

SYSTEM_PROMPT_FILE = "STREAMLINE-SYSTEM.md"


@dataclass
class CodexParseState:
    block_index: int = 0
    open_tool_id: Optional[str] = None
    thread_id: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0


class CodexGrammar(LineGrammar):
    """Item grammar emitted by ``codex exec --json``"""

    name = "codex"

    def new_state(self) -> CodexParseState:
        return CodexParseState()

    def session_id(self, state: CodexParseState) -> Optional[str]:
        return state.thread_id

    def classify(self, data: Dict[str, Any], state: CodexParseState) -> LineClassification:
        line_type = data.get("type")
        item_type = (data.get("item") or {}).get("type")

        if line_type in ("thread.started", "turn.started"):
            return LineClassification(StreamPhase.INITIAL)
        if line_type == "item.started":
            if item_type == "command_execution":
                return LineClassification(StreamPhase.TOOL_EXECUTION)
            return LineClassification(StreamPhase.STREAMING)
        if line_type == "item.completed":
            if item_type == "command_execution":
                return LineClassification(StreamPhase.PENDING_RESPONSE)
            return LineClassification(StreamPhase.STREAMING)
        if line_type == "turn.completed":
            return LineClassification(StreamPhase.PENDING_RESPONSE)
        return LineClassification()

    def parse(self, data: Dict[str, Any], state: CodexParseState) -> Iterator[NormalizedEvent]:
        line_type = data.get("type", "")

        if line_type == "thread.started":
            state.thread_id = data.get("thread_id")
            logger.info("Thread started", thread_id=state.thread_id)

        elif line_type == "turn.started":
            pass

        elif line_type == "item.started":
            item = data.get("item") or {}
            if item.get("type") == "command_execution":
                yield from self._open_tool(item, state)

        elif line_type == "item.completed":
            yield from self._parse_completed_item(data.get("item") or {}, state)

        elif line_type == "turn.completed":
            usage = data.get("usage") or {}
            # Codex reports running totals for the thread; pass them through untouched
            state.input_tokens = usage.get("input_tokens") or 0
            state.output_tokens = usage.get("output_tokens") or 0
            state.cached_tokens = usage.get("cached_input_tokens") or 0
            logger.info(
                "Turn completed",
                input_tokens=state.input_tokens,
                output_tokens=state.output_tokens,
                cached_tokens=state.cached_tokens,
            )
            yield NormalizedEvent.usage(
                state.input_tokens,
                state.output_tokens,
                cache_read_tokens=state.cached_tokens or None,
            )

        elif line_type == "error":
            yield NormalizedEvent.error(data.get("message") or "Unknown error")

        elif line_type == "turn.failed":
            error = data.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else str(error)
            yield NormalizedEvent.error(message or "Turn failed")

        else:
            logger.debug("Unknown line type", line_type=line_type)

    def close_open_blocks(self, state: CodexParseState) -> Iterator[NormalizedEvent]:
        # Text and reasoning blocks are atomic, only a running command can be open
        if state.open_tool_id is not None:
            yield NormalizedEvent.tool_use_stop(state.block_index)
            state.open_tool_id = None
            state.block_index += 1

    def _open_tool(self, item: Dict[str, Any], state: CodexParseState) -> Iterator[NormalizedEvent]:
        tool_id = item.get("id") or f"tool_{state.block_index}"
        state.open_tool_id = tool_id
        yield NormalizedEvent.tool_use_start(state.block_index, tool_id, "Bash")
        yield NormalizedEvent.tool_use_delta(state.block_index, json.dumps({"command": item.get("command", "")}))

    def _parse_completed_item(self, item: Dict[str, Any], state: CodexParseState) -> Iterator[NormalizedEvent]:
        item_type = item.get("type")
        text = item.get("text") or ""

        if item_type == "reasoning" and text:
            yield NormalizedEvent.thinking_start(state.block_index)
            yield NormalizedEvent.thinking_delta(state.block_index, text)
            yield NormalizedEvent.thinking_stop(state.block_index)
            state.block_index += 1

        elif item_type == "agent_message" and text:
            yield NormalizedEvent.text_start(state.block_index)
            yield NormalizedEvent.text_delta(state.block_index, text)
            yield NormalizedEvent.text_stop(state.block_index)
            state.block_index += 1

        elif item_type == "command_execution":
            if state.open_tool_id is None:
                yield from self._open_tool(item, state)
            tool_id = state.open_tool_id
            exit_code = item.get("exit_code") or 0
            yield NormalizedEvent.tool_use_stop(state.block_index)
            yield NormalizedEvent.tool_result(tool_id, item.get("aggregated_output") or "", exit_code != 0)
            state.open_tool_id = None
            state.block_index += 1


class CodexProvider(BaseCliProvider):
    """OpenAI Codex CLI provider"""

    auth_error_prefix = "CODEX_AUTH_REQUIRED:"

    def __init__(self, config: Optional[Dict[str, Any]] = None, session_store=None, supervisor_config=None):
        super().__init__("codex", config, session_store, supervisor_config)
        self._binary = self.config.get("codex_bin", self.settings.codex_bin)
        self.default_model = self.config.get("default_model", self.settings.codex_default_model)
        self._grammar = CodexGrammar()

    @property
    def binary(self) -> str:
        return self._binary

    @property
    def grammar(self) -> CodexGrammar:
        return self._grammar

    @property
    def credentials_path(self) -> Path:
        return Path.home() / ".codex" / "auth.json"

    def auth_required_message(self) -> str:
        return 'Codex authentication required. Please run "codex login" in the container.'

    def system_prompt_file(self, options: StreamOptions) -> Path:
        return self.working_directory(options) / SYSTEM_PROMPT_FILE

    def build_invocation(
        self,
        user_message: str,
        options: StreamOptions,
        session_id: Optional[str],
    ) -> ProcessInvocation:
        working_dir = self.working_directory(options)
        # Flags must precede the resume subcommand
        argv = [
            self.binary,
            "exec",
            "--json",
            "--skip-git-repo-check",
            "--dangerously-bypass-approvals-and-sandbox",
            "--model", options.model or self.default_model,
            "-C", str(working_dir),
        ]
        if options.system_prompt:
            self._write_system_prompt(options)
            argv += ["-c", f'project_doc_fallback_filenames=["{SYSTEM_PROMPT_FILE}"]']
        if session_id:
            argv += ["resume", session_id]
        argv.append(user_message)

        return ProcessInvocation(argv=argv, stdin=None, cwd=working_dir, env=dict(options.environment))

    def _write_system_prompt(self, options: StreamOptions) -> None:
        path = self.system_prompt_file(options)
        try:
            path.write_text(options.system_prompt, encoding="utf-8")
        except OSError as e:
            logger.warning("Failed to write system prompt file", file=str(path), error=str(e))

    async def on_process_complete(
        self,
        invocation: ProcessInvocation,
        options: StreamOptions,
        exit_code: Optional[int],
    ) -> None:
        # Codex reads the file at startup, so it can go once the process is gone
        if not options.system_prompt:
            return
        path = self.system_prompt_file(options)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            logger.warning("Failed to remove system prompt file", file=str(path), error=str(e))
