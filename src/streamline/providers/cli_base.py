"""
CLI Provider Base

Template for providers that wrap a native command-line agent. The agent
keeps its own multi-turn memory behind an opaque session id, runs tools
itself, and reports progress as JSONL on stdout. Subclasses supply the
invocation and the line grammar; the process lifecycle lives in
``ProcessSupervisor``.
"""

import os
import shutil
from abc import abstractmethod
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog

from streamline.config import get_settings
from streamline.models.events import NormalizedEvent
from streamline.models.session import StreamSession

from .base import (
    AuthenticationRequiredError,
    BaseProvider,
    ConversationTurn,
    PromptTooLargeError,
    ProviderCapabilities,
    ProviderError,
    ProviderUnavailableError,
    StreamOptions,
    guard_stream,
    latest_user_message,
)
from .supervisor import LineGrammar, ProcessInvocation, ProcessSupervisor, SupervisorConfig

logger = structlog.get_logger(__name__)


class BaseCliProvider(BaseProvider):
    """Base class for subprocess-backed providers"""

    # e.g. "CODEX_AUTH_REQUIRED:"
    auth_error_prefix: str = ""

    def __init__(
        self,
        name: str,
        config: Optional[Dict[str, Any]] = None,
        session_store=None,
        supervisor_config: Optional[SupervisorConfig] = None,
    ):
        super().__init__(name, config)
        self.settings = get_settings()
        self.session_store = session_store
        self.supervisor_config = supervisor_config or SupervisorConfig.from_settings(self.settings)
        self.prompt_limit = self.config.get("system_prompt_max_bytes", self.settings.system_prompt_max_bytes)
        self._supervisors: Dict[str, ProcessSupervisor] = {}

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            supports_streaming=True,
            supports_tools=True,
            supports_thinking=True,
            executes_tools_internally=True,
            native_sessions=True,
        )

    @property
    @abstractmethod
    def binary(self) -> str:
        pass

    @property
    @abstractmethod
    def credentials_path(self) -> Path:
        pass

    @property
    @abstractmethod
    def grammar(self) -> LineGrammar:
        pass

    @abstractmethod
    def auth_required_message(self) -> str:
        """Human-readable half of the auth error, after the prefix"""
        pass

    @abstractmethod
    def build_invocation(
        self,
        user_message: str,
        options: StreamOptions,
        session_id: Optional[str],
    ) -> ProcessInvocation:
        """Deterministic command line, stdin payload and environment for one turn"""
        pass

    async def on_process_complete(
        self,
        invocation: ProcessInvocation,
        options: StreamOptions,
        exit_code: Optional[int],
    ) -> None:
        """Runs once after the process is gone, whatever the exit path"""
        return None

    async def is_available(self) -> bool:
        return shutil.which(self.binary) is not None

    def has_credentials(self) -> bool:
        path = self.credentials_path
        return path.is_file() and os.access(path, os.R_OK)

    async def ensure_ready(self, conversation_id: Optional[str] = None) -> None:
        """Raise when the binary is missing or the CLI was never logged in"""
        if not await self.is_available():
            raise ProviderUnavailableError(f"{self.name} CLI not available", self.name, conversation_id)
        if not self.has_credentials():
            logger.warning("CLI credentials missing", provider=self.name, path=str(self.credentials_path))
            raise AuthenticationRequiredError(
                self.auth_error_prefix,
                self.auth_required_message(),
                self.name,
                conversation_id,
            )

    def working_directory(self, options: StreamOptions) -> Path:
        return Path(options.working_directory) if options.working_directory else Path.cwd()

    def validate_options(self, options: StreamOptions, conversation_id: Optional[str] = None) -> None:
        """Reject a system prompt the CLI cannot take, before anything is spawned"""
        if not options.system_prompt:
            return
        size = len(options.system_prompt.encode("utf-8"))
        if size > self.prompt_limit:
            logger.error(
                "System prompt exceeds provider limit",
                provider=self.name,
                size=size,
                limit=self.prompt_limit,
            )
            raise PromptTooLargeError(size, self.prompt_limit, self.name, conversation_id)
        if size > self.prompt_limit * self.settings.system_prompt_warn_ratio:
            logger.warning(
                "System prompt approaching provider limit",
                provider=self.name,
                size=size,
                limit=self.prompt_limit,
                percent=round(size / self.prompt_limit * 100, 1),
            )

    def stream_turn(
        self,
        conversation_id: str,
        turns: List[ConversationTurn],
        options: StreamOptions,
    ) -> AsyncIterator[NormalizedEvent]:
        self.validate_options(options, conversation_id)
        return guard_stream(
            self._stream(conversation_id, turns, options),
            self.name,
            errors_are_terminal=False,
        )

    async def _stream(
        self,
        conversation_id: str,
        turns: List[ConversationTurn],
        options: StreamOptions,
    ) -> AsyncIterator[NormalizedEvent]:
        try:
            await self.ensure_ready(conversation_id)
        except ProviderError as e:
            yield NormalizedEvent.error(str(e))
            return

        message = latest_user_message(turns)
        if message is None:
            yield NormalizedEvent.error("No user message found in conversation")
            return
        if options.interruption_reminder:
            message = f"{options.interruption_reminder}\n\n{message}"

        known_session_id = None
        if self.session_store is not None:
            known_session_id = await self.session_store.get_session_id(conversation_id, self.name)

        invocation = self.build_invocation(message, options, known_session_id)
        logger.info(
            "Starting CLI stream",
            provider=self.name,
            conversation_id=conversation_id,
            session_id=known_session_id or "new",
            model=options.model,
            user_message=message[:100],
        )

        async def persist_session_id(session_id: str) -> None:
            nonlocal known_session_id
            if session_id == known_session_id:
                return
            known_session_id = session_id
            if self.session_store is not None:
                await self.session_store.set_session_id(conversation_id, self.name, session_id)
            logger.info("Session ID captured early", provider=self.name, session_id=session_id)

        async def on_exit(exit_code: Optional[int]) -> None:
            await self.on_process_complete(invocation, options, exit_code)

        session = StreamSession(conversation_id, self.name, provider_session_id=known_session_id)
        supervisor = ProcessSupervisor(self.name, self.supervisor_config, session)
        self._supervisors[conversation_id] = supervisor
        events = supervisor.run(
            invocation,
            self.grammar,
            self.grammar.new_state(),
            on_session_id=persist_session_id,
            on_exit=on_exit,
        )
        try:
            async for event in events:
                yield event
        finally:
            await events.aclose()
            if self._supervisors.get(conversation_id) is supervisor:
                del self._supervisors[conversation_id]

    async def abort(self, conversation_id: str) -> None:
        """Interrupt the conversation's running process: SIGINT, grace period, SIGKILL"""
        supervisor = self._supervisors.get(conversation_id)
        if supervisor is None or not supervisor.is_running:
            return
        logger.info(
            "Aborting CLI process",
            provider=self.name,
            conversation_id=conversation_id,
            pid=supervisor.process.pid,
        )
        await supervisor.terminate()
