"""
Process Supervisor

Generic engine behind every subprocess provider: spawns the CLI, reads its
merged stdout/stderr in fixed-size chunks, splits JSONL lines, tracks the
timeout phase each line puts the turn in, and terminates the child with
SIGINT, a short grace period, then SIGKILL when it goes silent for too long
or when the caller aborts.
"""

import asyncio
import json
import os
import shlex
import signal
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterator, List, Optional, Set

import structlog

from streamline.config import Settings, get_settings
from streamline.models.events import EventType, NormalizedEvent
from streamline.models.session import StreamPhase, StreamSession, TerminalStatus

logger = structlog.get_logger(__name__)


@dataclass
class SupervisorConfig:
    """Tunables for one supervisor instance"""
    timeouts: Dict[StreamPhase, float] = field(default_factory=lambda: {
        StreamPhase.INITIAL: 1800.0,
        StreamPhase.STREAMING: 1800.0,
        StreamPhase.TOOL_EXECUTION: 1800.0,
        StreamPhase.PENDING_RESPONSE: 1800.0,
    })
    read_chunk_size: int = 8192
    poll_interval: float = 0.05
    terminate_grace: float = 0.2
    drain_timeout: float = 0.5

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "SupervisorConfig":
        settings = settings or get_settings()
        return cls(
            timeouts={
                StreamPhase.INITIAL: settings.cli_timeout_initial,
                StreamPhase.STREAMING: settings.cli_timeout_streaming,
                StreamPhase.TOOL_EXECUTION: settings.cli_timeout_tool_execution,
                StreamPhase.PENDING_RESPONSE: settings.cli_timeout_pending_response,
            },
            read_chunk_size=settings.cli_read_chunk_size,
            poll_interval=settings.cli_poll_interval,
            terminate_grace=settings.cli_terminate_grace,
        )

    def timeout_for(self, phase: StreamPhase) -> float:
        return self.timeouts.get(phase, self.timeouts[StreamPhase.INITIAL])


@dataclass(frozen=True)
class LineClassification:
    """How one parsed line affects the idle timer"""
    phase: Optional[StreamPhase] = None
    resets_timer: bool = True
    skip: bool = False


@dataclass
class ProcessInvocation:
    """Everything needed to spawn the provider process"""
    argv: List[str]
    stdin: Optional[str] = None
    cwd: Optional[Path] = None
    env: Dict[str, str] = field(default_factory=dict)

    def display(self) -> str:
        return shlex.join(self.argv)


class SupervisorState(str, Enum):
    STARTING = "starting"
    READING = "reading"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    ERRORED = "errored"


class LineGrammar(ABC):
    """A provider's JSONL line grammar.

    Grammars are stateless; everything that changes while a turn streams
    lives in the state object returned by ``new_state``.
    """

    name: str = "cli"

    @abstractmethod
    def new_state(self) -> Any:
        pass

    @abstractmethod
    def classify(self, data: Dict[str, Any], state: Any) -> LineClassification:
        """Timeout phase and timer effect of a line, judged before it is parsed"""
        pass

    @abstractmethod
    def parse(self, data: Dict[str, Any], state: Any) -> Iterator[NormalizedEvent]:
        pass

    @abstractmethod
    def session_id(self, state: Any) -> Optional[str]:
        pass

    def close_open_blocks(self, state: Any) -> Iterator[NormalizedEvent]:
        return iter(())

    def final_usage(self, state: Any) -> Iterator[NormalizedEvent]:
        return iter(())

    def should_log(self, data: Dict[str, Any]) -> bool:
        return True


class ProcessSupervisor:
    """Runs one provider process and turns its output into NormalizedEvents"""

    def __init__(
        self,
        provider: str,
        config: Optional[SupervisorConfig] = None,
        session: Optional[StreamSession] = None,
    ):
        self.provider = provider
        self.config = config or SupervisorConfig.from_settings()
        self.session = session
        self.state = SupervisorState.STARTING
        self.phase = StreamPhase.INITIAL
        self.exit_code: Optional[int] = None
        self.process: Optional[asyncio.subprocess.Process] = None
        self._buffer = b""
        self._reported_session_id: Optional[str] = None
        self._last_reset: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def run(
        self,
        invocation: ProcessInvocation,
        grammar: LineGrammar,
        parse_state: Any,
        on_session_id: Optional[Callable[[str], Awaitable[None]]] = None,
        on_exit: Optional[Callable[[Optional[int]], Awaitable[None]]] = None,
    ) -> AsyncIterator[NormalizedEvent]:
        """Spawn the process and stream its events.

        Ends with ``done("end_turn")`` or ``done("timeout")``. A spawn failure
        or an unexpected fault ends with a single ``error`` instead.
        ``on_exit`` runs exactly once on every path, before ``done`` when the
        stream completes and during close when the consumer stops early.
        """
        exit_reported = False
        events = self._run(invocation, grammar, parse_state, on_session_id)
        try:
            async for event in events:
                if event.type is EventType.DONE and on_exit and not exit_reported:
                    exit_reported = True
                    await on_exit(self.exit_code)
                yield event
        finally:
            await events.aclose()
            if on_exit and not exit_reported:
                await on_exit(self.exit_code)
            # the consumer stopped reading before the turn ended
            self._finish_session(TerminalStatus.ABORTED)

    async def _run(
        self,
        invocation: ProcessInvocation,
        grammar: LineGrammar,
        parse_state: Any,
        on_session_id: Optional[Callable[[str], Awaitable[None]]],
    ) -> AsyncIterator[NormalizedEvent]:
        log = logger.bind(provider=self.provider)
        loop = asyncio.get_running_loop()

        try:
            self.process = await asyncio.create_subprocess_exec(
                *invocation.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(invocation.cwd) if invocation.cwd else None,
                env={**os.environ, **invocation.env},
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            self.state = SupervisorState.ERRORED
            log.error("Failed to start provider process", command=invocation.display(), error=str(e))
            self._finish_session(TerminalStatus.FAILED)
            yield NormalizedEvent.error(f"Failed to start {self.provider} CLI process: {e}")
            return

        log.info("Provider process started", pid=self.process.pid, command=invocation.display()[:300])
        read_task: Optional[asyncio.Task] = None
        stop_reason = "end_turn"
        failure: Optional[Exception] = None

        try:
            await self._write_stdin(invocation.stdin)

            self.state = SupervisorState.READING
            last_output = loop.time()
            first_chunk = True

            while True:
                if read_task is None:
                    read_task = asyncio.ensure_future(self.process.stdout.read(self.config.read_chunk_size))
                done, _ = await asyncio.wait({read_task}, timeout=self.config.poll_interval)

                if read_task in done:
                    chunk = read_task.result()
                    read_task = None
                    if not chunk:
                        break
                    if first_chunk:
                        first_chunk = False
                        log.debug("First data received", chunk_size=len(chunk))
                    self._buffer += chunk
                    for line in self._complete_lines():
                        async for event in self._handle_line(line, grammar, parse_state, on_session_id):
                            yield event
                        if self._last_reset is not None:
                            last_output = self._last_reset
                elif self.process.returncode is not None:
                    await self._drain(read_task)
                    read_task = None
                    break

                timeout = self.config.timeout_for(self.phase)
                elapsed = loop.time() - last_output
                if elapsed > timeout:
                    log.warning(
                        "Phase-aware timeout",
                        phase=self.phase.value,
                        timeout=timeout,
                        elapsed=round(elapsed, 2),
                    )
                    self.state = SupervisorState.TIMED_OUT
                    stop_reason = "timeout"
                    await self.terminate()
                    await self._drain(read_task)
                    read_task = None
                    yield NormalizedEvent.error(
                        f"{self.provider} process timed out after {timeout:g}s in {self.phase.value} phase",
                        timeout=timeout,
                        phase=self.phase.value,
                    )
                    break

            # Drained data, then a final line that had no trailing newline
            for line in self._complete_lines():
                async for event in self._handle_line(line, grammar, parse_state, on_session_id):
                    yield event
            remainder, self._buffer = self._buffer, b""
            if remainder.strip():
                async for event in self._handle_line(remainder, grammar, parse_state, on_session_id):
                    yield event

        except Exception as e:
            log.error("Provider stream failed", error=str(e), exc_info=True)
            self.state = SupervisorState.ERRORED
            failure = e

        finally:
            if read_task is not None and not read_task.done():
                read_task.cancel()
            if self.is_running:
                await self.terminate()

        for event in grammar.close_open_blocks(parse_state):
            yield event

        if failure is not None:
            self.exit_code = self.process.returncode
            self._finish_session(TerminalStatus.FAILED)
            yield NormalizedEvent.error(str(failure) or failure.__class__.__name__)
            return

        session_id = grammar.session_id(parse_state)
        if session_id:
            await self._report_session_id(session_id, on_session_id)

        for event in grammar.final_usage(parse_state):
            yield event

        self.exit_code = await self.process.wait()
        if self.state is SupervisorState.READING:
            self.state = SupervisorState.COMPLETED
        if self.exit_code != 0:
            log.warning("CLI exited with non-zero code", exit_code=self.exit_code)

        log.info(
            "Provider stream complete",
            exit_code=self.exit_code,
            state=self.state.value,
            phase=self.phase.value,
        )
        self._finish_session(
            TerminalStatus.TIMEOUT if self.state is SupervisorState.TIMED_OUT else TerminalStatus.COMPLETED
        )
        yield NormalizedEvent.done(stop_reason)

    def _finish_session(self, status: TerminalStatus) -> None:
        if self.session is not None and not self.session.is_finished:
            self.session.finish(status)

    async def terminate(self) -> None:
        """SIGINT, wait the grace period, then SIGKILL if still running"""
        process = self.process
        if process is None or process.returncode is not None:
            return
        try:
            process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.terminate_grace)
        except asyncio.TimeoutError:
            logger.warning("Process ignored SIGINT, killing", provider=self.provider, pid=process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def _write_stdin(self, payload: Optional[str]) -> None:
        stdin = self.process.stdin
        if stdin is None:
            return
        try:
            if payload is not None:
                stdin.write(payload.encode("utf-8"))
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning("Provider process closed stdin early", provider=self.provider, error=str(e))
        finally:
            stdin.close()

    async def _drain(self, read_task: Optional[asyncio.Task]) -> None:
        """Collect whatever the pipe still holds after the process exited"""
        drained = 0
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.drain_timeout
        while True:
            if read_task is None:
                read_task = asyncio.ensure_future(self.process.stdout.read(self.config.read_chunk_size))
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            done, _ = await asyncio.wait({read_task}, timeout=remaining)
            if read_task not in done:
                break
            chunk = read_task.result()
            read_task = None
            if not chunk:
                break
            drained += len(chunk)
            self._buffer += chunk
        if read_task is not None and not read_task.done():
            read_task.cancel()
        if drained:
            logger.debug("Drained remaining pipe data", provider=self.provider, bytes=drained)

    def _complete_lines(self) -> List[bytes]:
        lines = []
        while b"\n" in self._buffer:
            line, self._buffer = self._buffer.split(b"\n", 1)
            lines.append(line)
        return lines

    async def _handle_line(
        self,
        raw: bytes,
        grammar: LineGrammar,
        parse_state: Any,
        on_session_id: Optional[Callable[[str], Awaitable[None]]],
    ) -> AsyncIterator[NormalizedEvent]:
        self._last_reset = None
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return

        try:
            data = json.loads(line)
        except ValueError:
            logger.debug("Non-JSON output line", provider=self.provider, line=line[:500])
            return
        if not isinstance(data, dict):
            logger.warning("Non-object JSONL line", provider=self.provider, line=line[:500])
            return

        if grammar.should_log(data):
            logger.debug("JSONL line", provider=self.provider, line_type=data.get("type"))

        classification = grammar.classify(data, parse_state)
        if classification.resets_timer:
            self._last_reset = asyncio.get_running_loop().time()
            if self.session is not None and not self.session.is_finished:
                self.session.touch()
        if classification.skip:
            return
        if classification.phase is not None and classification.phase is not self.phase:
            logger.debug(
                "Phase change",
                provider=self.provider,
                old_phase=self.phase.value,
                new_phase=classification.phase.value,
            )
            self.phase = classification.phase
            if self.session is not None and not self.session.is_finished:
                self.session.enter_phase(classification.phase)

        try:
            events = list(grammar.parse(data, parse_state))
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            logger.warning(
                "Skipping malformed provider line",
                provider=self.provider,
                line_type=data.get("type"),
                error=str(e),
            )
            events = []
        for event in events:
            yield event

        session_id = grammar.session_id(parse_state)
        if session_id:
            await self._report_session_id(session_id, on_session_id)

    async def _report_session_id(
        self,
        session_id: str,
        on_session_id: Optional[Callable[[str], Awaitable[None]]],
    ) -> None:
        if session_id == self._reported_session_id:
            return
        self._reported_session_id = session_id
        if self.session is not None:
            self.session.provider_session_id = session_id
        if on_session_id:
            await on_session_id(session_id)


class AbortGate:
    """Decides when a caller-initiated abort may actually stop the process.

    An abort is deferred while tool input is still streaming or while tool
    results are outstanding, so no dangling tool call reaches persisted
    history. Once the last outstanding result arrives the deferred abort
    becomes due, and it skips native-history sync since the provider already
    holds the complete exchange.
    """

    def __init__(self) -> None:
        self.tool_in_progress = False
        self.waiting_for_results: Set[str] = set()
        self.pending = False
        self.skip_sync = False

    @property
    def can_abort_now(self) -> bool:
        return not self.tool_in_progress and not self.waiting_for_results

    def request(self, skip_sync: bool = False) -> bool:
        """Ask for an abort. Returns True when it may proceed immediately."""
        if self.can_abort_now:
            self.skip_sync = self.skip_sync or skip_sync
            return True
        logger.info(
            "Abort deferred until tool execution settles",
            tool_in_progress=self.tool_in_progress,
            outstanding_results=len(self.waiting_for_results),
        )
        self.pending = True
        return False

    def observe(self, event: NormalizedEvent) -> bool:
        """Track tool progress. Returns True when a deferred abort is now due."""
        if event.type is EventType.TOOL_USE_START:
            self.tool_in_progress = True
            tool_id = (event.metadata or {}).get("tool_id")
            if tool_id:
                self.waiting_for_results.add(tool_id)
        elif event.type is EventType.TOOL_USE_STOP:
            self.tool_in_progress = False
        elif event.type is EventType.TOOL_RESULT:
            self.waiting_for_results.discard((event.metadata or {}).get("tool_id"))
            if self.pending and self.can_abort_now:
                self.pending = False
                self.skip_sync = True
                return True
        return False
