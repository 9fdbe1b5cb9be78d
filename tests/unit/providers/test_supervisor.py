"""
Unit tests for the process supervisor, driven by real child processes
"""
import json
from typing import Any, Dict, Iterator, Optional

import pytest

from conftest import jsonl_script, python_script
from streamline.models.events import EventType, NormalizedEvent
from streamline.models.session import StreamPhase, StreamSession, TerminalStatus
from streamline.providers.supervisor import (
    AbortGate,
    LineClassification,
    LineGrammar,
    ProcessInvocation,
    ProcessSupervisor,
    SupervisorConfig,
    SupervisorState,
)


class EchoGrammar(LineGrammar):
    """Minimal grammar: ``msg`` becomes system_info, ``phase`` drives the timer"""

    name = "echo"

    def new_state(self) -> Dict[str, Any]:
        return {"session_id": None, "closed": False}

    def classify(self, data: Dict[str, Any], state: Dict[str, Any]) -> LineClassification:
        phase = StreamPhase(data["phase"]) if "phase" in data else None
        return LineClassification(
            phase=phase,
            resets_timer=data.get("reset", True),
            skip=data.get("skip", False),
        )

    def parse(self, data: Dict[str, Any], state: Dict[str, Any]) -> Iterator[NormalizedEvent]:
        if "session_id" in data:
            state["session_id"] = data["session_id"]
        if "boom" in data:
            raise KeyError("boom")
        if "msg" in data:
            yield NormalizedEvent.system_info(data["msg"])

    def session_id(self, state: Dict[str, Any]) -> Optional[str]:
        return state["session_id"]

    def final_usage(self, state: Dict[str, Any]) -> Iterator[NormalizedEvent]:
        yield NormalizedEvent.usage(1, 2)


async def run(supervisor, argv, stdin=None, **callbacks):
    grammar = EchoGrammar()
    invocation = ProcessInvocation(argv=argv, stdin=stdin)
    return [
        e async for e in supervisor.run(invocation, grammar, grammar.new_state(), **callbacks)
    ]


def messages(events):
    return [e.content for e in events if e.type is EventType.SYSTEM_INFO]


class TestProcessSupervisor:

    @pytest.mark.asyncio
    async def test_streams_lines_and_finishes(self, fast_supervisor_config):
        session = StreamSession("conv-1", "echo")
        supervisor = ProcessSupervisor("echo", fast_supervisor_config, session=session)

        events = await run(supervisor, python_script(jsonl_script([{"msg": "one"}, {"msg": "two"}])))

        assert messages(events) == ["one", "two"]
        assert events[-2:] == [NormalizedEvent.usage(1, 2), NormalizedEvent.done("end_turn")]
        assert supervisor.state is SupervisorState.COMPLETED
        assert supervisor.exit_code == 0
        assert session.terminal_status is TerminalStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stdin_is_delivered(self, fast_supervisor_config):
        script = python_script("""
            import json, sys
            print(json.dumps({"msg": sys.stdin.read()}), flush=True)
        """)

        events = await run(ProcessSupervisor("echo", fast_supervisor_config), script, stdin="hello there")

        assert messages(events) == ["hello there"]

    @pytest.mark.asyncio
    async def test_final_line_without_newline(self, fast_supervisor_config):
        script = python_script("""
            import sys
            sys.stdout.write('{"msg": "first"}\\n{"msg": "tail"}')
            sys.stdout.flush()
        """)

        events = await run(ProcessSupervisor("echo", fast_supervisor_config), script)

        assert messages(events) == ["first", "tail"]

    @pytest.mark.asyncio
    async def test_non_json_and_malformed_lines_skipped(self, fast_supervisor_config):
        script = python_script("""
            print("Loading...", flush=True)
            print('[1, 2]', flush=True)
            print('{"boom": true}', flush=True)
            print('{"msg": "ok"}', flush=True)
        """)

        events = await run(ProcessSupervisor("echo", fast_supervisor_config), script)

        assert messages(events) == ["ok"]
        assert events[-1].type is EventType.DONE

    @pytest.mark.asyncio
    async def test_non_zero_exit_still_completes(self, fast_supervisor_config):
        script = python_script("""
            import sys
            print('{"msg": "partial"}', flush=True)
            sys.exit(3)
        """)
        supervisor = ProcessSupervisor("echo", fast_supervisor_config)

        events = await run(supervisor, script)

        assert events[-1] == NormalizedEvent.done("end_turn")
        assert supervisor.exit_code == 3

    @pytest.mark.asyncio
    async def test_spawn_failure_is_single_error(self, fast_supervisor_config, tmp_path):
        exits = []

        async def on_exit(code):
            exits.append(code)

        session = StreamSession("conv-1", "echo")
        supervisor = ProcessSupervisor("echo", fast_supervisor_config, session=session)

        events = await run(supervisor, [str(tmp_path / "missing-binary")], on_exit=on_exit)

        assert len(events) == 1
        assert events[0].type is EventType.ERROR
        assert "Failed to start echo CLI process" in events[0].content
        assert supervisor.state is SupervisorState.ERRORED
        assert exits == [None]
        assert session.terminal_status is TerminalStatus.FAILED

    @pytest.mark.asyncio
    async def test_idle_timeout_terminates_process(self, fast_supervisor_config):
        fast_supervisor_config.timeouts = {phase: 0.3 for phase in StreamPhase}
        script = python_script("""
            import time
            print('{"msg": "started"}', flush=True)
            time.sleep(30)
        """)
        session = StreamSession("conv-1", "echo")
        supervisor = ProcessSupervisor("echo", fast_supervisor_config, session=session)

        events = await run(supervisor, script)

        assert messages(events) == ["started"]
        error = next(e for e in events if e.type is EventType.ERROR)
        assert error.content == "echo process timed out after 0.3s in initial phase"
        assert error.metadata == {"timeout": 0.3, "phase": "initial"}
        assert events[-1] == NormalizedEvent.done("timeout")
        assert supervisor.state is SupervisorState.TIMED_OUT
        assert not supervisor.is_running
        assert session.terminal_status is TerminalStatus.TIMEOUT
        assert session.is_finished

    @pytest.mark.asyncio
    async def test_phase_selects_timeout_budget(self, fast_supervisor_config):
        fast_supervisor_config.timeouts = {
            StreamPhase.INITIAL: 0.3,
            StreamPhase.STREAMING: 0.3,
            StreamPhase.TOOL_EXECUTION: 5.0,
            StreamPhase.PENDING_RESPONSE: 0.3,
        }
        script = python_script("""
            import time
            print('{"phase": "tool_execution"}', flush=True)
            time.sleep(0.8)
            print('{"msg": "tool finished"}', flush=True)
        """)
        session = StreamSession("conv-1", "echo")
        supervisor = ProcessSupervisor("echo", fast_supervisor_config, session=session)

        events = await run(supervisor, script)

        assert messages(events) == ["tool finished"]
        assert events[-1] == NormalizedEvent.done("end_turn")
        assert supervisor.phase is StreamPhase.TOOL_EXECUTION
        assert session.phase is StreamPhase.TOOL_EXECUTION

    @pytest.mark.asyncio
    async def test_lines_that_do_not_reset_timer(self, fast_supervisor_config):
        fast_supervisor_config.timeouts = {phase: 0.4 for phase in StreamPhase}
        script = python_script("""
            import time
            for _ in range(10):
                print('{"reset": false, "skip": true}', flush=True)
                time.sleep(0.1)
            print('{"msg": "too late"}', flush=True)
        """)

        events = await run(ProcessSupervisor("echo", fast_supervisor_config), script)

        assert "too late" not in messages(events)
        assert events[-1] == NormalizedEvent.done("timeout")

    @pytest.mark.asyncio
    async def test_timeout_checked_while_output_keeps_arriving(self, fast_supervisor_config):
        fast_supervisor_config.timeouts = {phase: 0.3 for phase in StreamPhase}
        fast_supervisor_config.poll_interval = 0.5
        script = python_script("""
            import time
            for _ in range(100):
                print('{"reset": false, "skip": true}', flush=True)
                time.sleep(0.02)
            print('{"msg": "too late"}', flush=True)
        """)
        supervisor = ProcessSupervisor("echo", fast_supervisor_config)

        events = await run(supervisor, script)

        assert "too late" not in messages(events)
        assert events[-1] == NormalizedEvent.done("timeout")
        assert supervisor.state is SupervisorState.TIMED_OUT

    @pytest.mark.asyncio
    async def test_session_id_reported_once_per_change(self, fast_supervisor_config):
        seen = []

        async def on_session_id(session_id):
            seen.append(session_id)

        script = python_script(jsonl_script([
            {"session_id": "sess-1"},
            {"session_id": "sess-1", "msg": "again"},
            {"session_id": "sess-2"},
        ]))
        session = StreamSession("conv-1", "echo")
        supervisor = ProcessSupervisor("echo", fast_supervisor_config, session=session)

        await run(supervisor, script, on_session_id=on_session_id)

        assert seen == ["sess-1", "sess-2"]
        assert session.provider_session_id == "sess-2"

    @pytest.mark.asyncio
    async def test_on_exit_runs_once_before_done(self, fast_supervisor_config):
        order = []

        async def on_exit(code):
            order.append(("exit", code))

        supervisor = ProcessSupervisor("echo", fast_supervisor_config)
        grammar = EchoGrammar()
        invocation = ProcessInvocation(argv=python_script(jsonl_script([{"msg": "x"}])))

        async for event in supervisor.run(invocation, grammar, grammar.new_state(), on_exit=on_exit):
            order.append(event.type.value)

        assert order[-2:] == [("exit", 0), "done"]
        assert order.count(("exit", 0)) == 1

    @pytest.mark.asyncio
    async def test_closing_early_terminates_process(self, fast_supervisor_config):
        exits = []

        async def on_exit(code):
            exits.append(code)

        script = python_script("""
            import time
            print('{"msg": "first"}', flush=True)
            time.sleep(30)
        """)
        session = StreamSession("conv-1", "echo")
        supervisor = ProcessSupervisor("echo", fast_supervisor_config, session=session)
        grammar = EchoGrammar()
        stream = supervisor.run(ProcessInvocation(argv=script), grammar, grammar.new_state(), on_exit=on_exit)

        first = await stream.__anext__()
        await stream.aclose()

        assert first.content == "first"
        assert not supervisor.is_running
        assert len(exits) == 1
        assert session.terminal_status is TerminalStatus.ABORTED


class TestSupervisorConfig:

    def test_from_settings(self, settings):
        settings.cli_timeout_tool_execution = 42.0

        config = SupervisorConfig.from_settings(settings)

        assert config.timeout_for(StreamPhase.TOOL_EXECUTION) == 42.0
        assert config.poll_interval == settings.cli_poll_interval

    def test_invocation_display_quotes_arguments(self):
        invocation = ProcessInvocation(argv=["claude", "-p", "two words"])

        assert invocation.display() == "claude -p 'two words'"


class TestAbortGate:

    def test_immediate_abort_when_idle(self):
        gate = AbortGate()

        assert gate.request(skip_sync=True)
        assert gate.skip_sync
        assert not gate.pending

    def test_deferred_while_tool_input_streams(self):
        gate = AbortGate()
        gate.observe(NormalizedEvent.tool_use_start(0, "t1", "Bash"))

        assert not gate.request()
        assert gate.pending

    def test_deferred_abort_fires_when_last_result_arrives(self):
        gate = AbortGate()
        gate.observe(NormalizedEvent.tool_use_start(0, "t1", "Bash"))
        gate.observe(NormalizedEvent.tool_use_stop(0))
        gate.observe(NormalizedEvent.tool_use_start(1, "t2", "Read"))
        gate.observe(NormalizedEvent.tool_use_stop(1))

        assert not gate.request()
        assert not gate.observe(NormalizedEvent.tool_result("t1", "ok"))
        assert gate.observe(NormalizedEvent.tool_result("t2", json.dumps({"lines": 3})))
        assert gate.skip_sync
        assert not gate.pending

    def test_results_without_pending_abort_do_not_fire(self):
        gate = AbortGate()
        gate.observe(NormalizedEvent.tool_use_start(0, "t1", "Bash"))
        gate.observe(NormalizedEvent.tool_use_stop(0))

        assert not gate.observe(NormalizedEvent.tool_result("t1", "ok"))
        assert gate.can_abort_now
