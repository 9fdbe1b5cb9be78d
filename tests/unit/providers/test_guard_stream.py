"""
Unit tests for the shared stream contract helpers in providers.base
"""
import pytest

from streamline.models.events import EventType, NormalizedEvent
from streamline.providers.base import (
    AuthenticationRequiredError,
    BlockLedger,
    ConversationTurn,
    guard_stream,
    is_auth_error,
    latest_user_message,
)


async def _source(*events):
    for event in events:
        yield event


async def _collect(stream):
    return [event async for event in stream]


class TestGuardStream:

    @pytest.mark.asyncio
    async def test_passes_well_formed_stream(self):
        events = [
            NormalizedEvent.text_start(0),
            NormalizedEvent.text_delta(0, "hi"),
            NormalizedEvent.text_stop(0),
            NormalizedEvent.done(),
        ]

        assert await _collect(guard_stream(_source(*events), "test")) == events

    @pytest.mark.asyncio
    async def test_closes_open_blocks_before_done(self):
        result = await _collect(guard_stream(_source(
            NormalizedEvent.thinking_start(0),
            NormalizedEvent.text_start(1),
            NormalizedEvent.done(),
        ), "test"))

        assert [e.type for e in result] == [
            EventType.THINKING_START,
            EventType.TEXT_START,
            EventType.THINKING_STOP,
            EventType.TEXT_STOP,
            EventType.DONE,
        ]

    @pytest.mark.asyncio
    async def test_drops_unmatched_stop(self):
        result = await _collect(guard_stream(_source(
            NormalizedEvent.text_stop(4),
            NormalizedEvent.done(),
        ), "test"))

        assert [e.type for e in result] == [EventType.DONE]

    @pytest.mark.asyncio
    async def test_nothing_after_terminal_event(self):
        result = await _collect(guard_stream(_source(
            NormalizedEvent.done("end_turn"),
            NormalizedEvent.text_start(0),
            NormalizedEvent.done("again"),
        ), "test"))

        assert result == [NormalizedEvent.done("end_turn")]

    @pytest.mark.asyncio
    async def test_synthesizes_done_when_source_ends(self):
        result = await _collect(guard_stream(_source(
            NormalizedEvent.text_start(0),
            NormalizedEvent.text_delta(0, "partial"),
        ), "test"))

        assert result[-2:] == [NormalizedEvent.text_stop(0), NormalizedEvent.done("end_turn")]

    @pytest.mark.asyncio
    async def test_error_is_terminal_for_http_providers(self):
        result = await _collect(guard_stream(_source(
            NormalizedEvent.text_start(0),
            NormalizedEvent.error("overloaded"),
            NormalizedEvent.text_delta(0, "late"),
        ), "test"))

        assert result == [
            NormalizedEvent.text_start(0),
            NormalizedEvent.text_stop(0),
            NormalizedEvent.error("overloaded"),
        ]

    @pytest.mark.asyncio
    async def test_error_mid_stream_for_cli_providers(self):
        result = await _collect(guard_stream(_source(
            NormalizedEvent.error("turn failed"),
            NormalizedEvent.done(),
        ), "test", errors_are_terminal=False))

        assert result == [NormalizedEvent.error("turn failed"), NormalizedEvent.done()]

    @pytest.mark.asyncio
    async def test_lone_error_stays_single_event(self):
        result = await _collect(guard_stream(_source(
            NormalizedEvent.error("spawn failed"),
        ), "test", errors_are_terminal=False))

        assert result == [NormalizedEvent.error("spawn failed")]


class TestBlockLedger:

    def test_tracks_open_tool_use(self):
        ledger = BlockLedger()
        ledger.observe(NormalizedEvent.tool_use_start(0, "t1", "Bash"))

        assert ledger.has_open_tool_use
        assert ledger.observe(NormalizedEvent.tool_use_stop(0))
        assert not ledger.has_open_tool_use

    def test_mismatched_stop_rejected(self):
        ledger = BlockLedger()
        ledger.observe(NormalizedEvent.text_start(0))

        assert not ledger.observe(NormalizedEvent.thinking_stop(0))
        assert ledger.open_blocks == {0: EventType.TEXT_START}


class TestHelpers:

    def test_latest_user_message_joins_text_blocks(self):
        turns = [
            ConversationTurn("user", "first"),
            ConversationTurn("assistant", "reply"),
            ConversationTurn("user", [
                {"type": "text", "text": "line one"},
                {"type": "image", "source": {}},
                {"type": "text", "text": "line two"},
            ]),
        ]

        assert latest_user_message(turns) == "line one\nline two"

    def test_latest_user_message_none(self):
        assert latest_user_message([ConversationTurn("assistant", "hi")]) is None

    def test_without_markers_strips_interrupted(self):
        turn = ConversationTurn("assistant", [
            {"type": "text", "text": "partial"},
            {"type": "interrupted", "reason": "user_abort"},
        ])

        assert turn.without_markers().content == [{"type": "text", "text": "partial"}]

    def test_auth_error_detection(self):
        error = AuthenticationRequiredError("CODEX_AUTH_REQUIRED:", "please log in", "codex")

        assert str(error) == "CODEX_AUTH_REQUIRED:please log in"
        assert is_auth_error(str(error))
        assert is_auth_error("CLAUDE_CODE_AUTH_REQUIRED: run claude login")
        assert not is_auth_error("Connection refused")
        assert not is_auth_error(None)
