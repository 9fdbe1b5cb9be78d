"""
Unit tests for the command line interface
"""
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
from typer.testing import CliRunner

from streamline.cli.main import app, format_event

runner = CliRunner()


def fake_consumer(events, final_status):
    consumer = MagicMock()

    async def stream(from_index=0, replay=False):
        for event in events:
            yield event
        consumer.final_status = final_status

    consumer.events = stream
    consumer.final_status = None
    return consumer


class TestFormatEvent:

    def test_deltas_print_raw_content(self):
        assert format_event({"type": "text_delta", "content": "Hel"}) == "Hel"
        assert format_event({"type": "tool_use_delta", "content": '{"a": 1}'}) == '{"a": 1}'

    def test_tool_lines(self):
        assert format_event({"type": "tool_use_start", "metadata": {"tool_name": "Bash"}}) == "[tool] Bash "
        assert format_event({"type": "tool_result", "content": "boom", "metadata": {"is_error": True}}) == "[error] boom\n"

    def test_usage_with_cost_and_replay(self):
        line = format_event({
            "type": "usage",
            "metadata": {"input_tokens": 10, "output_tokens": 2, "cost": 0.5},
            "replayed": True,
        })

        assert line == "[usage] in=10 out=2 cost=$0.5000 (replayed)\n"

    def test_silent_events(self):
        assert format_event({"type": "text_start"}) is None
        assert format_event({"type": "keepalive"}) is None


class TestTailCommand:

    def test_prints_stream_and_exits_cleanly(self):
        consumer = fake_consumer([
            {"type": "text_delta", "content": "Hi"},
            {"type": "text_stop"},
            {"type": "stream_status", "status": "completed", "final_index": 1},
        ], "completed")

        with patch("streamline.cli.main.StreamConsumer", return_value=consumer):
            result = runner.invoke(app, ["tail", "conv-1", "--url", "http://localhost:9"])

        assert result.exit_code == 0
        assert "Hi\n" in result.output
        assert "Stream completed (last index 1)" in result.output

    def test_json_output(self):
        event = {"type": "text_delta", "content": "Hi", "index": 0}
        consumer = fake_consumer([event], "completed")

        with patch("streamline.cli.main.StreamConsumer", return_value=consumer):
            result = runner.invoke(app, ["tail", "conv-1", "--json"])

        assert json.loads(result.output.splitlines()[0]) == event

    def test_failed_stream_exits_non_zero(self):
        consumer = fake_consumer([{"type": "stream_status", "status": "failed", "final_index": 0}], "failed")

        with patch("streamline.cli.main.StreamConsumer", return_value=consumer):
            result = runner.invoke(app, ["tail", "conv-1"])

        assert result.exit_code == 1


class TestAbortCommand:

    def test_abort_success(self):
        consumer = MagicMock()
        consumer.abort = AsyncMock(return_value={"success": True, "conversation_id": "conv-1", "skip_sync": True})

        with patch("streamline.cli.main.StreamConsumer", return_value=consumer):
            result = runner.invoke(app, ["abort", "conv-1", "--skip-sync"])

        assert result.exit_code == 0
        assert "Abort requested for conv-1" in result.output
        consumer.abort.assert_awaited_once_with(skip_sync=True)

    def test_abort_without_active_stream(self):
        request = httpx.Request("POST", "http://localhost/api/v1/conversations/conv-1/abort")
        response = httpx.Response(404, request=request)
        consumer = MagicMock()
        consumer.abort = AsyncMock(side_effect=httpx.HTTPStatusError("not found", request=request, response=response))

        with patch("streamline.cli.main.StreamConsumer", return_value=consumer):
            result = runner.invoke(app, ["abort", "conv-1"])

        assert result.exit_code == 1
