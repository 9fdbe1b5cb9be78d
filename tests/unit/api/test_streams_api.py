"""
Unit tests for the stream API endpoints
"""
import json
from unittest.mock import MagicMock

import httpx
import pytest
import pytest_asyncio

from streamline.api.streams import get_journal
from streamline.main import create_app
from streamline.models.events import NormalizedEvent
from streamline.providers.base import BaseProvider, ProviderCapabilities, ProviderError
from streamline.providers.codex import CodexProvider
from streamline.services.stream_service import StreamService
from streamline.storage.conversation import InMemoryConversationRecorder

PREFIX = "/api/v1"


class GreetingProvider(BaseProvider):
    """Answers every turn with a fixed text block"""

    def __init__(self):
        super().__init__("greeting")
        self.turns = []

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities()

    async def is_available(self) -> bool:
        return True

    def stream_turn(self, conversation_id, turns, options):
        self.turns.append((turns, options))
        return self._stream()

    async def _stream(self):
        yield NormalizedEvent.text_start(0)
        yield NormalizedEvent.text_delta(0, "Hello!")
        yield NormalizedEvent.text_stop(0)
        yield NormalizedEvent.done("end_turn")


def parse_sse(body: str):
    return [
        json.loads(chunk[len("data: "):])
        for chunk in body.split("\n\n")
        if chunk.startswith("data: ")
    ]


@pytest.fixture
def provider():
    return GreetingProvider()


@pytest.fixture
def factory(provider):
    factory = MagicMock()
    factory.get_provider.return_value = provider
    factory.session_store = None
    return factory


@pytest.fixture
def app(settings, journal, factory):
    app = create_app(settings)
    app.state.stream_service = StreamService(
        journal=journal,
        factory=factory,
        recorder=InMemoryConversationRecorder(),
    )
    app.dependency_overrides[get_journal] = lambda: journal
    return app


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestStartTurn:

    @pytest.mark.asyncio
    async def test_turn_runs_into_the_journal(self, client, provider, journal):
        response = await client.post(f"{PREFIX}/conversations/conv-1/turns", json={
            "provider": "greeting",
            "messages": [{"role": "user", "content": "Hi"}],
            "model": "m-1",
            "context_window_size": 100_000,
        })

        assert response.status_code == 202
        assert response.json() == {"conversation_id": "conv-1", "status": "accepted"}
        # ASGITransport waits for background tasks before returning
        assert await journal.get_status("conv-1") == "completed"
        turns, options = provider.turns[0]
        assert turns[0].content == "Hi"
        assert options.model == "m-1"
        assert options.context_window_size == 100_000

    @pytest.mark.asyncio
    async def test_turn_options_reach_the_provider(self, client, provider):
        tool = {"name": "get_weather", "description": "Weather", "input_schema": {"type": "object"}}

        response = await client.post(f"{PREFIX}/conversations/conv-1/turns", json={
            "provider": "greeting",
            "messages": [{"role": "user", "content": "Hi"}],
            "system_prompt": "Be brief.",
            "tools": [tool],
            "allowed_tools": ["Bash", "Read"],
            "thinking_budget": 2048,
            "reasoning_effort": "high",
            "response_tokens": 4096,
            "interruption_reminder": "You were interrupted.",
            "working_directory": "/tmp/work",
        })

        assert response.status_code == 202
        _, options = provider.turns[0]
        assert options.system_prompt == "Be brief."
        assert options.tools == [tool]
        assert options.allowed_tools == ["Bash", "Read"]
        assert options.thinking_budget == 2048
        assert options.reasoning_effort == "high"
        assert options.response_tokens == 4096
        assert options.interruption_reminder == "You were interrupted."
        assert str(options.working_directory) == "/tmp/work"

    @pytest.mark.asyncio
    async def test_response_tokens_must_be_positive(self, client):
        response = await client.post(f"{PREFIX}/conversations/conv-1/turns", json={
            "provider": "greeting",
            "messages": [{"role": "user", "content": "Hi"}],
            "response_tokens": 0,
        })

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_conflict_while_streaming(self, client, journal):
        await journal.start("conv-1")

        response = await client.post(f"{PREFIX}/conversations/conv-1/turns", json={
            "provider": "greeting",
            "messages": [{"role": "user", "content": "Hi"}],
        })

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_provider(self, client, factory):
        factory.get_provider.side_effect = ProviderError("Unknown provider type: nope", "nope")

        response = await client.post(f"{PREFIX}/conversations/conv-1/turns", json={
            "provider": "nope",
            "messages": [{"role": "user", "content": "Hi"}],
        })

        assert response.status_code == 404
        assert "Unknown provider type" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_oversized_system_prompt(self, client, factory, journal):
        factory.get_provider.return_value = CodexProvider({"system_prompt_max_bytes": 10})

        response = await client.post(f"{PREFIX}/conversations/conv-1/turns", json={
            "provider": "codex",
            "messages": [{"role": "user", "content": "Hi"}],
            "system_prompt": "x" * 11,
        })

        assert response.status_code == 413
        assert await journal.get_status("conv-1") is None

    @pytest.mark.asyncio
    async def test_messages_required(self, client):
        response = await client.post(f"{PREFIX}/conversations/conv-1/turns", json={
            "provider": "greeting",
            "messages": [],
        })

        assert response.status_code == 422


class TestStreamEndpoint:

    @pytest.mark.asyncio
    async def test_replays_finished_stream(self, client, journal):
        await journal.start("conv-1")
        for event in (NormalizedEvent.text_start(0), NormalizedEvent.text_delta(0, "hi"), NormalizedEvent.done()):
            await journal.append("conv-1", event)
        await journal.complete("conv-1")

        response = await client.get(f"{PREFIX}/conversations/conv-1/stream")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        assert response.headers["x-accel-buffering"] == "no"
        items = parse_sse(response.text)
        assert [i.get("index") for i in items[:-1]] == [0, 1, 2]
        assert items[-1]["type"] == "stream_status"
        assert items[-1]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_resume_from_index(self, client, journal):
        await journal.start("conv-1")
        for i in range(4):
            await journal.append("conv-1", NormalizedEvent.text_delta(0, str(i)))
        await journal.complete("conv-1")

        response = await client.get(f"{PREFIX}/conversations/conv-1/stream", params={"from_index": 2})

        items = parse_sse(response.text)
        assert [i["index"] for i in items if "index" in i] == [2, 3]

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, client):
        response = await client.get(f"{PREFIX}/conversations/missing/stream")

        assert parse_sse(response.text)[-1]["status"] == "not_found"

    @pytest.mark.asyncio
    async def test_negative_index_rejected(self, client):
        response = await client.get(f"{PREFIX}/conversations/conv-1/stream", params={"from_index": -1})

        assert response.status_code == 422


class TestAbortEndpoint:

    @pytest.mark.asyncio
    async def test_abort_requires_active_stream(self, client):
        response = await client.post(f"{PREFIX}/conversations/conv-1/abort")

        assert response.status_code == 404
        assert response.json()["detail"] == "No active stream"

    @pytest.mark.asyncio
    async def test_abort_sets_flags(self, client, journal):
        await journal.start("conv-1")

        response = await client.post(f"{PREFIX}/conversations/conv-1/abort", json={"skip_sync": True})

        assert response.status_code == 200
        assert response.json() == {"success": True, "conversation_id": "conv-1", "skip_sync": True}
        assert await journal.is_abort_requested("conv-1")
        assert await journal.should_skip_sync("conv-1")

    @pytest.mark.asyncio
    async def test_abort_without_body(self, client, journal):
        await journal.start("conv-1")

        response = await client.post(f"{PREFIX}/conversations/conv-1/abort")

        assert response.status_code == 200
        assert response.json()["skip_sync"] is False


class TestStatusAndHealth:

    @pytest.mark.asyncio
    async def test_stream_status(self, client, journal):
        await journal.start("conv-1", {"provider": "greeting"})
        await journal.append("conv-1", NormalizedEvent.text_start(0))

        response = await client.get(f"{PREFIX}/conversations/conv-1/stream/status")

        data = response.json()
        assert data["status"] == "streaming"
        assert data["event_count"] == 1
        assert data["metadata"]["provider"] == "greeting"

    @pytest.mark.asyncio
    async def test_health_with_redis(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["services"]["redis"] == "healthy"

    @pytest.mark.asyncio
    async def test_health_without_redis(self, settings):
        app = create_app(settings)
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"
