"""
Shared fixtures for the Streamline test suite
"""
import json
import sys
import textwrap
from pathlib import Path
from typing import Any, Dict, List

import fakeredis
import pytest
import pytest_asyncio
from fakeredis import aioredis

from streamline.config import Settings
from streamline.models.session import StreamPhase
from streamline.providers.supervisor import SupervisorConfig
from streamline.storage.journal import EventJournal
from streamline.storage.redis_store import set_redis
from streamline.storage.session_store import SessionStore


# ==================== SETTINGS ====================

@pytest.fixture
def settings() -> Settings:
    """Settings with intervals short enough for tests"""
    return Settings(
        _env_file=None,
        reader_poll_interval=0.01,
        reader_keepalive_interval=0.05,
        reader_inactivity_timeout=0.3,
        stream_ttl_streaming=3600,
        stream_ttl_completed=1800,
        log_format="plain",
    )


@pytest.fixture
def fast_supervisor_config() -> SupervisorConfig:
    """Sub-second supervisor timeouts"""
    return SupervisorConfig(
        timeouts={phase: 5.0 for phase in StreamPhase},
        poll_interval=0.01,
        terminate_grace=0.5,
        drain_timeout=0.5,
    )


# ==================== REDIS ====================

@pytest_asyncio.fixture
async def redis_client():
    """Isolated in-memory Redis installed as the global client"""
    client = aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    set_redis(client)
    yield client
    set_redis(None)
    await client.aclose()


@pytest.fixture
def journal(redis_client, settings) -> EventJournal:
    return EventJournal(redis_client, settings)


@pytest.fixture
def session_store(redis_client) -> SessionStore:
    return SessionStore(redis_client)


# ==================== SCRIPTED CLI PROCESSES ====================

def python_script(body: str) -> List[str]:
    """argv running a Python snippet in a child interpreter"""
    return [sys.executable, "-c", textwrap.dedent(body)]


def jsonl_script(lines: List[Dict[str, Any]], delay: float = 0.0) -> str:
    """Snippet that prints each object as one JSONL line"""
    payload = json.dumps([json.dumps(line) for line in lines])
    return (
        "import sys, time\n"
        f"for line in {payload}:\n"
        "    print(line, flush=True)\n"
        f"    time.sleep({delay})\n"
    )


@pytest.fixture
def fake_cli(tmp_path):
    """Factory for executable scripts standing in for a provider CLI.

    The script records its argv, stdin, cwd and selected env vars into
    ``<script>.json`` before printing the scripted lines.
    """

    def build(
        lines: List[Dict[str, Any]],
        name: str = "fake-cli",
        exit_code: int = 0,
        delay: float = 0.0,
    ) -> Path:
        script = tmp_path / name
        record = tmp_path / f"{name}.json"
        script.write_text(
            f"#!{sys.executable}\n"
            "import json, os, sys\n"
            "data = sys.stdin.read()\n"
            f"with open({str(record)!r}, 'w') as handle:\n"
            "    json.dump({'argv': sys.argv[1:], 'stdin': data, 'cwd': os.getcwd(),\n"
            "               'max_thinking_tokens': os.environ.get('MAX_THINKING_TOKENS')}, handle)\n"
            + jsonl_script(lines, delay)
            + f"sys.exit({exit_code})\n"
        )
        script.chmod(0o755)
        return script

    return build


def read_invocation(script: Path) -> Dict[str, Any]:
    return json.loads(script.with_name(f"{script.name}.json").read_text())
