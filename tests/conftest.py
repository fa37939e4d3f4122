"""
Pytest configuration and fixtures for RoleGraph tests.

Provides shared fixtures for:
- Test settings and environment
- Mock Redis client (fakeredis)
- Orchestrators wired to a scripted generation client
"""

import os
from typing import Any, Callable, Dict, Optional

import pytest

os.environ.setdefault("ROLEGRAPH_APP_ENV", "test")

from api.orchestrators.pipeline_orchestrator import PipelineOrchestrator  # noqa: E402
from api.progress.channel import ProgressHub  # noqa: E402
from api.schemas.pipeline_state import PipelineRequest  # noqa: E402
from libs.caching.stage_snapshots import StageSnapshotStore  # noqa: E402
from libs.common.settings import Settings, get_settings  # noqa: E402
from libs.storage.graph_store import InMemoryGraphStore  # noqa: E402
from tests.helpers import ScriptedGenerator, full_script  # noqa: E402


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Run every test in test mode with fresh settings."""
    monkeypatch.setenv("ROLEGRAPH_APP_ENV", "test")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def redis_client():
    """
    Provide fakeredis client for testing.

    This avoids requiring actual Redis server during tests.
    """
    from fakeredis import aioredis as fakeredis

    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushdb()
    await client.aclose()


@pytest.fixture
def scripted_generator() -> Callable[..., ScriptedGenerator]:
    return ScriptedGenerator


@pytest.fixture
def pipeline_request() -> PipelineRequest:
    return PipelineRequest(
        role_name="Data Engineer",
        description="Builds data platforms",
        industries=["Finance"],
        seed_terms=["Python"],
        session_id="session-1",
    )


@pytest.fixture
def test_settings() -> Settings:
    return Settings(app_env="test")


@pytest.fixture
def make_orchestrator(test_settings, redis_client):
    """Build an orchestrator around a scripted generator and an in-memory store."""
    def _make(responses: Optional[Dict[str, Any]] = None, store=None) -> PipelineOrchestrator:
        return PipelineOrchestrator(
            client=ScriptedGenerator(full_script() if responses is None else responses),
            store=store or InMemoryGraphStore(),
            hub=ProgressHub(queue_size=100),
            snapshots=StageSnapshotStore(redis_client),
            settings=test_settings,
        )

    return _make
