"""
Shared fixtures: temporary transcript store, settings with fake credentials,
scripted provider clients and a FastAPI TestClient wired to them.
"""

import pytest
from fastapi.testclient import TestClient

from polychat.api.server import create_app
from polychat.clients.registry import ProviderRegistry
from polychat.config.settings import Settings
from polychat.core.tools import ToolRegistry
from polychat.transcripts.repository import TranscriptStore

from tests.fakes import FakeClientFactory


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        openai_api_key="sk-test",
        anthropic_api_key="sk-ant-test",
        google_api_key="g-test",
        db_path=str(tmp_path / "chat.db"),
    )


@pytest.fixture
def store(settings) -> TranscriptStore:
    s = TranscriptStore(settings.db_path)
    s.initialize()
    return s


@pytest.fixture
def client_factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture
def registry(settings, client_factory) -> ProviderRegistry:
    return ProviderRegistry(settings, client_factory=client_factory)


@pytest.fixture
def tools() -> ToolRegistry:
    return ToolRegistry(timeout_seconds=1.0)


@pytest.fixture
def app(settings, store, registry, tools):
    return create_app(settings=settings, store=store, registry=registry, tools=tools)


@pytest.fixture
def http(app) -> TestClient:
    return TestClient(app)
