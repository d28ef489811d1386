from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from agentgate.config import AppSettings, ModelTiers
from agentgate.db import Database
from agentgate.main import create_app
from tests.fakes import FakeModelClient, FakeTavilyClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        anthropic_api_key="test-key",
        anthropic_base_url="http://model.test/v1",
        models=ModelTiers(light="light-model", standard="standard-model"),
        pacing_delay_s=0.0,
        retry_delays_s=[0.0, 0.0],
        background_retry_delays_s=[0.0],
        tavily_api_key=None,
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(str(tmp_path / "test.db"))
    await database.init()
    return database


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_model: FakeModelClient | None = None,
        fake_tavily: FakeTavilyClient | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        model_client = fake_model or FakeModelClient()
        tavily_client = fake_tavily or FakeTavilyClient()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, llm_client=model_client, tavily_client=tavily_client, config_path=cfg_path)
        return app, cfg_path, model_client, tavily_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, model_client, tavily_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_model = model_client  # type: ignore[attr-defined]
            http_client.fake_tavily = tavily_client  # type: ignore[attr-defined]
            yield http_client
