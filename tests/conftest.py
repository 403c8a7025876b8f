from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from hugin.config import AppSettings
from hugin.main import create_app
from tests.fakes import FakeChatClient, FakeTaskClient

# 2024-05-01T12:00:00Z
FIXED_NOW = 1714564800.0


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        openrouter_api_key="test-openrouter-key",
        openrouter_url="http://openrouter.test/chat",
        compose_models=["model-a", "model-b", "model-c"],
        parallel_api_key="test-parallel-key",
        parallel_base_url="http://parallel.test",
        default_processor="pro",
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_chat: FakeChatClient | None = None,
        fake_tasks: FakeTaskClient | None = None,
        config_path: Path | None = None,
        now: float = FIXED_NOW,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        chat_client = fake_chat or FakeChatClient(api_key=settings.openrouter_api_key)
        task_client = fake_tasks or FakeTaskClient(api_key=settings.parallel_api_key)
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            chat_client=chat_client,
            task_client=task_client,
            config_path=cfg_path,
            clock=lambda: now,
        )
        return app, cfg_path, chat_client, task_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, chat_client, task_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_chat = chat_client  # type: ignore[attr-defined]
            http_client.fake_tasks = task_client  # type: ignore[attr-defined]
            yield http_client
