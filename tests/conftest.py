from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from finchat.config import AppSettings
from finchat.main import create_app
from tests.fakes import FakeResolver, FakeSandboxClient, FakeValyuClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        app_mode="self-hosted",
        openai_api_key=None,
        gateway_api_key=None,
        ollama_base_url="http://ollama.test",
        lmstudio_base_url="http://lmstudio.test",
        valyu_api_key="test-valyu",
        sandbox_api_url=None,
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=3000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        resolver: FakeResolver | None = None,
        fake_valyu: FakeValyuClient | None = None,
        fake_sandbox: FakeSandboxClient | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        resolver = resolver or FakeResolver()
        valyu = fake_valyu or FakeValyuClient(api_key=settings.valyu_api_key)
        sandbox = fake_sandbox or FakeSandboxClient()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            valyu_client=valyu,
            sandbox_client=sandbox,
            model_resolver=resolver,
            config_path=cfg_path,
        )
        return app, cfg_path, resolver, valyu

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, resolver, valyu = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.resolver = resolver  # type: ignore[attr-defined]
            http_client.fake_valyu = valyu  # type: ignore[attr-defined]
            yield http_client


@pytest.fixture
def settings_factory(tmp_path: Path):
    def _factory(**overrides) -> AppSettings:
        return make_settings(tmp_path, **overrides)

    return _factory
