from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from app.config import AppSettings, WorkflowPacingConfig
from app.context import SessionStore
from app.db import Database
from app.fanout import FanOutCoordinator
from app.main import create_app
from app.search import SearchService
from app.workflow import WorkflowEngine
from tests.fakes import FakeBackend, FakeIndexClient, FakeScraper, FakeToolInvoker


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        azure_api_key="azure-key",
        azure_endpoint="https://azure.test",
        claude_endpoint="https://claude.test/v1/messages",
        gemini_api_key="gemini-key",
        gemini_base_url="https://gemini.test/v1beta",
        available_models=["gemini-3-flash-preview", "azure-gpt-4o", "claude-sonnet-4-5-20250929"],
        default_models=["gemini-3-flash-preview"],
        web_scraper_endpoint="http://scraper.test/scrape",
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
        workflow_pacing=WorkflowPacingConfig(step_delay_s=0, result_delay_s=0, skip_delay_s=0),
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_backend: FakeBackend | None = None,
        fake_tools: FakeToolInvoker | None = None,
        fake_scraper: FakeScraper | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        backend = fake_backend or FakeBackend()
        tools = fake_tools or FakeToolInvoker()
        scraper = fake_scraper or FakeScraper()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            backend=backend,
            tool_invoker=tools,
            scraper=scraper,
            search=SearchService(FakeIndexClient()),
            config_path=cfg_path,
            start_poller=False,
        )
        return app, cfg_path, backend, tools

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, backend, tools = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_backend = backend  # type: ignore[attr-defined]
            http_client.fake_tools = tools  # type: ignore[attr-defined]
            yield http_client


@pytest.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(str(tmp_path / "engine.db"))
    await database.init()
    return database


@pytest.fixture
def engine_factory(db: Database):
    """Wire a workflow engine over fakes without going through HTTP."""

    def _factory(
        *,
        backend: FakeBackend | None = None,
        tools: FakeToolInvoker | None = None,
        scraper: FakeScraper | None = None,
        index_client: FakeIndexClient | None = None,
        models: list[str] | None = None,
    ):
        backend = backend or FakeBackend()
        tools = tools or FakeToolInvoker()
        store = SessionStore(db, models or ["model-a"])
        fanout = FanOutCoordinator(backend, tools)
        sleeps: list[float] = []

        async def fake_sleep(delay: float) -> None:
            sleeps.append(delay)

        engine = WorkflowEngine(
            store,
            fanout,
            SearchService(index_client or FakeIndexClient()),
            scraper or FakeScraper(),
            invoker=tools,
            sleep=fake_sleep,
        )
        engine.sleeps = sleeps  # type: ignore[attr-defined]
        return engine, backend, tools

    return _factory
