import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from app.config import load_settings


@pytest.mark.asyncio
async def test_get_settings_masks_api_keys(app_factory):
    app, _, _, _ = app_factory(azure_api_key="secret-key", gemini_api_key="other-secret")
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.get("/settings")
            assert res.status_code == 200
            data = res.json()
            assert data["settings"]["azure_api_key"] == "********"
            assert data["settings"]["gemini_api_key"] == "********"
            assert data["settings"]["azure_endpoint"] == "https://azure.test"


@pytest.mark.asyncio
async def test_post_settings_persists_config_and_db(app_factory):
    app, config_path, backend, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            db = app.state.db
            before = await db.fetchone("SELECT COUNT(*) as cnt FROM configs")
            res = await client.post(
                "/settings",
                json={"gemini_api_key": "new-key", "web_scraper_endpoint": "http://scraper.new/scrape"},
            )
            assert res.status_code == 200
            assert res.json()["settings"]["gemini_api_key"] == "********"
            after = await db.fetchone("SELECT COUNT(*) as cnt FROM configs")
            assert after["cnt"] == before["cnt"] + 1
            assert backend.configured == 1
            assert app.state.scraper.endpoint == "http://scraper.new/scrape"

    saved = json.loads(config_path.read_text())
    assert saved["gemini_api_key"] == "new-key"


@pytest.mark.asyncio
async def test_post_settings_reconfigures_running_services(app_factory):
    app, _, _, tools = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post(
                "/settings",
                json={
                    "mcp_servers": [{"id": "crm", "name": "crm", "url": "http://mcp.test/rpc"}],
                    "tool_timeout_s": 30,
                    "max_tool_loops": 2,
                    "poll_interval_s": 9.5,
                    "search_api_version": "2024-07-01",
                },
            )
            assert res.status_code == 200

    assert [s.name for s in tools.servers] == ["crm"]
    assert tools.timeout_s == 30
    assert tools.discovered == 1
    assert app.state.fanout.max_tool_loops == 2
    assert app.state.poller.interval_s == 9.5
    assert app.state.search.index_client.api_version == "2024-07-01"


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"azure_endpoint": "https://config.test"}))
    monkeypatch.setenv("AZURE_ENDPOINT", "https://env.test")
    monkeypatch.delenv("MULTICHAT_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.azure_endpoint == "https://config.test"


def test_env_override_when_flag_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"azure_endpoint": "https://config.test"}))
    monkeypatch.setenv("AZURE_ENDPOINT", "https://env.test")
    monkeypatch.setenv("MULTICHAT_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.azure_endpoint == "https://env.test"


def test_env_secret_fills_blank_config_value(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"gemini_api_key": ""}))
    monkeypatch.setenv("GEMINI_API_KEY", "from-env")
    monkeypatch.delenv("MULTICHAT_ENV_OVERRIDES_CONFIG", raising=False)
    assert load_settings(config_path=config_path).gemini_api_key == "from-env"


def test_tool_servers_and_default_models_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"default_models": ["not-a-model"]}))
    monkeypatch.setenv(
        "MCP_SERVER_CONFIGS",
        json.dumps([{"name": "crm", "url": "http://mcp.test/rpc"}, {"name": "no-url"}]),
    )
    settings = load_settings(config_path=config_path)
    assert [(s.id, s.name) for s in settings.mcp_servers] == [("crm", "crm")]
    # Unknown defaults fall back to the first available model.
    assert settings.default_models == [settings.available_models[0]]
