"""Test configuration loading from TOML and environment overrides."""

from pathlib import Path

from aifactory.config import load_settings

CONFIG = """
[orchestrator]
database_path = "data/test.db"
templates_dir = "tpl"
max_concurrent_executions = 2

[workers.feed_fetcher]
endpoint = "https://feed.example.dev/"
secret_env = "TEST_FEED_SECRET"
max_concurrent = 3

[workers.report_builder]
endpoint = "https://report.example.dev"
secret_env = "TEST_REPORT_SECRET"

[resources.openai_api]
limit = 5000
period = "daily"
cost_per_unit = 0.001

[clients.demo]
api_key_env = "TEST_DEMO_KEY"

[clients.nokey]
api_key_env = "TEST_UNSET_KEY"
"""


def test_load_settings_from_toml(tmp_path, monkeypatch):
    path = tmp_path / "config.toml"
    path.write_text(CONFIG)
    monkeypatch.setenv("TEST_FEED_SECRET", "s3cret")
    monkeypatch.setenv("TEST_DEMO_KEY", "demo-key")
    monkeypatch.delenv("TEST_UNSET_KEY", raising=False)
    monkeypatch.delenv("TEST_REPORT_SECRET", raising=False)
    for name in ("MAX_EXECUTIONS", "DATABASE_PATH", "TEMPLATES_DIR"):
        monkeypatch.delenv(f"AIFACTORY_{name}", raising=False)

    settings = load_settings(path)
    assert settings.max_concurrent_executions == 2
    assert settings.database_path == str(path.resolve().parent / "data" / "test.db")
    assert settings.templates_dir == path.resolve().parent / "tpl"

    feed = settings.workers["feed_fetcher"]
    assert feed.endpoint == "https://feed.example.dev"
    assert feed.secret == "s3cret"
    assert feed.max_concurrent == 3
    assert settings.workers["report_builder"].secret == ""

    assert settings.resources["openai_api"].limit == 5000
    assert list(settings.clients) == ["demo"]
    assert settings.clients["demo"].api_key == "demo-key"

    names = {d.name: d for d in settings.resource_definitions()}
    assert names["worker_slots:feed_fetcher"].limit == 3
    assert names["worker_slots:report_builder"].limit == 1


def test_environment_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "config.toml"
    path.write_text(CONFIG)
    monkeypatch.setenv("AIFACTORY_MAX_EXECUTIONS", "9")
    monkeypatch.setenv("AIFACTORY_DATABASE_PATH", ":memory:")
    monkeypatch.setenv("AIFACTORY_PORT", "9100")

    settings = load_settings(path)
    assert settings.max_concurrent_executions == 9
    assert settings.database_path == ":memory:"
    assert settings.port == 9100


def test_missing_file_gives_defaults(tmp_path, monkeypatch):
    for name in ("MAX_EXECUTIONS", "DATABASE_PATH", "PORT", "QUEUE_TICK"):
        monkeypatch.delenv(f"AIFACTORY_{name}", raising=False)
    settings = load_settings(Path(tmp_path / "absent.toml"))
    assert settings.workers == {}
    assert settings.database_path == ":memory:"
    assert settings.queue_tick_seconds == 1.0
