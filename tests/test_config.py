"""
Tests for configuration loading.
"""

import json
import os
import pytest
import yaml

from todo_sync.utils.config import ConfigLoader, SyncConfig, load_config
from todo_sync.utils.errors import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep stray TODO_SYNC_ variables out of the loader."""
    for key in list(os.environ):
        if key.startswith("TODO_SYNC_"):
            monkeypatch.delenv(key)


class TestConfigLoader:
    """Test ConfigLoader sources and merging."""

    @pytest.mark.asyncio
    async def test_defaults(self):
        config = await ConfigLoader().load()

        assert isinstance(config, SyncConfig)
        assert config.presence.heartbeat_timeout == 60.0
        assert config.event_log.page_size == 200
        assert config.reconcile.max_backlog == 1000
        assert config.notifications.on_transition is False

    @pytest.mark.asyncio
    async def test_yaml_source(self, tmp_path):
        path = tmp_path / "todo-sync.yaml"
        path.write_text(yaml.safe_dump({
            "presence": {"heartbeat_timeout": 30},
            "event_log": {"retention_days": 7},
        }))
        loader = ConfigLoader()
        loader.add_source(path)

        config = await loader.load()

        assert config.presence.heartbeat_timeout == 30
        assert config.event_log.retention_days == 7
        assert config.event_log.page_size == 200

    @pytest.mark.asyncio
    async def test_toml_source(self, tmp_path):
        path = tmp_path / "todo-sync.toml"
        path.write_text('[reconcile]\nmax_backlog = 50\n')
        loader = ConfigLoader()
        loader.add_source(path)

        config = await loader.load()

        assert config.reconcile.max_backlog == 50

    @pytest.mark.asyncio
    async def test_higher_priority_wins(self, tmp_path):
        low = tmp_path / "low.json"
        low.write_text(json.dumps({"reconcile": {"max_backlog": 10}, "debug": True}))
        high = tmp_path / "high.json"
        high.write_text(json.dumps({"reconcile": {"max_backlog": 20}}))
        loader = ConfigLoader()
        loader.add_source(high, priority=20)
        loader.add_source(low, priority=10)

        config = await loader.load()

        assert config.reconcile.max_backlog == 20
        assert config.debug is True

    @pytest.mark.asyncio
    async def test_env_overrides_files(self, tmp_path, monkeypatch):
        path = tmp_path / "todo-sync.yaml"
        path.write_text(yaml.safe_dump({"event_log": {"page_size": 10}}))
        monkeypatch.setenv("TODO_SYNC_EVENT_LOG__PAGE_SIZE", "25")
        monkeypatch.setenv("TODO_SYNC_NOTIFICATIONS__ON_TRANSITION", "true")
        loader = ConfigLoader()
        loader.add_source(path)

        config = await loader.load()

        assert config.event_log.page_size == 25
        assert config.notifications.on_transition is True

    @pytest.mark.asyncio
    async def test_env_file(self, tmp_path):
        path = tmp_path / "settings.env"
        path.write_text(
            "# comment\n"
            "TODO_SYNC_WEBSOCKET__PORT=9000\n"
            "TODO_SYNC_WEBSOCKET__SECRET_KEY='s3cret'\n"
        )
        loader = ConfigLoader()
        loader.add_source(path)

        config = await loader.load()

        assert config.websocket.port == 9000
        assert config.websocket.secret_key == "s3cret"

    @pytest.mark.asyncio
    async def test_invalid_value(self):
        loader = ConfigLoader()
        loader.add_source({"event_log": {"page_size": 0}})

        with pytest.raises(ConfigurationError) as exc_info:
            await loader.load()

        assert "event_log.page_size" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unparseable_file(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")
        loader = ConfigLoader()
        loader.add_source(path)

        with pytest.raises(ConfigurationError):
            await loader.load()

    def test_unknown_file_type(self, tmp_path):
        with pytest.raises(ConfigurationError):
            ConfigLoader().add_source(tmp_path / "config.ini")

    def test_get_config_before_load(self):
        with pytest.raises(ConfigurationError):
            ConfigLoader().get_config()

    def test_database_path_made_absolute(self):
        config = SyncConfig(database={"path": "relative/sync.db"})

        assert config.database.path.is_absolute()


class TestLoadConfig:
    """Test the standard-location loader."""

    @pytest.mark.asyncio
    async def test_local_file_then_explicit_paths(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        (tmp_path / "todo-sync.yaml").write_text(yaml.safe_dump({
            "reconcile": {"max_backlog": 5},
            "presence": {"heartbeat_timeout": 15},
        }))
        explicit = tmp_path / "override.json"
        explicit.write_text(json.dumps({"reconcile": {"max_backlog": 7}}))

        config = await load_config([explicit], extra_config={"debug": True})

        assert config.reconcile.max_backlog == 7
        assert config.presence.heartbeat_timeout == 15
        assert config.debug is True
