"""
Configuration loader for the todo-sync core.

This module provides configuration management with:
- Multiple configuration sources (JSON, YAML, TOML and .env files, dicts)
- Environment variable overrides
- Schema validation with pydantic
- Priority-based merging
"""

import os
import json
import yaml
import toml
from pathlib import Path
from typing import Optional, Dict, Any, List, Union
from pydantic import BaseModel, Field, field_validator, ValidationError, ConfigDict
import asyncio

from .logging import get_logger
from .errors import ConfigurationError


logger = get_logger("todo-sync.config")

ENV_PREFIX = "TODO_SYNC_"
ENV_NESTING = "__"


class ConfigSource(BaseModel):
    """Configuration source definition."""
    path: Optional[Path] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_type: str = "dict"

    model_config = ConfigDict(arbitrary_types_allowed=True)


class DatabaseConfig(BaseModel):
    """Database configuration."""
    path: Path = Field(default_factory=lambda: Path.home() / ".todo-sync" / "sync.db")
    timeout: float = 30.0
    journal_mode: str = "WAL"
    synchronous: str = "NORMAL"

    @field_validator('path')
    @classmethod
    def validate_path(cls, v):
        """Ensure path is absolute."""
        return v.expanduser().absolute()


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: str = "json"
    directory: Optional[Path] = None
    enable_console: bool = True
    max_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 10

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class PresenceConfig(BaseModel):
    """Presence tracker configuration."""
    heartbeat_interval: float = 25.0
    heartbeat_timeout: float = 60.0
    sweep_interval: float = 15.0
    session_retention: float = 30 * 24 * 3600.0  # 30 days
    cleanup_interval: float = 3600.0

    @field_validator('heartbeat_timeout')
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError("heartbeat_timeout must be positive")
        return v


class EventLogConfig(BaseModel):
    """Event log configuration."""
    page_size: int = 200
    retention_days: float = 30.0
    max_events_per_user: Optional[int] = 10000
    expiry_interval: float = 3600.0  # 1 hour

    @field_validator('page_size')
    @classmethod
    def validate_page_size(cls, v):
        if v < 1:
            raise ValueError("page_size must be at least 1")
        return v


class ReconcileConfig(BaseModel):
    """Reconciler configuration."""
    max_backlog: int = 1000


class NotificationsConfig(BaseModel):
    """Notification configuration."""
    on_transition: bool = False


class WebSocketConfig(BaseModel):
    """Socket.IO transport configuration."""
    host: str = "0.0.0.0"
    port: int = 8080
    secret_key: str = "change-me"
    jwt_algorithm: str = "HS256"
    cors_allowed_origins: Union[str, List[str]] = "*"


class SyncConfig(BaseModel):
    """Main todo-sync configuration."""
    app_name: str = "todo-sync"
    debug: bool = False

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    presence: PresenceConfig = Field(default_factory=PresenceConfig)
    event_log: EventLogConfig = Field(default_factory=EventLogConfig)
    reconcile: ReconcileConfig = Field(default_factory=ReconcileConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        validate_assignment=True
    )


class ConfigLoader:
    """Configuration loader with multiple source support."""

    def __init__(self, env_prefix: str = ENV_PREFIX):
        """Initialize configuration loader."""
        self.env_prefix = env_prefix
        self._sources: List[ConfigSource] = []
        self._config: Optional[SyncConfig] = None
        self._lock = asyncio.Lock()

    def add_source(
        self,
        source: Union[str, Path, Dict[str, Any]],
        priority: int = 0,
        source_type: Optional[str] = None
    ) -> None:
        """
        Add configuration source.

        Args:
            source: Configuration source (file path or dict)
            priority: Source priority (higher wins)
            source_type: Source type (auto-detected if None)
        """
        if isinstance(source, (str, Path)):
            path = Path(source)
            if not source_type:
                source_type = self._detect_source_type(path)

            self._sources.append(ConfigSource(
                path=path,
                priority=priority,
                source_type=source_type
            ))
        else:
            self._sources.append(ConfigSource(
                data=source,
                priority=priority,
                source_type="dict"
            ))

        # Lowest priority first so higher priorities merge over it
        self._sources.sort(key=lambda s: s.priority)

    def _detect_source_type(self, path: Path) -> str:
        """Detect configuration file type."""
        suffix = path.suffix.lower()
        if suffix == ".json":
            return "json"
        elif suffix in (".yaml", ".yml"):
            return "yaml"
        elif suffix == ".toml":
            return "toml"
        elif suffix == ".env":
            return "env"
        else:
            raise ConfigurationError(f"Unknown config file type: {suffix}")

    async def load(self) -> SyncConfig:
        """
        Load configuration from all sources.

        Returns:
            Merged configuration
        """
        async with self._lock:
            merged_data: Dict[str, Any] = {}

            for source in self._sources:
                data = self._load_source(source)
                merged_data = self._deep_merge(merged_data, data)

            env_data = self._load_env_vars()
            merged_data = self._deep_merge(merged_data, env_data)

            try:
                self._config = SyncConfig(**merged_data)
            except ValidationError as e:
                errors = []
                for error in e.errors():
                    field = ".".join(str(x) for x in error["loc"])
                    errors.append(f"{field}: {error['msg']}")

                raise ConfigurationError(
                    f"Configuration validation failed: {'; '.join(errors)}"
                ) from e

            logger.info("configuration_loaded", sources=len(self._sources))
            return self._config

    def _load_source(self, source: ConfigSource) -> Dict[str, Any]:
        """Load data from a configuration source."""
        if source.path is None:
            return source.data

        if not source.path.exists():
            logger.warning("config_file_not_found", path=str(source.path))
            return {}

        content = source.path.read_text()

        try:
            if source.source_type == "json":
                return json.loads(content)
            elif source.source_type == "yaml":
                return yaml.safe_load(content) or {}
            elif source.source_type == "toml":
                return toml.loads(content)
            elif source.source_type == "env":
                return self._parse_env_file(content)
        except (ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Failed to parse {source.path}: {e}"
            ) from e

        raise ConfigurationError(f"Unknown source type: {source.source_type}")

    def _parse_env_file(self, content: str) -> Dict[str, Any]:
        """Parse .env file format (KEY=value, sections separated by '__')."""
        result: Dict[str, Any] = {}

        for line in content.splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue

            key, value = line.split("=", 1)
            key = key.strip()
            if key.startswith(self.env_prefix):
                key = key[len(self.env_prefix):]
            value = value.strip().strip('"').strip("'")
            self._set_nested(result, key.lower().split(ENV_NESTING), self._convert_value(value))

        return result

    def _load_env_vars(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        result: Dict[str, Any] = {}

        for key, value in os.environ.items():
            if key.startswith(self.env_prefix):
                parts = key[len(self.env_prefix):].lower().split(ENV_NESTING)
                self._set_nested(result, parts, self._convert_value(value))

        return result

    @staticmethod
    def _set_nested(target: Dict[str, Any], parts: List[str], value: Any) -> None:
        current = target
        for part in parts[:-1]:
            current = current.setdefault(part, {})
        current[parts[-1]] = value

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate type."""
        if value.lower() in ("true", "yes", "on"):
            return True
        elif value.lower() in ("false", "no", "off"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        if "," in value:
            return [v.strip() for v in value.split(",")]

        return value

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get_config(self) -> SyncConfig:
        """Get current configuration."""
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config


async def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None
) -> SyncConfig:
    """
    Load configuration from standard locations.

    Args:
        config_paths: Additional configuration paths
        extra_config: Extra configuration to merge

    Returns:
        Loaded configuration
    """
    loader = ConfigLoader()

    default_paths = [
        Path.home() / ".todo-sync" / "config.yaml",
        Path("/etc/todo-sync/config.yaml"),
        Path("./todo-sync.yaml"),
        Path("./todo-sync.json"),
    ]

    for path in default_paths:
        if path.exists():
            loader.add_source(path, priority=10)

    if config_paths:
        for i, path in enumerate(config_paths):
            loader.add_source(path, priority=20 + i)

    if extra_config:
        loader.add_source(extra_config, priority=100)

    return await loader.load()


__all__ = [
    'SyncConfig',
    'DatabaseConfig',
    'LoggingConfig',
    'PresenceConfig',
    'EventLogConfig',
    'ReconcileConfig',
    'NotificationsConfig',
    'WebSocketConfig',
    'ConfigLoader',
    'load_config',
]
