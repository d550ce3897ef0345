from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv


class ConfigError(RuntimeError):
    pass


@dataclass(slots=True)
class DatabaseConfig:
    url: str = "sqlite:///./data/helpdesk.db"
    pool_min_size: int = 2
    pool_max_size: int = 10
    timeout_seconds: int = 30


@dataclass(slots=True)
class RedisConfig:
    enabled: bool = False
    url: str = "redis://localhost:6379/0"
    default_ttl: int = 120


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    directory: str = "logs"
    file_name: str = "helpdesk.log"
    max_bytes: int = 10_000_000
    backup_count: int = 10
    json_console: bool = False


@dataclass(slots=True)
class ApiConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    api_key: str = ""
    expose_errors: bool = False


@dataclass(slots=True)
class TicketConfig:
    default_page_size: int = 20
    max_page_size: int = 100


@dataclass(slots=True)
class AnalyticsConfig:
    default_weeks: int = 10
    max_weeks: int = 52
    percentage_precision: int = 1


@dataclass(slots=True)
class MissedChatConfig:
    sweep_interval_seconds: int = 0


@dataclass(slots=True)
class AppConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    tickets: TicketConfig = field(default_factory=TicketConfig)
    analytics: AnalyticsConfig = field(default_factory=AnalyticsConfig)
    missed_chats: MissedChatConfig = field(default_factory=MissedChatConfig)


def _get_env_str(key: str, fallback: str | None = None) -> str | None:
    value = os.getenv(key)
    if value is None:
        return fallback
    cleaned = value.strip()
    return cleaned if cleaned else fallback


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: Any, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _deep_get(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    node: Any = data
    for key in keys:
        if not isinstance(node, dict):
            return default
        node = node.get(key)
        if node is None:
            return default
    return node


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Missing config file: {path}")
    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")
    return raw


def load_config(config_path: Path) -> AppConfig:
    env_path = config_path.parent.parent / ".env"
    load_dotenv(env_path)
    raw = _load_yaml(config_path)

    database_cfg = DatabaseConfig(
        url=str(
            _get_env_str(
                "DATABASE_URL",
                _deep_get(raw, "database", "url", default="sqlite:///./data/helpdesk.db"),
            )
        ),
        pool_min_size=_as_int(
            _get_env_str("DB_POOL_MIN", None),
            _as_int(_deep_get(raw, "database", "pool_min_size"), 2),
        ),
        pool_max_size=_as_int(
            _get_env_str("DB_POOL_MAX", None),
            _as_int(_deep_get(raw, "database", "pool_max_size"), 10),
        ),
        timeout_seconds=_as_int(
            _get_env_str("DB_TIMEOUT_SECONDS", None),
            _as_int(_deep_get(raw, "database", "timeout_seconds"), 30),
        ),
    )

    redis_cfg = RedisConfig(
        enabled=_as_bool(_get_env_str("REDIS_ENABLED"), _as_bool(_deep_get(raw, "redis", "enabled"), False)),
        url=str(_get_env_str("REDIS_URL", _deep_get(raw, "redis", "url", default="redis://localhost:6379/0"))),
        default_ttl=_as_int(
            _get_env_str("REDIS_DEFAULT_TTL", None),
            _as_int(_deep_get(raw, "redis", "default_ttl"), 120),
        ),
    )

    logging_cfg = LoggingConfig(
        level=str(_get_env_str("LOG_LEVEL", _deep_get(raw, "logging", "level", default="INFO"))),
        directory=str(_deep_get(raw, "logging", "directory", default="logs")),
        file_name=str(_deep_get(raw, "logging", "file_name", default="helpdesk.log")),
        max_bytes=_as_int(_deep_get(raw, "logging", "max_bytes"), 10_000_000),
        backup_count=_as_int(_deep_get(raw, "logging", "backup_count"), 10),
        json_console=_as_bool(_deep_get(raw, "logging", "json_console"), False),
    )

    api_cfg = ApiConfig(
        host=str(_get_env_str("API_HOST", _deep_get(raw, "api", "host", default="0.0.0.0"))),
        port=_as_int(_get_env_str("API_PORT", None), _as_int(_deep_get(raw, "api", "port"), 8000)),
        api_key=str(_get_env_str("HELPDESK_API_KEY", _deep_get(raw, "api", "api_key", default=""))),
        expose_errors=_as_bool(_deep_get(raw, "api", "expose_errors"), False),
    )

    ticket_cfg = TicketConfig(
        default_page_size=_as_int(_deep_get(raw, "tickets", "default_page_size"), 20),
        max_page_size=_as_int(_deep_get(raw, "tickets", "max_page_size"), 100),
    )

    analytics_cfg = AnalyticsConfig(
        default_weeks=_as_int(_deep_get(raw, "analytics", "default_weeks"), 10),
        max_weeks=_as_int(_deep_get(raw, "analytics", "max_weeks"), 52),
        percentage_precision=_as_int(_deep_get(raw, "analytics", "percentage_precision"), 1),
    )

    missed_cfg = MissedChatConfig(
        sweep_interval_seconds=_as_int(
            _get_env_str("MISSED_CHAT_SWEEP_SECONDS", None),
            _as_int(_deep_get(raw, "missed_chats", "sweep_interval_seconds"), 0),
        ),
    )

    return AppConfig(
        database=database_cfg,
        redis=redis_cfg,
        logging=logging_cfg,
        api=api_cfg,
        tickets=ticket_cfg,
        analytics=analytics_cfg,
        missed_chats=missed_cfg,
    )
