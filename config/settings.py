"""
Configuration loader for the dispatch backend.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./dispatch.db"        # postgresql:// | sqlite://
    store_backend: str = "memory"                # "sql" | "memory"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 20
    statement_timeout_seconds: float = 25.0


@dataclass
class QueueConfig:
    batch_size: int = 20
    max_retries: int = 3
    backoff_schedule: list[int] = field(default_factory=lambda: [60, 300, 1800])
    delivery_timeout_seconds: float = 25.0
    stale_processing_seconds: int = 900     # processing rows older than this are re-queued
    max_details: int = 100


@dataclass
class AssignmentConfig:
    chunk_size: int = 200
    max_failure_details: int = 1000
    lock_key: str = "round_robin_assignment"
    lease_ttl_seconds: int = 60             # only used where no advisory lock exists
    actor_id: str = "00000000-0000-0000-0000-000000000000"
    reason: str = "round-robin"
    db_timeout_seconds: float = 25.0


@dataclass
class WhatsAppConfig:
    graph_version: str = "v19.0"
    base_url: str = "https://graph.facebook.com"
    timeout_seconds: float = 25.0
    rate_limit_codes: list[int] = field(default_factory=lambda: [4, 80007, 130429, 131048, 131056])
    permanent_error_codes: list[int] = field(default_factory=lambda: [132001])


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = True


@dataclass
class Settings:
    app_name: str = "ConverseDispatch"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    assignment: AssignmentConfig = field(default_factory=AssignmentConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_settings: Optional[Settings] = None

_UNRESOLVED = re.compile(r"\$\{\w+\}")


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values.

    A value that is nothing but an unset ${VAR} becomes None so the
    dataclass default applies.
    """
    if isinstance(obj, str):
        value = _substitute_env_vars(obj)
        return None if _UNRESOLVED.fullmatch(value) else value
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _get(section: dict[str, Any], key: str, default: Any) -> Any:
    value = section.get(key)
    return default if value is None else value


def _as_bool(value: Any, default: bool) -> bool:
    # Substituted env vars arrive as strings
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if value is None:
        return default
    return bool(value)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "DISPATCH_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = _get(raw, "app_name", settings.app_name)
        settings.debug = _as_bool(raw.get("debug"), settings.debug)

        if "database" in raw:
            db = raw["database"] or {}
            settings.database = DatabaseConfig(
                url=_get(db, "url", settings.database.url),
                store_backend=_get(db, "store_backend", settings.database.store_backend),
                echo=_as_bool(db.get("echo"), settings.database.echo),
                pool_size=int(_get(db, "pool_size", settings.database.pool_size)),
                max_overflow=int(_get(db, "max_overflow", settings.database.max_overflow)),
                statement_timeout_seconds=float(
                    _get(db, "statement_timeout_seconds", settings.database.statement_timeout_seconds)
                ),
            )

        if "queue" in raw:
            q = raw["queue"] or {}
            defaults = QueueConfig()
            settings.queue = QueueConfig(
                batch_size=int(_get(q, "batch_size", defaults.batch_size)),
                max_retries=int(_get(q, "max_retries", defaults.max_retries)),
                backoff_schedule=[int(s) for s in _get(q, "backoff_schedule", defaults.backoff_schedule)],
                delivery_timeout_seconds=float(_get(q, "delivery_timeout_seconds", defaults.delivery_timeout_seconds)),
                stale_processing_seconds=int(_get(q, "stale_processing_seconds", defaults.stale_processing_seconds)),
                max_details=int(_get(q, "max_details", defaults.max_details)),
            )

        if "assignment" in raw:
            a = raw["assignment"] or {}
            defaults = AssignmentConfig()
            settings.assignment = AssignmentConfig(
                chunk_size=int(_get(a, "chunk_size", defaults.chunk_size)),
                max_failure_details=int(_get(a, "max_failure_details", defaults.max_failure_details)),
                lock_key=_get(a, "lock_key", defaults.lock_key),
                lease_ttl_seconds=int(_get(a, "lease_ttl_seconds", defaults.lease_ttl_seconds)),
                actor_id=_get(a, "actor_id", defaults.actor_id),
                reason=_get(a, "reason", defaults.reason),
                db_timeout_seconds=float(_get(a, "db_timeout_seconds", defaults.db_timeout_seconds)),
            )

        if "whatsapp" in raw:
            wa = raw["whatsapp"] or {}
            defaults = WhatsAppConfig()
            settings.whatsapp = WhatsAppConfig(
                graph_version=_get(wa, "graph_version", defaults.graph_version),
                base_url=_get(wa, "base_url", defaults.base_url),
                timeout_seconds=float(_get(wa, "timeout_seconds", defaults.timeout_seconds)),
                rate_limit_codes=[int(c) for c in _get(wa, "rate_limit_codes", defaults.rate_limit_codes)],
                permanent_error_codes=[
                    int(c) for c in _get(wa, "permanent_error_codes", defaults.permanent_error_codes)
                ],
            )

        if "logging" in raw:
            lg = raw["logging"] or {}
            settings.logging = LoggingConfig(
                level=str(_get(lg, "level", settings.logging.level)).upper(),
                json=_as_bool(lg.get("json"), settings.logging.json),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
