from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field

from ..common.errors import ConfigurationError

logger = logging.getLogger(__name__)

_TRUTHY = ("1", "true", "yes", "on")

REQUIRED_BROKER_FIELDS = ("host", "port", "username", "password", "virtual_host", "exchange", "queue")


class BrokerConfig(BaseModel):
    """RabbitMQ connection + topology settings.

    Every field except binding_patterns must be supplied; there are no
    built-in defaults for a broker location. `require()` is what the
    publisher calls before touching the network.
    """

    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    virtual_host: Optional[str] = None
    exchange: Optional[str] = None
    queue: Optional[str] = None
    binding_patterns: list[str] = Field(default_factory=lambda: ["search.purchase.*"])

    def missing_fields(self) -> list[str]:
        missing = []
        for name in REQUIRED_BROKER_FIELDS:
            value = getattr(self, name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(name)
        return missing

    def require(self) -> "BrokerConfig":
        missing = self.missing_fields()
        if missing:
            raise ConfigurationError(
                "Missing broker settings: " + ", ".join(missing),
                missing=missing,
            )
        if not (0 < int(self.port) < 65536):  # type: ignore[arg-type]
            raise ConfigurationError(f"Invalid broker port: {self.port}")
        if not [p for p in self.binding_patterns if p.strip()]:
            raise ConfigurationError("At least one binding pattern is required")
        return self

    def safe_url(self) -> str:
        """AMQP URL with the password masked, for logs."""
        vhost = (self.virtual_host or "/").lstrip("/")
        return f"amqp://{self.username}:***@{self.host}:{self.port}/{vhost}"


class EventsConfig(BaseModel):
    """Publisher policy knobs."""

    enabled: bool = True
    # "fail": a TopologyError aborts startup. "degraded": log it and keep serving.
    startup_policy: Literal["fail", "degraded"] = "fail"
    # Caller side of the PublishError policy (see api/http.py).
    fail_request_on_publish_error: bool = True
    publish_timeout_s: float = 5.0
    connect_timeout_s: float = 10.0

    broker: BrokerConfig = Field(default_factory=BrokerConfig)


class ServiceConfig(BaseModel):
    """Runtime configuration loaded from file + env overrides."""

    db_path: str = "data/purchases.db"
    log_level: str = "INFO"

    events: EventsConfig = Field(default_factory=EventsConfig)


def _env(name: str) -> Optional[str]:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return None
    return v.strip()


class ConfigManager:
    """Load configuration: defaults < JSON config file < environment variables.

    - The file is optional. A corrupted file is logged and ignored.
    - Env values are applied as strings and coerced by pydantic, so a bad
      RABBITMQ_PORT surfaces as a ConfigurationError instead of a crash
      somewhere inside the broker client.
    """

    def __init__(self) -> None:
        repo_root = Path(__file__).resolve().parents[2]
        self.repo_root = repo_root
        self.default_path = repo_root / "config" / "purchase_service.json"

    def _read_file(self, cfg_path: Path) -> dict:
        if not cfg_path.exists():
            return {}
        try:
            data = json.loads(cfg_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable config file %s: %s", cfg_path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring config file %s: top level is not an object", cfg_path)
            return {}
        return data

    def load(self) -> ServiceConfig:
        raw_path = os.getenv("PURCHASE_SERVICE_CONFIG_PATH", str(self.default_path))
        cfg_path = Path(raw_path)
        if not cfg_path.is_absolute():
            # relative to repo root, not process CWD
            cfg_path = self.repo_root / cfg_path

        data = self._read_file(cfg_path)

        for key, env_name in (("db_path", "PURCHASE_SERVICE_DB_PATH"), ("log_level", "PURCHASE_SERVICE_LOG_LEVEL")):
            v = _env(env_name)
            if v is not None:
                data[key] = v

        events = dict(data.get("events") or {})
        v = _env("PURCHASE_SERVICE_EVENTS_ENABLED")
        if v is not None:
            events["enabled"] = v.lower() in _TRUTHY
        v = _env("PURCHASE_SERVICE_EVENTS_STARTUP_POLICY")
        if v is not None:
            events["startup_policy"] = v.lower()
        v = _env("PURCHASE_SERVICE_EVENTS_FAIL_REQUEST")
        if v is not None:
            events["fail_request_on_publish_error"] = v.lower() in _TRUTHY
        for key, env_name in (
            ("publish_timeout_s", "PURCHASE_SERVICE_EVENTS_PUBLISH_TIMEOUT_S"),
            ("connect_timeout_s", "PURCHASE_SERVICE_EVENTS_CONNECT_TIMEOUT_S"),
        ):
            v = _env(env_name)
            if v is not None:
                events[key] = v

        broker = dict(events.get("broker") or {})
        for key in REQUIRED_BROKER_FIELDS:
            v = _env(f"RABBITMQ_{key.upper()}")
            if v is not None:
                broker[key] = v
        v = _env("RABBITMQ_BINDING_PATTERNS")
        if v is not None:
            broker["binding_patterns"] = [p.strip() for p in v.split(",") if p.strip()]
        events["broker"] = broker
        data["events"] = events

        try:
            return ServiceConfig.model_validate(data)
        except ValueError as e:
            # pydantic.ValidationError is a ValueError
            raise ConfigurationError(f"Invalid configuration: {e}") from e
