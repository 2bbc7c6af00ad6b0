# File: parkdesk/infrastructure/config.py
"""
Application configuration

Settings come from the environment (optionally a .env file loaded with
python-dotenv). Every variable is prefixed with PARKDESK_.
"""

from dataclasses import dataclass
from typing import Mapping, Optional
import os

from dotenv import load_dotenv

from ..domain.models import ValidationError

ENV_PREFIX = "PARKDESK_"

STORE_TYPES = ("memory", "mongo")
BROKER_TYPES = ("memory", "redis", "none")


@dataclass(frozen=True)
class AppConfig:
    store: str = "memory"
    mongo_url: str = "mongodb://localhost:27017"
    mongo_db: str = "parkdesk"
    store_timeout_ms: int = 5000
    broker: str = "none"
    redis_url: str = "redis://localhost:6379"
    events_topic: str = "parkdesk.events"
    timezone: str = "America/Bogota"
    currency: str = "COP"
    default_owner: str = "anonymous"
    log_level: str = "INFO"
    log_dir: str = "logs"

    def __post_init__(self):
        if self.store not in STORE_TYPES:
            raise ValidationError(f"Unknown store type: {self.store}")
        if self.broker not in BROKER_TYPES:
            raise ValidationError(f"Unknown broker type: {self.broker}")
        if self.store_timeout_ms <= 0:
            raise ValidationError(f"Store timeout must be positive: {self.store_timeout_ms}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, dotenv_path: Optional[str] = None) -> 'AppConfig':
        """Build the configuration from PARKDESK_* variables"""
        if environ is None:
            load_dotenv(dotenv_path)
            environ = os.environ

        def read(name: str, default: str) -> str:
            return environ.get(ENV_PREFIX + name, default).strip()

        timeout = read("STORE_TIMEOUT_MS", str(cls.store_timeout_ms))
        try:
            timeout_ms = int(timeout)
        except ValueError:
            raise ValidationError(f"{ENV_PREFIX}STORE_TIMEOUT_MS must be an integer: {timeout!r}")

        return cls(
            store=read("STORE", cls.store).lower(),
            mongo_url=read("MONGO_URL", cls.mongo_url),
            mongo_db=read("MONGO_DB", cls.mongo_db),
            store_timeout_ms=timeout_ms,
            broker=read("BROKER", cls.broker).lower(),
            redis_url=read("REDIS_URL", cls.redis_url),
            events_topic=read("EVENTS_TOPIC", cls.events_topic),
            timezone=read("TIMEZONE", cls.timezone),
            currency=read("CURRENCY", cls.currency),
            default_owner=read("DEFAULT_OWNER", cls.default_owner),
            log_level=read("LOG_LEVEL", cls.log_level).upper(),
            log_dir=read("LOG_DIR", cls.log_dir),
        )
