from __future__ import annotations
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

load_dotenv()


def _env(*names: str, default: Optional[str] = None) -> Optional[str]:
    """First non-empty value among ``names``; unset and empty both fall through."""
    for name in names:
        value = os.getenv(name)
        if value is not None and value.strip() != "":
            return value
    return default


def _env_bool(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_status_set(value: str | None) -> frozenset[int]:
    """Parse ``"500-599"`` / ``"500,502,503"`` / ``"429, 500-504"`` into a set of codes."""
    if not value:
        return frozenset()
    out: set[int] = set()
    for part in str(value).split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            lo, hi = part.split("-", 1)
            out.update(range(int(lo), int(hi) + 1))
        else:
            out.add(int(part))
    return frozenset(out)


@dataclass(frozen=True)
class Settings:
    mongo_uri: str = _env("MONGO_URI", default="mongodb://localhost:27017")
    mongo_db: str = _env("MONGO_DB", default="reqgate")
    # rate-limit store -> logging store -> default connection
    store_mongo_uri: str = _env(
        "REQGATE_RATELIMIT_MONGO_URI", "REQGATE_LOGGING_MONGO_URI", "MONGO_URI",
        default="mongodb://localhost:27017",
    )
    logging_mongo_uri: str = _env(
        "REQGATE_LOGGING_MONGO_URI", "MONGO_URI", default="mongodb://localhost:27017"
    )
    store_collection: str = _env("REQGATE_STORE_COLLECTION", default="reqgate_store")
    logging_collection: str = _env("REQGATE_LOGGING_COLLECTION", default="http_request_logs")
    user_agent: str = _env("USER_AGENT", default="reqgate/0.1")
    kill_file: str = _env("KILL_SWITCH_FILE", default=".kill")
    log_level: str = _env("LOG_LEVEL", default="INFO")
    key_prefix: str = _env("REQGATE_KEY_PREFIX", default="reqgate")

    logging_enabled: bool = _env_bool("REQGATE_LOGGING_ENABLED", True)
    log_retention_days: Optional[int] = (
        int(_env("REQGATE_LOG_RETENTION_DAYS")) if _env("REQGATE_LOG_RETENTION_DAYS") else 30
    )
    force_protocol: Optional[str] = _env("REQGATE_FORCE_PROTOCOL")
    timeout: float = float(_env("REQGATE_TIMEOUT", default="30"))

    rate_limit_enabled: bool = _env_bool("REQGATE_RATE_LIMIT_ENABLED", True)
    default_block_time: int = int(_env("REQGATE_DEFAULT_BLOCK_TIME", default="15"))
    rate_limit_wait_on_block: bool = _env_bool("REQGATE_RATE_LIMIT_WAIT_ON_BLOCK", False)

    cache_strategy: str = _env("REQGATE_CACHE_STRATEGY", default="never")
    cache_ttl: int = int(_env("REQGATE_CACHE_TTL", default="3600"))
    cache_threshold: Optional[int] = (
        int(_env("REQGATE_CACHE_THRESHOLD")) if _env("REQGATE_CACHE_THRESHOLD") else None
    )
    cache_threshold_period: Optional[int] = (
        int(_env("REQGATE_CACHE_THRESHOLD_PERIOD")) if _env("REQGATE_CACHE_THRESHOLD_PERIOD") else None
    )

    circuit_breaker_enabled: bool = _env_bool("REQGATE_CIRCUIT_BREAKER_ENABLED", False)
    circuit_breaker_threshold: int = int(_env("REQGATE_CIRCUIT_BREAKER_THRESHOLD", default="5"))
    circuit_breaker_recovery_time: int = int(_env("REQGATE_CIRCUIT_BREAKER_RECOVERY_TIME", default="60"))
    circuit_breaker_failure_statuses: frozenset[int] = field(
        default_factory=lambda: parse_status_set(
            _env("REQGATE_CIRCUIT_BREAKER_FAILURE_STATUSES", default="500-599")
        )
    )
    circuit_breaker_namespace: Optional[str] = _env("REQGATE_CB_NAMESPACE")


SETTINGS = Settings()


class CacheStrategy(str, Enum):
    NEVER = "never"
    ALWAYS = "always"
    CONDITIONAL = "conditional"


class ExpiresFormat(str, Enum):
    SECONDS = "seconds"
    MINUTES = "minutes"
    DATETIME = "datetime"


class PipelineConfig(BaseModel):
    """Immutable per-pipeline configuration.

    Forks are produced with ``model_copy(update=...)``; nothing mutates a
    config that another caller may be holding.
    """

    model_config = ConfigDict(frozen=True)

    key_prefix: str = "reqgate"
    logging_enabled: bool = True
    timeout: float = 30.0
    force_protocol: Optional[str] = None
    as_form: bool = False

    rate_limit_enabled: bool = True
    default_block_time: int = 15
    rate_limit_wait_on_block: bool = False

    cache_strategy: CacheStrategy = CacheStrategy.NEVER
    cache_ttl: int = 3600
    cache_threshold: Optional[int] = None
    cache_threshold_period: Optional[int] = None
    cache_only_statuses: Optional[frozenset[int]] = None
    cache_except_statuses: Optional[frozenset[int]] = None
    cache_expires_field: Optional[str] = None
    cache_expires_format: ExpiresFormat = ExpiresFormat.DATETIME
    cache_expires_fallback: Optional[int] = None

    circuit_breaker_enabled: bool = False
    circuit_breaker_threshold: int = 5
    circuit_breaker_recovery_time: int = 60
    circuit_breaker_failure_statuses: frozenset[int] = frozenset(range(500, 600))
    circuit_breaker_namespace: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings = SETTINGS) -> "PipelineConfig":
        return cls.from_mapping(
            {
                "key_prefix": settings.key_prefix,
                "logging_enabled": settings.logging_enabled,
                "timeout": settings.timeout,
                "force_protocol": settings.force_protocol,
                "rate_limit_enabled": settings.rate_limit_enabled,
                "default_block_time": settings.default_block_time,
                "rate_limit_wait_on_block": settings.rate_limit_wait_on_block,
                "cache_strategy": settings.cache_strategy,
                "cache_ttl": settings.cache_ttl,
                "cache_threshold": settings.cache_threshold,
                "cache_threshold_period": settings.cache_threshold_period,
                "circuit_breaker_enabled": settings.circuit_breaker_enabled,
                "circuit_breaker_threshold": settings.circuit_breaker_threshold,
                "circuit_breaker_recovery_time": settings.circuit_breaker_recovery_time,
                "circuit_breaker_failure_statuses": settings.circuit_breaker_failure_statuses or None,
                "circuit_breaker_namespace": settings.circuit_breaker_namespace,
            }
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], base: Optional["PipelineConfig"] = None) -> "PipelineConfig":
        """Build a config from a plain mapping.

        A key that is present with a ``None`` value is treated like an absent
        key: the value of ``base`` (or the field default) is kept.
        """
        values = dict(base.model_dump()) if base is not None else {}
        for key, value in data.items():
            if key not in cls.model_fields:
                raise ValueError(f"Unknown configuration key '{key}'")
            if value is None:
                continue
            if key in ("circuit_breaker_failure_statuses", "cache_only_statuses", "cache_except_statuses"):
                value = parse_status_set(value) if isinstance(value, str) else frozenset(int(v) for v in value)
            values[key] = value
        return cls.model_validate(values)

    def fork(self, **changes: Any) -> "PipelineConfig":
        return self.model_validate({**self.model_dump(), **changes})


def load_profile(path: str, name: Optional[str] = None, base: Optional[PipelineConfig] = None) -> PipelineConfig:
    """Load a YAML file of ``defaults:`` plus named ``profiles:`` into a config."""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    cfg = PipelineConfig.from_mapping(data.get("defaults") or {}, base=base or PipelineConfig.from_settings())
    if name:
        profiles = data.get("profiles") or {}
        if name not in profiles:
            raise KeyError(f"Unknown profile '{name}' in {path}")
        cfg = PipelineConfig.from_mapping(profiles[name] or {}, base=cfg)
    return cfg
