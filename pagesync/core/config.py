from __future__ import annotations

import logging
import math
import os
from pathlib import Path
from typing import Any, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, ValidationInfo, field_validator

log = logging.getLogger("pagesync.core.config")

DEFAULT_PORT = 9091
DEFAULT_INACTIVITY_TTL_MS = 24 * 60 * 60 * 1000
DEFAULT_CLEANUP_INTERVAL_MS = 5 * 60 * 1000
DEFAULT_HEARTBEAT_INTERVAL_MS = 30 * 1000
MAX_BODY_BYTES = 1_000_000

# environment variable -> config field
ENV_KEYS = {
    "HOST": "host",
    "PORT": "port",
    "INACTIVITY_TTL_MS": "inactivity_ttl_ms",
    "CLEANUP_INTERVAL_MS": "cleanup_interval_ms",
    "HEARTBEAT_INTERVAL_MS": "heartbeat_interval_ms",
    "CORS_ALLOWED_ORIGINS": "cors_allowed_origins",
}


def positive_int(value: Any, fallback: int) -> int:
    """Floor ``value`` to a positive int, or return ``fallback``."""

    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return fallback
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number) or number <= 0:
        return fallback
    return max(1, math.floor(number))


def parse_origins(value: Any) -> List[str]:
    if value is None:
        return ["*"]
    items = value.split(",") if isinstance(value, str) else list(value)
    origins = [str(item).strip() for item in items if str(item).strip()]
    return origins or ["*"]


class RelayConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    inactivity_ttl_ms: int = DEFAULT_INACTIVITY_TTL_MS
    cleanup_interval_ms: int = DEFAULT_CLEANUP_INTERVAL_MS
    heartbeat_interval_ms: int = DEFAULT_HEARTBEAT_INTERVAL_MS
    max_body_bytes: int = MAX_BODY_BYTES
    cors_allowed_origins: List[str] = ["*"]
    multi_tenant: bool = True

    model_config = ConfigDict(extra="ignore")

    @field_validator(
        "port",
        "inactivity_ttl_ms",
        "cleanup_interval_ms",
        "heartbeat_interval_ms",
        "max_body_bytes",
        mode="before",
    )
    @classmethod
    def _positive_or_default(cls, value: Any, info: ValidationInfo) -> int:
        return positive_int(value, cls.model_fields[info.field_name].default)

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> List[str]:
        return parse_origins(value)

    @field_validator("host", mode="before")
    @classmethod
    def _host_or_default(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            return "0.0.0.0"
        return value.strip()

    @property
    def allows_any_origin(self) -> bool:
        return "*" in self.cors_allowed_origins


def load_config(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> RelayConfig:
    """Defaults, then the YAML file, then the environment, then ``overrides``."""

    data: dict = {}
    if path is not None:
        loaded = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"config file {path} must contain a mapping")
        data.update(loaded)

    env = os.environ if environ is None else environ
    for env_key, field_name in ENV_KEYS.items():
        raw = env.get(env_key)
        if raw is not None and raw != "":
            data[field_name] = raw

    data.update({k: v for k, v in overrides.items() if v is not None})
    config = RelayConfig.model_validate(data)
    log.debug("config loaded %s", config.model_dump())
    return config


__all__ = ["RelayConfig", "load_config", "positive_int", "parse_origins", "MAX_BODY_BYTES"]
