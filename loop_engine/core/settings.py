import json
import logging
import os
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)


class LoopConstants(BaseModel):
    """Named algorithm constants. Fixed by default, overridable for testing."""

    model_config = ConfigDict(frozen=True)

    bolus_partial_application_factor: float = Field(default=0.4, gt=0, le=1)
    temp_basal_duration: timedelta = timedelta(minutes=30)
    temp_basal_continuation_interval: timedelta = timedelta(minutes=11)
    input_data_recency_interval: timedelta = timedelta(minutes=15)
    delta: timedelta = timedelta(minutes=5)
    insulin_activity_duration: timedelta = timedelta(hours=6, minutes=10)

    retrospective_correction_grouping_interval: timedelta = timedelta(minutes=30)
    retrospective_correction_effect_duration: timedelta = timedelta(minutes=60)
    retrospection_interval: timedelta = timedelta(minutes=60)
    integral_retrospection_interval: timedelta = timedelta(minutes=180)
    irc_integral_min: float = -90.0
    irc_integral_max: float = 90.0

    momentum_data_interval: timedelta = timedelta(minutes=15)
    momentum_duration: timedelta = timedelta(minutes=30)
    momentum_fit_degree: int = Field(default=1, ge=1, le=3)

    counteraction_max_gap: timedelta = timedelta(minutes=30)
    rate_tolerance: float = Field(default=1e-6, ge=0)
    delivery_increment: float = Field(default=0.05, gt=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "LoopConstants":
        if self.irc_integral_min > self.irc_integral_max:
            raise ValueError("irc_integral_min must not exceed irc_integral_max")
        if self.delta <= timedelta(0):
            raise ValueError("delta must be positive")
        return self


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)


class SecurityConfig(BaseModel):
    cors_origins: list[str] = Field(default_factory=list)


class Settings(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    loop: LoopConstants = Field(default_factory=LoopConstants)


DEFAULT_CONFIG_PATH = Path(os.environ.get("CONFIG_PATH", "config/config.json"))

SECTIONS = ("server", "security", "loop")


def _csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _minutes(value: str) -> timedelta:
    return timedelta(minutes=float(value))


# Environment variable -> (section, field, parser). Durations are given in minutes.
_ENV_FIELDS: dict[str, tuple[str, str, Callable[[str], Any]]] = {
    "SERVER_HOST": ("server", "host", str),
    "SERVER_PORT": ("server", "port", int),
    "CORS_ORIGINS": ("security", "cors_origins", _csv),
    "LOOP_TEMP_BASAL_DURATION_MINUTES": ("loop", "temp_basal_duration", _minutes),
    "LOOP_CONTINUATION_INTERVAL_MINUTES": ("loop", "temp_basal_continuation_interval", _minutes),
    "LOOP_RECENCY_INTERVAL_MINUTES": ("loop", "input_data_recency_interval", _minutes),
    "LOOP_DELTA_MINUTES": ("loop", "delta", _minutes),
    "LOOP_INSULIN_ACTIVITY_DURATION_MINUTES": ("loop", "insulin_activity_duration", _minutes),
    "LOOP_BOLUS_PARTIAL_APPLICATION_FACTOR": ("loop", "bolus_partial_application_factor", float),
    "LOOP_DELIVERY_INCREMENT": ("loop", "delivery_increment", float),
}


def _load_file_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Config file {path} is not valid JSON") from exc


def _load_env() -> dict[str, Any]:
    env_config: dict[str, Any] = {}
    for key, (section, field, parse) in _ENV_FIELDS.items():
        raw = os.environ.get(key)
        if not raw:
            continue
        try:
            env_config.setdefault(section, {})[field] = parse(raw)
        except ValueError as exc:
            raise RuntimeError(f"Environment variable {key}={raw!r} is not valid") from exc
    return env_config


def merge_settings(env_config: dict[str, Any], file_config: dict[str, Any]) -> dict[str, Any]:
    """Environment values win over the file, field by field within each section."""
    return {section: {**file_config.get(section, {}), **env_config.get(section, {})} for section in SECTIONS}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    merged = merge_settings(env_config=_load_env(), file_config=_load_file_config(DEFAULT_CONFIG_PATH))
    try:
        settings = Settings.model_validate(merged)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid loop engine configuration: {exc}") from exc
    logger.debug("Settings loaded", extra={"config_path": str(DEFAULT_CONFIG_PATH)})
    return settings


def get_loop_constants() -> LoopConstants:
    return get_settings().loop


__all__ = ["LoopConstants", "Settings", "get_settings", "get_loop_constants", "merge_settings"]
