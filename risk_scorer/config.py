"""
Configuration and logging setup for the risk scorer
"""

import logging
import math
from typing import Annotated, Dict, Optional, Tuple

import structlog
from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict, SettingsError

from .errors import ConfigurationError

DEFAULT_FUSION_WEIGHTS: Dict[str, float] = {
    "ml": 0.3,
    "rules": 0.2,
    "behavior": 0.2,
    "device": 0.1,
    "velocity": 0.1,
    "geolocation": 0.1,
}

DEFAULT_RULES: Tuple[str, ...] = ("velocity", "amount", "geolocation", "time_pattern", "device")


def validate_fusion_weights(weights: Dict[str, float]) -> Dict[str, float]:
    """Weights must name exactly the fused signals and sum to 1.0"""
    expected = set(DEFAULT_FUSION_WEIGHTS)
    names = set(weights)
    if names != expected:
        raise ConfigurationError(
            "fusion weights must cover exactly: " + ", ".join(sorted(expected)),
            {"missing": sorted(expected - names), "unknown": sorted(names - expected)},
        )
    if any(w < 0 for w in weights.values()):
        raise ConfigurationError("fusion weights must be non-negative", {"weights": dict(weights)})
    total = sum(weights.values())
    if not math.isclose(total, 1.0, abs_tol=1e-9):
        raise ConfigurationError(f"fusion weights must sum to 1.0, got {total}", {"weights": dict(weights)})
    return {name: float(weights[name]) for name in DEFAULT_FUSION_WEIGHTS}


def _env(name: str, variable: str) -> AliasChoices:
    return AliasChoices(name, variable)


class EngineSettings(BaseSettings):
    """Runtime settings, read from the environment"""
    model_config = SettingsConfigDict(extra="ignore", env_ignore_empty=True)

    port: int = Field(8080, validation_alias=_env("port", "PORT"), description="HTTP port")
    log_level: str = Field("INFO", validation_alias=_env("log_level", "LOG_LEVEL"), description="Root log level")
    lookup_timeout_seconds: float = Field(
        0.5, gt=0, validation_alias=_env("lookup_timeout_seconds", "RISK_LOOKUP_TIMEOUT_SECONDS"),
        description="Timeout for each external lookup",
    )
    assessment_timeout_seconds: float = Field(
        2.0, gt=0, validation_alias=_env("assessment_timeout_seconds", "RISK_ASSESSMENT_TIMEOUT_SECONDS"),
        description="Timeout for a whole assessment",
    )
    # JSON object in the environment
    fusion_weights: Dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_FUSION_WEIGHTS),
        validation_alias=_env("fusion_weights", "RISK_FUSION_WEIGHTS"),
    )
    # Comma separated in the environment
    enabled_rules: Annotated[Tuple[str, ...], NoDecode] = Field(
        DEFAULT_RULES, validation_alias=_env("enabled_rules", "RISK_ENABLED_RULES"),
    )
    profile_service_url: Optional[str] = Field(None, validation_alias=_env("profile_service_url", "PROFILE_SERVICE_URL"))
    history_service_url: Optional[str] = Field(None, validation_alias=_env("history_service_url", "HISTORY_SERVICE_URL"))
    device_reputation_url: Optional[str] = Field(None, validation_alias=_env("device_reputation_url", "DEVICE_REPUTATION_URL"))
    ip_reputation_url: Optional[str] = Field(None, validation_alias=_env("ip_reputation_url", "IP_REPUTATION_URL"))
    device_registry_url: Optional[str] = Field(None, validation_alias=_env("device_registry_url", "DEVICE_REGISTRY_URL"))

    @field_validator("enabled_rules", mode="before")
    @classmethod
    def _split_rules(cls, value):
        if isinstance(value, str):
            return tuple(r.strip() for r in value.split(",") if r.strip())
        return value

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        value = value.upper()
        if not isinstance(logging.getLevelName(value), int):
            raise ValueError(f"unknown log level {value}")
        return value

    @field_validator("fusion_weights")
    @classmethod
    def _weights(cls, value: Dict[str, float]) -> Dict[str, float]:
        try:
            return validate_fusion_weights(value)
        except ConfigurationError as e:
            raise ValueError(e.message) from e

    @classmethod
    def from_env(cls) -> "EngineSettings":
        try:
            return cls()
        except (SettingsError, ValidationError) as e:
            raise ConfigurationError(f"invalid risk scorer settings: {e}") from e


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s")
    logging.getLogger().setLevel(getattr(logging, level.upper()))
