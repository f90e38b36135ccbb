from __future__ import annotations

from typing import Annotated

from pydantic import Field, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from crm_core.circuit_breaker.breaker import CircuitBreakerConfig
from crm_core.circuit_breaker.factory import DEPENDENCY_CLASS_PROFILE
from crm_core.logging import get_log_level_value


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class DatabaseBreakerSettings(BaseSettings):
    """Settings for the breaker guarding the primary database.

    Defaults follow the dependency-class profile; every value can be
    overridden through ``CRM_DB_BREAKER_*`` environment variables.
    ``log_level`` sets the level of the ``crm_core.circuit_breaker`` loggers.
    """

    model_config = prefixed_settings_config("CRM_DB_BREAKER_")

    name: str = "database"
    failure_threshold: int = DEPENDENCY_CLASS_PROFILE.failure_threshold
    success_threshold: int = DEPENDENCY_CLASS_PROFILE.success_threshold
    open_duration_seconds: float = DEPENDENCY_CLASS_PROFILE.open_duration
    operation_timeout_seconds: float | None = DEPENDENCY_CLASS_PROFILE.operation_timeout
    recoverable_patterns: Annotated[tuple[str, ...], NoDecode] = Field(default=())
    log_level: str = "INFO"

    @field_validator("name", mode="before")
    @classmethod
    def _validate_name(cls, value: object, info: ValidationInfo) -> object:
        if not isinstance(value, str):
            return value
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be non-empty")
        return normalized

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            normalized = value.strip().upper()
            get_log_level_value(normalized)
            return normalized
        return value

    @field_validator("recoverable_patterns", mode="before")
    @classmethod
    def _split_recoverable_patterns(cls, value: object) -> object:
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        return value

    @model_validator(mode="after")
    def _validate_breaker_settings(self) -> DatabaseBreakerSettings:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if self.open_duration_seconds < 0:
            raise ValueError("open_duration_seconds must be >= 0")
        if (
            self.operation_timeout_seconds is not None
            and self.operation_timeout_seconds < 0
        ):
            raise ValueError("operation_timeout_seconds must be >= 0")
        return self

    def to_breaker_config(self) -> CircuitBreakerConfig:
        """Build the breaker configuration described by these settings."""
        return CircuitBreakerConfig(
            name=self.name,
            failure_threshold=self.failure_threshold,
            success_threshold=self.success_threshold,
            open_duration=self.open_duration_seconds,
            operation_timeout=self.operation_timeout_seconds,
        )
