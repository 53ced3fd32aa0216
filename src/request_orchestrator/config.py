"""Configuration with 4-layer resolution: defaults -> YAML -> env -> init.

Uses pydantic-settings with YamlConfigSettingsSource for layered configuration.
Supports ``.env`` file loading, ``REQUEST_ORCHESTRATOR_`` prefixed env vars, and
nested delimiter ``__`` for overriding sub-model fields.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, ClassVar, Literal

import structlog
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from request_orchestrator.exceptions import ErrorKind

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------


class RetrySettings(BaseModel):
    """Default retry/backoff policy."""

    max_attempts: int = Field(default=3, ge=1, le=100)
    base_delay_seconds: float = Field(default=0.1, ge=0.0)
    max_delay_seconds: float = Field(default=10.0, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, gt=1.0)
    jitter: float = Field(
        default=0.2, ge=0.0, le=1.0, description="Relative jitter (+/-)."
    )
    non_retryable_kinds: list[ErrorKind] = Field(
        default_factory=lambda: [
            ErrorKind.CLIENT,
            ErrorKind.AUTH,
            ErrorKind.VALIDATION,
        ]
    )


class CacheSettings(BaseModel):
    """Result cache configuration."""

    default_ttl_seconds: float = Field(default=60.0, gt=0.0)
    capacity: int | None = Field(
        default=None, ge=1, description="LRU bound; unbounded when unset."
    )


class ConcurrencySettings(BaseModel):
    """Outbound concurrency limits."""

    max_concurrency: int = Field(default=5, ge=1, le=1000)


class HealthSettings(BaseModel):
    """Health aggregation defaults."""

    default_timeout_seconds: float = Field(default=5.0, gt=0.0)


class HttpSettings(BaseModel):
    """HTTP transport settings used by the CLI."""

    timeout_seconds: float = Field(default=10.0, gt=0.0)
    user_agent: str = "request-orchestrator"


class LoggingSettings(BaseModel):
    """Logging / observability configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["console", "json"] = "console"
    file: Path | None = None


# ---------------------------------------------------------------------------
# Main Settings (4-layer resolution)
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Top-level settings.

    Resolution order (last wins):
        1. Field defaults (defined above)
        2. YAML config file (``orchestrator.yaml`` or ``--config`` path)
        3. Environment variables (prefixed ``REQUEST_ORCHESTRATOR_``)
        4. Init / CLI overrides
    """

    model_config = SettingsConfigDict(
        env_prefix="REQUEST_ORCHESTRATOR_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        yaml_file="orchestrator.yaml",
        yaml_file_encoding="utf-8",
        extra="ignore",
    )

    _config_path_override: ClassVar[Path | None] = None

    retry: RetrySettings = Field(default_factory=RetrySettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    concurrency: ConcurrencySettings = Field(default_factory=ConcurrencySettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    http: HttpSettings = Field(default_factory=HttpSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customise settings source priority.

        Resolution order (first = highest priority):
            init_settings > env_settings > dotenv (.env) > yaml > defaults
        """
        yaml_file = cls._config_path_override or settings_cls.model_config.get(
            "yaml_file", "orchestrator.yaml"
        )
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file),
        )

    @classmethod
    def load(cls, config_path: Path | None = None, **overrides: Any) -> Settings:
        """Load settings with optional config path and overrides.

        Args:
            config_path: Optional path to a YAML config file.
            **overrides: Key-value overrides applied at highest priority.

        Returns:
            Fully-resolved Settings instance.

        Raises:
            ValidationError: If any setting value fails validation.
        """
        cls._config_path_override = config_path
        try:
            return cls(**overrides)
        finally:
            cls._config_path_override = None


def format_validation_error(exc: ValidationError) -> str:
    """Format a Pydantic ValidationError into a user-friendly message.

    Args:
        exc: The validation error to format.

    Returns:
        A multi-line string with each error on its own line.
    """
    lines: list[str] = []
    for error in exc.errors():
        loc = " -> ".join(str(part) for part in error["loc"])
        msg = error["msg"]
        raw_input = error.get("input")
        if raw_input is not None:
            lines.append(f"  {loc}: {msg} (got {raw_input!r})")
        else:
            lines.append(f"  {loc}: {msg}")
    return "Configuration error:\n" + "\n".join(lines)
