"""
Centralized settings for the job controller.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.
    A malformed selector or an unparsable controller version is a startup
    failure, never something the reconciliation loop discovers later.

    - **Pydantic validation:** Type-checked at startup
    - **Environment-driven:** ``JOBCONTROLLER_*`` env vars and ``.env`` files
    - **File overrides:** Optional YAML file loaded by :func:`load_settings`

Examples:
    >>> settings = ControllerSettings(
    ...     controller_version="1.0.0",
    ...     feature_set_selectors=[{"project": "default", "name": "test"}],
    ...     whitelisted_stores=["test-store"],
    ... )
    >>> settings.polling_interval_seconds
    1.0

Tags:
    settings, configuration, pydantic, environment, jobcontroller

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

import fnmatch
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from jobcontroller.core.errors import ConfigError, InvalidSelectorError, InvalidVersionError
from jobcontroller.core.models import FeatureSetRef
from jobcontroller.core.versioning import validate_version


class EventBackend(str, Enum):
    MEMORY = "memory"
    KAFKA = "kafka"


class RepositoryBackend(str, Enum):
    MEMORY = "memory"
    SQLITE = "sqlite"


class FeatureSetSelector(BaseModel):
    """Which feature sets this controller manages: exact project, name glob."""

    project: str
    name: str = "*"

    @field_validator("project")
    @classmethod
    def _project_is_exact(cls, value: str) -> str:
        if not value or any(ch in value for ch in "*?[]/"):
            raise ValueError(f"project must be an exact, non-empty name: {value!r}")
        return value

    @field_validator("name")
    @classmethod
    def _name_is_pattern(cls, value: str) -> str:
        if not value or "/" in value:
            raise ValueError(f"name must be a non-empty pattern without '/': {value!r}")
        return value

    def matches(self, ref: FeatureSetRef) -> bool:
        return ref.project == self.project and fnmatch.fnmatchcase(ref.name, self.name)


class ControllerSettings(BaseSettings):
    """Job controller configuration.

    All fields can be set via ``JOBCONTROLLER_*`` environment variables
    (lists and nested values as JSON, e.g.
    ``JOBCONTROLLER_WHITELISTED_STORES='["online"]'``).
    """

    model_config = SettingsConfigDict(
        env_prefix="JOBCONTROLLER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # ── Reconciliation ───────────────────────────────────────────
    controller_version: str = Field(default="0.1.0", description="Semantic version stamped on jobs")
    polling_interval_ms: int = Field(default=1000, gt=0)
    call_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Deadline for job manager / repository calls (defaults to the polling interval)",
    )
    consolidate_jobs_per_source: bool = Field(default=True)
    feature_set_selectors: list[FeatureSetSelector] = Field(default_factory=list)
    whitelisted_stores: list[str] = Field(default_factory=list)
    keep_aborted_jobs: bool = Field(default=False)
    reset_delivery_on_store_change: bool = Field(default=False)
    lock_ttl_seconds: float = Field(default=60.0, gt=0)
    ack_lock_wait_seconds: float = Field(default=5.0, gt=0)
    ack_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Spec delivery still unacknowledged after this long is published again",
    )

    # ── Notification channel ─────────────────────────────────────
    event_backend: EventBackend = Field(default=EventBackend.MEMORY)
    kafka_bootstrap_servers: str = Field(default="localhost:9092")
    specs_topic: str = Field(default="feature-set-specs")
    acks_topic: str = Field(default="feature-set-specs-ack")
    consumer_group: str = Field(default="jobcontroller")

    # ── Job repository ───────────────────────────────────────────
    repository_backend: RepositoryBackend = Field(default=RepositoryBackend.MEMORY)
    database_path: str = Field(default="data/jobcontroller.db")

    # ── API ──────────────────────────────────────────────────────
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=12100)
    api_prefix: str = Field(default="/api/v1")

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    @field_validator("controller_version")
    @classmethod
    def _semantic_version(cls, value: str) -> str:
        try:
            return validate_version(value)
        except InvalidVersionError as e:
            raise ValueError(str(e)) from e

    @property
    def polling_interval_seconds(self) -> float:
        return self.polling_interval_ms / 1000.0

    @property
    def effective_call_timeout(self) -> float:
        return self.call_timeout_seconds or self.polling_interval_seconds


def load_settings(path: str | Path | None = None, **overrides: Any) -> ControllerSettings:
    """Build settings from env vars, an optional YAML file and explicit overrides.

    Raises:
        InvalidSelectorError: If a feature set selector is malformed
        ConfigError: For any other invalid setting or unreadable file
    """
    data: dict[str, Any] = {}
    if path is not None:
        try:
            with open(path, encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read settings file {path}: {e}", cause=e) from e
        if not isinstance(data, dict):
            raise ConfigError(f"Settings file {path} must contain a mapping")
    data.update(overrides)

    try:
        return ControllerSettings(**data)
    except ValidationError as e:
        if any(err["loc"] and err["loc"][0] == "feature_set_selectors" for err in e.errors()):
            raise InvalidSelectorError(f"Invalid feature set selector: {e}", cause=e) from e
        raise ConfigError(f"Invalid settings: {e}", cause=e) from e
