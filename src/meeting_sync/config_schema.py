"""Unified configuration schema for meeting_sync.

Defines Pydantic models for every configurable part of a sync run, one
section per concern.  Every section has defaults, so ``UnifiedConfig()``
is a valid zero-config setup (credentials can still arrive through
environment variables; see ``config.load_config``).

Usage:
    from meeting_sync.config_loader import load_hierarchical_config
    from meeting_sync.config_schema import build_config

    unified = build_config(load_hierarchical_config())
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class ApiConfig(BaseModel):
    """Remote document API connection settings."""

    base_url: str | None = Field(
        default=None, description="Base URL of the meetings API"
    )
    api_key: str | None = Field(default=None, description="API key")
    timeout: float = Field(
        default=30.0, gt=0, description="Per-request timeout in seconds"
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries for retryable failures (0-10)",
    )
    retry_delay: float = Field(
        default=1.0,
        ge=0,
        description="Initial backoff delay in seconds, doubled per attempt",
    )

    model_config = {"frozen": True}


class OutputConfig(BaseModel):
    """Where and under which names notes are written inside the vault."""

    target_folder: str = Field(
        default="Meetings", description="Folder for synced notes"
    )
    include_date_in_filename: bool = Field(
        default=True, description="Prefix filenames with the meeting date"
    )
    date_format: str = Field(
        default="%Y-%m-%d", description="strftime format for dates"
    )
    folder_organization: Literal["flat", "by-date", "mirror-remote"] = (
        Field(default="flat", description="Subfolder layout")
    )
    date_folder_format: Literal["daily", "weekly"] = Field(
        default="daily",
        description="Date folder granularity for by-date organization",
    )
    file_extension: str = Field(
        default=".md", description="Extension of synced notes"
    )

    model_config = {"frozen": True}


class SyncConfig(BaseModel):
    """Behaviour of the sync engine."""

    state_dir: str = Field(
        default=".meeting_sync",
        description="Directory (relative to the vault) for sync state",
    )
    prefer_local_changes: bool = Field(
        default=True,
        description="Keep user-modified notes instead of backing up and updating",
    )
    auto_resolve_strategy: Literal["local", "remote", "backup"] | None = (
        Field(
            default=None,
            description="Global conflict resolution override",
        )
    )
    enable_recovery: bool = Field(
        default=True, description="Checkpoint runs for resumption"
    )
    validate_data: bool = Field(
        default=True, description="Validate remote documents before applying"
    )
    recovery_max_age_hours: float = Field(
        default=24.0,
        gt=0,
        description="Checkpoints older than this are discarded",
    )
    lock_timeout: float = Field(
        default=30.0, gt=0, description="Seconds to wait for a path lock"
    )
    max_documents: int | None = Field(
        default=None, ge=1, description="Upper bound on documents per run"
    )

    model_config = {"frozen": True}


class BatchConfig(BaseModel):
    """Adaptive batch scheduler tuning."""

    min_size: int = Field(default=10, ge=1)
    max_size: int = Field(default=100, ge=1)
    target_duration: float = Field(
        default=0.5, gt=0, description="Target seconds per batch"
    )
    adjustment_factor: float = Field(default=0.3, gt=0, le=1)
    history_limit: int = Field(default=100, ge=1)
    batch_delay: float = Field(
        default=0.0, ge=0, description="Pause in seconds between batches"
    )

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_bounds(self) -> BatchConfig:
        if self.min_size > self.max_size:
            raise ValueError(
                f"min_size ({self.min_size}) must not exceed max_size ({self.max_size})"
            )
        return self


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
        format: "text" or "json".
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")
    format: Literal["text", "json"] = Field(default="text")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration."""

    api: ApiConfig = Field(default_factory=ApiConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    batching: BatchConfig = Field(default_factory=BatchConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Missing sections get defaults; unknown top-level keys are ignored
    with a warning.
    """
    if not raw_data:
        return UnifiedConfig()

    known = set(UnifiedConfig.model_fields)
    unknown = sorted(set(raw_data) - known)
    if unknown:
        logger.warning("Ignoring unknown config sections: %s", unknown)

    return UnifiedConfig(
        **{k: v for k, v in raw_data.items() if k in known}
    )
