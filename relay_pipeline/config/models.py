"""Pydantic models used across the relay pipeline configuration flow."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class MirrorEndpoint(BaseModel):
    """One front-end mirror of the external profile site."""

    url: str
    priority: int = Field(default=1, ge=0)

    @field_validator("url")
    @classmethod
    def _trailing_slash(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("mirror url cannot be empty")
        return value if value.endswith("/") else f"{value}/"


def _default_mirrors() -> list[MirrorEndpoint]:
    hosts = (
        "nitter.net",
        "nitter.lacontrevoie.fr",
        "nitter.1d4.us",
        "nitter.kavin.rocks",
        "nitter.unixfox.eu",
        "nitter.fdn.fr",
        "nitter.pussthecat.org",
        "nitter.nixnet.services",
    )
    return [MirrorEndpoint(url=f"https://{host}/", priority=index) for index, host in enumerate(hosts, 1)]


class ModerationConfig(BaseModel):
    """Content moderation pipeline settings."""

    enabled: bool = True
    endpoint: str = "http://localhost:8000"
    mode: str = "full"
    dispute_mode: str = "dispute"
    threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    dispute_threshold: float = Field(default=0.35, ge=0.0, le=1.0)
    timeout_seconds: float = Field(default=30.0, gt=0)
    check_interval_seconds: float = Field(default=30.0, gt=0)
    concurrency: int = Field(default=3, ge=1)
    batch_size: int = Field(default=10, ge=1)
    dispute_batch_size: int = Field(default=5, ge=1)
    temp_dir: Path = Field(default=Path("data/moderation_tmp"))
    temp_file_max_age_hours: float = Field(default=24.0, gt=0)
    block_retention_hours: float = Field(default=48.0, gt=0)
    resolution_retention_days: float = Field(default=7.0, gt=0)
    cleanup_interval_hours: float = Field(default=1.0, gt=0)
    purge_interval_hours: float = Field(default=24.0, gt=0)

    @field_validator("temp_dir", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        return Path(value)

    @model_validator(mode="after")
    def _validate_thresholds(self) -> "ModerationConfig":
        if self.dispute_threshold > self.threshold:
            raise ValueError("dispute_threshold must not exceed threshold")
        return self


class VerificationConfig(BaseModel):
    """Identity verification pipeline settings."""

    enabled: bool = True
    check_interval_seconds: float = Field(default=60.0, gt=0)
    sweep_interval_hours: float = Field(default=24.0, gt=0)
    batch_size: int = Field(default=10, ge=1)
    concurrency: int = Field(default=3, ge=1)
    max_attempts: int = Field(default=5, ge=1)
    retry_cooldown_hours: float = Field(default=24.0, ge=0)
    pool_size: int = Field(default=3, ge=1)
    pool_init_timeout_seconds: float = Field(default=120.0, gt=0)
    session_probe_timeout_seconds: float = Field(default=5.0, gt=0)
    requests_per_minute: int = Field(default=10, ge=1)
    mirrors_per_attempt: int = Field(default=3, ge=1)
    vision_endpoint: str = "http://localhost:11434"
    vision_model: str = "llava"
    vision_timeout_seconds: float = Field(default=120.0, gt=0)
    consensus_passes: int = Field(default=3, ge=1)
    headless: bool = True
    page_timeout_ms: int = Field(default=30000, ge=1000)
    temp_dir: Path = Field(default=Path("data/verification_tmp"))
    mirrors: list[MirrorEndpoint] = Field(default_factory=_default_mirrors)

    @field_validator("temp_dir", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        return Path(value)

    @field_validator("mirrors", mode="before")
    @classmethod
    def _coerce_mirrors(cls, value: Any) -> Any:
        # Plain strings get priorities in list order.
        if isinstance(value, list):
            return [
                {"url": item, "priority": index} if isinstance(item, str) else item
                for index, item in enumerate(value, 1)
            ]
        return value

    @model_validator(mode="after")
    def _require_mirrors(self) -> "VerificationConfig":
        if self.enabled and not self.mirrors:
            raise ValueError("verification requires at least one mirror")
        return self


class PipelineConfig(BaseModel):
    """Top-level configuration shared by both pipelines."""

    database_path: Path = Field(default=Path("data/relay.db"))
    relay_pubkey: str = ""
    moderation: ModerationConfig = Field(default_factory=ModerationConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)

    @field_validator("database_path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        return Path(value)

    def resolve(self, base_dir: Path, path: Path) -> Path:
        """Return ``path`` resolved against the project directory when relative."""

        if not path.is_absolute():
            return (base_dir / path).resolve()
        return path


__all__ = [
    "MirrorEndpoint",
    "ModerationConfig",
    "PipelineConfig",
    "VerificationConfig",
]
