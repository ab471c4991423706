"""Queue items, records and wire schemas used by both pipelines."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

PROFILE_KIND = 0
VERIFICATION_KIND = 555

BLOCK_RETENTION = timedelta(hours=48)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Decision(str, Enum):
    """Classifier decision; the classifier owns the level -> decision mapping."""

    ALLOW = "ALLOW"
    FLAG = "FLAG"
    BLOCK = "BLOCK"

    @classmethod
    def from_label(cls, value: Any) -> "Decision":
        if isinstance(value, Decision):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            # Unknown labels are treated as needing review, never as a block.
            return cls.FLAG


class VerificationSource(str, Enum):
    BIO = "bio"
    TAGGED_POST = "tagged-post"
    NONE = "none"


# ---------------------------------------------------------------------------
# Queue items
# ---------------------------------------------------------------------------
@dataclass(slots=True, frozen=True)
class PendingModerationItem:
    event_id: str
    media_urls: tuple[str, ...]
    added_at: datetime


@dataclass(slots=True, frozen=True)
class PendingDisputeItem:
    dispute_id: str
    ticket_id: str
    event_id: str
    user_pubkey: str
    dispute_reason: str


@dataclass(slots=True)
class PendingVerification:
    pubkey: str
    external_handle: str
    created_at: datetime
    last_attempt_at: datetime | None = None
    attempts: int = 0

    def is_eligible(self, now: datetime, cooldown: timedelta) -> bool:
        """True when never attempted or the last attempt is older than ``cooldown``."""

        if self.last_attempt_at is None:
            return True
        return self.last_attempt_at <= now - cooldown


# ---------------------------------------------------------------------------
# Durable records
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class BlockRecord:
    event_id: str
    blocked_at: datetime
    reason: str
    content_level: int
    offending_url: str

    @property
    def retain_until(self) -> datetime:
        return self.blocked_at + BLOCK_RETENTION


@dataclass(slots=True)
class ModerationNotification:
    pubkey: str
    event_id: str
    reason: str
    content_type: str
    media_url: str
    created_at: datetime = field(default_factory=utcnow)
    is_read: bool = False


@dataclass(slots=True)
class DisputeResolution:
    dispute_id: str
    ticket_id: str
    event_id: str
    user_pubkey: str
    approved: bool
    explanation: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class StoredEvent:
    """Minimal relay event as exposed by the store."""

    id: str
    pubkey: str
    kind: int
    created_at: int
    content: str
    tags: list[list[str]] = field(default_factory=list)

    def tag_values(self, name: str) -> list[str]:
        return [tag[1] for tag in self.tags if len(tag) >= 2 and tag[0] == name]


@dataclass(slots=True)
class EventFilter:
    ids: list[str] | None = None
    authors: list[str] | None = None
    kinds: list[int] | None = None
    tags: dict[str, list[str]] | None = None
    limit: int | None = None


@dataclass(slots=True)
class VerificationOutcome:
    is_verified: bool
    external_follower_count: str = ""
    verification_source: VerificationSource = VerificationSource.NONE
    claimed_key: str = ""
    error: str | None = None


# ---------------------------------------------------------------------------
# Wire schemas
# ---------------------------------------------------------------------------
class ModerationVerdict(BaseModel):
    """Classifier response; unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    content_level: int = Field(default=0, ge=0, le=5)
    decision: Decision = Decision.ALLOW
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    explanation: str = ""
    processing_time: float = 0.0
    category: str = ""
    moderation_mode: str = ""
    is_video: bool = False

    @field_validator("decision", mode="before")
    @classmethod
    def _coerce_decision(cls, value: Any) -> Decision:
        return Decision.from_label(value)

    @field_validator("explanation", "category", "moderation_mode", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("confidence", "processing_time", mode="before")
    @classmethod
    def _none_to_zero(cls, value: Any) -> Any:
        return 0.0 if value is None else value

    @property
    def should_block(self) -> bool:
        return self.decision is Decision.BLOCK


class ProfileData(BaseModel):
    """Facts extracted from an external profile page. Every field is optional."""

    model_config = ConfigDict(extra="ignore")

    npub: str = ""
    follower_count: str = ""
    username: str = ""
    full_name: str = ""
    bio: str = ""
    location: str = ""
    website: str = ""
    join_date: str = ""
    tweet_count: str = ""
    following_count: str = ""
    likes_count: str = ""

    @field_validator("*", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, bool):
            return ""
        if isinstance(value, float):
            return f"{value:g}"
        if isinstance(value, (int, str)):
            return str(value).strip()
        return ""

    @property
    def has_target_fields(self) -> bool:
        return bool(self.npub or self.follower_count)


class ProfileClaim(BaseModel):
    """Relay profile content; only the external handle claim is read."""

    model_config = ConfigDict(extra="ignore")

    x: Any = None

    def handle(self) -> str | None:
        """Return the cleaned handle, ``""`` when blank, ``None`` when absent.

        Raises ``TypeError`` when the claim is present but not a string.
        """

        if self.x is None:
            return None
        if not isinstance(self.x, str):
            raise TypeError(f"invalid handle type: {type(self.x).__name__}")
        return clean_handle(self.x)


def clean_handle(handle: str) -> str:
    handle = handle.strip()
    if handle.startswith("@"):
        return handle[1:]
    return handle


__all__ = [
    "BLOCK_RETENTION",
    "BlockRecord",
    "Decision",
    "DisputeResolution",
    "EventFilter",
    "ModerationNotification",
    "ModerationVerdict",
    "PROFILE_KIND",
    "PendingDisputeItem",
    "PendingModerationItem",
    "PendingVerification",
    "ProfileClaim",
    "ProfileData",
    "StoredEvent",
    "VERIFICATION_KIND",
    "VerificationOutcome",
    "VerificationSource",
    "clean_handle",
    "utcnow",
]
