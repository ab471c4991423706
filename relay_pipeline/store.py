"""Capability the pipelines consume from the relay's persistence layer."""

from __future__ import annotations

from typing import Iterable, Protocol

from .models import (
    BlockRecord,
    DisputeResolution,
    EventFilter,
    ModerationNotification,
    PendingDisputeItem,
    PendingModerationItem,
    PendingVerification,
    StoredEvent,
)


class Store(Protocol):
    """Durable queues plus the event/record operations the dispatchers need.

    Every ``dequeue_*`` call is an atomic get-and-remove: an item is handed
    to exactly one caller. Callers must tolerate redelivery after a crash.
    """

    # moderation queue -------------------------------------------------
    def enqueue_moderation(self, event_id: str, media_urls: Iterable[str]) -> None: ...

    def dequeue_moderation_batch(self, limit: int) -> list[PendingModerationItem]: ...

    def remove_from_moderation_queue(self, event_id: str) -> None: ...

    def is_blocked(self, event_id: str) -> bool: ...

    def mark_blocked(
        self, event_id: str, timestamp: int, reason: str, content_level: int, media_url: str
    ) -> None: ...

    def unblock(self, event_id: str) -> None: ...

    def blocked_records(self) -> list[BlockRecord]: ...

    def purge_blocked_older_than(self, seconds: int) -> int: ...

    # disputes ---------------------------------------------------------
    def enqueue_dispute(self, item: PendingDisputeItem) -> None: ...

    def dequeue_dispute_batch(self, limit: int) -> list[PendingDisputeItem]: ...

    def create_resolution(self, resolution: DisputeResolution) -> None: ...

    def purge_resolutions_older_than(self, seconds: int) -> int: ...

    # verification queue -----------------------------------------------
    def enqueue_verification(self, pubkey: str, handle: str) -> None: ...

    def dequeue_verification_batch(self, limit: int) -> list[PendingVerification]: ...

    def requeue_verification(self, pubkey: str, handle: str, attempts: int) -> None: ...

    def remove_verification(self, pubkey: str) -> None: ...

    # events and notifications -----------------------------------------
    def store_event(self, event: StoredEvent) -> None: ...

    def query_events(self, event_filter: EventFilter) -> list[StoredEvent]: ...

    def delete_events(self, event_ids: Iterable[str]) -> int: ...

    def create_notification(self, notification: ModerationNotification) -> None: ...


__all__ = ["Store"]
