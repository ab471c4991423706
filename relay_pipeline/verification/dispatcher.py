"""Verification dispatcher: queue polling, retries, sweeps and outcome records."""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timedelta
from typing import Callable

from ..config import VerificationConfig
from ..engine import BoundedWorkerPool
from ..errors import MalformedInputError
from ..logging_conf import pipeline_logger
from ..models import (
    PROFILE_KIND,
    VERIFICATION_KIND,
    EventFilter,
    PendingVerification,
    ProfileClaim,
    StoredEvent,
    VerificationOutcome,
    utcnow,
)
from ..scheduler import APSchedulerAdapter
from ..store import Store
from .verifier import ProfileVerifier


def rfc3339(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


def event_id(pubkey: str, created_at: int, kind: int, tags: list[list[str]], content: str) -> str:
    """Relay event id: sha256 of the canonical ``[0, pubkey, created_at, kind, tags, content]`` array."""

    serialized = json.dumps(
        [0, pubkey, created_at, kind, tags, content], separators=(",", ":"), ensure_ascii=False
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def parse_claim(event: StoredEvent) -> str | None:
    """Read the handle claimed by a profile event.

    Raises ``MalformedInputError`` for unparsable content or a non-string claim.
    """

    try:
        claim = ProfileClaim.model_validate_json(event.content or "{}")
        return claim.handle()
    except TypeError as exc:
        raise MalformedInputError(str(exc)) from exc
    except ValueError as exc:
        raise MalformedInputError(f"profile content is not a JSON object: {exc}") from exc


class VerificationDispatcher:
    """Verify queued handles and publish one outcome record per attempt."""

    def __init__(
        self,
        store: Store,
        verifier: ProfileVerifier,
        config: VerificationConfig,
        relay_pubkey: str = "",
        workers: BoundedWorkerPool | None = None,
        scheduler: APSchedulerAdapter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.config = config
        self.relay_pubkey = relay_pubkey
        self.logger = pipeline_logger("verification")
        self.workers = workers or BoundedWorkerPool("verification", config.concurrency, self.logger)
        self.scheduler = scheduler or APSchedulerAdapter("verification")
        self.clock = clock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        self.scheduler.schedule_task("poll", self.poll_once, self.config.check_interval_seconds)
        self.scheduler.schedule_task(
            "sweep", self.sweep, self.config.sweep_interval_hours * 3600, run_immediately=True
        )
        self.scheduler.start()
        self.logger.info(
            "verification_started",
            check_interval=self.config.check_interval_seconds,
            concurrency=self.workers.concurrency,
        )

    def stop(self) -> None:
        self.scheduler.shutdown()
        self.workers.shutdown(wait=False)
        self.logger.info("verification_stopped")

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------
    def poll_once(self) -> int:
        entries = self.store.dequeue_verification_batch(self.config.batch_size)
        for entry in entries:
            self.workers.submit(self.process_entry, entry, pubkey=entry.pubkey)
        if entries:
            self.logger.info("verification_batch_dispatched", dequeued=len(entries))
        return len(entries)

    def process_entry(self, entry: PendingVerification) -> VerificationOutcome | None:
        """Run one verification attempt; returns ``None`` when the entry was discarded."""

        attempt = entry.attempts + 1
        try:
            handle = self._current_handle(entry.pubkey)
        except MalformedInputError as exc:
            self.logger.warning("verification_entry_discarded", pubkey=entry.pubkey, reason=str(exc))
            return None
        except Exception as exc:  # noqa: BLE001
            self.logger.warning(
                "verification_profile_lookup_failed", pubkey=entry.pubkey, attempt=attempt, error=str(exc)
            )
            self._retry_or_abandon(entry.pubkey, entry.external_handle, attempt)
            return None

        failed = False
        try:
            outcome = self.verifier.verify_profile(entry.pubkey, handle)
        except Exception as exc:  # noqa: BLE001
            failed = True
            outcome = VerificationOutcome(is_verified=False, error=str(exc))
            self.logger.warning(
                "verification_attempt_failed",
                pubkey=entry.pubkey,
                handle=handle,
                attempt=attempt,
                error=str(exc),
            )

        try:
            self.publish_outcome(entry.pubkey, handle, outcome, attempt)
        except Exception as exc:  # noqa: BLE001
            failed = True
            self.logger.warning(
                "verification_publish_failed", pubkey=entry.pubkey, attempt=attempt, error=str(exc)
            )
        if failed:
            self._retry_or_abandon(entry.pubkey, handle, attempt)
        return outcome

    def _current_handle(self, pubkey: str) -> str:
        profiles = self.store.query_events(
            EventFilter(authors=[pubkey], kinds=[PROFILE_KIND], limit=1)
        )
        if not profiles:
            raise MalformedInputError("no profile event")
        handle = parse_claim(profiles[0])
        if not handle:
            raise MalformedInputError("profile carries no handle")
        return handle

    def _retry_or_abandon(self, pubkey: str, handle: str, attempt: int) -> None:
        if attempt < self.config.max_attempts:
            self.store.requeue_verification(pubkey, handle, attempt)
            self.logger.info("verification_requeued", pubkey=pubkey, handle=handle, attempts=attempt)
        else:
            self.logger.error(
                "verification_abandoned", pubkey=pubkey, handle=handle, attempts=attempt
            )

    # ------------------------------------------------------------------
    # Outcome records
    # ------------------------------------------------------------------
    def publish_outcome(
        self, pubkey: str, handle: str, outcome: VerificationOutcome, attempt: int
    ) -> StoredEvent:
        now = self.clock()
        record: dict[str, object] = {
            "pubkey": pubkey,
            "external_handle": handle,
            "verified": outcome.is_verified,
            "follower_count": outcome.external_follower_count,
            "verified_at": rfc3339(now),
            "verification_source": outcome.verification_source.value,
            "attempt_count": attempt,
        }
        tags = [
            ["p", pubkey],
            ["x", handle],
            ["verified", "true" if outcome.is_verified else "false"],
            ["verification_source", outcome.verification_source.value],
            ["attempt", str(attempt)],
        ]
        if not outcome.is_verified:
            next_retry = rfc3339(now + timedelta(hours=self.config.retry_cooldown_hours))
            record["next_retry_at"] = next_retry
            tags.append(["next_retry", next_retry])

        content = json.dumps(record)
        created_at = int(now.timestamp())
        event = StoredEvent(
            id=event_id(self.relay_pubkey, created_at, VERIFICATION_KIND, tags, content),
            pubkey=self.relay_pubkey,
            kind=VERIFICATION_KIND,
            created_at=created_at,
            content=content,
            tags=tags,
        )
        self.store.store_event(event)
        self.logger.info(
            "verification_outcome_published",
            pubkey=pubkey,
            handle=handle,
            verified=outcome.is_verified,
            source=outcome.verification_source.value,
            attempt=attempt,
            error=outcome.error,
        )
        return event

    # ------------------------------------------------------------------
    # Sweep and ingestion hook
    # ------------------------------------------------------------------
    def sweep(self) -> int:
        """Enqueue the handle of every subject's latest profile event."""

        seen: set[str] = set()
        queued = 0
        for event in self.store.query_events(EventFilter(kinds=[PROFILE_KIND])):
            if event.pubkey in seen:
                continue
            seen.add(event.pubkey)
            try:
                handle = parse_claim(event)
            except MalformedInputError as exc:
                self.logger.debug("sweep_profile_skipped", pubkey=event.pubkey, reason=str(exc))
                continue
            if handle:
                self.store.enqueue_verification(event.pubkey, handle)
                queued += 1
        self.logger.info("verification_sweep_finished", profiles=len(seen), queued=queued)
        return queued

    def trigger_for_profile(self, event: StoredEvent) -> bool:
        """Queue verification for a freshly ingested profile.

        A profile without a handle clears the subject's outcome records and
        pending entry. Returns True when an entry was queued.
        """

        if event.kind != PROFILE_KIND:
            return False
        try:
            handle = parse_claim(event)
        except MalformedInputError as exc:
            self.logger.warning("profile_claim_invalid", pubkey=event.pubkey, reason=str(exc))
            return False
        if not handle:
            records = self.store.query_events(
                EventFilter(kinds=[VERIFICATION_KIND], tags={"p": [event.pubkey]})
            )
            deleted = self.store.delete_events([record.id for record in records])
            self.store.remove_verification(event.pubkey)
            self.logger.info("verification_cleared", pubkey=event.pubkey, records_deleted=deleted)
            return False
        self.store.enqueue_verification(event.pubkey, handle)
        self.logger.info("verification_triggered", pubkey=event.pubkey, handle=handle)
        return True


__all__ = ["VerificationDispatcher", "event_id", "parse_claim", "rfc3339"]
