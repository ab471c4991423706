"""Moderation dispatcher: queue polling, block lifecycle, disputes and cleanup."""

from __future__ import annotations

import os
import time
from datetime import datetime
from pathlib import Path
from typing import Callable

from ..config import ModerationConfig
from ..engine import BoundedWorkerPool
from ..errors import PipelineError
from ..logging_conf import pipeline_logger
from ..models import (
    DisputeResolution,
    EventFilter,
    ModerationNotification,
    ModerationVerdict,
    PendingDisputeItem,
    PendingModerationItem,
    utcnow,
)
from ..scheduler import APSchedulerAdapter
from ..store import Store
from .classifier import ClassifierClient
from .media import content_type_for, extract_media_urls

NO_MEDIA_EXPLANATION = "No valid media could be evaluated"
SYSTEM_TEMP_DIRS = (Path("/tmp"), Path("/var/tmp"))


def is_system_path(path: Path) -> bool:
    """True for ``/`` and any direct child of ``/``, such as ``/tmp``."""

    for candidate in (Path(os.path.abspath(path.expanduser())), path.expanduser().resolve()):
        root = Path(candidate.anchor)
        if candidate == root or candidate.parent == root or candidate in SYSTEM_TEMP_DIRS:
            return True
    return False


class ModerationDispatcher:
    """Screen queued events with the classifier and apply the block policy."""

    def __init__(
        self,
        store: Store,
        classifier: ClassifierClient,
        config: ModerationConfig,
        workers: BoundedWorkerPool | None = None,
        scheduler: APSchedulerAdapter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.config = config
        self.temp_dir = classifier.download_dir
        self.logger = pipeline_logger("moderation")
        self.workers = workers or BoundedWorkerPool("moderation", config.concurrency, self.logger)
        self.scheduler = scheduler or APSchedulerAdapter("moderation")
        self.clock = clock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        interval = self.config.check_interval_seconds
        self.scheduler.schedule_task("poll", self.poll_once, interval)
        self.scheduler.schedule_task("disputes", self.poll_disputes_once, interval)
        self.scheduler.schedule_task(
            "temp_cleanup", self.cleanup_temp_files, self.config.cleanup_interval_hours * 3600
        )
        self.scheduler.schedule_task(
            "purge_blocked", self.purge_blocked, self.config.purge_interval_hours * 3600
        )
        self.scheduler.schedule_task(
            "purge_resolutions", self.purge_resolutions, self.config.purge_interval_hours * 3600
        )
        self.scheduler.start()
        self.logger.info(
            "moderation_started",
            check_interval=interval,
            concurrency=self.workers.concurrency,
            enabled=self.classifier.enabled,
        )

    def stop(self) -> None:
        self.scheduler.shutdown()
        self.workers.shutdown(wait=True)
        removed = self.cleanup_temp_files(max_age_seconds=0)
        self.logger.info("moderation_stopped", temp_files_removed=removed)

    # ------------------------------------------------------------------
    # Moderation queue
    # ------------------------------------------------------------------
    def poll_once(self) -> int:
        """Dequeue one batch and hand each unblocked item to the worker pool."""

        items = self.store.dequeue_moderation_batch(self.config.batch_size)
        submitted = 0
        for item in items:
            if self.store.is_blocked(item.event_id):
                self.logger.info("moderation_skipped_blocked", event_id=item.event_id)
                continue
            self.workers.submit(self.process_item, item, event_id=item.event_id)
            submitted += 1
        if items:
            self.logger.info("moderation_batch_dispatched", dequeued=len(items), submitted=submitted)
        return submitted

    def process_item(self, item: PendingModerationItem) -> ModerationVerdict | None:
        """Classify the item's media in order; block on the first BLOCK verdict.

        Returns the blocking verdict, or ``None`` when the event passed.
        """

        try:
            events = self.store.query_events(EventFilter(ids=[item.event_id], limit=1))
            if not events:
                self.logger.warning("moderation_event_not_found", event_id=item.event_id)
                return None
            pubkey = events[0].pubkey
            for url in item.media_urls:
                try:
                    verdict = self.classifier.moderate_url(url)
                except PipelineError as exc:
                    self.logger.warning(
                        "media_moderation_failed", event_id=item.event_id, url=url, error=str(exc)
                    )
                    continue
                self.logger.info(
                    "media_verdict",
                    event_id=item.event_id,
                    url=url,
                    decision=verdict.decision.value,
                    content_level=verdict.content_level,
                    confidence=verdict.confidence,
                )
                if verdict.should_block:
                    self._block(item.event_id, pubkey, url, verdict)
                    return verdict
            self.logger.info("moderation_passed", event_id=item.event_id)
            return None
        finally:
            self.store.remove_from_moderation_queue(item.event_id)

    def _block(self, event_id: str, pubkey: str, url: str, verdict: ModerationVerdict) -> None:
        now = self.clock()
        self.store.mark_blocked(
            event_id, int(now.timestamp()), verdict.explanation, verdict.content_level, url
        )
        self.store.create_notification(
            ModerationNotification(
                pubkey=pubkey,
                event_id=event_id,
                reason=verdict.explanation,
                content_type=content_type_for(url),
                media_url=url,
                created_at=now,
            )
        )
        self.logger.info(
            "event_blocked",
            event_id=event_id,
            url=url,
            content_level=verdict.content_level,
            reason=verdict.explanation,
        )

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------
    def poll_disputes_once(self) -> int:
        disputes = self.store.dequeue_dispute_batch(self.config.dispute_batch_size)
        for dispute in disputes:
            self.workers.submit(
                self.process_dispute, dispute, dispute_id=dispute.dispute_id, event_id=dispute.event_id
            )
        return len(disputes)

    def process_dispute(self, dispute: PendingDisputeItem) -> DisputeResolution | None:
        """Re-evaluate a blocked event; the first non-BLOCK verdict approves."""

        if not self.store.is_blocked(dispute.event_id):
            self.logger.info(
                "dispute_stale", dispute_id=dispute.dispute_id, event_id=dispute.event_id
            )
            return None

        events = self.store.query_events(EventFilter(ids=[dispute.event_id], limit=1))
        urls = extract_media_urls(events[0]) if events else []
        if not urls:
            self.logger.warning("dispute_no_media", dispute_id=dispute.dispute_id, event_id=dispute.event_id)

        approved = False
        last_verdict: ModerationVerdict | None = None
        for url in urls:
            try:
                verdict = self.classifier.moderate_dispute_url(url, dispute.dispute_reason)
            except PipelineError as exc:
                self.logger.warning(
                    "dispute_media_failed", dispute_id=dispute.dispute_id, url=url, error=str(exc)
                )
                continue
            last_verdict = verdict
            if not verdict.should_block:
                approved = True
                break

        resolution = DisputeResolution(
            dispute_id=dispute.dispute_id,
            ticket_id=dispute.ticket_id,
            event_id=dispute.event_id,
            user_pubkey=dispute.user_pubkey,
            approved=approved,
            explanation=last_verdict.explanation if last_verdict else NO_MEDIA_EXPLANATION,
            created_at=self.clock(),
        )
        self.store.create_resolution(resolution)
        if approved:
            self.store.unblock(dispute.event_id)
        self.logger.info(
            "dispute_resolved",
            dispute_id=dispute.dispute_id,
            event_id=dispute.event_id,
            approved=approved,
        )
        return resolution

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------
    def cleanup_temp_files(self, max_age_seconds: float | None = None) -> int:
        """Delete temp files older than ``max_age_seconds`` (default 24h)."""

        if is_system_path(self.temp_dir):
            self.logger.warning("temp_cleanup_refused", path=str(self.temp_dir))
            return 0
        if not self.temp_dir.is_dir():
            return 0
        if max_age_seconds is None:
            max_age_seconds = self.config.temp_file_max_age_hours * 3600
        cutoff = time.time() - max_age_seconds
        removed = 0
        for path in self.temp_dir.iterdir():
            if not path.is_file():
                continue
            try:
                if path.stat().st_mtime <= cutoff:
                    path.unlink()
                    removed += 1
            except OSError as exc:
                self.logger.warning("temp_file_remove_failed", path=str(path), error=str(exc))
        if removed:
            self.logger.info("temp_files_removed", count=removed, path=str(self.temp_dir))
        return removed

    def purge_blocked(self) -> int:
        purged = self.store.purge_blocked_older_than(int(self.config.block_retention_hours * 3600))
        self.logger.info("blocked_events_purged", count=purged)
        return purged

    def purge_resolutions(self) -> int:
        purged = self.store.purge_resolutions_older_than(
            int(self.config.resolution_retention_days * 86400)
        )
        self.logger.info("resolutions_purged", count=purged)
        return purged

    def run_cleanup(self) -> dict[str, int]:
        return {
            "temp_files": self.cleanup_temp_files(),
            "blocked_events": self.purge_blocked(),
            "resolutions": self.purge_resolutions(),
        }


__all__ = ["ModerationDispatcher", "NO_MEDIA_EXPLANATION", "is_system_path"]
