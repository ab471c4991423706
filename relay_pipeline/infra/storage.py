"""SQLite-backed reference implementation of the pipeline ``Store`` capability."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, Iterable

from ..logging_conf import configure_logging
from ..models import (
    BLOCK_RETENTION,
    BlockRecord,
    DisputeResolution,
    EventFilter,
    ModerationNotification,
    PendingDisputeItem,
    PendingModerationItem,
    PendingVerification,
    StoredEvent,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS pending_moderation (
        event_id TEXT PRIMARY KEY,
        media_urls TEXT NOT NULL,
        added_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_disputes (
        dispute_id TEXT PRIMARY KEY,
        ticket_id TEXT,
        event_id TEXT NOT NULL,
        user_pubkey TEXT,
        dispute_reason TEXT,
        added_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS blocked_events (
        event_id TEXT PRIMARY KEY,
        blocked_at REAL NOT NULL,
        retain_until REAL NOT NULL,
        reason TEXT,
        content_level INTEGER,
        media_url TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_verifications (
        pubkey TEXT PRIMARY KEY,
        handle TEXT,
        created_at REAL NOT NULL,
        last_attempt_at REAL,
        attempts INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
        id TEXT PRIMARY KEY,
        pubkey TEXT NOT NULL,
        kind INTEGER NOT NULL,
        created_at INTEGER NOT NULL,
        content TEXT,
        tags TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS resolutions (
        dispute_id TEXT PRIMARY KEY,
        ticket_id TEXT,
        event_id TEXT,
        user_pubkey TEXT,
        approved INTEGER NOT NULL,
        explanation TEXT,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        pubkey TEXT,
        event_id TEXT,
        reason TEXT,
        content_type TEXT,
        media_url TEXT,
        created_at REAL NOT NULL,
        is_read INTEGER NOT NULL DEFAULT 0
    )
    """,
)

# Seconds an attempted verification stays ineligible for dequeue.
VERIFICATION_COOLDOWN = timedelta(hours=24)


def _ts(value: datetime) -> float:
    return value.timestamp()


def _dt(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SQLiteManager:
    """Manage SQLite connections with basic schema guarantees."""

    def __init__(self) -> None:
        self._connections: Dict[Path, sqlite3.Connection] = {}
        self._lock = Lock()

    def connect(self, path: Path) -> sqlite3.Connection:
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if path not in self._connections:
                conn = sqlite3.connect(path, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                self._connections[path] = conn
                self._ensure_schema(conn)
            return self._connections[path]

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        for statement in _SCHEMA:
            conn.execute(statement)
        conn.commit()

    def reset(self, path: Path) -> None:
        with self._lock:
            if path in self._connections:
                self._connections[path].close()
                del self._connections[path]
        if path.exists():
            path.unlink()

    def close_all(self) -> None:
        with self._lock:
            for conn in self._connections.values():
                conn.close()
            self._connections.clear()


class SQLiteStore:
    """Durable work queues and records on a single SQLite database.

    All statements run under one lock so each ``dequeue_*`` select+delete is
    atomic with respect to every other caller in the process.
    """

    def __init__(
        self,
        manager: SQLiteManager,
        db_path: Path,
        clock: Callable[[], datetime] = utcnow,
        verification_cooldown: timedelta = VERIFICATION_COOLDOWN,
    ) -> None:
        self.manager = manager
        self.db_path = db_path
        self.clock = clock
        self.verification_cooldown = verification_cooldown
        self.logger = configure_logging().bind(component="store")
        self._lock = Lock()
        self._conn = self.manager.connect(db_path)

    # ------------------------------------------------------------------
    # Moderation queue
    # ------------------------------------------------------------------
    def enqueue_moderation(self, event_id: str, media_urls: Iterable[str]) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO pending_moderation(event_id, media_urls, added_at) VALUES (?, ?, ?)",
                (event_id, json.dumps(list(media_urls)), _ts(self.clock())),
            )

    def dequeue_moderation_batch(self, limit: int) -> list[PendingModerationItem]:
        limit = limit if limit > 0 else 10
        with self._lock, self._conn:
            rows = self._conn.execute(
                "SELECT * FROM pending_moderation ORDER BY added_at LIMIT ?", (limit,)
            ).fetchall()
            self._conn.executemany(
                "DELETE FROM pending_moderation WHERE event_id = ?",
                [(row["event_id"],) for row in rows],
            )
        return [
            PendingModerationItem(
                event_id=row["event_id"],
                media_urls=tuple(json.loads(row["media_urls"] or "[]")),
                added_at=_dt(row["added_at"]),
            )
            for row in rows
        ]

    def remove_from_moderation_queue(self, event_id: str) -> None:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM pending_moderation WHERE event_id = ?", (event_id,))

    def pending_moderation_count(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT count(*) FROM pending_moderation").fetchone()[0]

    def is_blocked(self, event_id: str) -> bool:
        with self._lock:
            cur = self._conn.execute("SELECT 1 FROM blocked_events WHERE event_id = ?", (event_id,))
            return cur.fetchone() is not None

    def mark_blocked(
        self, event_id: str, timestamp: int, reason: str, content_level: int, media_url: str
    ) -> None:
        blocked_at = float(timestamp)
        retain_until = blocked_at + BLOCK_RETENTION.total_seconds()
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO blocked_events"
                "(event_id, blocked_at, retain_until, reason, content_level, media_url)"
                " VALUES (?, ?, ?, ?, ?, ?)",
                (event_id, blocked_at, retain_until, reason, content_level, media_url),
            )

    def unblock(self, event_id: str) -> None:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM blocked_events WHERE event_id = ?", (event_id,))

    def blocked_records(self) -> list[BlockRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM blocked_events ORDER BY blocked_at"
            ).fetchall()
        return [
            BlockRecord(
                event_id=row["event_id"],
                blocked_at=_dt(row["blocked_at"]),
                reason=row["reason"] or "",
                content_level=row["content_level"],
                offending_url=row["media_url"] or "",
            )
            for row in rows
        ]

    def purge_blocked_older_than(self, seconds: int) -> int:
        cutoff = _ts(self.clock()) - seconds
        with self._lock, self._conn:
            rows = self._conn.execute(
                "SELECT event_id FROM blocked_events WHERE blocked_at <= ?", (cutoff,)
            ).fetchall()
            ids = [(row["event_id"],) for row in rows]
            self._conn.executemany("DELETE FROM events WHERE id = ?", ids)
            self._conn.executemany("DELETE FROM blocked_events WHERE event_id = ?", ids)
        return len(ids)

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------
    def enqueue_dispute(self, item: PendingDisputeItem) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO pending_disputes"
                "(dispute_id, ticket_id, event_id, user_pubkey, dispute_reason, added_at)"
                " VALUES (?, ?, ?, ?, ?, ?)",
                (
                    item.dispute_id,
                    item.ticket_id,
                    item.event_id,
                    item.user_pubkey,
                    item.dispute_reason,
                    _ts(self.clock()),
                ),
            )

    def dequeue_dispute_batch(self, limit: int) -> list[PendingDisputeItem]:
        limit = limit if limit > 0 else 5
        with self._lock, self._conn:
            rows = self._conn.execute(
                "SELECT * FROM pending_disputes ORDER BY added_at LIMIT ?", (limit,)
            ).fetchall()
            self._conn.executemany(
                "DELETE FROM pending_disputes WHERE dispute_id = ?",
                [(row["dispute_id"],) for row in rows],
            )
        return [
            PendingDisputeItem(
                dispute_id=row["dispute_id"],
                ticket_id=row["ticket_id"] or "",
                event_id=row["event_id"],
                user_pubkey=row["user_pubkey"] or "",
                dispute_reason=row["dispute_reason"] or "",
            )
            for row in rows
        ]

    def create_resolution(self, resolution: DisputeResolution) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO resolutions"
                "(dispute_id, ticket_id, event_id, user_pubkey, approved, explanation, created_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    resolution.dispute_id,
                    resolution.ticket_id,
                    resolution.event_id,
                    resolution.user_pubkey,
                    int(resolution.approved),
                    resolution.explanation,
                    _ts(resolution.created_at),
                ),
            )

    def list_resolutions(self) -> list[DisputeResolution]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM resolutions ORDER BY created_at").fetchall()
        return [
            DisputeResolution(
                dispute_id=row["dispute_id"],
                ticket_id=row["ticket_id"] or "",
                event_id=row["event_id"] or "",
                user_pubkey=row["user_pubkey"] or "",
                approved=bool(row["approved"]),
                explanation=row["explanation"] or "",
                created_at=_dt(row["created_at"]),
            )
            for row in rows
        ]

    def purge_resolutions_older_than(self, seconds: int) -> int:
        cutoff = _ts(self.clock()) - seconds
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM resolutions WHERE created_at <= ?", (cutoff,))
        return cur.rowcount

    # ------------------------------------------------------------------
    # Verification queue
    # ------------------------------------------------------------------
    def enqueue_verification(self, pubkey: str, handle: str) -> None:
        with self._lock, self._conn:
            existing = self._conn.execute(
                "SELECT handle FROM pending_verifications WHERE pubkey = ?", (pubkey,)
            ).fetchone()
            if existing is not None and existing["handle"] != handle:
                self.logger.info(
                    "verification_handle_changed",
                    pubkey=pubkey,
                    old_handle=existing["handle"],
                    new_handle=handle,
                )
            self._conn.execute(
                "INSERT OR REPLACE INTO pending_verifications"
                "(pubkey, handle, created_at, last_attempt_at, attempts) VALUES (?, ?, ?, NULL, 0)",
                (pubkey, handle, _ts(self.clock())),
            )

    def dequeue_verification_batch(self, limit: int) -> list[PendingVerification]:
        limit = limit if limit > 0 else 10
        now = self.clock()
        eligible: list[PendingVerification] = []
        discarded: list[str] = []
        with self._lock, self._conn:
            rows = self._conn.execute(
                "SELECT * FROM pending_verifications WHERE pubkey != '' ORDER BY created_at"
            ).fetchall()
            for row in rows:
                if not (row["handle"] or "").strip():
                    discarded.append(row["pubkey"])
                    continue
                entry = PendingVerification(
                    pubkey=row["pubkey"],
                    external_handle=row["handle"],
                    created_at=_dt(row["created_at"]),
                    last_attempt_at=_dt(row["last_attempt_at"]),
                    attempts=int(row["attempts"] or 0),
                )
                if len(eligible) < limit and entry.is_eligible(now, self.verification_cooldown):
                    eligible.append(entry)
            self._conn.executemany(
                "DELETE FROM pending_verifications WHERE pubkey = ?",
                [(pubkey,) for pubkey in discarded] + [(entry.pubkey,) for entry in eligible],
            )
        for pubkey in discarded:
            self.logger.warning("verification_entry_discarded", pubkey=pubkey, reason="empty_handle")
        return eligible

    def requeue_verification(self, pubkey: str, handle: str, attempts: int) -> None:
        now = _ts(self.clock())
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO pending_verifications"
                "(pubkey, handle, created_at, last_attempt_at, attempts) VALUES (?, ?, ?, ?, ?)",
                (pubkey, handle, now, now, attempts),
            )

    def remove_verification(self, pubkey: str) -> None:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM pending_verifications WHERE pubkey = ?", (pubkey,))

    def pending_verifications(self) -> list[PendingVerification]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM pending_verifications ORDER BY created_at"
            ).fetchall()
        return [
            PendingVerification(
                pubkey=row["pubkey"],
                external_handle=row["handle"] or "",
                created_at=_dt(row["created_at"]),
                last_attempt_at=_dt(row["last_attempt_at"]),
                attempts=int(row["attempts"] or 0),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Events and notifications
    # ------------------------------------------------------------------
    def store_event(self, event: StoredEvent) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO events(id, pubkey, kind, created_at, content, tags)"
                " VALUES (?, ?, ?, ?, ?, ?)",
                (
                    event.id,
                    event.pubkey,
                    event.kind,
                    event.created_at,
                    event.content,
                    json.dumps(event.tags),
                ),
            )

    def query_events(self, event_filter: EventFilter) -> list[StoredEvent]:
        clauses: list[str] = []
        params: list[object] = []
        for column, values in (
            ("id", event_filter.ids),
            ("pubkey", event_filter.authors),
            ("kind", event_filter.kinds),
        ):
            if values is not None:
                if not values:
                    return []
                clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
                params.extend(values)
        sql = "SELECT * FROM events"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        events: list[StoredEvent] = []
        for row in rows:
            event = StoredEvent(
                id=row["id"],
                pubkey=row["pubkey"],
                kind=row["kind"],
                created_at=row["created_at"],
                content=row["content"] or "",
                tags=json.loads(row["tags"] or "[]"),
            )
            if event_filter.tags and not all(
                set(values) & set(event.tag_values(name))
                for name, values in event_filter.tags.items()
            ):
                continue
            events.append(event)
            if event_filter.limit and len(events) >= event_filter.limit:
                break
        return events

    def delete_events(self, event_ids: Iterable[str]) -> int:
        ids = [(event_id,) for event_id in event_ids]
        with self._lock, self._conn:
            self._conn.executemany("DELETE FROM events WHERE id = ?", ids)
        return len(ids)

    def create_notification(self, notification: ModerationNotification) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO notifications"
                "(pubkey, event_id, reason, content_type, media_url, created_at, is_read)"
                " VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    notification.pubkey,
                    notification.event_id,
                    notification.reason,
                    notification.content_type,
                    notification.media_url,
                    _ts(notification.created_at),
                    int(notification.is_read),
                ),
            )

    def list_notifications(self) -> list[ModerationNotification]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM notifications ORDER BY id").fetchall()
        return [
            ModerationNotification(
                pubkey=row["pubkey"] or "",
                event_id=row["event_id"] or "",
                reason=row["reason"] or "",
                content_type=row["content_type"] or "",
                media_url=row["media_url"] or "",
                created_at=_dt(row["created_at"]),
                is_read=bool(row["is_read"]),
            )
            for row in rows
        ]


__all__ = ["SQLiteManager", "SQLiteStore", "VERIFICATION_COOLDOWN"]
