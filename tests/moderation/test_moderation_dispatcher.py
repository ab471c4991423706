from __future__ import annotations

import os
import threading
import time
from pathlib import Path

from relay_pipeline.config import ModerationConfig
from relay_pipeline.errors import ClassifierError
from relay_pipeline.models import (
    Decision,
    ModerationVerdict,
    PendingDisputeItem,
    PendingModerationItem,
)
from relay_pipeline.moderation import ModerationDispatcher
from relay_pipeline.moderation.dispatcher import NO_MEDIA_EXPLANATION, is_system_path


class StubClassifier:
    def __init__(self, download_dir: Path, verdicts: dict[str, object]) -> None:
        self.download_dir = download_dir
        self.verdicts = verdicts
        self.enabled = True
        self.calls: list[tuple[str, str | None]] = []

    def _lookup(self, url: str) -> ModerationVerdict:
        verdict = self.verdicts[url]
        if isinstance(verdict, Exception):
            raise verdict
        return verdict

    def moderate_url(self, url: str) -> ModerationVerdict:
        self.calls.append((url, None))
        return self._lookup(url)

    def moderate_dispute_url(self, url: str, reason: str) -> ModerationVerdict:
        self.calls.append((url, reason))
        return self._lookup(url)


class InlineWorkers:
    concurrency = 1

    def __init__(self) -> None:
        self.submitted: list[dict] = []

    def submit(self, func, *args, **context):  # noqa: ANN001
        self.submitted.append(context)
        return func(*args)

    def shutdown(self, wait: bool = False) -> None:
        pass


class RecordingScheduler:
    def __init__(self) -> None:
        self.tasks: dict[str, float] = {}
        self.started = False
        self.stopped = False

    def schedule_task(self, task_name, callback, seconds, run_immediately=False):  # noqa: ANN001
        self.tasks[task_name] = seconds

    def start(self) -> None:
        self.started = True

    def shutdown(self) -> None:
        self.stopped = True


def verdict(decision: Decision, explanation: str = "", level: int = 0) -> ModerationVerdict:
    return ModerationVerdict(decision=decision, explanation=explanation, content_level=level)


def make_dispatcher(store, clock, tmp_path, verdicts) -> tuple[ModerationDispatcher, StubClassifier]:
    classifier = StubClassifier(tmp_path / "media", verdicts)
    dispatcher = ModerationDispatcher(
        store,
        classifier,
        ModerationConfig(temp_dir=tmp_path / "media"),
        workers=InlineWorkers(),
        scheduler=RecordingScheduler(),
        clock=clock,
    )
    return dispatcher, classifier


def item(event_id: str, *urls: str) -> PendingModerationItem:
    return PendingModerationItem(event_id=event_id, media_urls=tuple(urls), added_at=None)


def test_block_creates_record_and_notification(store, clock, tmp_path, make_event) -> None:
    store.store_event(make_event("e1", pubkey="author", content="https://x/clip.mp4"))
    dispatcher, classifier = make_dispatcher(
        store,
        clock,
        tmp_path,
        {
            "https://x/safe.jpg": verdict(Decision.ALLOW),
            "https://x/clip.mp4": verdict(Decision.BLOCK, "explicit", 5),
            "https://x/never.jpg": verdict(Decision.ALLOW),
        },
    )
    store.enqueue_moderation("e1", ["https://x/safe.jpg", "https://x/clip.mp4", "https://x/never.jpg"])

    result = dispatcher.process_item(item("e1", "https://x/safe.jpg", "https://x/clip.mp4", "https://x/never.jpg"))

    assert result is not None and result.should_block
    assert [url for url, _ in classifier.calls] == ["https://x/safe.jpg", "https://x/clip.mp4"]
    assert store.is_blocked("e1")
    (notification,) = store.list_notifications()
    assert notification.pubkey == "author"
    assert notification.content_type == "video"
    assert notification.reason == "explicit"
    assert store.pending_moderation_count() == 0


def test_flag_and_classifier_errors_do_not_block(store, clock, tmp_path, make_event) -> None:
    store.store_event(make_event("e1"))
    dispatcher, _ = make_dispatcher(
        store,
        clock,
        tmp_path,
        {
            "https://x/a.jpg": ClassifierError("down"),
            "https://x/b.jpg": verdict(Decision.FLAG, "borderline", 3),
        },
    )
    assert dispatcher.process_item(item("e1", "https://x/a.jpg", "https://x/b.jpg")) is None
    assert not store.is_blocked("e1")
    assert store.list_notifications() == []


def test_missing_event_is_removed_from_queue(store, clock, tmp_path) -> None:
    dispatcher, classifier = make_dispatcher(store, clock, tmp_path, {})
    store.enqueue_moderation("ghost", ["https://x/a.jpg"])
    assert dispatcher.process_item(item("ghost", "https://x/a.jpg")) is None
    assert classifier.calls == []
    assert store.pending_moderation_count() == 0


def test_poll_skips_already_blocked_events(store, clock, tmp_path, make_event) -> None:
    store.store_event(make_event("e1"))
    store.store_event(make_event("e2"))
    store.mark_blocked("e1", int(clock().timestamp()), "explicit", 5, "https://x/a.jpg")
    dispatcher, classifier = make_dispatcher(
        store, clock, tmp_path, {"https://x/b.jpg": verdict(Decision.ALLOW)}
    )
    store.enqueue_moderation("e1", ["https://x/a.jpg"])
    clock.advance(seconds=1)
    store.enqueue_moderation("e2", ["https://x/b.jpg"])

    assert dispatcher.poll_once() == 1
    assert classifier.calls == [("https://x/b.jpg", None)]
    assert dispatcher.workers.submitted == [{"event_id": "e2"}]


def test_dispute_approved_on_second_media(store, clock, tmp_path, make_event) -> None:
    store.store_event(make_event("e1", content="https://x/a.jpg https://x/b.png"))
    store.mark_blocked("e1", int(clock().timestamp()), "explicit", 5, "https://x/a.jpg")
    dispatcher, classifier = make_dispatcher(
        store,
        clock,
        tmp_path,
        {
            "https://x/a.jpg": verdict(Decision.BLOCK, "still explicit", 5),
            "https://x/b.png": verdict(Decision.ALLOW, "artistic", 1),
        },
    )
    resolution = dispatcher.process_dispute(PendingDisputeItem("d1", "t1", "e1", "u1", "it is art"))

    assert resolution.approved
    assert resolution.explanation == "artistic"
    assert classifier.calls == [("https://x/a.jpg", "it is art"), ("https://x/b.png", "it is art")]
    assert not store.is_blocked("e1")
    assert [r.dispute_id for r in store.list_resolutions()] == ["d1"]


def test_dispute_rejected_keeps_block(store, clock, tmp_path, make_event) -> None:
    store.store_event(make_event("e1", content="https://x/a.jpg"))
    store.mark_blocked("e1", int(clock().timestamp()), "explicit", 5, "https://x/a.jpg")
    dispatcher, _ = make_dispatcher(
        store, clock, tmp_path, {"https://x/a.jpg": verdict(Decision.BLOCK, "still explicit", 5)}
    )
    resolution = dispatcher.process_dispute(PendingDisputeItem("d1", "t1", "e1", "u1", "please"))
    assert not resolution.approved
    assert resolution.explanation == "still explicit"
    assert store.is_blocked("e1")


def test_dispute_without_media_is_rejected(store, clock, tmp_path, make_event) -> None:
    store.store_event(make_event("e1", content="no media here"))
    store.mark_blocked("e1", int(clock().timestamp()), "explicit", 5, "https://x/a.jpg")
    dispatcher, _ = make_dispatcher(store, clock, tmp_path, {})
    resolution = dispatcher.process_dispute(PendingDisputeItem("d1", "t1", "e1", "u1", "please"))
    assert not resolution.approved
    assert resolution.explanation == NO_MEDIA_EXPLANATION


def test_stale_dispute_is_ignored(store, clock, tmp_path) -> None:
    dispatcher, classifier = make_dispatcher(store, clock, tmp_path, {})
    assert dispatcher.process_dispute(PendingDisputeItem("d1", "t1", "e1", "u1", "please")) is None
    assert classifier.calls == []
    assert store.list_resolutions() == []


def test_cleanup_removes_only_old_files(store, clock, tmp_path) -> None:
    dispatcher, _ = make_dispatcher(store, clock, tmp_path, {})
    dispatcher.temp_dir.mkdir(parents=True, exist_ok=True)
    old = dispatcher.temp_dir / "media_old.jpg"
    fresh = dispatcher.temp_dir / "media_new.jpg"
    old.write_bytes(b"x")
    fresh.write_bytes(b"x")
    two_days_ago = time.time() - 48 * 3600
    os.utime(old, (two_days_ago, two_days_ago))

    assert dispatcher.cleanup_temp_files() == 1
    assert not old.exists()
    assert fresh.exists()


def test_cleanup_refuses_system_paths(store, clock, tmp_path) -> None:
    dispatcher, _ = make_dispatcher(store, clock, tmp_path, {})
    dispatcher.temp_dir = Path("/tmp")
    assert dispatcher.cleanup_temp_files(max_age_seconds=0) == 0
    assert is_system_path(Path("/"))
    assert is_system_path(Path("/var"))
    assert is_system_path(Path("/var/tmp"))
    assert not is_system_path(tmp_path / "media")


def test_start_schedules_all_tasks(store, clock, tmp_path) -> None:
    dispatcher, _ = make_dispatcher(store, clock, tmp_path, {})
    dispatcher.start()
    assert dispatcher.scheduler.started
    assert dispatcher.scheduler.tasks == {
        "poll": 30.0,
        "disputes": 30.0,
        "temp_cleanup": 3600.0,
        "purge_blocked": 86400.0,
        "purge_resolutions": 86400.0,
    }
    dispatcher.stop()
    assert dispatcher.scheduler.stopped


def test_concurrent_polls_process_each_event_once(store, clock, tmp_path, make_event) -> None:
    expected = [f"e{index}" for index in range(40)]
    verdicts: dict[str, object] = {}
    for event_id in expected:
        url = f"https://x/{event_id}.jpg"
        verdicts[url] = verdict(Decision.ALLOW)
        store.store_event(make_event(event_id))
        store.enqueue_moderation(event_id, [url])
        clock.advance(seconds=1)
    dispatcher, classifier = make_dispatcher(store, clock, tmp_path, verdicts)

    barrier = threading.Barrier(5)

    def poll_until_empty() -> None:
        barrier.wait()
        while dispatcher.poll_once():
            pass

    threads = [threading.Thread(target=poll_until_empty) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    processed = [url for url, _ in classifier.calls]
    assert sorted(processed) == sorted(f"https://x/{event_id}.jpg" for event_id in expected)
    assert len(processed) == len(set(processed))
    assert sorted(context["event_id"] for context in dispatcher.workers.submitted) == sorted(expected)
    assert store.pending_moderation_count() == 0


def test_stop_waits_for_in_flight_work_before_wiping_temp_dir(store, clock, tmp_path) -> None:
    dispatcher, _ = make_dispatcher(store, clock, tmp_path, {})
    dispatcher.temp_dir.mkdir(parents=True, exist_ok=True)
    download = dispatcher.temp_dir / "media_in_flight.jpg"
    download.write_bytes(b"x")
    seen: list[tuple[bool, bool]] = []

    class DrainingWorkers(InlineWorkers):
        def shutdown(self, wait: bool = False) -> None:
            seen.append((wait, download.exists()))

    dispatcher.workers = DrainingWorkers()
    dispatcher.stop()

    assert seen == [(True, True)]
    assert not download.exists()
