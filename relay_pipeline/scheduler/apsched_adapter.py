"""APScheduler wrapper running named periodic pipeline tasks."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..logging_conf import configure_logging


class APSchedulerAdapter:
    """Manage the periodic tasks of one pipeline.

    Every task is wrapped so an exception is logged and the next run still
    happens; overlapping runs of the same task are skipped.
    """

    def __init__(self, name: str = "pipeline") -> None:
        self.name = name
        self.scheduler = BackgroundScheduler()
        self.logger = configure_logging().bind(component="scheduler", pipeline=name)
        self.started = False

    def start(self) -> None:
        if not self.started:
            self.scheduler.start()
            self.started = True
            self.logger.info("apscheduler_started")

    def shutdown(self) -> None:
        if self.started:
            self.scheduler.shutdown(wait=False)
            self.started = False
            self.logger.info("apscheduler_stopped")

    def schedule_task(
        self,
        task_name: str,
        callback: Callable[[], None],
        seconds: float,
        run_immediately: bool = False,
    ) -> None:
        trigger = IntervalTrigger(seconds=float(seconds))
        job_id = f"{self.name}::{task_name}"
        kwargs = {}
        if run_immediately:
            kwargs["next_run_time"] = datetime.now(timezone.utc)
        self.scheduler.add_job(
            self.guarded(task_name, callback),
            trigger=trigger,
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **kwargs,
        )
        self.logger.info("job_scheduled", task=task_name, interval_seconds=seconds)

    def guarded(self, task_name: str, callback: Callable[[], None]) -> Callable[[], None]:
        """Return ``callback`` wrapped so its exceptions are logged, not raised."""

        def _run() -> None:
            try:
                callback()
            except Exception as exc:  # noqa: BLE001
                self.logger.error("task_failed", task=task_name, error=str(exc), exc_info=True)

        _run.__name__ = f"{self.name}_{task_name}"
        return _run

    def remove_task(self, task_name: str) -> None:
        job_id = f"{self.name}::{task_name}"
        try:
            self.scheduler.remove_job(job_id)
        except Exception:  # noqa: BLE001
            self.logger.warning("job_remove_failed", task=task_name)


__all__ = ["APSchedulerAdapter"]
