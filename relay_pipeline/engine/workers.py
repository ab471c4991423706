"""Bounded worker pool shared by both dispatchers."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from threading import BoundedSemaphore
from typing import Any, Callable

import structlog

from ..logging_conf import configure_logging


class BoundedWorkerPool:
    """Run work items on a thread pool, at most ``concurrency`` at a time.

    ``submit`` blocks until a permit is free. The permit is released in the
    task's ``finally`` and task exceptions are logged, never re-raised.
    """

    def __init__(
        self,
        name: str,
        concurrency: int = 3,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.name = name
        self.concurrency = max(1, concurrency)
        self._permits = BoundedSemaphore(self.concurrency)
        self._executor = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix=f"pipeline-{name}"
        )
        self.logger = logger or configure_logging().bind(component=f"{name}_workers")

    def submit(self, func: Callable[..., Any], *args: Any, **context: Any) -> Future:
        """Run ``func(*args)``; ``context`` is attached to the failure log line."""

        self._permits.acquire()
        try:
            return self._executor.submit(self._run, func, args, context)
        except RuntimeError:
            # Executor already shut down.
            self._permits.release()
            raise

    def _run(self, func: Callable[..., Any], args: tuple, context: dict[str, Any]) -> Any:
        try:
            return func(*args)
        except Exception as exc:  # noqa: BLE001
            self.logger.error("work_item_failed", error=str(exc), exc_info=True, **context)
            return None
        finally:
            self._permits.release()

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)


__all__ = ["BoundedWorkerPool"]
