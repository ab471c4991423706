"""Bounded pool of reusable automation sessions with health checks."""

from __future__ import annotations

import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from contextlib import contextmanager
from threading import Lock
from typing import Callable, Iterator

from tenacity import RetryCallState, Retrying, stop_after_attempt, wait_exponential

from ..errors import SessionUnavailableError
from ..logging_conf import configure_logging
from .browser import BrowserSession


class ResourcePool:
    """Hand out healthy sessions and keep up to ``size`` idle ones for reuse.

    The first ``acquire`` runs a one-time initialiser that launches a warm
    session within ``init_timeout`` seconds. Launches are retried with
    exponential backoff. Health probes are bounded by ``probe_timeout`` and
    unhealthy sessions are closed instead of being pooled.
    """

    def __init__(
        self,
        factory: Callable[[], BrowserSession],
        size: int = 3,
        init_timeout: float = 120.0,
        probe_timeout: float = 5.0,
        launch_attempts: int = 3,
        retry_sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.factory = factory
        self.size = max(1, size)
        self.init_timeout = init_timeout
        self.probe_timeout = probe_timeout
        self.launch_attempts = launch_attempts
        self._retry_sleep = retry_sleep
        self._idle: list[BrowserSession] = []
        self._idle_lock = Lock()
        self._init_lock = Lock()
        self._initialised = False
        self._closed = False
        self._probe_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="session-probe")
        self.logger = configure_logging().bind(component="session_pool")

    # ------------------------------------------------------------------
    def initialise(self) -> None:
        """Launch the first session once; later calls are no-ops."""

        with self._init_lock:
            if self._initialised:
                return
            self._initialised = True
            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="session-init")
            future = executor.submit(self._launch)
            try:
                session = future.result(timeout=self.init_timeout)
            except FutureTimeout:
                self.logger.error("session_pool_init_timeout", timeout=self.init_timeout)
                future.add_done_callback(self._adopt_late_session)
                return
            except SessionUnavailableError as exc:
                self.logger.error("session_pool_init_failed", error=str(exc))
                return
            finally:
                executor.shutdown(wait=False)
            with self._idle_lock:
                self._idle.append(session)
            self.logger.info("session_pool_initialised")

    def acquire(self) -> BrowserSession:
        self.initialise()
        while True:
            with self._idle_lock:
                session = self._idle.pop() if self._idle else None
            if session is None:
                break
            if self._is_healthy(session):
                self.logger.debug("session_reused")
                return session
            self.logger.info("session_unhealthy_discarded")
            self._close(session)
        return self._launch()

    def release(self, session: BrowserSession | None) -> None:
        if session is None:
            return
        if not self._is_healthy(session):
            self.logger.info("session_unhealthy_closed")
            self._close(session)
            return
        with self._idle_lock:
            if not self._closed and len(self._idle) < self.size:
                self._idle.append(session)
                return
        self.logger.debug("session_pool_full_closed")
        self._close(session)

    @contextmanager
    def session(self) -> Iterator[BrowserSession]:
        session = self.acquire()
        try:
            yield session
        finally:
            self.release(session)

    def close(self) -> None:
        with self._idle_lock:
            self._closed = True
            sessions, self._idle = self._idle, []
        for session in sessions:
            self._close(session)
        self._probe_executor.shutdown(wait=False)

    @property
    def idle_count(self) -> int:
        with self._idle_lock:
            return len(self._idle)

    # ------------------------------------------------------------------
    def _launch(self) -> BrowserSession:
        retrying = Retrying(
            stop=stop_after_attempt(self.launch_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=4),
            before_sleep=self._log_retry,
            sleep=self._retry_sleep,
            reraise=True,
        )
        try:
            session = retrying(self.factory)
        except Exception as exc:
            raise SessionUnavailableError(f"could not launch session: {exc}") from exc
        self.logger.info("session_launched")
        return session

    def _adopt_late_session(self, future: Future) -> None:
        """Pool a session whose launch outlived the init timeout, or close it."""

        if future.cancelled() or future.exception() is not None:
            return
        session = future.result()
        with self._idle_lock:
            if not self._closed and len(self._idle) < self.size:
                self._idle.append(session)
                self.logger.info("session_pool_late_session_pooled")
                return
        self.logger.info("session_pool_late_session_closed")
        self._close(session)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        self.logger.warning(
            "session_launch_retry",
            attempt=retry_state.attempt_number,
            error=str(exc) if exc else None,
        )

    def _is_healthy(self, session: BrowserSession) -> bool:
        future = self._probe_executor.submit(session.is_alive)
        try:
            return bool(future.result(timeout=self.probe_timeout))
        except FutureTimeout:
            return False
        except Exception as exc:  # noqa: BLE001
            self.logger.debug("session_probe_error", error=str(exc))
            return False

    def _close(self, session: BrowserSession) -> None:
        try:
            session.close()
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("session_close_failed", error=str(exc))


__all__ = ["ResourcePool"]
