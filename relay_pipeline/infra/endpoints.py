"""Health-scored selection over a list of interchangeable mirror endpoints."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field, replace
from threading import Lock
from typing import Callable, Iterable

from ..logging_conf import configure_logging

RATE_WINDOW_SECONDS = 60.0
LATENCY_WINDOW = 10
DISABLE_AFTER_FAILURES = 3
RECENT_SUCCESS_SECONDS = 3600.0


@dataclass(slots=True)
class EndpointHealth:
    url: str
    priority: int
    success_count: int = 0
    failure_count: int = 0
    last_success: float | None = None
    last_failure: float | None = None
    recent_latencies: deque = field(default_factory=lambda: deque(maxlen=LATENCY_WINDOW))
    disabled: bool = False

    @property
    def success_rate(self) -> float:
        total = self.success_count + self.failure_count
        if total == 0:
            return 0.0
        return self.success_count / total

    @property
    def average_latency(self) -> float | None:
        if not self.recent_latencies:
            return None
        return sum(self.recent_latencies) / len(self.recent_latencies)

    def score(self, now: float) -> float:
        recency_bonus = 0.0
        if self.last_success is not None:
            hours_since_success = (now - self.last_success) / 3600.0
            if hours_since_success < 1:
                recency_bonus = 0.2 * (1 - hours_since_success)
        return (self.success_rate + recency_bonus) * (10.0 / (self.priority + 1))


class EndpointSelector:
    """Pick the best-scoring mirror and keep per-mirror health.

    Requests are budgeted in fixed one-minute windows; when the budget is
    spent ``select`` sleeps until the window ends. The health table lock is
    never held while sleeping.
    """

    def __init__(
        self,
        endpoints: Iterable[tuple[str, int]],
        requests_per_minute: int = 10,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._endpoints = [EndpointHealth(url=url, priority=priority) for url, priority in endpoints]
        if not self._endpoints:
            raise ValueError("EndpointSelector requires at least one endpoint")
        self.requests_per_minute = max(1, requests_per_minute)
        self._clock = clock
        self._sleep = sleep
        self._lock = Lock()
        self._window_start = clock()
        self._request_count = 0
        self.logger = configure_logging().bind(component="endpoint_selector")

    @classmethod
    def from_config(cls, mirrors, requests_per_minute: int = 10) -> "EndpointSelector":
        return cls(((mirror.url, mirror.priority) for mirror in mirrors), requests_per_minute)

    def select(self, exclude: Iterable[str] = ()) -> str | None:
        """Return the URL of the best available endpoint, or ``None`` when all are excluded."""

        self._throttle()
        excluded = set(exclude)
        now = self._clock()
        with self._lock:
            candidates = [ep for ep in self._endpoints if ep.url not in excluded]
            if not candidates:
                return None
            best: EndpointHealth | None = None
            best_score = -1.0
            for endpoint in candidates:
                if endpoint.disabled:
                    continue
                score = endpoint.score(now)
                if score > best_score:
                    best, best_score = endpoint, score
            if best is None:
                best = min(candidates, key=lambda ep: ep.priority)
                best.disabled = False
                self.logger.warning("endpoint_reenabled", url=best.url, reason="all_disabled")
            return best.url

    def record(self, url: str, success: bool, latency: float) -> None:
        now = self._clock()
        with self._lock:
            endpoint = next((ep for ep in self._endpoints if ep.url == url), None)
            if endpoint is None:
                return
            endpoint.recent_latencies.append(latency)
            if success:
                endpoint.success_count += 1
                endpoint.last_success = now
                endpoint.disabled = False
                return
            endpoint.failure_count += 1
            endpoint.last_failure = now
            recent_success = (
                endpoint.last_success is not None
                and now - endpoint.last_success <= RECENT_SUCCESS_SECONDS
            )
            if endpoint.failure_count >= DISABLE_AFTER_FAILURES and not recent_success:
                if not endpoint.disabled:
                    self.logger.info(
                        "endpoint_disabled", url=url, failure_count=endpoint.failure_count
                    )
                endpoint.disabled = True

    def snapshot(self) -> list[EndpointHealth]:
        with self._lock:
            return [
                replace(endpoint, recent_latencies=deque(endpoint.recent_latencies, maxlen=LATENCY_WINDOW))
                for endpoint in self._endpoints
            ]

    def _throttle(self) -> None:
        while True:
            with self._lock:
                now = self._clock()
                elapsed = now - self._window_start
                if elapsed >= RATE_WINDOW_SECONDS:
                    self._window_start = now
                    self._request_count = 0
                if self._request_count < self.requests_per_minute:
                    self._request_count += 1
                    return
                wait = RATE_WINDOW_SECONDS - elapsed
            self.logger.debug("endpoint_rate_limited", wait_seconds=round(wait, 3))
            self._sleep(wait)


__all__ = ["EndpointHealth", "EndpointSelector"]
