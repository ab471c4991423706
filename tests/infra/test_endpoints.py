from __future__ import annotations

from relay_pipeline.config import VerificationConfig
from relay_pipeline.infra import EndpointSelector


class ManualTime:
    def __init__(self) -> None:
        self.now = 1_000.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_selector(urls, rpm: int = 100, timer: ManualTime | None = None) -> EndpointSelector:
    timer = timer or ManualTime()
    return EndpointSelector(
        [(url, index + 1) for index, url in enumerate(urls)],
        requests_per_minute=rpm,
        clock=timer.clock,
        sleep=timer.sleep,
    )


def test_select_prefers_recent_success() -> None:
    selector = make_selector(["https://a/", "https://b/"])
    assert selector.select() == "https://a/"
    selector.record("https://b/", True, 0.5)
    assert selector.select() == "https://b/"
    assert selector.select(exclude=["https://b/"]) == "https://a/"
    assert selector.select(exclude=["https://a/", "https://b/"]) is None


def test_failing_endpoint_is_disabled_and_never_selected() -> None:
    selector = make_selector(["https://a/", "https://b/"])
    for _ in range(3):
        selector.record("https://a/", False, 1.0)
    health = {endpoint.url: endpoint for endpoint in selector.snapshot()}
    assert health["https://a/"].disabled
    for _ in range(5):
        assert selector.select() == "https://b/"


def test_recent_success_prevents_disable() -> None:
    selector = make_selector(["https://a/"])
    selector.record("https://a/", True, 0.2)
    for _ in range(4):
        selector.record("https://a/", False, 1.0)
    (health,) = selector.snapshot()
    assert not health.disabled
    assert health.failure_count == 4


def test_all_disabled_reenables_highest_priority() -> None:
    selector = make_selector(["https://a/", "https://b/"])
    for url in ("https://a/", "https://b/"):
        for _ in range(3):
            selector.record(url, False, 1.0)
    assert selector.select() == "https://a/"
    health = {endpoint.url: endpoint for endpoint in selector.snapshot()}
    assert not health["https://a/"].disabled
    assert health["https://b/"].disabled


def test_success_clears_disabled_flag() -> None:
    selector = make_selector(["https://a/"])
    for _ in range(3):
        selector.record("https://a/", False, 1.0)
    selector.record("https://a/", True, 0.3)
    (health,) = selector.snapshot()
    assert not health.disabled
    assert health.average_latency == (3.0 + 0.3) / 4


def test_rate_limit_sleeps_until_window_ends() -> None:
    timer = ManualTime()
    selector = make_selector(["https://a/"], rpm=2, timer=timer)
    selector.select()
    timer.now += 10
    selector.select()
    assert timer.sleeps == []
    selector.select()
    assert timer.sleeps == [50.0]


def test_from_config_uses_mirror_priorities() -> None:
    config = VerificationConfig(mirrors=["https://one", "https://two"])
    selector = EndpointSelector.from_config(config.mirrors, requests_per_minute=5)
    assert [(e.url, e.priority) for e in selector.snapshot()] == [
        ("https://one/", 1),
        ("https://two/", 2),
    ]
