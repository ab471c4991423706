from __future__ import annotations

from pathlib import Path

import pytest

from relay_pipeline.config import ModerationConfig, PipelineConfig, VerificationConfig


def test_defaults() -> None:
    config = PipelineConfig()
    assert config.database_path == Path("data/relay.db")
    assert config.moderation.threshold == 0.4
    assert config.moderation.dispute_threshold == 0.35
    assert config.moderation.concurrency == 3
    assert config.verification.max_attempts == 5
    assert config.verification.requests_per_minute == 10
    assert config.verification.pool_size == 3
    assert config.verification.consensus_passes == 3
    assert len(config.verification.mirrors) == 8
    assert [m.priority for m in config.verification.mirrors] == list(range(1, 9))
    assert all(m.url.endswith("/") for m in config.verification.mirrors)


def test_dispute_threshold_cannot_exceed_threshold() -> None:
    with pytest.raises(ValueError):
        ModerationConfig(threshold=0.3, dispute_threshold=0.5)


def test_mirror_strings_get_list_order_priority() -> None:
    config = VerificationConfig(mirrors=["https://b.example", {"url": "https://a.example", "priority": 9}])
    assert [(m.url, m.priority) for m in config.mirrors] == [
        ("https://b.example/", 1),
        ("https://a.example/", 9),
    ]


def test_enabled_verification_requires_mirrors() -> None:
    with pytest.raises(ValueError):
        VerificationConfig(mirrors=[])
    assert VerificationConfig(enabled=False, mirrors=[]).mirrors == []


def test_resolve_relative_paths(tmp_path: Path) -> None:
    config = PipelineConfig(database_path="db/relay.db")
    assert config.resolve(tmp_path, config.database_path) == (tmp_path / "db" / "relay.db").resolve()
    assert config.resolve(tmp_path, Path("/abs/relay.db")) == Path("/abs/relay.db")
