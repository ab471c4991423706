from __future__ import annotations

from pathlib import Path

import pytest

from relay_pipeline.errors import MirrorsUnavailableError
from relay_pipeline.infra import EndpointSelector, ResourcePool
from relay_pipeline.models import VerificationSource
from relay_pipeline.verification import ExtractionPipeline, ProfileVerifier
from relay_pipeline.verification.keys import encode_npub
from relay_pipeline.verification.verifier import TAGGED_POST_QUERY, extract_tagged_key

PUBKEY = "3bf0c63fcb93463407af97a5e5ee64fa883d107ef9e558472c4eb9aaaefa459d"
NPUB = encode_npub(PUBKEY)

PROFILE_WITHOUT_KEY = """
<div class="profile-card"><div class="profile-bio">just vibes</div></div>
<ul class="profile-statlist">
  <li><span class="profile-stat-header">Followers</span><span class="profile-stat-num">120</span></li>
</ul>
"""
PROFILE_WITH_KEY = f"""
<div class="profile-card"><div class="profile-bio">find me at {NPUB}</div></div>
<ul class="profile-statlist">
  <li><span class="profile-stat-header">Followers</span><span class="profile-stat-num">7</span></li>
</ul>
"""


class MirrorSession:
    """Browser stand-in serving canned pages per URL; unknown URLs time out."""

    def __init__(self, pages: dict[str, str], posts: dict[str, list[str]] | None = None) -> None:
        self.pages = pages
        self.posts = posts or {}
        self.visited: list[str] = []
        self.current = ""

    def navigate(self, url: str, timeout: float) -> None:
        self.visited.append(url)
        if url not in self.pages and url not in self.posts:
            raise TimeoutError(f"timed out loading {url}")
        self.current = url

    def wait_loaded(self, timeout: float) -> None:
        pass

    def query_selector(self, selector: str) -> str | None:
        return None

    def query_selector_all(self, selector: str) -> list[str]:
        if selector == ".timeline-item" and self.current in self.posts:
            return list(self.posts[self.current])
        if selector.lstrip(".") in self.pages.get(self.current, ""):
            return ["node"]
        return []

    def html(self) -> str:
        return self.pages.get(self.current, "<html></html>")

    def screenshot(self, path: Path) -> Path:
        path.write_bytes(b"png")
        return path

    def is_alive(self) -> bool:
        return True

    def close(self) -> None:
        pass


def make_verifier(tmp_path, session: MirrorSession, mirrors=("https://m1/", "https://m2/")):
    selector = EndpointSelector(
        [(url, index + 1) for index, url in enumerate(mirrors)],
        requests_per_minute=1000,
        sleep=lambda seconds: None,
    )
    pool = ResourcePool(lambda: session, size=1, retry_sleep=lambda seconds: None)
    verifier = ProfileVerifier(
        pool, selector, ExtractionPipeline(None), tmp_path / "shots", mirrors_per_attempt=3
    )
    return verifier, selector


def test_bio_key_verifies(tmp_path) -> None:
    session = MirrorSession({"https://m1/alice": PROFILE_WITH_KEY})
    verifier, _ = make_verifier(tmp_path, session)
    outcome = verifier.verify_profile(PUBKEY, "alice")
    assert outcome.is_verified
    assert outcome.verification_source is VerificationSource.BIO
    assert outcome.claimed_key == NPUB
    assert outcome.external_follower_count == "7"
    assert session.visited == ["https://m1/alice"]
    assert list((tmp_path / "shots").iterdir()) == []


def test_tagged_post_used_when_bio_has_no_key(tmp_path) -> None:
    search_url = f"https://m1/alice/{TAGGED_POST_QUERY}"
    session = MirrorSession(
        {"https://m1/alice": PROFILE_WITHOUT_KEY},
        posts={search_url: ["gm", f"Verifying my identity #MyNostrKey: {NPUB} thanks"]},
    )
    verifier, _ = make_verifier(tmp_path, session)
    outcome = verifier.verify_profile(PUBKEY, "alice")
    assert outcome.is_verified
    assert outcome.verification_source is VerificationSource.TAGGED_POST
    assert outcome.claimed_key == NPUB
    assert session.visited == ["https://m1/alice", search_url]


def test_mismatched_key_is_a_completed_attempt(tmp_path) -> None:
    session = MirrorSession({"https://m1/alice": PROFILE_WITH_KEY})
    verifier, _ = make_verifier(tmp_path, session)
    outcome = verifier.verify_profile("00" * 32, "alice")
    assert not outcome.is_verified
    assert outcome.verification_source is VerificationSource.BIO
    assert outcome.error is None


def test_falls_through_to_next_mirror(tmp_path) -> None:
    session = MirrorSession({"https://m2/alice": PROFILE_WITH_KEY})
    verifier, selector = make_verifier(tmp_path, session)
    outcome = verifier.verify_profile(PUBKEY, "alice")
    assert outcome.is_verified
    assert session.visited == ["https://m1/alice", "https://m2/alice"]
    health = {endpoint.url: endpoint for endpoint in selector.snapshot()}
    assert health["https://m1/"].failure_count == 1
    assert health["https://m2/"].success_count == 1


def test_all_mirrors_unreachable_raises(tmp_path) -> None:
    session = MirrorSession({})
    verifier, selector = make_verifier(tmp_path, session)
    with pytest.raises(MirrorsUnavailableError):
        verifier.verify_profile(PUBKEY, "alice")
    assert all(endpoint.failure_count == 1 for endpoint in selector.snapshot())


def test_profile_without_data_is_unverified(tmp_path) -> None:
    session = MirrorSession({"https://m1/alice": '<div class="timeline-item">hello</div>'})
    verifier, _ = make_verifier(tmp_path, session, mirrors=("https://m1/",))
    outcome = verifier.verify_profile(PUBKEY, "alice")
    assert not outcome.is_verified
    assert outcome.error == "no profile data available"


def test_extract_tagged_key_variants() -> None:
    assert extract_tagged_key(["nothing", "#mynostrkey: npub1abcdef xyz"]) == "npub1abcdef"
    assert extract_tagged_key(["#MyNostrKey: qqqsyqcyq5rqwz later"]) == "npub1qqqsyqcyq5rqwz"
    assert extract_tagged_key(["#MyNostrKey: abc"]) == ""
    assert extract_tagged_key([]) == ""
