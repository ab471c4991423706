"""Profile verifier: walk the mirror front-ends and look for the claimed key."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Iterable

from ..errors import KeyDecodeError, MirrorsUnavailableError
from ..infra.browser import BrowserSession
from ..infra.endpoints import EndpointSelector
from ..infra.session_pool import ResourcePool
from ..logging_conf import configure_logging
from ..models import ProfileData, VerificationOutcome, VerificationSource
from .extraction import ExtractionPipeline
from .keys import key_matches

PROFILE_MARKERS = (".profile-card", ".profile-statlist", ".profile-stat", ".timeline-item")
KEY_TAG = "#mynostrkey:"
TAGGED_POST_QUERY = "search?f=tweets&q=%23MyNostrKey%3A"


def extract_tagged_key(post_texts: Iterable[str]) -> str:
    """Return the key announced after the key tag in the first post that has one.

    A bare token after the tag (5 to 64 chars) is taken as the key body and
    prefixed with ``npub1``.
    """

    for text in post_texts:
        index = text.lower().find(KEY_TAG)
        if index < 0:
            continue
        after = text[index + len(KEY_TAG) :]
        start = after.find("npub1")
        if start >= 0:
            end = start
            while end < len(after) and end < start + 64 and (
                "a" <= after[end] <= "z" or "0" <= after[end] <= "9"
            ):
                end += 1
            if end > start:
                return after[start:end]
            continue
        words = after.split()
        if words and 5 <= len(words[0]) <= 64:
            token = words[0]
            return token if token.startswith("npub1") else f"npub1{token}"
    return ""


class ProfileVerifier:
    """Confirm that an external handle advertises a relay identity key.

    One pooled session is used for the whole attempt. Up to
    ``mirrors_per_attempt`` mirrors are tried, each outcome fed back into the
    endpoint selector. The bio wins over the tagged-post search, which only
    runs when the bio yields no key.
    """

    def __init__(
        self,
        pool: ResourcePool,
        selector: EndpointSelector,
        extraction: ExtractionPipeline,
        temp_dir: Path,
        mirrors_per_attempt: int = 3,
        page_timeout: float = 30.0,
    ) -> None:
        self.pool = pool
        self.selector = selector
        self.extraction = extraction
        self.temp_dir = temp_dir
        self.mirrors_per_attempt = max(1, mirrors_per_attempt)
        self.page_timeout = page_timeout
        self.logger = configure_logging().bind(component="verifier")

    def verify_profile(self, pubkey: str, handle: str) -> VerificationOutcome:
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        screenshot = self.temp_dir / f"{handle}_{time.time_ns()}.png"
        try:
            with self.pool.session() as session:
                data, reached = self._walk_mirrors(session, handle, screenshot)
                if not reached:
                    raise MirrorsUnavailableError(f"no mirror served a profile for {handle}")
                if not data.has_target_fields:
                    self.logger.info("profile_data_missing", handle=handle)
                    return VerificationOutcome(
                        is_verified=False, error="no profile data available"
                    )
                source = VerificationSource.NONE
                claimed_key = data.npub
                if claimed_key:
                    source = VerificationSource.BIO
                else:
                    claimed_key = self._search_tagged_post(session, handle)
                    if claimed_key:
                        source = VerificationSource.TAGGED_POST
        finally:
            screenshot.unlink(missing_ok=True)

        verified = False
        error = None
        if claimed_key:
            try:
                verified = key_matches(claimed_key, pubkey)
            except KeyDecodeError as exc:
                error = str(exc)
                self.logger.info("claimed_key_invalid", handle=handle, key=claimed_key)
        self.logger.info(
            "profile_verified",
            pubkey=pubkey,
            handle=handle,
            verified=verified,
            source=source.value,
        )
        return VerificationOutcome(
            is_verified=verified,
            external_follower_count=data.follower_count,
            verification_source=source,
            claimed_key=claimed_key,
            error=error,
        )

    # ------------------------------------------------------------------
    def _walk_mirrors(
        self, session: BrowserSession, handle: str, screenshot: Path
    ) -> tuple[ProfileData, bool]:
        tried: list[str] = []
        reached = False
        data = ProfileData()
        for _ in range(self.mirrors_per_attempt):
            mirror = self.selector.select(exclude=tried)
            if mirror is None:
                break
            tried.append(mirror)
            started = time.monotonic()
            success = False
            try:
                session.navigate(f"{mirror}{handle}", self.page_timeout)
                session.wait_loaded(self.page_timeout)
                if not self._has_profile_markers(session):
                    self.logger.info("mirror_no_profile", mirror=mirror, handle=handle)
                    continue
                reached = True
                data = self.extraction.extract(session, screenshot)
                success = data.has_target_fields
                if success:
                    return data, reached
            except Exception as exc:  # noqa: BLE001
                self.logger.warning("mirror_failed", mirror=mirror, handle=handle, error=str(exc))
            finally:
                self.selector.record(mirror, success, time.monotonic() - started)
        return data, reached

    def _has_profile_markers(self, session: BrowserSession) -> bool:
        return any(session.query_selector_all(marker) for marker in PROFILE_MARKERS)

    def _search_tagged_post(self, session: BrowserSession, handle: str) -> str:
        mirror = self.selector.select()
        if mirror is None:
            return ""
        try:
            session.navigate(f"{mirror}{handle}/{TAGGED_POST_QUERY}", self.page_timeout)
            session.wait_loaded(self.page_timeout)
            posts = session.query_selector_all(".timeline-item")
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("tagged_post_search_failed", mirror=mirror, handle=handle, error=str(exc))
            return ""
        key = extract_tagged_key(posts)
        if key:
            self.logger.info("tagged_post_key_found", handle=handle, key=key)
        return key


__all__ = ["ProfileVerifier", "extract_tagged_key"]
