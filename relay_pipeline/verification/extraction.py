"""Layered extraction of profile facts from a loaded profile page.

Strategies run in order and each one only runs when the previous one found
neither a key nor a follower count:

1. parse the profile card and stats markup,
2. query known DOM selectors through the live session,
3. ask the visual model several times about a screenshot and vote.
"""

from __future__ import annotations

from collections import Counter
from pathlib import Path
from typing import Iterable

import structlog
from selectolax.parser import HTMLParser

from ..errors import PipelineError
from ..infra.browser import BrowserSession
from ..logging_conf import configure_logging
from ..models import ProfileData
from .keys import scan_npub
from .vision import VisionClient

FOLLOWER_SELECTORS = (
    "a[href$='/followers'] span",
    "[data-testid='followersCount']",
    ".profile-stat:nth-child(3) .profile-stat-num",
)
NPUB_LINK_SELECTORS = (
    "[data-testid='UserDescription'] a[href*='npub']",
    ".profile-bio a[href*='npub']",
)
BIO_SELECTORS = (".profile-bio", "[data-testid='UserDescription']")

_CARD_FIELDS = {
    "username": ".profile-card-username",
    "full_name": ".profile-card-fullname",
    "bio": ".profile-bio",
    "location": ".profile-location",
    "website": ".profile-website",
    "join_date": ".profile-joindate",
}
_STAT_FIELDS = {
    "tweets": "tweet_count",
    "posts": "tweet_count",
    "following": "following_count",
    "followers": "follower_count",
    "likes": "likes_count",
}


def parse_profile_markup(html: str) -> ProfileData:
    """Read the profile card and stats list of a mirror profile page."""

    tree = HTMLParser(html)
    values: dict[str, str] = {}
    for field_name, selector in _CARD_FIELDS.items():
        node = tree.css_first(selector)
        if node is not None:
            values[field_name] = node.text(separator=" ", strip=True)

    stats = tree.css(".profile-statlist li") + tree.css(".profile-stat")
    for stat in stats:
        header = stat.css_first(".profile-stat-header")
        number = stat.css_first(".profile-stat-num")
        if header is None or number is None:
            continue
        key = _STAT_FIELDS.get(header.text(strip=True).lower())
        if key and key not in values:
            values[key] = number.text(strip=True)

    npub = scan_npub(values.get("bio", ""))
    if not npub:
        for link in tree.css(".profile-bio a"):
            npub = scan_npub(link.attributes.get("href") or "") or scan_npub(link.text())
            if npub:
                break
    values["npub"] = npub
    return ProfileData.model_validate(values)


def consensus(results: Iterable[ProfileData]) -> ProfileData:
    """Majority vote per field; ties and singletons fall back to the first non-empty value."""

    results = list(results)
    if not results:
        return ProfileData()
    if len(results) == 1:
        return results[0]
    voted: dict[str, str] = {}
    for field_name in ProfileData.model_fields:
        values = [getattr(result, field_name) for result in results if getattr(result, field_name)]
        if values:
            # most_common keeps first-seen order among equal counts
            voted[field_name] = Counter(values).most_common(1)[0][0]
    return ProfileData.model_validate(voted)


class ExtractionPipeline:
    def __init__(
        self,
        vision: VisionClient | None = None,
        passes: int = 3,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.vision = vision
        self.passes = max(1, passes)
        self.logger = logger or configure_logging().bind(component="extraction")

    def extract(self, session: BrowserSession, screenshot_path: Path) -> ProfileData:
        data = parse_profile_markup(session.html())
        if data.has_target_fields:
            self.logger.debug("profile_extracted", strategy="markup")
            return data

        data = self.extract_from_dom(session)
        if data.has_target_fields:
            self.logger.debug("profile_extracted", strategy="dom")
            return data

        if self.vision is None:
            return data
        session.screenshot(screenshot_path)
        data = self.visual_consensus(screenshot_path)
        if data.has_target_fields:
            self.logger.debug("profile_extracted", strategy="vision")
        return data

    def extract_from_dom(self, session: BrowserSession) -> ProfileData:
        follower_count = ""
        for selector in FOLLOWER_SELECTORS:
            text = session.query_selector(selector)
            if text and text.strip():
                follower_count = text.strip()
                break

        npub = ""
        for selector in NPUB_LINK_SELECTORS:
            text = session.query_selector(selector)
            if text:
                npub = scan_npub(text)
                if npub:
                    break
        if not npub:
            for selector in BIO_SELECTORS:
                npub = scan_npub(session.query_selector(selector) or "")
                if npub:
                    break
        return ProfileData(npub=npub, follower_count=follower_count)

    def visual_consensus(self, image_path: Path) -> ProfileData:
        results: list[ProfileData] = []
        for attempt in range(1, self.passes + 1):
            try:
                results.append(self.vision.analyze(image_path))
            except PipelineError as exc:
                self.logger.warning("vision_pass_failed", attempt=attempt, error=str(exc))
        if not results:
            self.logger.warning("vision_all_passes_failed", passes=self.passes)
        return consensus(results)


__all__ = ["ExtractionPipeline", "consensus", "parse_profile_markup"]
