"""Media URL discovery and media type sniffing."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable

from ..models import StoredEvent

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".svg", ".avif")
VIDEO_EXTENSIONS = (".mp4", ".webm", ".mov", ".avi", ".mkv", ".m4v", ".ogv", ".mpg", ".mpeg")
MEDIA_EXTENSIONS = IMAGE_EXTENSIONS + VIDEO_EXTENSIONS

VIDEO_HOST_PATTERNS = (
    "nostr.build/v/",
    "v.nostr.build",
    "video.nostr.build",
    "youtube.com/watch",
    "youtu.be/",
    "vimeo.com/",
)
MEDIA_HOST_PATTERNS = (
    "imgur.com",
    "nostr.build/i/",
    "nostr.build/p/",
    "image.nostr.build",
    "i.nostr.build",
    *VIDEO_HOST_PATTERNS,
    "void.cat",
    "primal.net/",
    "pbs.twimg.com",
)

URL_PATTERN = re.compile(r"https?://[^\s<>\"']+")

# (signature, offset, type)
_SIGNATURES: tuple[tuple[bytes, int, str], ...] = (
    (b"\xff\xd8\xff", 0, "jpg"),
    (b"\x89PNG\r\n\x1a\n", 0, "png"),
    (b"GIF8", 0, "gif"),
    (b"BM", 0, "bmp"),
    (b"ftyp", 4, "mp4"),
    (b"\x1a\x45\xdf\xa3", 0, "webm"),
)


def _strip_query(url: str) -> str:
    return url.split("?", 1)[0]


def is_media_url(url: str) -> bool:
    lowered = _strip_query(url).lower()
    if lowered.endswith(MEDIA_EXTENSIONS):
        return True
    return any(pattern in lowered for pattern in MEDIA_HOST_PATTERNS)


def is_video_url(url: str) -> bool:
    lowered = url.lower()
    if _strip_query(lowered).endswith(VIDEO_EXTENSIONS):
        return True
    return any(pattern in lowered for pattern in VIDEO_HOST_PATTERNS)


def content_type_for(url: str) -> str:
    return "video" if is_video_url(url) else "image"


def extract_media_urls(event: StoredEvent) -> list[str]:
    """Collect media URLs from content, ``r`` tags, ``imeta``/``vmeta`` and ``media_url`` tags.

    Content and ``r`` tag URLs lose their query string and must look like
    media; URLs declared in metadata tags are taken as-is. Order is
    preserved and duplicates dropped.
    """

    urls: list[str] = []
    seen: set[str] = set()

    def _add(url: str) -> None:
        if url and url not in seen:
            seen.add(url)
            urls.append(url)

    for url in URL_PATTERN.findall(event.content or ""):
        url = _strip_query(url)
        if is_media_url(url):
            _add(url)
    for url in event.tag_values("r"):
        url = _strip_query(url)
        if is_media_url(url):
            _add(url)
    for tag in event.tags:
        if len(tag) >= 2 and tag[0] in ("imeta", "vmeta"):
            for value in tag[1:]:
                if value.startswith("url "):
                    _add(value[len("url "):].strip())
    for url in event.tag_values("media_url"):
        _add(url)
    return urls


def sniff_media_type(path: Path) -> str | None:
    """Return a short media type from magic bytes, then from the extension."""

    with path.open("rb") as stream:
        header = stream.read(12)
    for signature, offset, media_type in _SIGNATURES:
        if header[offset : offset + len(signature)] == signature:
            return media_type
    if header[:4] == b"RIFF" and header[8:12] == b"WEBP":
        return "webp"
    suffix = path.suffix.lower()
    if suffix in MEDIA_EXTENSIONS:
        return suffix.lstrip(".")
    return None


def guess_suffix(url: str, known: Iterable[str] = MEDIA_EXTENSIONS) -> str:
    """Pick a file suffix for a download, defaulting to ``.jpg``."""

    name = _strip_query(url).rsplit("/", 1)[-1].lower()
    for ext in known:
        if name.endswith(ext):
            return ext
    return ".jpg"


__all__ = [
    "IMAGE_EXTENSIONS",
    "VIDEO_EXTENSIONS",
    "content_type_for",
    "extract_media_urls",
    "guess_suffix",
    "is_media_url",
    "is_video_url",
    "sniff_media_type",
]
