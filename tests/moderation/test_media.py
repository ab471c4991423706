from __future__ import annotations

import pytest

from relay_pipeline.moderation.media import (
    content_type_for,
    extract_media_urls,
    guess_suffix,
    is_video_url,
    sniff_media_type,
)


def test_extract_media_urls_from_content_and_tags(make_event) -> None:
    event = make_event(
        "e1",
        content="look https://cdn.example/cat.jpg?w=200 and https://example.com/page",
        tags=[
            ["r", "https://cdn.example/cat.jpg"],
            ["r", "https://example.com/article"],
            ["imeta", "url https://nostr.example/clip", "m video/mp4"],
            ["media_url", "https://files.example/raw"],
        ],
    )
    assert extract_media_urls(event) == [
        "https://cdn.example/cat.jpg",
        "https://nostr.example/clip",
        "https://files.example/raw",
    ]


def test_extract_media_urls_host_patterns(make_event) -> None:
    event = make_event("e1", content="https://i.nostr.build/abc https://v.nostr.build/xyz")
    urls = extract_media_urls(event)
    assert urls == ["https://i.nostr.build/abc", "https://v.nostr.build/xyz"]
    assert [content_type_for(url) for url in urls] == ["image", "video"]


def test_is_video_url() -> None:
    assert is_video_url("https://cdn.example/clip.MP4?token=1")
    assert is_video_url("https://youtu.be/abc")
    assert not is_video_url("https://cdn.example/cat.png")


@pytest.mark.parametrize(
    ("header", "expected"),
    [
        (b"\xff\xd8\xff\xe0" + b"\x00" * 8, "jpg"),
        (b"GIF89a" + b"\x00" * 6, "gif"),
        (b"RIFF\x00\x00\x00\x00WEBP", "webp"),
        (b"\x00\x00\x00\x18ftypmp42", "mp4"),
        (b"\x1a\x45\xdf\xa3" + b"\x00" * 8, "webm"),
    ],
)
def test_sniff_media_type_magic_bytes(tmp_path, header: bytes, expected: str) -> None:
    path = tmp_path / "blob"
    path.write_bytes(header)
    assert sniff_media_type(path) == expected


def test_sniff_media_type_falls_back_to_extension(tmp_path) -> None:
    avif = tmp_path / "picture.avif"
    avif.write_bytes(b"\x00" * 16)
    assert sniff_media_type(avif) == "avif"
    unknown = tmp_path / "picture.txt"
    unknown.write_bytes(b"\x00" * 16)
    assert sniff_media_type(unknown) is None


def test_guess_suffix() -> None:
    assert guess_suffix("https://cdn.example/clip.webm?x=1") == ".webm"
    assert guess_suffix("https://cdn.example/download") == ".jpg"
