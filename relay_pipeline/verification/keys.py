"""bech32 ``npub`` public key codec."""

from __future__ import annotations

import bech32

from ..errors import KeyDecodeError

NPUB_PREFIX = "npub"
NPUB_TOKEN_MAX = 64


def scan_npub(text: str) -> str:
    """Return the first ``npub1...`` token in ``text`` (lowercase alphanumerics, at most 64 chars)."""

    start = text.find("npub1")
    if start < 0:
        return ""
    end = start
    limit = min(len(text), start + NPUB_TOKEN_MAX)
    while end < limit and ("0" <= text[end] <= "9" or "a" <= text[end] <= "z"):
        end += 1
    return text[start:end]


def decode_npub(npub: str) -> bytes:
    """Return the 32-byte public key encoded by ``npub``."""

    hrp, data = bech32.bech32_decode(npub.strip().lower())
    if hrp != NPUB_PREFIX or data is None:
        raise KeyDecodeError(f"not a valid npub: {npub!r}")
    decoded = bech32.convertbits(data, 5, 8, False)
    if decoded is None or len(decoded) != 32:
        raise KeyDecodeError(f"npub does not hold a 32-byte key: {npub!r}")
    return bytes(decoded)


def encode_npub(pubkey_hex: str) -> str:
    try:
        raw = bytes.fromhex(pubkey_hex)
    except ValueError as exc:
        raise KeyDecodeError(f"not a hex public key: {pubkey_hex!r}") from exc
    if len(raw) != 32:
        raise KeyDecodeError(f"public key must be 32 bytes, got {len(raw)}")
    return bech32.bech32_encode(NPUB_PREFIX, bech32.convertbits(raw, 8, 5))


def key_matches(npub: str, pubkey_hex: str) -> bool:
    """Byte-for-byte comparison of a claimed npub with a hex relay pubkey."""

    try:
        expected = bytes.fromhex(pubkey_hex)
    except ValueError:
        return False
    return decode_npub(npub) == expected


__all__ = ["decode_npub", "encode_npub", "key_matches", "scan_npub"]
