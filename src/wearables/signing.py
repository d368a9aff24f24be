"""HMAC helpers shared by the provider webhook verifiers."""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Mapping

_DIGESTS = {"sha256": hashlib.sha256, "sha1": hashlib.sha1}


def hmac_digest(key: str | bytes, message: bytes, algorithm: str = "sha256") -> bytes:
    if isinstance(key, str):
        key = key.encode("utf-8")
    return hmac.new(key, message, _DIGESTS[algorithm]).digest()


def signatures_match(expected: str, provided: str | None) -> bool:
    """Constant-time comparison of two signature strings."""
    if not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.strip().encode("utf-8"))


def hex_signature(key: str | bytes, message: bytes, algorithm: str = "sha256") -> str:
    return hmac_digest(key, message, algorithm).hex()


def b64_signature(key: str | bytes, message: bytes, algorithm: str = "sha256") -> str:
    return base64.b64encode(hmac_digest(key, message, algorithm)).decode("ascii")


def header(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup over a plain mapping."""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None
