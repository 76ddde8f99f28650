from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any


def normalize_text(value: str) -> str:
    return value.strip()


def fingerprint_bytes(data: bytes | bytearray) -> str:
    """Return the SHA-256 hex digest of raw uploaded bytes."""
    if not isinstance(data, (bytes, bytearray)):
        raise TypeError("fingerprint_bytes expects bytes")
    return hashlib.sha256(data).hexdigest()


def fingerprint_text(value: str) -> str:
    """Return the SHA-256 hex digest of whitespace-trimmed text."""
    return hashlib.sha256(normalize_text(value).encode("utf-8")).hexdigest()


def canonical_json(payload: Mapping[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def fingerprint_profile(profile: Mapping[str, Any]) -> str:
    """
    Stable hash for a transient candidate profile that has no stored resume.

    Key order never affects the digest, so two serializations of the same
    profile always share a match-result key.
    """
    return hashlib.sha256(canonical_json(profile).encode("utf-8")).hexdigest()
