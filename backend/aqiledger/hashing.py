"""Deterministic digests for structured payloads and report text."""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonicalize(value: Any) -> Any:
    """Return *value* with every mapping's keys sorted, recursively."""

    if isinstance(value, dict):
        return {key: canonicalize(value[key]) for key in sorted(value)}
    if isinstance(value, (list, tuple)):
        return [canonicalize(item) for item in value]
    return value


def canonical_json(value: Any) -> str:
    return json.dumps(canonicalize(value), separators=(",", ":"), ensure_ascii=False)


def content_hash(value: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of *value*."""

    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()


def verify_content_hash(value: Any, expected: str) -> bool:
    return content_hash(value) == expected


def plain_hash(text: str) -> str:
    """SHA-256 hex digest of already serialised text."""

    return hashlib.sha256(text.encode("utf-8")).hexdigest()
