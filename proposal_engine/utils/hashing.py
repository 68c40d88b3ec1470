"""
Hashing utilities for document integrity and signature certificates.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any


def sha256_hash(content: str | bytes) -> str:
    """Return the SHA-256 hex digest of the given content."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def _json_default(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Unserializable value: {value!r}")


def canonical_json(data: Any) -> str:
    """Stable JSON encoding (sorted keys, no whitespace) so equal data hashes equally."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=_json_default)


def hash_payload(data: Any) -> str:
    """SHA-256 over the canonical JSON form of ``data``."""
    return sha256_hash(canonical_json(data))
