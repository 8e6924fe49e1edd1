"""
Query normalization and fingerprinting used as the cache key.
"""
from __future__ import annotations

import hashlib
import re

STOP_WORDS = frozenset({
    "a", "an", "and", "any", "are", "for", "i", "im", "in", "is", "it",
    "me", "my", "need", "of", "on", "please", "show", "some", "that", "the",
    "to", "want", "with",
})


def normalize_query(text: str) -> str:
    """Lower-case, drop stop words and collapse whitespace.

    Stop-word removal never empties a non-empty query: when every token is a
    stop word the lower-cased tokens are kept as they are.
    """
    tokens = re.sub(r"\s+", " ", (text or "").lower()).strip().split(" ")
    tokens = [t for t in tokens if t]
    kept = [t for t in tokens if t not in STOP_WORDS]
    return " ".join(kept or tokens)


def compute_fingerprint(text: str) -> str:
    """SHA-256 over the normalized query text."""
    return fingerprint_normalized(normalize_query(text))


def fingerprint_normalized(normalized: str) -> str:
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()
