"""Deterministic percentage bucketing.

A subject lands in bucket ``sha256("{salt}:{subject_id}")[:8] mod 100``.
The function is part of the on-the-wire contract: changing it reshuffles
every rollout, so it must stay fixed. Buckets are memoised in a bounded
LRU cache shared by all threads.
"""

from __future__ import annotations

import hashlib
import threading
from typing import Any, Dict, Optional

from cachetools import LRUCache

from flagrollout.core.config import settings

BUCKET_COUNT = 100

_bucket_cache: LRUCache = LRUCache(maxsize=settings.BUCKET_CACHE_MAX_SIZE)
_bucket_lock = threading.Lock()


def compute_bucket(subject_id: Optional[str], salt: str) -> int:
    """Uncached bucket computation (0-99)."""
    hash_input = f"{salt}:{subject_id or ''}"
    hash_bytes = hashlib.sha256(hash_input.encode("utf-8")).digest()
    # First 8 bytes as unsigned int, mod 100 for bucket
    hash_int = int.from_bytes(hash_bytes[:8], byteorder="big", signed=False)
    return hash_int % BUCKET_COUNT


def bucket(subject_id: Optional[str], salt: str) -> int:
    """Return the subject's bucket for ``salt``, memoised."""
    cache_key = (subject_id or "", salt)
    with _bucket_lock:
        cached = _bucket_cache.get(cache_key)
        if cached is None:
            cached = _bucket_cache[cache_key] = compute_bucket(subject_id, salt)
    return cached


def is_in_rollout(subject_id: Optional[str], salt: str, percentage: Optional[float]) -> bool:
    """Check if a subject is within the rollout percentage.

    Args:
        subject_id: Subject identifier (None hashes like the empty string)
        salt: Flag key, or ``"{flag_key}:{rule_id}"`` for rule gates
        percentage: Share of subjects to include (0-100)

    Returns:
        True if the subject's bucket is below the percentage
    """
    if percentage is None:
        return False
    if percentage >= 100:
        return True
    if percentage <= 0:
        return False
    return bucket(subject_id, salt) < percentage


def clear_bucket_cache() -> None:
    with _bucket_lock:
        _bucket_cache.clear()


def bucket_cache_info() -> Dict[str, Any]:
    with _bucket_lock:
        return {"size": _bucket_cache.currsize, "max_size": _bucket_cache.maxsize}
