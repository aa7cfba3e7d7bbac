"""
Cache storage for collected data.

This module provides the CacheStore that records the last collection time,
decides whether a run can skip collection, and keeps the aggregated and
per-module payloads for transmit-only runs.
"""

from .cache import DEFAULT_CACHE_DIR, DEFAULT_RETENTION_SECONDS, CacheStore

__all__ = [
    "CacheStore",
    "DEFAULT_CACHE_DIR",
    "DEFAULT_RETENTION_SECONDS",
]
