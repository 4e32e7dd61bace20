"""
Quota-bounded two-tier cache for large optimizer histories.

Payloads stay in memory (fast tier) until the memory quota would be exceeded;
from then on they are serialized to disk (slow tier) with dill. The tier is
chosen once, when an entry is stored. ``cleanup()`` is the only eviction
policy: it drops every fast-tier entry and leaves slow-tier entries loadable.
"""

import os
import re
import shutil
import logging
import tempfile
from dataclasses import dataclass
from hashlib import sha256
from typing import Any, Optional

import dill
import numpy as np

from .config import ABCError


BYTES_PER_MB = 1024 ** 2
FAST_TIER = "fast"
SLOW_TIER = "slow"


class CacheIOFailure(ABCError):
    """A slow-tier read or write failed."""


@dataclass
class CacheEntry:
    key: str
    location: str
    size_bytes: int
    payload: Any = None
    file_path: Optional[str] = None


def safe_filename(key: str) -> str:
    """Convert a cache key to a filesystem-safe, collision-free file name."""
    stem = re.sub(r'[<>:"/\\|?*\s]', "_", key)[:64]
    return f"{stem}_{sha256(key.encode('utf-8')).hexdigest()[:12]}.pkl"


def estimate_size(payload) -> int:
    """Estimate a payload's memory footprint in bytes."""
    if isinstance(payload, np.ndarray):
        return int(payload.nbytes)
    try:
        return len(dill.dumps(payload, protocol=dill.HIGHEST_PROTOCOL))
    except Exception as e:
        logging.warning(f"Could not estimate payload size ({e}), assuming 1 MB")
        return BYTES_PER_MB


class TieredCache:
    """
    Memory-budgeted key/value store with transparent disk overflow.

    Parameters
    ----------
    cache_dir : str, optional
        Directory for slow-tier files; a temporary directory owned by the
        cache is created when None
    max_memory_mb : float
        Fast-tier quota in megabytes
    """

    def __init__(self, cache_dir=None, max_memory_mb=1024.0):
        if max_memory_mb < 0:
            raise ValueError(f"max_memory_mb must be >= 0, got {max_memory_mb}")

        self.owns_cache_dir = False
        if cache_dir is None:
            cache_dir = tempfile.mkdtemp(prefix="abc_cache_")
            self.owns_cache_dir = True
        elif not os.path.isdir(cache_dir):
            os.makedirs(cache_dir)
            self.owns_cache_dir = True

        self.cache_dir = cache_dir
        self.max_memory_bytes = int(max_memory_mb * BYTES_PER_MB)
        self.current_memory_bytes = 0
        self._entries = {}

        logging.info(
            f"[TieredCache] Initialised | Cache: {self.cache_dir} | "
            f"Max-RAM: {max_memory_mb:.0f} MB"
        )

    @property
    def current_memory_mb(self) -> float:
        return self.current_memory_bytes / BYTES_PER_MB

    @property
    def max_memory_mb(self) -> float:
        return self.max_memory_bytes / BYTES_PER_MB

    def store(self, key, payload, force_slow_tier=False):
        """
        Store ``payload`` under ``key``.

        Goes to the slow tier when forced or when the fast tier would exceed
        its quota. An existing entry for ``key`` is removed first.

        Returns
        -------
        str
            The tier the payload landed in ("fast" or "slow")

        Raises
        ------
        CacheIOFailure
            If the slow-tier write fails and the fast tier has no room
        """
        if not isinstance(key, str):
            raise TypeError(f"Cache keys must be str, got {type(key).__name__}")
        if key in self._entries:
            self.remove(key)

        size_bytes = estimate_size(payload)
        fits_in_memory = self.current_memory_bytes + size_bytes <= self.max_memory_bytes

        if force_slow_tier or not fits_in_memory:
            try:
                entry = self._write_slow(key, payload, size_bytes)
            except CacheIOFailure as e:
                if not fits_in_memory:
                    raise
                logging.warning(f"[TieredCache] {e}; keeping {key} in RAM")
                entry = self._keep_fast(key, payload, size_bytes)
        else:
            entry = self._keep_fast(key, payload, size_bytes)

        self._entries[key] = entry
        return entry.location

    def _keep_fast(self, key, payload, size_bytes):
        self.current_memory_bytes += size_bytes
        logging.debug(
            f"[TieredCache] » {key} -> RAM ({size_bytes / BYTES_PER_MB:.2f} MB) | "
            f"RAM used: {self.current_memory_mb:.2f}/{self.max_memory_mb:.0f} MB"
        )
        return CacheEntry(key=key, location=FAST_TIER, size_bytes=size_bytes, payload=payload)

    def _write_slow(self, key, payload, size_bytes):
        file_path = os.path.join(self.cache_dir, safe_filename(key))
        temp_path = file_path + ".tmp"
        try:
            os.makedirs(self.cache_dir, exist_ok=True)
            with open(temp_path, "wb") as f:
                dill.dump(payload, f, protocol=dill.HIGHEST_PROTOCOL)
            os.replace(temp_path, file_path)
        except Exception as e:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    logging.warning(f"[TieredCache] Could not remove {temp_path}")
            raise CacheIOFailure(f"Failed to save {key} to disk: {e}") from e

        logging.debug(f"[TieredCache] » {key} -> disk ({size_bytes / BYTES_PER_MB:.2f} MB)")
        return CacheEntry(key=key, location=SLOW_TIER, size_bytes=size_bytes, file_path=file_path)

    def load(self, key):
        """
        Return the payload stored under ``key`` from whichever tier holds it.

        Raises
        ------
        KeyError
            If ``key`` is not cached
        CacheIOFailure
            If the slow-tier file cannot be read
        """
        if key not in self._entries:
            raise KeyError(f"Key {key!r} not found in cache")

        entry = self._entries[key]
        if entry.location == FAST_TIER:
            return entry.payload

        try:
            with open(entry.file_path, "rb") as f:
                return dill.load(f)
        except Exception as e:
            raise CacheIOFailure(f"Failed to load {key} from {entry.file_path}: {e}") from e

    def location(self, key):
        """Return the tier holding ``key``."""
        if key not in self._entries:
            raise KeyError(f"Key {key!r} not found in cache")
        return self._entries[key].location

    def remove(self, key):
        """Remove ``key`` from the cache; unknown keys are ignored."""
        entry = self._entries.pop(key, None)
        if entry is None:
            return

        if entry.location == FAST_TIER:
            self.current_memory_bytes = max(0, self.current_memory_bytes - entry.size_bytes)
        elif entry.file_path and os.path.exists(entry.file_path):
            try:
                os.remove(entry.file_path)
            except OSError as e:
                logging.warning(f"[TieredCache] Failed to delete {entry.file_path}: {e}")
        logging.debug(f"[TieredCache] « {key} removed.")

    def cleanup(self):
        """Evict every fast-tier entry; slow-tier entries stay loadable."""
        for key in [k for k, e in self._entries.items() if e.location == FAST_TIER]:
            del self._entries[key]
        self.current_memory_bytes = 0
        logging.info(f"[TieredCache] RAM cache cleared. RAM now: {self.current_memory_mb:.2f} MB")

    def get_status(self):
        """
        Return current usage for external monitoring.

        Returns
        -------
        dict
            current_memory_mb, max_memory_mb, utilisation_percent,
            num_cached_items, num_fast_items, num_slow_items, keys
        """
        if self.max_memory_bytes > 0:
            utilisation = 100.0 * self.current_memory_bytes / self.max_memory_bytes
        else:
            utilisation = 0.0
        return {
            'current_memory_mb': self.current_memory_mb,
            'max_memory_mb': self.max_memory_mb,
            'utilisation_percent': utilisation,
            'num_cached_items': len(self._entries),
            'num_fast_items': sum(1 for e in self._entries.values() if e.location == FAST_TIER),
            'num_slow_items': sum(1 for e in self._entries.values() if e.location == SLOW_TIER),
            'keys': list(self._entries),
        }

    def keys(self):
        return list(self._entries)

    def __contains__(self, key):
        return key in self._entries

    def __len__(self):
        return len(self._entries)

    def close(self):
        """Remove every entry and, if the cache created it, its empty directory."""
        for key in list(self._entries):
            self.remove(key)
        self.current_memory_bytes = 0

        if self.owns_cache_dir and os.path.isdir(self.cache_dir):
            if os.listdir(self.cache_dir):
                logging.info(f"[TieredCache] Cache kept because files remain in {self.cache_dir}")
            else:
                shutil.rmtree(self.cache_dir, ignore_errors=True)
                logging.debug("[TieredCache] Cache directory removed.")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
