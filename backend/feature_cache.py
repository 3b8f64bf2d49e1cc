"""
In-memory embedding cache.

The engine keeps two independent instances of EmbeddingCache:
1. 'images'   - keyed by image reference (URL or content hash of a data URI)
2. 'products' - keyed by catalog product ID

Entries never expire; only clear() removes them. Re-inserting a key
overwrites it with the latest vector. Stored vectors are read-only float32
copies, so a vector handed out by get() can never be changed by a caller.
"""

import numpy as np
import threading
import logging
from typing import Dict, Hashable, List, Optional

from similarity import InvalidFeatureError

# Configure logging
logger = logging.getLogger(__name__)


def freeze_embedding(vector) -> np.ndarray:
    """
    Make a read-only float32 copy of an embedding.

    Raises:
        InvalidFeatureError: If the vector is missing, empty or not 1-D
    """
    if vector is None:
        raise InvalidFeatureError("Cannot cache a missing embedding")

    try:
        frozen = np.array(vector, dtype=np.float32, copy=True)
    except (TypeError, ValueError) as e:
        raise InvalidFeatureError(f"Embedding is not numeric: {e}")

    if frozen.ndim != 1 or frozen.size == 0:
        raise InvalidFeatureError(
            f"Embeddings must be non-empty 1-D vectors, got shape {frozen.shape}"
        )

    frozen.flags.writeable = False
    return frozen


class EmbeddingCache:
    """
    Thread-safe key -> embedding store.
    """

    def __init__(self, name: str = 'embeddings'):
        self.name = name
        self._store: Dict[Hashable, np.ndarray] = {}
        self._key_locks: Dict[Hashable, threading.Lock] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> Optional[np.ndarray]:
        with self._lock:
            vector = self._store.get(key)
            if vector is None:
                self.misses += 1
            else:
                self.hits += 1
            return vector

    def put(self, key: Hashable, vector) -> np.ndarray:
        """Store a vector under key, overwriting any previous entry

        Returns:
            The stored (read-only) vector
        """
        frozen = freeze_embedding(vector)
        with self._lock:
            self._store[key] = frozen
        return frozen

    def has(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._store

    def __contains__(self, key: Hashable) -> bool:
        return self.has(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def keys(self) -> List[Hashable]:
        with self._lock:
            return list(self._store.keys())

    def key_lock(self, key: Hashable) -> threading.Lock:
        """Lock used to serialize expensive work for a single key"""
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def clear(self) -> None:
        """Remove all entries. Per-key locks survive so locks already handed out stay in use."""
        with self._lock:
            cleared = len(self._store)
            self._store.clear()
            self.hits = 0
            self.misses = 0
        logger.info(f"Cleared {cleared} entries from '{self.name}' embedding cache")

    def get_cache_stats(self) -> Dict[str, int]:
        """
        Get cache statistics.

        Returns:
            Dictionary with cache statistics
        """
        with self._lock:
            return {
                'name': self.name,
                'size': len(self._store),
                'hits': self.hits,
                'misses': self.misses
            }
