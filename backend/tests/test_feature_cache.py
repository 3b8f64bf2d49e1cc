"""
Tests for the in-memory embedding cache.
"""

import threading

import numpy as np
import pytest

from feature_cache import EmbeddingCache, freeze_embedding
from similarity import InvalidFeatureError


class TestFreezeEmbedding:
    def test_returns_read_only_copy(self):
        original = np.array([1.0, 2.0, 3.0])
        frozen = freeze_embedding(original)

        assert frozen.dtype == np.float32
        assert not frozen.flags.writeable

        original[0] = 99.0
        assert frozen[0] == pytest.approx(1.0)

    def test_rejects_missing(self):
        with pytest.raises(InvalidFeatureError):
            freeze_embedding(None)

    def test_rejects_empty(self):
        with pytest.raises(InvalidFeatureError):
            freeze_embedding([])

    def test_rejects_matrix(self):
        with pytest.raises(InvalidFeatureError):
            freeze_embedding([[1.0, 2.0], [3.0, 4.0]])


class TestEmbeddingCache:
    """Tests for EmbeddingCache get/put semantics"""

    def test_miss_then_hit(self):
        cache = EmbeddingCache('images')
        assert cache.get('a') is None

        cache.put('a', [0.1, 0.2])
        assert cache.get('a') == pytest.approx([0.1, 0.2])

        stats = cache.get_cache_stats()
        assert stats == {'name': 'images', 'size': 1, 'hits': 1, 'misses': 1}

    def test_stored_vector_cannot_be_modified(self):
        """Vectors handed out by get() are immutable"""
        cache = EmbeddingCache()
        cache.put(1, [0.5, 0.5])

        vector = cache.get(1)
        with pytest.raises(ValueError):
            vector[0] = 1.0

    def test_put_overwrites(self):
        cache = EmbeddingCache()
        cache.put('k', [1.0, 0.0])
        cache.put('k', [0.0, 1.0])

        assert len(cache) == 1
        assert cache.get('k') == pytest.approx([0.0, 1.0])

    def test_membership(self):
        cache = EmbeddingCache()
        cache.put(42, [1.0])

        assert 42 in cache
        assert cache.has(42)
        assert not cache.has('42')
        assert cache.keys() == [42]

    def test_clear(self):
        cache = EmbeddingCache('products')
        for i in range(5):
            cache.put(i, [float(i), 1.0])
        cache.get(0)

        cache.clear()

        assert len(cache) == 0
        assert cache.get(0) is None
        assert cache.get_cache_stats()['hits'] == 0

    def test_independent_instances(self):
        images = EmbeddingCache('images')
        products = EmbeddingCache('products')
        images.put('https://example.com/a.jpg', [1.0])

        assert len(products) == 0

    def test_key_lock_is_per_key(self):
        cache = EmbeddingCache()
        assert cache.key_lock('a') is cache.key_lock('a')
        assert cache.key_lock('a') is not cache.key_lock('b')

    def test_key_lock_survives_clear(self):
        """A lock handed out before clear() is the one later callers get"""
        cache = EmbeddingCache()
        handed_out = cache.key_lock('a')

        cache.clear()

        assert cache.key_lock('a') is handed_out

    def test_concurrent_puts(self):
        """Concurrent writers never lose entries"""
        cache = EmbeddingCache()

        def writer(offset):
            for i in range(50):
                cache.put(offset * 100 + i, [float(i), 1.0])

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(cache) == 400
