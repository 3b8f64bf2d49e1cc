"""
Tests for batch pre-computation of catalog embeddings.
"""

import threading
import time

import pytest

from batch_processing import BatchPrecomputer, BatchResult
from model_manager import ModelInitializationError

BATCH_DELAY = 0.2


@pytest.fixture
def engine(engine_factory):
    # No per-image retries so the sleep recorder only sees batch pacing
    return engine_factory(max_retries=0)


class TestFill:
    def test_twelve_products_three_batches(self, engine, catalog, sleep_recorder):
        """12 products run as batches of 5, 5 and 2 with pacing in between"""
        result = engine.precompute(catalog)

        assert result.batch_sizes == [5, 5, 2]
        assert result.success_count == 12
        assert result.failure_count == 0
        assert len(engine.product_cache) == 12
        assert sleep_recorder.calls == [BATCH_DELAY, BATCH_DELAY]

    def test_partial_failure(self, engine, catalog, fake_backend):
        """One bad image in the first batch leaves the other 11 cached"""
        fake_backend.fail(catalog[2]['image_url'], 'model exploded')

        result = engine.precompute(catalog)

        assert result.batch_sizes == [5, 5, 2]
        assert result.success_count == 11
        assert list(result.failed) == [3]
        assert result.failed[3]['error_code'] == 'EXTRACTION_EXHAUSTED'
        assert len(engine.product_cache) == 11
        assert not engine.product_cache.has(3)

    def test_fill_is_idempotent(self, engine, catalog, fake_backend, sleep_recorder):
        engine.precompute(catalog)
        calls = fake_backend.call_count()

        result = engine.precompute(catalog)

        assert fake_backend.call_count() == calls
        assert result.batch_sizes == []
        assert len(result.skipped) == 12
        assert len(sleep_recorder.calls) == 2

    def test_only_missing_products_processed(self, engine, catalog, fake_backend):
        engine.product_cache.put(1, [1.0] * fake_backend.dim)
        engine.product_cache.put(2, [1.0] * fake_backend.dim)

        result = engine.precompute(catalog)

        assert result.batch_sizes == [5, 5]
        assert result.skipped == [1, 2]
        assert fake_backend.call_count(catalog[0]['image_url']) == 0

    def test_failed_products_retried_on_next_fill(self, engine, catalog, fake_backend):
        fake_backend.fail(catalog[0]['image_url'], 'model exploded', times=1)
        engine.precompute(catalog)
        assert not engine.product_cache.has(1)

        result = engine.precompute(catalog)

        assert result.succeeded == [1]
        assert len(engine.product_cache) == 12

    def test_duplicate_ids_processed_once(self, engine, catalog_factory, fake_backend):
        catalog = catalog_factory(3)
        result = engine.precompute(catalog + catalog)

        assert result.batch_sizes == [3]
        assert fake_backend.call_count() == 3

    def test_empty_catalog(self, engine, sleep_recorder):
        result = engine.precompute([])
        assert result.batch_sizes == []
        assert sleep_recorder.calls == []

    def test_batch_is_concurrent_and_bounded(self, engine, catalog, fake_backend):
        """Products of one batch run concurrently, never more than batch_size at once"""
        active = [0]
        peak = [0]
        lock = threading.Lock()
        original_extract = fake_backend.extract

        def tracking_extract(image_ref):
            with lock:
                active[0] += 1
                peak[0] = max(peak[0], active[0])
            try:
                time.sleep(0.05)
                return original_extract(image_ref)
            finally:
                with lock:
                    active[0] -= 1

        fake_backend.extract = tracking_extract
        engine.precompute(catalog)

        assert 1 < peak[0] <= 5

    def test_initialization_failure_raises(self, engine, catalog, loader):
        loader.fail('fake-primary', 'boom')
        loader.fail('fake-secondary', 'boom')

        with pytest.raises(ModelInitializationError):
            engine.precompute(catalog)
        assert len(engine.product_cache) == 0


class TestBatchResult:
    def test_to_dict(self):
        result = BatchResult()
        result.succeeded.extend([1, 2])
        result.skipped.append(3)
        result.failed[4] = {'error': 'bad', 'error_code': 'IMAGE_INACCESSIBLE', 'suggestion': None}
        result.batch_sizes.extend([3])

        data = result.to_dict()

        assert data['success_count'] == 2
        assert data['failure_count'] == 1
        assert data['skipped_count'] == 1
        assert data['batches'] == 1
        assert data['failed'] == {'4': result.failed[4]}

    def test_invalid_batch_size(self, engine):
        with pytest.raises(ValueError):
            BatchPrecomputer(engine.extractor, engine.product_cache, batch_size=0)
