"""
Tests for the matching engine: scoring, threshold relaxation and fallback.
"""

import io
import math

import pytest
from PIL import Image

import product_matching
from product_matching import MatchingEngine, get_engine, reset_engine, set_engine

QUERY_URL = 'https://images.example.com/query.jpg'


def vector_with_cosine(cosine, dim=8):
    """Unit vector whose cosine with [1, 0, 0, ...] is `cosine`"""
    return [cosine, math.sqrt(1.0 - cosine * cosine)] + [0.0] * (dim - 2)


def product(product_id, category, price='$10.00'):
    return {
        'id': product_id,
        'name': f'Product {product_id}',
        'category': category,
        'price': price,
        'image_url': f'https://images.example.com/p{product_id}.jpg'
    }


def set_base_score(backend, item, base_score):
    """Make the item's image score `base_score` (before category boost) against the query"""
    backend.vectors[item['image_url']] = vector_with_cosine(2 * base_score - 1, backend.dim)


@pytest.fixture
def query(fake_backend):
    fake_backend.vectors[QUERY_URL] = vector_with_cosine(1.0, fake_backend.dim)
    return QUERY_URL


def png_data_uri():
    import base64
    buffer = io.BytesIO()
    Image.new('RGB', (8, 8), (10, 120, 200)).save(buffer, format='PNG')
    return 'data:image/png;base64,' + base64.b64encode(buffer.getvalue()).decode('ascii')


class TestMatch:
    def test_ranked_ai_results(self, engine, catalog):
        response = engine.match(QUERY_URL, catalog)

        assert response['degraded'] is False
        assert response['error'] is None
        assert response['threshold_used'] == 0.1
        assert all(r['ai_scored'] for r in response['results'])
        assert all(0.1 <= r['similarity'] <= 1.0 for r in response['results'])

    def test_results_keep_product_fields(self, engine, catalog):
        results = engine.match(QUERY_URL, catalog)['results']
        assert results
        ids = {p['id'] for p in catalog}
        for result in results:
            assert result['id'] in ids
            assert {'name', 'category', 'price', 'image_url', 'similarity'} <= set(result)

    def test_near_tie_ordered_by_category(self, engine, fake_backend, query):
        footwear = product(1, 'Footwear')
        electronics = product(2, 'Electronics')
        clothing = product(3, 'Clothing')
        set_base_score(fake_backend, footwear, 0.39)      # 0.51 after boost
        set_base_score(fake_backend, electronics, 0.50)   # 0.55 after boost
        set_base_score(fake_backend, clothing, 0.42)      # 0.52 after boost

        results = engine.match(query, [electronics, clothing, footwear])['results']

        assert [r['category'] for r in results] == ['Footwear', 'Clothing', 'Electronics']
        assert results[0]['similarity'] < results[-1]['similarity']

    def test_relaxed_threshold_used_when_nothing_passes(self, engine, fake_backend, query):
        weak = product(1, 'Home')
        weaker = product(2, 'Home')
        set_base_score(fake_backend, weak, 0.075)
        set_base_score(fake_backend, weaker, 0.02)

        response = engine.match(query, [weak, weaker])

        assert response['degraded'] is False
        assert response['threshold_used'] == 0.05
        assert [r['id'] for r in response['results']] == [1]

    def test_no_results_even_when_relaxed(self, engine, fake_backend, query):
        item = product(1, 'Home')
        set_base_score(fake_backend, item, 0.01)

        response = engine.match(query, [item])

        assert response['results'] == []
        assert response['threshold_used'] == 0.05
        assert response['degraded'] is False

    def test_relaxed_results_are_superset(self, engine, catalog):
        strict = engine.find_similar_products(QUERY_URL, catalog, 0.1)
        relaxed = engine.find_similar_products(QUERY_URL, catalog, 0.05)

        assert {r['id'] for r in strict} <= {r['id'] for r in relaxed}

    def test_ranking_is_reproducible(self, engine, catalog):
        first = engine.find_similar_products(QUERY_URL, catalog, 0.0)
        second = engine.find_similar_products(QUERY_URL, catalog, 0.0)
        assert [r['id'] for r in first] == [r['id'] for r in second]

    def test_rescoring_reuses_cached_vectors(self, engine, catalog, fake_backend):
        engine.match(QUERY_URL, catalog)
        calls = fake_backend.call_count()

        engine.match(QUERY_URL, catalog, min_similarity=0.3)

        assert fake_backend.call_count() == calls

    def test_failed_product_scores_zero(self, engine, catalog, fake_backend):
        fake_backend.fail(catalog[0]['image_url'], 'model exploded')

        scored = engine.score_catalog(QUERY_URL, catalog)
        by_id = {r['id']: r for r in scored}

        assert len(scored) == len(catalog)
        assert by_id[1]['similarity'] == 0.0
        assert 1 not in {r['id'] for r in engine.find_similar_products(QUERY_URL, catalog)}


class TestFallback:
    def test_initialization_failure_uses_fallback(self, engine, catalog, loader):
        loader.fail('fake-primary', 'boom')
        loader.fail('fake-secondary', 'boom')

        response = engine.match(QUERY_URL, catalog)

        assert response['degraded'] is True
        assert response['threshold_used'] is None
        assert response['error']['error_code'] == 'INIT_EXHAUSTED'
        assert len(response['results']) == len(catalog)
        assert all(not r['ai_scored'] for r in response['results'])
        assert all(0.5 <= r['similarity'] <= 0.8 for r in response['results'])
        assert 'fallback' in response['message']

    def test_invalid_query_uses_fallback(self, engine, catalog):
        response = engine.match('not-a-url', catalog)

        assert response['degraded'] is True
        assert response['error']['error_code'] == 'INVALID_IMAGE_REFERENCE'

    def test_query_failure_uses_fallback(self, engine, catalog, fake_backend):
        fake_backend.fail(QUERY_URL, 'Image not accessible: 403 Forbidden')

        response = engine.match(QUERY_URL, catalog)

        assert response['degraded'] is True
        assert response['error']['error_code'] == 'IMAGE_INACCESSIBLE'

    def test_find_similar_products_propagates(self, engine, catalog):
        from image_processing import InvalidImageReferenceError

        with pytest.raises(InvalidImageReferenceError):
            engine.find_similar_products('not-a-url', catalog)


class TestEngineLifecycle:
    def test_status(self, engine, catalog):
        engine.precompute(catalog)
        status = engine.status()

        assert status['model']['state'] == 'ready'
        assert status['caches']['products']['size'] == len(catalog)
        assert status['caches']['images']['name'] == 'images'

    def test_clear_caches(self, engine, catalog, fake_backend):
        engine.match(QUERY_URL, catalog)
        engine.clear_caches()

        assert len(engine.image_cache) == 0
        assert len(engine.product_cache) == 0

        calls = fake_backend.call_count()
        engine.match(QUERY_URL, catalog)
        assert fake_backend.call_count() == calls + len(catalog) + 1

    def test_reset(self, engine, catalog):
        engine.match(QUERY_URL, catalog)
        engine.reset()

        assert not engine.is_ready()
        assert len(engine.product_cache) == 0
        assert engine.status()['model']['state'] == 'unloaded'

    def test_image_processing_self_test(self, engine):
        assert engine.test_image_processing(png_data_uri()) is True

    def test_image_processing_self_test_failure(self, engine, fake_backend):
        fake_backend.fail(QUERY_URL, 'model exploded')
        assert engine.test_image_processing(QUERY_URL) is False

    def test_config_thresholds(self, engine_factory):
        engine = engine_factory(min_similarity=0.3, relaxed_similarity=0.2)
        assert engine.min_similarity == 0.3
        assert engine.relaxed_similarity == 0.2

    def test_precheck_disabled_by_config(self, engine):
        assert engine.extractor.precheck is None


class TestGlobalEngine:
    def test_set_and_get(self, engine):
        set_engine(engine)
        try:
            assert get_engine() is engine
        finally:
            set_engine(None)

    def test_reset_engine(self, engine, catalog):
        set_engine(engine)
        try:
            engine.precompute(catalog)
            reset_engine()
            assert len(engine.product_cache) == 0
            assert not engine.is_ready()
        finally:
            set_engine(None)

    def test_reset_without_engine(self):
        set_engine(None)
        reset_engine()
        assert product_matching._global_engine is None

    def test_engine_is_engine_type(self, engine):
        assert isinstance(engine, MatchingEngine)
