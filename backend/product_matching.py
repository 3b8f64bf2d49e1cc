"""
Product matching engine.

MatchingEngine is the single context object that owns everything the
similarity engine needs for the life of the process:
- image_cache / product_cache (EmbeddingCache)
- model_manager (ModelManager)
- extractor (FeatureExtractor)
- precomputer (BatchPrecomputer)
- fallback (FallbackProvider)

Typical flow:
    engine.ensure_ready()
    engine.precompute(catalog)
    engine.match(image_url, catalog)   # ranked results, degraded on failure

Matching against the same catalog with a different threshold reuses the
cached vectors; only rank_results() runs again.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from batch_processing import BatchPrecomputer, BatchResult, DEFAULT_BATCH_DELAY, DEFAULT_BATCH_SIZE
from fallback_matching import FallbackProvider
from feature_cache import EmbeddingCache
from feature_extraction_service import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_BASE_DELAY, FeatureExtractor
from image_processing import (
    DEFAULT_PRECHECK_TIMEOUT,
    ImageProcessingError,
    check_remote_image
)
from matching_utils import create_match_result
from model_manager import DEFAULT_LOAD_TIMEOUT, ModelInitializationError, ModelManager
from similarity import SimilarityComputationError, enhanced_similarity, rank_results

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_MIN_SIMILARITY = 0.1
DEFAULT_RELAXED_SIMILARITY = 0.05

# Known-good image used by test_image_processing()
DEFAULT_TEST_IMAGE_URL = 'https://images.unsplash.com/photo-1549298916-b41d501d3772?w=100&h=100&fit=crop&crop=center'


class MatchingEngine:
    """
    Embedding-based similarity engine.

    Args:
        config: Engine configuration (see image_processing_clip.DEFAULT_CONFIG);
                loaded from the config file when None
        loader: Backend loader passed to the ModelManager (CLIP by default)
        sleep: Sleep function for retry backoff and batch pacing
        rng: Random generator for the fallback scorer
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 loader: Optional[Callable[[Dict[str, Any]], Any]] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 rng=None):
        from image_processing_clip import build_model_configs, load_clip_config

        if config is None:
            config = load_clip_config()
        self.config = config

        self.min_similarity = config.get('min_similarity', DEFAULT_MIN_SIMILARITY)
        self.relaxed_similarity = config.get('relaxed_similarity', DEFAULT_RELAXED_SIMILARITY)

        self.image_cache = EmbeddingCache('images')
        self.product_cache = EmbeddingCache('products')

        self.model_manager = ModelManager(
            build_model_configs(config),
            loader=loader,
            load_timeout=config.get('load_timeout', DEFAULT_LOAD_TIMEOUT)
        )

        self.extractor = FeatureExtractor(
            self.model_manager,
            self.image_cache,
            max_retries=config.get('max_retries', DEFAULT_MAX_RETRIES),
            retry_base_delay=config.get('retry_base_delay', DEFAULT_RETRY_BASE_DELAY),
            precheck=check_remote_image if config.get('precheck_remote', True) else None,
            precheck_timeout=config.get('precheck_timeout', DEFAULT_PRECHECK_TIMEOUT),
            sleep=sleep
        )

        self.precomputer = BatchPrecomputer(
            self.extractor,
            self.product_cache,
            batch_size=config.get('batch_size', DEFAULT_BATCH_SIZE),
            batch_delay=config.get('batch_delay', DEFAULT_BATCH_DELAY),
            sleep=sleep
        )

        self.fallback = FallbackProvider(rng=rng)

    def ensure_ready(self):
        return self.model_manager.ensure_ready()

    def is_ready(self) -> bool:
        return self.model_manager.is_ready()

    def precompute(self, catalog: List[Dict[str, Any]]) -> BatchResult:
        return self.precomputer.fill(catalog)

    def score_catalog(self, image_ref, catalog: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Score every catalog product against a query image (unfiltered, unordered).

        Products without a usable embedding score 0.

        Raises:
            ModelInitializationError: If the model cannot be loaded
            ImageProcessingError: If the query image cannot be processed
        """
        logger.info(f"Finding similar products for {len(catalog)} products...")

        self.model_manager.ensure_ready()
        query_features = self.extractor.extract(image_ref)

        missing = [p for p in catalog if not self.product_cache.has(p.get('id'))]
        if missing:
            self.precompute(missing)

        scored = []
        failed_count = 0
        for product in catalog:
            product_features = self.product_cache.get(product.get('id'))
            similarity = 0.0

            if product_features is None:
                logger.warning(f"No embeddings available for product {product.get('id')}")
                failed_count += 1
            else:
                try:
                    similarity = enhanced_similarity(query_features, product_features, product.get('category'))
                except SimilarityComputationError as e:
                    logger.warning(f"Failed to process product {product.get('id')}: {e.message}")
                    failed_count += 1

            scored.append(create_match_result(product, similarity))

        logger.info(f"Processed {len(catalog) - failed_count} products successfully, {failed_count} failed")
        return scored

    def find_similar_products(self, image_ref, catalog: List[Dict[str, Any]],
                              min_similarity: float = DEFAULT_MIN_SIMILARITY) -> List[Dict[str, Any]]:
        """
        Ranked products with similarity >= min_similarity.

        Errors propagate; use match() for automatic fallback.
        """
        ranked = rank_results(self.score_catalog(image_ref, catalog), min_similarity)
        logger.info(f"Found {len(ranked)} similar products above threshold {min_similarity}")
        return ranked

    def match(self, image_ref, catalog: List[Dict[str, Any]],
              min_similarity: Optional[float] = None,
              relaxed_similarity: Optional[float] = None) -> Dict[str, Any]:
        """
        Match with threshold relaxation and degraded-mode fallback.

        Tries min_similarity first; if nothing passes, retries with
        relaxed_similarity on the same scores. Any model or image error
        switches to the fallback scorer.

        Returns:
            Dictionary with results, degraded flag, threshold_used, message
            and error (classified error dict or None)
        """
        if min_similarity is None:
            min_similarity = self.min_similarity
        if relaxed_similarity is None:
            relaxed_similarity = self.relaxed_similarity

        try:
            scored = self.score_catalog(image_ref, catalog)
        except (ModelInitializationError, ImageProcessingError, SimilarityComputationError) as e:
            logger.warning(f"AI analysis failed, using fallback: {e.message}")
            return self._fallback_response(catalog, e)

        threshold_used = min_similarity
        results = rank_results(scored, min_similarity)

        if not results and relaxed_similarity < min_similarity:
            logger.info(f"No results above {min_similarity}, retrying with threshold {relaxed_similarity}")
            threshold_used = relaxed_similarity
            results = rank_results(scored, relaxed_similarity)

        logger.info(f"Found {len(results)} similar products above threshold {threshold_used}")
        return {
            'results': results,
            'degraded': False,
            'threshold_used': threshold_used,
            'message': f'Found {len(results)} similar products with AI-powered matching!',
            'error': None
        }

    def _fallback_response(self, catalog: List[Dict[str, Any]], error) -> Dict[str, Any]:
        results = self.fallback.score(catalog)
        return {
            'results': results,
            'degraded': True,
            'threshold_used': None,
            'message': f'Found {len(results)} products using fallback matching. AI features are currently unavailable.',
            'error': error.to_dict()
        }

    def test_image_processing(self, image_url: str = DEFAULT_TEST_IMAGE_URL) -> bool:
        """Extract a known image end to end; True if it produced features"""
        try:
            features = self.extractor.extract(image_url)
        except (ModelInitializationError, ImageProcessingError, SimilarityComputationError) as e:
            logger.error(f"Image processing test failed: {e.message}")
            return False

        if features is None or len(features) == 0:
            logger.error("Image processing test failed: No features extracted")
            return False

        logger.info("Image processing test successful")
        return True

    def status(self) -> Dict[str, Any]:
        return {
            'model': self.model_manager.status(),
            'caches': {
                'images': self.image_cache.get_cache_stats(),
                'products': self.product_cache.get_cache_stats()
            }
        }

    def clear_caches(self) -> None:
        """Clear both embedding caches"""
        self.image_cache.clear()
        self.product_cache.clear()
        logger.info("Cleared all embedding caches")

    def reset(self) -> None:
        """Return to a freshly constructed state (caches empty, model unloaded)"""
        self.clear_caches()
        self.model_manager.reset()


# Global engine instance
_global_engine = None
_global_engine_lock = threading.Lock()


def get_engine() -> MatchingEngine:
    """
    Get global engine instance (singleton pattern).

    Returns:
        MatchingEngine instance
    """
    global _global_engine
    with _global_engine_lock:
        if _global_engine is None:
            _global_engine = MatchingEngine()
        return _global_engine


def set_engine(engine: Optional[MatchingEngine]) -> None:
    """Replace the global engine (None drops it)"""
    global _global_engine
    with _global_engine_lock:
        _global_engine = engine


def reset_engine() -> None:
    """Reset the global engine's caches and model state"""
    with _global_engine_lock:
        engine = _global_engine
    if engine is not None:
        engine.reset()
