"""
Batch pre-computation of catalog embeddings.

Fills the product-keyed cache for a whole catalog:
- Skips products that are already cached (fill is idempotent)
- Processes the catalog in fixed-size batches, extracting every product
  of a batch concurrently
- Sleeps briefly between batches to bound backend load
- Tolerates partial failure: a failed product is logged and recorded in the
  returned BatchResult, never raised
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Tuple

from feature_cache import EmbeddingCache
from feature_extraction_service import FeatureExtractor
from image_processing import ImageProcessingError
from model_manager import ModelInitializationError
from similarity import SimilarityComputationError

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5
DEFAULT_BATCH_DELAY = 0.2


class BatchResult:
    """Outcome of one fill() pass"""

    def __init__(self):
        self.succeeded: List[Any] = []
        self.skipped: List[Any] = []
        self.failed: Dict[Any, Dict[str, Any]] = {}
        self.batch_sizes: List[int] = []

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'succeeded': list(self.succeeded),
            'skipped': list(self.skipped),
            'failed': {str(pid): error for pid, error in self.failed.items()},
            'success_count': self.success_count,
            'failure_count': self.failure_count,
            'skipped_count': len(self.skipped),
            'batches': len(self.batch_sizes),
            'batch_sizes': list(self.batch_sizes)
        }


class BatchPrecomputer:
    """
    Drives the FeatureExtractor over a catalog.

    Args:
        extractor: FeatureExtractor used for every product image
        product_cache: Product-keyed EmbeddingCache to fill
        batch_size: Products per batch (also the concurrency bound)
        batch_delay: Seconds to pause between batches
        sleep: Sleep function (injectable for tests)
    """

    def __init__(self, extractor: FeatureExtractor, product_cache: EmbeddingCache,
                 batch_size: int = DEFAULT_BATCH_SIZE,
                 batch_delay: float = DEFAULT_BATCH_DELAY,
                 sleep: Callable[[float], None] = time.sleep):
        if batch_size < 1:
            raise ValueError(f'batch_size must be at least 1, got {batch_size}')
        self.extractor = extractor
        self.product_cache = product_cache
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.sleep = sleep

    def fill(self, catalog: List[Dict[str, Any]]) -> BatchResult:
        """
        Pre-compute embeddings for every uncached product in the catalog.

        Returns once every product has either a cache entry or a recorded
        failure.

        Raises:
            ModelInitializationError: If the model cannot be loaded
        """
        result = BatchResult()

        self.extractor.model_manager.ensure_ready()

        pending = []
        seen = set()
        for product in catalog:
            product_id = product.get('id')
            if product_id in seen:
                continue
            seen.add(product_id)

            if self.product_cache.has(product_id):
                result.skipped.append(product_id)
            else:
                pending.append(product)

        if not pending:
            logger.info(f"[BATCH-FILL] All {len(result.skipped)} products already cached")
            return result

        batches = [pending[i:i + self.batch_size] for i in range(0, len(pending), self.batch_size)]
        logger.info(
            f"[BATCH-FILL] Pre-computing embeddings for {len(pending)} products "
            f"in {len(batches)} batches ({len(result.skipped)} cached)"
        )

        for index, batch in enumerate(batches):
            result.batch_sizes.append(len(batch))

            with ThreadPoolExecutor(max_workers=len(batch)) as executor:
                futures = [executor.submit(self._process_product, product) for product in batch]
                outcomes = [future.result() for future in futures]

            for product_id, error in outcomes:
                if error is None:
                    result.succeeded.append(product_id)
                else:
                    result.failed[product_id] = error

            if index < len(batches) - 1:
                self.sleep(self.batch_delay)

        logger.info(
            f"[BATCH-FILL] Completed: {result.success_count} cached, "
            f"{result.failure_count} failed, {len(result.skipped)} skipped "
            f"({len(self.product_cache)} products in cache)"
        )
        return result

    def _process_product(self, product: Dict[str, Any]) -> Tuple[Any, Optional[Dict[str, Any]]]:
        """Extract and cache one product; returns (product_id, error or None)"""
        product_id = product.get('id')
        try:
            features = self.extractor.extract(product.get('image_url'))
            self.product_cache.put(product_id, features)
            logger.debug(f"[BATCH-FILL] Cached embeddings for product {product_id}")
            return product_id, None
        except (ImageProcessingError, SimilarityComputationError, ModelInitializationError) as e:
            logger.warning(f"[BATCH-FILL] Failed to pre-compute embeddings for product {product_id}: {e.message}")
            return product_id, e.to_dict()
        except Exception as e:
            logger.error(f"[BATCH-FILL] Unexpected error processing product {product_id}: {e}")
            return product_id, {
                'error': str(e),
                'error_code': 'UNKNOWN_ERROR',
                'suggestion': None
            }
