"""
Feature Extraction Service

Wraps the model backend with caching, input validation, an advisory
remote pre-check, retry with linear backoff and output sanity checks.

Flow for extract(image_ref):
1. Image cache hit -> return immediately (no backend call)
2. Validate reference (data URI or http/https URL)
3. Remote URLs: HEAD pre-check, logged and ignored on failure
4. Backend extraction, retried up to max_retries extra times with a
   delay of attempt * retry_base_delay between attempts
5. Validate output, cache it, return it
"""

import logging
import time
from typing import Callable, Optional, Tuple, Union

import numpy as np

from image_processing import (
    ImageProcessingFailedError,
    InvalidImageReferenceError,
    DEFAULT_PRECHECK_TIMEOUT,
    bytes_to_data_uri,
    check_remote_image,
    classify_extraction_error,
    describe_reference,
    image_cache_key,
    is_http_url,
    validate_image_reference
)
from feature_cache import EmbeddingCache
from model_manager import ModelInitializationError, ModelManager
from similarity import InvalidFeatureError, VectorLengthMismatchError, validate_embedding

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_BASE_DELAY = 1.0


class FeatureExtractor:
    """
    Cached, retrying front end to the model backend.

    Args:
        model_manager: Provides the ready backend
        image_cache: Image-keyed EmbeddingCache
        max_retries: Additional attempts after the first failure
        retry_base_delay: Seconds multiplied by the attempt number between attempts
        precheck: Callable(url, timeout) -> (ok, reason); None disables the pre-check
        precheck_timeout: Timeout passed to precheck
        sleep: Sleep function (injectable for tests)
    """

    def __init__(self, model_manager: ModelManager, image_cache: EmbeddingCache,
                 max_retries: int = DEFAULT_MAX_RETRIES,
                 retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
                 precheck: Optional[Callable[[str, float], Tuple[bool, Optional[str]]]] = check_remote_image,
                 precheck_timeout: float = DEFAULT_PRECHECK_TIMEOUT,
                 sleep: Callable[[float], None] = time.sleep):
        self.model_manager = model_manager
        self.image_cache = image_cache
        self.max_retries = max(0, int(max_retries))
        self.retry_base_delay = retry_base_delay
        self.precheck = precheck
        self.precheck_timeout = precheck_timeout
        self.sleep = sleep

    def extract(self, image_ref: Union[str, bytes]) -> np.ndarray:
        """
        Get the embedding for an image reference.

        Args:
            image_ref: http(s) URL, data URI, or raw image bytes

        Returns:
            Read-only float32 embedding

        Raises:
            InvalidImageReferenceError: Bad reference (not retried)
            ImageInaccessibleError / ImageFormatUnsupportedError /
            ExtractionExhaustedError: After retries are exhausted
            VectorLengthMismatchError: Backend output has the wrong length
            ModelInitializationError: The model could not be loaded
        """
        if isinstance(image_ref, (bytes, bytearray)):
            image_ref = bytes_to_data_uri(bytes(image_ref))

        if not image_ref or not isinstance(image_ref, str):
            raise InvalidImageReferenceError('Invalid image URL provided')

        cache_key = image_cache_key(image_ref)
        cached = self.image_cache.get(cache_key)
        if cached is not None:
            logger.debug(f"[EXTRACT] Using cached features for: {describe_reference(image_ref)}")
            return cached

        validate_image_reference(image_ref)

        # One backend call per key; concurrent callers wait and then hit the cache
        with self.image_cache.key_lock(cache_key):
            if self.image_cache.has(cache_key):
                return self.image_cache.get(cache_key)

            if is_http_url(image_ref) and self.precheck is not None:
                self._run_precheck(image_ref)

            embedding = self._extract_with_retry(image_ref)
            return self.image_cache.put(cache_key, embedding)

    def _run_precheck(self, url: str) -> None:
        try:
            ok, reason = self.precheck(url, self.precheck_timeout)
        except Exception as e:
            ok, reason = False, str(e)

        if not ok:
            # Advisory only - some servers reject HEAD for valid images
            logger.warning(f"[EXTRACT] Failed to validate image URL {url}: {reason}. Continuing anyway")

    def _extract_with_retry(self, image_ref: str) -> np.ndarray:
        attempts = self.max_retries + 1
        label = describe_reference(image_ref)
        last_error = None

        for attempt in range(1, attempts + 1):
            try:
                backend = self.model_manager.ensure_ready()
                logger.info(f"[EXTRACT] Extracting features from image: {label}")
                raw = backend.extract(image_ref)
                return self._validate_output(raw, backend)
            except (ModelInitializationError, VectorLengthMismatchError, InvalidImageReferenceError):
                raise
            except Exception as e:
                last_error = e
                logger.warning(f"[EXTRACT] Image processing attempt {attempt}/{attempts} failed for {label}: {e}")

            if attempt < attempts:
                self.sleep(attempt * self.retry_base_delay)

        error = classify_extraction_error(last_error, attempts)
        logger.error(f"[EXTRACT] Giving up on {label}: {error.message}")
        if error is last_error:
            raise error
        raise error from last_error

    def _validate_output(self, raw, backend) -> np.ndarray:
        try:
            vector, invalid_count = validate_embedding(raw, getattr(backend, 'dim', None))
        except InvalidFeatureError as e:
            raise ImageProcessingFailedError(f'AI model returned invalid output: {e.message}')

        if invalid_count:
            logger.warning(f"[EXTRACT] Found {invalid_count} invalid feature values")

        logger.info(f"[EXTRACT] Extracted {vector.size} features from image")
        return vector
