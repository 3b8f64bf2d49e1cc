"""
Model lifecycle management.

The ModelManager owns the feature-extraction backend for the whole engine:

- Tries an ordered list of model configurations, falling through to the
  next one when a load fails
- Bounds the whole sequential attempt with a single load timeout
- Single-flight initialization: callers that arrive while a load is in
  progress wait on the same attempt instead of starting their own
- Classifies failures (timeout / network / memory / exhausted) so callers
  can switch to degraded mode with a meaningful message

State machine:
    UNLOADED -> LOADING -> READY | FAILED
    FAILED -> LOADING      (ensure_ready() called again)
    READY -> LOADING       (reload())
"""

import logging
import threading
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_LOAD_TIMEOUT = 30.0

_NETWORK_KEYWORDS = ('network', 'fetch', 'connection', 'download', 'http', 'ssl', 'cors', 'cross-origin')
_MEMORY_KEYWORDS = ('out of memory', 'memory', 'oom')


class ModelState(Enum):
    UNLOADED = 'unloaded'
    LOADING = 'loading'
    READY = 'ready'
    FAILED = 'failed'


class ModelInitializationError(Exception):
    """Base exception for model initialization errors"""
    def __init__(self, message: str, error_code: str, suggestion: str = None,
                 failures: Optional[List[Dict[str, str]]] = None):
        self.message = message
        self.error_code = error_code
        self.suggestion = suggestion
        self.failures = failures or []
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to dictionary for API responses"""
        result = {
            'error': self.message,
            'error_code': self.error_code,
            'suggestion': self.suggestion
        }
        if self.failures:
            result['failures'] = self.failures
        return result


class InitializationTimeoutError(ModelInitializationError):
    """Raised when the model does not load within the time budget"""
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(
            f'AI model initialization timed out after {timeout:g} seconds.',
            'INIT_TIMEOUT',
            'Please check your internet connection and try again.'
        )


class InitializationNetworkError(ModelInitializationError):
    """Raised when every configuration failed on network errors"""
    def __init__(self, message: str = None, failures=None):
        super().__init__(
            message or 'Network error during AI model loading.',
            'INIT_NETWORK',
            'Please check your internet connection.',
            failures
        )


class InitializationMemoryError(ModelInitializationError):
    """Raised when every configuration failed for lack of memory"""
    def __init__(self, message: str = None, failures=None):
        super().__init__(
            message or 'Insufficient memory to load AI model.',
            'INIT_MEMORY',
            'Please close other applications and try again.',
            failures
        )


class InitializationExhaustedError(ModelInitializationError):
    """Raised when all model configurations failed to initialize"""
    def __init__(self, message: str = None, failures=None):
        super().__init__(
            message or 'All model configurations failed to initialize.',
            'INIT_EXHAUSTED',
            'Check that PyTorch and sentence-transformers are installed and try again.',
            failures
        )


def classify_initialization_failure(error: Exception) -> Optional[str]:
    """Return 'network', 'memory' or None for a single load failure"""
    if isinstance(error, MemoryError):
        return 'memory'
    if isinstance(error, (ConnectionError, TimeoutError)):
        return 'network'

    message = str(error).lower()
    if any(keyword in message for keyword in _MEMORY_KEYWORDS):
        return 'memory'
    if any(keyword in message for keyword in _NETWORK_KEYWORDS):
        return 'network'
    return None


def build_initialization_error(failures: List[Dict[str, str]]) -> ModelInitializationError:
    """
    Pick the error for a fully failed attempt.

    Network or memory is reported only when every configuration failed the
    same way; mixed failures mean the configurations are simply unusable.
    """
    kinds = {failure.get('kind') for failure in failures}
    summary = '; '.join(f"{f['config']}: {f['error']}" for f in failures)

    if failures and kinds == {'network'}:
        return InitializationNetworkError(f'Network error during AI model loading ({summary})', failures)
    if failures and kinds == {'memory'}:
        return InitializationMemoryError(f'Insufficient memory to load AI model ({summary})', failures)
    return InitializationExhaustedError(
        f'All model configurations failed to initialize ({summary})' if failures else None,
        failures
    )


def _describe(config: Dict[str, Any]) -> str:
    return f"{config.get('model_name', 'unknown')} ({config.get('device', 'auto')})"


class ModelManager:
    """
    Owns backend selection, load timeout and single-flight initialization.

    Args:
        model_configs: Ordered configurations passed one by one to `loader`
        loader: Callable(config) -> backend. Defaults to the CLIP loader.
        load_timeout: Seconds allowed for the whole sequential attempt
    """

    def __init__(self, model_configs: Optional[List[Dict[str, Any]]] = None,
                 loader: Optional[Callable[[Dict[str, Any]], Any]] = None,
                 load_timeout: float = DEFAULT_LOAD_TIMEOUT):
        if model_configs is None or loader is None:
            from image_processing_clip import DEFAULT_MODEL_CONFIGS, load_clip_backend
            if model_configs is None:
                model_configs = DEFAULT_MODEL_CONFIGS
            if loader is None:
                loader = load_clip_backend

        self.model_configs = [dict(c) for c in model_configs]
        if not self.model_configs:
            raise ValueError('At least one model configuration is required')

        self.loader = loader
        self.load_timeout = load_timeout

        self._lock = threading.Lock()
        self._state = ModelState.UNLOADED
        self._backend = None
        self._active_config = None
        self._last_error = None
        self._pending = None
        self._generation = 0
        self._load_count = 0

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def backend(self):
        return self._backend

    @property
    def embedding_dim(self) -> Optional[int]:
        return getattr(self._backend, 'dim', None)

    def is_ready(self) -> bool:
        return self._state is ModelState.READY and self._backend is not None

    def ensure_ready(self):
        """
        Return the loaded backend, loading it first if needed.

        Raises:
            ModelInitializationError subclass if the shared attempt failed
        """
        return self._acquire(force=False)

    def reload(self):
        """Discard the current backend and load again"""
        return self._acquire(force=True)

    def reset(self) -> None:
        """Drop the backend and return to UNLOADED"""
        with self._lock:
            self._generation += 1
            self._state = ModelState.UNLOADED
            self._backend = None
            self._active_config = None
            self._last_error = None
            self._pending = None
        logger.info("[MODEL-INIT] Model manager reset")

    def _acquire(self, force: bool):
        with self._lock:
            if not force and self.is_ready():
                return self._backend

            pending = self._pending
            is_owner = pending is None
            if is_owner:
                if force:
                    self._backend = None
                    self._active_config = None
                pending = Future()
                self._pending = pending
                self._state = ModelState.LOADING
                self._load_count += 1
                generation = self._generation

        if is_owner:
            self._initialize(pending, generation)

        return pending.result()

    def _initialize(self, pending: Future, generation: int) -> None:
        cancelled = threading.Event()
        attempt = Future()
        worker = threading.Thread(
            target=self._load_sequential,
            args=(attempt, cancelled),
            name='model-loader',
            daemon=True
        )

        logger.info(
            f"[MODEL-INIT] Initializing model ({len(self.model_configs)} configurations, "
            f"timeout {self.load_timeout:g}s)"
        )
        worker.start()

        backend = None
        config = None
        error = None
        try:
            backend, config = attempt.result(timeout=self.load_timeout)
        except FutureTimeoutError:
            # Abandon the worker; it stops before the next configuration
            cancelled.set()
            error = InitializationTimeoutError(self.load_timeout)
        except ModelInitializationError as e:
            error = e
        except Exception as e:
            error = InitializationExhaustedError(f'AI model initialization failed: {e}')

        with self._lock:
            if generation == self._generation:
                self._pending = None
                if error is None:
                    self._state = ModelState.READY
                    self._backend = backend
                    self._active_config = config
                    self._last_error = None
                else:
                    self._state = ModelState.FAILED
                    self._backend = None
                    self._active_config = None
                    self._last_error = error

        if error is None:
            logger.info(f"[MODEL-INIT] Model ready: {_describe(config)}")
            pending.set_result(backend)
        else:
            logger.error(f"[MODEL-INIT] Failed to initialize model: {error.message}")
            pending.set_exception(error)

    def _load_sequential(self, attempt: Future, cancelled: threading.Event) -> None:
        failures = []
        for config in self.model_configs:
            if cancelled.is_set():
                logger.warning("[MODEL-INIT] Load attempt abandoned after timeout")
                return

            label = _describe(config)
            logger.info(f"[MODEL-INIT] Trying {label}")
            try:
                backend = self.loader(dict(config))
            except Exception as e:
                logger.warning(f"[MODEL-INIT] Failed to initialize with {label}: {e}")
                failures.append({
                    'config': label,
                    'error': str(e),
                    'kind': classify_initialization_failure(e)
                })
                continue

            if cancelled.is_set():
                logger.warning(f"[MODEL-INIT] {label} loaded after timeout, discarding")
                return

            attempt.set_result((backend, config))
            return

        attempt.set_exception(build_initialization_error(failures))

    def status(self) -> Dict[str, Any]:
        """Snapshot of the model state for status endpoints"""
        with self._lock:
            config = self._active_config or {}
            backend = self._backend
            return {
                'state': self._state.value,
                'ready': self._state is ModelState.READY and backend is not None,
                'model_name': getattr(backend, 'model_name', config.get('model_name')),
                'device': getattr(backend, 'device', config.get('device')),
                'embedding_dim': getattr(backend, 'dim', None),
                'load_timeout': self.load_timeout,
                'load_attempts': self._load_count,
                'configurations': [_describe(c) for c in self.model_configs],
                'last_error': self._last_error.to_dict() if self._last_error else None
            }
