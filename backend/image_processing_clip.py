"""
CLIP model backend for visual product matching.

This module provides the default ModelBackend used by the similarity engine:
a sentence-transformers CLIP model that turns an image reference (http(s)
URL or data URI) into a fixed-length embedding.

Key Features:
- 512-dimensional embeddings from clip-ViT-B-32 (768 for ViT-L-14)
- GPU acceleration (CUDA, ROCm, MPS) with CPU fallback per image
- Ordered model configurations so the ModelManager can fall through
  from an accelerated load to smaller / CPU-only variants
- JSON configuration stored next to the model cache

Requirements: PyTorch, sentence-transformers, Pillow
"""

import numpy as np
import os
import logging
from typing import Optional, List, Dict, Any
from pathlib import Path
import json
import threading

# Try to import PyTorch and related libraries
try:
    import torch
    from sentence_transformers import SentenceTransformer
    TORCH_AVAILABLE = True
except ImportError:
    TORCH_AVAILABLE = False
    torch = None
    SentenceTransformer = None

from image_processing import ImageProcessingError, load_image, DEFAULT_FETCH_TIMEOUT

# Configure logging
logger = logging.getLogger(__name__)

# Suppress transformers warnings about slow image processor
# This warning is informational and doesn't affect functionality
import warnings
warnings.filterwarnings('ignore', message='.*slow image processor.*')

# Available CLIP models
AVAILABLE_MODELS = {
    'clip-ViT-B-32': {
        'model_size_mb': 350,
        'embedding_dim': 512,
        'description': 'Base model, good balance of speed and accuracy',
        'recommended': True
    },
    'clip-ViT-B-16': {
        'model_size_mb': 350,
        'embedding_dim': 512,
        'description': 'Base model with higher resolution, slower but more accurate',
        'recommended': False
    },
    'clip-ViT-L-14': {
        'model_size_mb': 900,
        'embedding_dim': 768,
        'description': 'Large model, best accuracy but slower',
        'recommended': False
    }
}

# Tried in order until one loads: accelerated first, then plain CPU,
# then the alternative base model
DEFAULT_MODEL_CONFIGS = [
    {'model_name': 'clip-ViT-B-32', 'device': 'auto'},
    {'model_name': 'clip-ViT-B-32', 'device': 'cpu'},
    {'model_name': 'clip-ViT-B-16', 'device': 'cpu'},
]

DEFAULT_CONFIG = {
    'model_name': 'clip-ViT-B-32',
    'model_configs': DEFAULT_MODEL_CONFIGS,
    'load_timeout': 30.0,
    'max_retries': 2,
    'retry_base_delay': 1.0,
    'batch_size': 5,
    'batch_delay': 0.2,
    'precheck_remote': True,
    'precheck_timeout': 5.0,
    'fetch_timeout': DEFAULT_FETCH_TIMEOUT,
    'min_similarity': 0.1,
    'relaxed_similarity': 0.05
}


class CLIPModelError(ImageProcessingError):
    """Raised when CLIP model fails to load or process"""
    def __init__(self, message: str, suggestion: str = None):
        super().__init__(
            message,
            'CLIP_MODEL_ERROR',
            suggestion or 'Check that PyTorch and sentence-transformers are installed correctly.'
        )


def get_clip_cache_dir() -> Path:
    """Get the directory for caching CLIP models

    Returns:
        Path to cache directory (~/.cache/clip-models/)
    """
    cache_dir = Path.home() / '.cache' / 'clip-models'
    cache_dir.mkdir(parents=True, exist_ok=True)
    return cache_dir


def get_clip_config_file() -> Path:
    """Get the path to CLIP configuration file

    Returns:
        Path to config file (~/.cache/clip-models/config.json)
    """
    return get_clip_cache_dir() / 'config.json'


def load_clip_config() -> Dict[str, Any]:
    """Load engine configuration from file

    Returns:
        Configuration dictionary with default values if file doesn't exist
    """
    config_file = get_clip_config_file()

    if not config_file.exists():
        return dict(DEFAULT_CONFIG)

    try:
        with open(config_file, 'r') as f:
            config = json.load(f)

        if not isinstance(config, dict):
            raise ValueError('config file must contain a JSON object')

        # Merge with defaults
        return {**DEFAULT_CONFIG, **config}
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to load CLIP config: {e}, using defaults")
        return dict(DEFAULT_CONFIG)


def save_clip_config(config: Dict[str, Any]) -> None:
    """Save engine configuration to file

    Args:
        config: Configuration dictionary to save
    """
    config_file = get_clip_config_file()

    try:
        with open(config_file, 'w') as f:
            json.dump(config, f, indent=2)
        logger.info(f"CLIP config saved to {config_file}")
    except OSError as e:
        logger.error(f"Failed to save CLIP config: {e}")
        raise


def detect_device() -> str:
    """Detect best available device for CLIP processing

    Priority: CUDA (NVIDIA / AMD ROCm) > MPS (Apple Silicon) > CPU

    Environment Variables:
        FORCE_GPU_DEVICE: Override GPU selection (e.g., 'cuda:0', 'cpu')

    Returns:
        Device string: 'cuda', 'cuda:N', 'mps', or 'cpu'

    Raises:
        CLIPModelError: If PyTorch is not available
    """
    if not TORCH_AVAILABLE:
        raise CLIPModelError(
            "PyTorch is not installed",
            "Install PyTorch: pip install torch"
        )

    force_device = os.environ.get('FORCE_GPU_DEVICE', '').strip()
    if force_device:
        logger.warning(f"FORCE_GPU_DEVICE set to '{force_device}' - overriding automatic detection")
        if force_device == 'cpu':
            return 'cpu'
        if force_device.startswith('cuda') and torch.cuda.is_available():
            try:
                device_idx = int(force_device.split(':')[1]) if ':' in force_device else 0
            except ValueError:
                device_idx = -1
            if 0 <= device_idx < torch.cuda.device_count():
                return force_device
            logger.error(f"Invalid FORCE_GPU_DEVICE '{force_device}', falling back to auto-detection")
        else:
            logger.error("CUDA not available, ignoring FORCE_GPU_DEVICE")

    if torch.cuda.is_available():
        gpu_name = torch.cuda.get_device_name(0)
        logger.info(f"GPU detected: {gpu_name}")
        return 'cuda'

    if hasattr(torch.backends, 'mps') and torch.backends.mps.is_available():
        logger.info("Apple Silicon GPU detected (MPS)")
        return 'mps'

    logger.info("No GPU detected, using CPU")
    return 'cpu'


def is_clip_available() -> bool:
    """Check if CLIP dependencies are installed"""
    return TORCH_AVAILABLE


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# Settings that may be changed through update_clip_config()
_CONFIG_VALIDATORS = {
    'model_name': lambda v: isinstance(v, str) and v in AVAILABLE_MODELS,
    'load_timeout': lambda v: _is_number(v) and v > 0,
    'max_retries': lambda v: isinstance(v, int) and not isinstance(v, bool) and v >= 0,
    'retry_base_delay': lambda v: _is_number(v) and v >= 0,
    'batch_size': lambda v: isinstance(v, int) and not isinstance(v, bool) and v >= 1,
    'batch_delay': lambda v: _is_number(v) and v >= 0,
    'precheck_remote': lambda v: isinstance(v, bool),
    'precheck_timeout': lambda v: _is_number(v) and v > 0,
    'fetch_timeout': lambda v: _is_number(v) and v > 0,
    'min_similarity': lambda v: _is_number(v) and 0 <= v <= 1,
    'relaxed_similarity': lambda v: _is_number(v) and 0 <= v <= 1,
}


def update_clip_config(updates: Dict[str, Any]) -> Dict[str, Any]:
    """Validate, merge and save configuration changes

    Args:
        updates: Subset of configurable settings

    Returns:
        The full saved configuration

    Raises:
        ValueError: On unknown keys or invalid values
    """
    for key, value in updates.items():
        validator = _CONFIG_VALIDATORS.get(key)
        if validator is None:
            raise ValueError(f"Unknown configuration key: {key}")
        if not validator(value):
            raise ValueError(f"Invalid value for {key}: {value!r}")

    config = load_clip_config()
    config.update(updates)
    save_clip_config(config)
    return config


class ClipBackend:
    """
    Loaded CLIP model bound to a device.

    extract() accepts a data URI or http(s) URL and returns a normalized
    float32 embedding of length `dim`.

    The model is shared by every extraction thread. Encodes on the model's
    device run concurrently; moving the model to CPU after a GPU error waits
    until no encode is in flight and blocks new ones until it is moved back.
    """

    def __init__(self, model, device: str, model_name: str, dim: int,
                 fetch_timeout: float = DEFAULT_FETCH_TIMEOUT):
        self.model = model
        self.device = device
        self.model_name = model_name
        self.dim = dim
        self.fetch_timeout = fetch_timeout
        self._device_cond = threading.Condition()
        self._active_encodes = 0
        self._moving = False

    def _encode(self, model, pil_image):
        with torch.no_grad():
            return model.encode(
                pil_image,
                convert_to_numpy=True,
                show_progress_bar=False,
                normalize_embeddings=True
            )

    def _encode_shared(self, pil_image):
        with self._device_cond:
            while self._moving:
                self._device_cond.wait()
            self._active_encodes += 1
        try:
            return self._encode(self.model, pil_image)
        finally:
            with self._device_cond:
                self._active_encodes -= 1
                self._device_cond.notify_all()

    def _encode_on_cpu(self, pil_image):
        with self._device_cond:
            while self._moving or self._active_encodes:
                self._device_cond.wait()
            self._moving = True
        try:
            model_cpu = self.model.to('cpu')
            try:
                return self._encode(model_cpu, pil_image)
            finally:
                self.model.to(self.device)
        finally:
            with self._device_cond:
                self._moving = False
                self._device_cond.notify_all()

    def extract(self, image_ref: str) -> np.ndarray:
        pil_image = load_image(image_ref, timeout=self.fetch_timeout)

        try:
            embedding = self._encode_shared(pil_image)
        except RuntimeError as gpu_error:
            # GPU runtime error (OOM, CUDA error, etc.) - retry this image on CPU
            error_str = str(gpu_error).lower()
            if self.device == 'cpu' or not any(k in error_str for k in ['cuda', 'gpu', 'out of memory', 'device']):
                raise
            logger.warning(f"GPU inference failed: {gpu_error}, falling back to CPU for this image")
            embedding = self._encode_on_cpu(pil_image)

        return np.ascontiguousarray(embedding, dtype=np.float32).ravel()


def load_clip_backend(config: Dict[str, Any]) -> ClipBackend:
    """Load a CLIP model for one configuration

    Downloads the model on first use (~350MB one-time download).

    Args:
        config: Model configuration with 'model_name' and 'device'
                ('auto' runs device detection)

    Returns:
        ClipBackend ready for extraction

    Raises:
        CLIPModelError: If dependencies are missing
        Exception: Whatever sentence-transformers / torch raise on failure
            (the ModelManager classifies these)
    """
    if not TORCH_AVAILABLE:
        raise CLIPModelError(
            "PyTorch and sentence-transformers are not installed",
            "Install dependencies: pip install torch sentence-transformers"
        )

    model_name = config.get('model_name', 'clip-ViT-B-32')
    device = config.get('device', 'auto')
    if device == 'auto':
        device = detect_device()

    os.environ['SENTENCE_TRANSFORMERS_HOME'] = str(get_clip_cache_dir())

    model_info = AVAILABLE_MODELS.get(model_name, {})
    logger.info(f"Loading CLIP model {model_name} on {device} (~{model_info.get('model_size_mb', 350)} MB)")

    model = SentenceTransformer(model_name)
    model = model.to(device)

    dim = model_info.get('embedding_dim') or model.get_sentence_embedding_dimension()
    logger.info(f"CLIP model loaded successfully: {model_name} on {device} ({dim} dimensions)")

    return ClipBackend(
        model,
        device,
        model_name,
        dim,
        fetch_timeout=config.get('fetch_timeout', DEFAULT_FETCH_TIMEOUT)
    )


def build_model_configs(config: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Ordered model configurations from engine config

    The preferred 'model_name' from the config file is tried first on
    every configured device before the remaining fallbacks.
    """
    configs = [dict(c) for c in (config.get('model_configs') or DEFAULT_MODEL_CONFIGS)]
    preferred = config.get('model_name')
    if preferred and preferred in AVAILABLE_MODELS:
        configs.sort(key=lambda c: 0 if c.get('model_name') == preferred else 1)
    fetch_timeout = config.get('fetch_timeout')
    if fetch_timeout is not None:
        for c in configs:
            c.setdefault('fetch_timeout', fetch_timeout)
    return configs


def get_model_info(model_name: Optional[str] = None) -> Dict[str, Any]:
    """Static information about a CLIP model"""
    config = load_clip_config()
    model_name = model_name or config.get('model_name', 'clip-ViT-B-32')
    return {
        'model_name': model_name,
        'clip_available': TORCH_AVAILABLE,
        **AVAILABLE_MODELS.get(model_name, {}),
        'available_models': list(AVAILABLE_MODELS.keys())
    }
