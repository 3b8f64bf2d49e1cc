"""
Shared fixtures: fake model backend, recording loader and a ready-to-use engine.

Nothing here downloads a model or touches the network.
"""

import hashlib
import os
import sys
import threading

import numpy as np
import pytest

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from product_matching import MatchingEngine, set_engine


class FakeBackend:
    """Deterministic stand-in for the CLIP backend"""

    def __init__(self, dim=8, model_name='fake-clip', device='cpu'):
        self.dim = dim
        self.model_name = model_name
        self.device = device
        self.calls = []
        self.vectors = {}
        self.failures = {}
        self.delay_event = None
        self._lock = threading.Lock()

    def fail(self, image_ref, message, times=-1):
        """Make extract() raise RuntimeError(message) for image_ref (-1 = always)"""
        self.failures[image_ref] = [times, message]

    def call_count(self, image_ref=None):
        with self._lock:
            if image_ref is None:
                return len(self.calls)
            return sum(1 for ref in self.calls if ref == image_ref)

    def extract(self, image_ref):
        with self._lock:
            self.calls.append(image_ref)
            failure = self.failures.get(image_ref)
            if failure is not None and failure[0] != 0:
                if failure[0] > 0:
                    failure[0] -= 1
                raise RuntimeError(failure[1])

        if self.delay_event is not None:
            self.delay_event.wait(5)

        if image_ref in self.vectors:
            return list(self.vectors[image_ref])

        seed = int.from_bytes(hashlib.sha256(image_ref.encode('utf-8')).digest()[:8], 'big')
        return np.random.default_rng(seed).normal(size=self.dim).tolist()


class RecordingLoader:
    """Model loader that records which configurations were tried"""

    def __init__(self, backend=None):
        self.backend = backend or FakeBackend()
        self.attempts = []
        self.failures = {}
        self.block = None
        self._lock = threading.Lock()

    def fail(self, model_name, message):
        self.failures[model_name] = message

    def __call__(self, config):
        with self._lock:
            self.attempts.append(config['model_name'])

        if self.block is not None:
            self.block.wait(10)

        message = self.failures.get(config['model_name'])
        if message is not None:
            raise RuntimeError(message)

        self.backend.model_name = config['model_name']
        self.backend.device = config.get('device', 'cpu')
        return self.backend


class SleepRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


MODEL_CONFIGS = [
    {'model_name': 'fake-primary', 'device': 'auto'},
    {'model_name': 'fake-primary', 'device': 'cpu'},
    {'model_name': 'fake-secondary', 'device': 'cpu'},
]


def make_engine_config(**overrides):
    config = {
        'model_name': 'fake-primary',
        'model_configs': MODEL_CONFIGS,
        'load_timeout': 5.0,
        'max_retries': 2,
        'retry_base_delay': 0.01,
        'batch_size': 5,
        'batch_delay': 0.2,
        'precheck_remote': False,
        'precheck_timeout': 1.0,
        'min_similarity': 0.1,
        'relaxed_similarity': 0.05
    }
    config.update(overrides)
    return config


def make_catalog(count=12):
    categories = ['Footwear', 'Clothing', 'Accessories', 'Electronics', 'Home']
    return [
        {
            'id': i,
            'name': f'Product {i}',
            'category': categories[(i - 1) % len(categories)],
            'price': f'${10 + i}.99',
            'image_url': f'https://images.example.com/product-{i}.jpg'
        }
        for i in range(1, count + 1)
    ]


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def loader(fake_backend):
    return RecordingLoader(fake_backend)


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def catalog():
    return make_catalog()


@pytest.fixture
def engine(loader, sleep_recorder):
    return MatchingEngine(make_engine_config(), loader=loader, sleep=sleep_recorder)


@pytest.fixture
def client(engine, catalog):
    from app import app

    app.config['TESTING'] = True
    app.config['CATALOG'] = catalog
    set_engine(engine)
    try:
        yield app.test_client()
    finally:
        set_engine(None)
        app.config['CATALOG'] = None


@pytest.fixture
def model_configs():
    return [dict(c) for c in MODEL_CONFIGS]


@pytest.fixture
def engine_factory(loader, sleep_recorder):
    """Build an engine with config overrides, sharing the loader and sleep recorder"""
    def factory(**overrides):
        return MatchingEngine(make_engine_config(**overrides), loader=loader, sleep=sleep_recorder)
    return factory


@pytest.fixture
def catalog_factory():
    return make_catalog
