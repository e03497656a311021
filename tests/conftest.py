"""
Shared fixtures: a small configuration so the networks build and train in well
under a second on CPU, synthetic images carrying data URLs, and a context
backed by an in-memory key/value store.
"""

import itertools

import numpy as np
import pytest
from PIL import Image

from pet_identification.config import IdentificationConfig
from pet_identification.context import IdentificationContext
from pet_identification.image_sources import LoadedImage, image_to_data_url
from pet_identification.pair_store import add_training_pair
from pet_identification.storage import InMemoryKeyValueStore


@pytest.fixture
def config():
    return IdentificationConfig(
        image_size=16,
        feature_size=8,
        augment=False,
        epochs=2,
        batch_size=2,
        device='cpu',
        seed=0,
    )


@pytest.fixture
def store():
    return InMemoryKeyValueStore()


@pytest.fixture
def context(config, store):
    return IdentificationContext(config=config, store=store)


@pytest.fixture
def make_image():
    """Factory for noise images whose URL is a self-contained data URL."""
    def _make(seed: int = 0, size=(20, 24)) -> LoadedImage:
        rng = np.random.RandomState(seed)
        pixels = rng.randint(0, 256, size=(size[1], size[0], 3), dtype=np.uint8)
        image = Image.fromarray(pixels)
        return LoadedImage(image=image, url=image_to_data_url(image))
    return _make


@pytest.fixture
def add_pairs(context, make_image):
    """Add ``positive`` same-animal and ``negative`` different-animal pairs."""
    seeds = itertools.count(1000, 2)

    def _add(positive: int, negative: int):
        for label in [True] * positive + [False] * negative:
            seed = next(seeds)
            result = add_training_pair(context, [make_image(seed), make_image(seed + 1)], label)
            assert result.success, result.message
        return context.pairs.balance()

    return _add
