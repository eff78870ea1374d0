"""Shared fixtures: small synthetic RGB-D scenes with a learnable labeling."""

import numpy as np
import pytest

from rgbdforest.data.image import LabeledRGBDImage, RGBDImage
from rgbdforest.forest import AccelerationMode, SubsamplingType, TrainingConfiguration


def make_scene(seed: int, size: int = 16, num_labels: int = 2) -> LabeledRGBDImage:
    """Rectangle of label 1 (reddish) on a label 0 (bluish) background.

    With three labels a second rectangle of label 2 (greenish) is added.
    """
    rng = np.random.default_rng(seed)
    labels = np.zeros((size, size), dtype=np.int32)

    y0, x0 = rng.integers(1, size // 2, size=2)
    h, w = rng.integers(size // 4, size // 2, size=2)
    labels[y0 : y0 + h, x0 : x0 + w] = 1
    if num_labels > 2:
        y1, x1 = rng.integers(size // 2, size - 4, size=2)
        labels[y1 : y1 + 3, x1 : x1 + 3] = 2

    palette = np.array([[20, 40, 200], [200, 40, 20], [30, 210, 40]], dtype=np.float32)
    color = palette[labels] + rng.normal(0.0, 5.0, size=(size, size, 3)).astype(np.float32)
    depth = np.full((size, size), 1.5, dtype=np.float32)
    return LabeledRGBDImage(RGBDImage(color, depth), labels, name=f"scene_{seed}")


@pytest.fixture
def scenes():
    """Eight two-class scenes."""
    return [make_scene(seed) for seed in range(8)]


@pytest.fixture
def configuration():
    """Fast CPU configuration for two classes."""
    return TrainingConfiguration(
        random_seed=42,
        samples_per_image=120,
        feature_count=30,
        min_sample_count=4,
        max_depth=6,
        box_radius=2,
        thresholds=10,
        num_labels=2,
        subsampling_type=SubsamplingType.PIXEL_UNIFORM,
        acceleration_mode=AccelerationMode.CPU_ONLY,
    )


@pytest.fixture
def task_fields():
    """Valid raw task fields, as they arrive from a queue."""
    return {
        "num_trees": 2,
        "test_ratio": 0.25,
        "samples_per_image": 100,
        "feature_count": 20,
        "min_sample_count": 4,
        "max_depth": 5,
        "box_radius": 2,
        "region_size": 4,
        "thresholds": 8,
        "histogram_bias": 0.0,
    }


@pytest.fixture
def scene_factory():
    """``make_scene`` for tests that need extra scenes."""
    return make_scene
