"""Seeded train/test partitioning of labeled image sets."""

from __future__ import annotations

import math
from typing import Sequence, TypeVar

import numpy as np
from loguru import logger
from sklearn.model_selection import train_test_split

from rgbdforest.errors import ConfigurationError

T = TypeVar("T")


def split_test_count(total: int, test_ratio: float) -> int:
    """Number of test items for a split, rounded and kept in [1, total - 1]."""
    count = math.floor(test_ratio * total + 0.5)
    return min(max(count, 1), total - 1)


def random_split(
    images: Sequence[T],
    seed: int,
    test_ratio: float,
) -> tuple[list[T], list[T]]:
    """Partition images into disjoint train and test subsets.

    The shuffle is keyed by ``seed`` only, so the same seed and input order
    always give the same split. Every image lands in exactly one subset.

    Args:
        images: Images to split (at least two)
        seed: Random seed of the shuffle
        test_ratio: Fraction of images (by count) that goes to test, in (0, 1)

    Returns:
        Tuple of (train_images, test_images)
    """
    if not 0.0 < test_ratio < 1.0:
        raise ConfigurationError(f"test_ratio must be in (0, 1), got {test_ratio}")
    if len(images) < 2:
        raise ConfigurationError(
            f"Need at least two images to split, got {len(images)}"
        )

    indices = np.arange(len(images))
    n_test = split_test_count(len(images), test_ratio)
    train_indices, test_indices = train_test_split(
        indices,
        test_size=n_test,
        random_state=seed,
        shuffle=True,
    )

    train = [images[i] for i in train_indices]
    test = [images[i] for i in test_indices]
    logger.debug(f"Split {len(images)} images (seed={seed}): {len(train)} train, {len(test)} test")
    return train, test
