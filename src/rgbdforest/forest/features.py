"""Depth-normalised point-pair features.

A feature compares two pixels around the query pixel::

    value = I[c1](p + o1 / d(p)) - I[c2](p + o2 / d(p))

where ``d(p)`` is the depth at the query pixel, so offsets shrink for
distant surfaces. Color features read two color channels, depth features
read the depth channel twice. Offsets are clamped to the image border. A
query pixel without depth yields NaN, which never satisfies a threshold
test and therefore always goes right.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import torch

from rgbdforest.forest.configuration import FEATURE_TYPES, TrainingConfiguration

DEPTH_CHANNEL = 3


@dataclass
class ImageFeatures:
    """A batch of features stored column-wise."""

    kinds: torch.Tensor  # (F,) int64, index into FEATURE_TYPES
    offsets: torch.Tensor  # (F, 4) float32: dy1, dx1, dy2, dx2
    channels: torch.Tensor  # (F, 2) int64

    def __len__(self) -> int:
        return self.kinds.shape[0]

    def to(self, device: torch.device | str) -> "ImageFeatures":
        return ImageFeatures(
            self.kinds.to(device), self.offsets.to(device), self.channels.to(device)
        )

    def __getitem__(self, index: int) -> "ImageFeatures":
        return ImageFeatures(
            self.kinds[index : index + 1],
            self.offsets[index : index + 1],
            self.channels[index : index + 1],
        )


def sample_features(
    rng: np.random.Generator,
    count: int,
    configuration: TrainingConfiguration,
) -> ImageFeatures:
    """Draw random candidate features for one node."""
    allowed = [FEATURE_TYPES.index(t) for t in configuration.feature_types]
    kinds = rng.choice(allowed, size=count)

    radius = configuration.box_radius
    offsets = rng.integers(-radius, radius + 1, size=(count, 4)).astype(np.float32)

    channels = rng.integers(0, 3, size=(count, 2))
    channels[kinds == FEATURE_TYPES.index("depth")] = DEPTH_CHANNEL

    return ImageFeatures(
        torch.from_numpy(kinds.astype(np.int64)),
        torch.from_numpy(offsets),
        torch.from_numpy(channels.astype(np.int64)),
    )


def evaluate_pairs(
    image: torch.Tensor,
    ys: torch.Tensor,
    xs: torch.Tensor,
    offsets: torch.Tensor,
    channels: torch.Tensor,
    use_depth: bool,
) -> torch.Tensor:
    """Evaluate features at query pixels.

    Args:
        image: (4, H, W) tensor from ``RGBDImage.to_tensor``
        ys: Query rows, int64, any shape S
        xs: Query columns, same shape as ``ys``
        offsets: (..., 4) offsets broadcastable against S
        channels: (..., 2) channels broadcastable against S
        use_depth: Scale offsets by the query pixel depth

    Returns:
        Float tensor of the broadcast shape of S and the feature batch
    """
    height, width = image.shape[1], image.shape[2]
    ys_f = ys.to(image.dtype)
    xs_f = xs.to(image.dtype)

    if use_depth:
        depth = image[DEPTH_CHANNEL, ys, xs]
        scale = 1.0 / depth
    else:
        depth = None
        scale = torch.ones_like(ys_f)

    def read(dy: torch.Tensor, dx: torch.Tensor, channel: torch.Tensor) -> torch.Tensor:
        y = torch.nan_to_num(ys_f + dy * scale, nan=0.0)
        x = torch.nan_to_num(xs_f + dx * scale, nan=0.0)
        y = y.round().clamp(0, height - 1).long()
        x = x.round().clamp(0, width - 1).long()
        channel, y, x = torch.broadcast_tensors(channel, y, x)
        return image[channel, y, x]

    value = read(offsets[..., 0], offsets[..., 1], channels[..., 0]) - read(
        offsets[..., 2], offsets[..., 3], channels[..., 1]
    )

    if depth is not None:
        invalid = torch.isnan(depth).expand_as(value)
        value = value.masked_fill(invalid, float("nan"))
    return value


def evaluate_batch(
    features: ImageFeatures,
    image: torch.Tensor,
    ys: torch.Tensor,
    xs: torch.Tensor,
    use_depth: bool,
) -> torch.Tensor:
    """Evaluate every feature of a batch on every query pixel.

    Returns:
        (F, N) tensor of feature responses
    """
    return evaluate_pairs(
        image,
        ys[None, :],
        xs[None, :],
        features.offsets[:, None, :],
        features.channels[:, None, :],
        use_depth,
    )
