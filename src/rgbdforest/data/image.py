"""RGB-D image containers and loading.

Images are stored as ``.npz`` archives with ``color`` (H, W, 3), ``depth``
(H, W, metres) and, for labeled images, ``labels`` (H, W) arrays.
Depth values ``<= 0`` or NaN mark missing measurements.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import numpy as np
import torch
from loguru import logger
from scipy import ndimage

RGBColor = tuple[int, int, int]


def parse_color(value: str) -> RGBColor:
    """Parse an ``"r,g,b"`` string into an RGB tuple.

    Raises:
        ValueError: If the string does not hold three integers in [0, 255]
    """
    parts = [p.strip() for p in value.split(",")]
    if len(parts) != 3:
        raise ValueError(f"Color '{value}' must have the form 'r,g,b'")
    rgb = tuple(int(p) for p in parts)
    if any(c < 0 or c > 255 for c in rgb):
        raise ValueError(f"Color '{value}' has components outside [0, 255]")
    return rgb  # type: ignore[return-value]


def format_color(color: RGBColor) -> str:
    return ",".join(str(c) for c in color)


@dataclass(frozen=True, eq=False)
class RGBDImage:
    """Color image plus aligned depth map."""

    color: np.ndarray
    depth: np.ndarray

    def __post_init__(self) -> None:
        if self.color.ndim != 3 or self.color.shape[2] != 3:
            raise ValueError(f"Color must have shape (H, W, 3), got {self.color.shape}")
        if self.depth.shape != self.color.shape[:2]:
            raise ValueError(
                f"Depth shape {self.depth.shape} does not match color shape {self.color.shape[:2]}"
            )

    @property
    def height(self) -> int:
        return self.color.shape[0]

    @property
    def width(self) -> int:
        return self.color.shape[1]

    @property
    def shape(self) -> tuple[int, int]:
        return self.color.shape[:2]

    def valid_depth(self) -> np.ndarray:
        """Boolean mask of pixels with a depth measurement."""
        return np.isfinite(self.depth) & (self.depth > 0)

    def to_tensor(self, use_depth: bool = True, device: torch.device | str = "cpu") -> torch.Tensor:
        """Stack color and depth into a (4, H, W) float32 tensor.

        Missing depth becomes NaN. Without depth the depth channel is the
        constant 1.0, so depth-normalised offsets stay unscaled.
        """
        color = np.moveaxis(self.color.astype(np.float32), 2, 0)
        if use_depth:
            depth = np.where(self.valid_depth(), self.depth, np.nan).astype(np.float32)
        else:
            depth = np.ones(self.shape, dtype=np.float32)
        stacked = np.concatenate([color, depth[None]], axis=0)
        return torch.from_numpy(np.ascontiguousarray(stacked)).to(device)


@dataclass(frozen=True, eq=False)
class LabeledRGBDImage:
    """RGB-D image with per-pixel ground-truth labels."""

    image: RGBDImage
    labels: np.ndarray
    name: str = ""

    def __post_init__(self) -> None:
        if self.labels.shape != self.image.shape:
            raise ValueError(
                f"Label shape {self.labels.shape} does not match image shape {self.image.shape}"
            )

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    def label_counts(self, num_labels: int) -> np.ndarray:
        """Number of pixels per label (labels >= num_labels are dropped)."""
        flat = self.labels.ravel()
        flat = flat[(flat >= 0) & (flat < num_labels)]
        return np.bincount(flat, minlength=num_labels)


def convert_to_cielab(color: np.ndarray) -> np.ndarray:
    """Convert an 8-bit RGB image to CIELab."""
    from skimage.color import rgb2lab

    return rgb2lab(np.clip(color, 0, 255).astype(np.float64) / 255.0).astype(np.float32)


def fill_depth(depth: np.ndarray) -> np.ndarray:
    """Replace missing depth values by the nearest valid measurement."""
    invalid = ~(np.isfinite(depth) & (depth > 0))
    if not invalid.any() or invalid.all():
        return depth
    indices = ndimage.distance_transform_edt(
        invalid, return_distances=False, return_indices=True
    )
    return depth[tuple(indices)]


def load_labeled_image(
    path: str | Path,
    use_cielab: bool = False,
    use_depth_filling: bool = False,
) -> LabeledRGBDImage:
    """Load one labeled image archive."""
    path = Path(path)
    with np.load(path) as archive:
        color = archive["color"].astype(np.float32)
        depth = archive["depth"].astype(np.float32)
        labels = archive["labels"].astype(np.int32)

    if use_depth_filling:
        depth = fill_depth(depth)
    if use_cielab:
        color = convert_to_cielab(color)

    return LabeledRGBDImage(RGBDImage(color, depth), labels, name=path.stem)


def load_labeled_images(
    paths: Iterable[str | Path],
    max_images: int = 0,
    use_cielab: bool = False,
    use_depth_filling: bool = False,
) -> list[LabeledRGBDImage]:
    """Load labeled images, expanding directories to their ``*.npz`` files.

    Args:
        paths: Files or directories
        max_images: Stop after this many images (0 = no limit)
        use_cielab: Convert color to CIELab
        use_depth_filling: Fill missing depth values

    Returns:
        Images in sorted path order
    """
    files: list[Path] = []
    for p in paths:
        p = Path(p)
        if p.is_dir():
            files.extend(sorted(p.glob("*.npz")))
        else:
            files.append(p)

    if max_images > 0:
        files = files[:max_images]

    images = [load_labeled_image(f, use_cielab, use_depth_filling) for f in files]
    logger.info(f"Loaded {len(images)} labeled images")
    return images


def save_labeled_image(path: str | Path, image: LabeledRGBDImage) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(
        path,
        color=image.image.color,
        depth=image.image.depth,
        labels=image.labels,
    )
    return path


class TensorCache:
    """Thread-safe LRU cache of image tensors bounded by size in megabytes.

    Several trees trained on the same device share the uploaded images.
    A size of 0 disables caching.
    """

    def __init__(self, max_size_mb: int = 0) -> None:
        self.max_bytes = max_size_mb * 1024 * 1024
        self._entries: OrderedDict[tuple, torch.Tensor] = OrderedDict()
        self._bytes = 0
        self._lock = threading.Lock()

    def get(self, image: RGBDImage, use_depth: bool, device: torch.device) -> torch.Tensor:
        if self.max_bytes <= 0:
            return image.to_tensor(use_depth, device)

        key = (id(image), use_depth, str(device))
        with self._lock:
            tensor = self._entries.get(key)
            if tensor is not None:
                self._entries.move_to_end(key)
                return tensor

        tensor = image.to_tensor(use_depth, device)
        size = tensor.element_size() * tensor.nelement()
        with self._lock:
            self._entries[key] = tensor
            self._bytes += size
            while self._bytes > self.max_bytes and len(self._entries) > 1:
                _, evicted = self._entries.popitem(last=False)
                self._bytes -= evicted.element_size() * evicted.nelement()
        return tensor

    def __len__(self) -> int:
        return len(self._entries)
