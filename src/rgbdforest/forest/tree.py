"""A single random decision tree over RGB-D pixels."""

from __future__ import annotations

import json
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

import numpy as np
import torch
from loguru import logger

from rgbdforest.data.image import LabeledRGBDImage, RGBDImage, TensorCache
from rgbdforest.errors import ConfigurationError
from rgbdforest.forest.configuration import (
    FEATURE_TYPES,
    SubsamplingType,
    TrainingConfiguration,
)
from rgbdforest.forest.features import (
    ImageFeatures,
    evaluate_batch,
    evaluate_pairs,
    sample_features,
)

# Features evaluated together when scoring thresholds; bounds (chunk, T, N) masks
FEATURE_CHUNK = 16


def _entropy(counts: torch.Tensor) -> torch.Tensor:
    """Shannon entropy over the last axis of a count tensor."""
    total = counts.sum(dim=-1, keepdim=True)
    p = counts / total.clamp(min=1.0)
    return -(p * torch.log2(p.clamp(min=1e-12))).sum(dim=-1)


@dataclass
class _Samples:
    """Training pixels of one node."""

    image_index: np.ndarray
    ys: np.ndarray
    xs: np.ndarray
    labels: np.ndarray

    def __len__(self) -> int:
        return len(self.labels)

    def subset(self, mask: np.ndarray) -> "_Samples":
        return _Samples(self.image_index[mask], self.ys[mask], self.xs[mask], self.labels[mask])


@dataclass
class TreeNodes:
    """Compact array form of a tree used for prediction.

    Node 0 is the root. ``left[i] == -1`` marks a leaf; split nodes send a
    pixel left when its feature response is ``<= threshold``.
    """

    kinds: np.ndarray
    offsets: np.ndarray
    channels: np.ndarray
    thresholds: np.ndarray
    left: np.ndarray
    right: np.ndarray
    histograms: np.ndarray
    _device_cache: dict[str, dict[str, torch.Tensor]] = field(
        default_factory=dict, repr=False
    )

    @property
    def num_nodes(self) -> int:
        return len(self.left)

    @property
    def is_leaf(self) -> np.ndarray:
        return self.left < 0

    def _tensors(self, device: torch.device) -> dict[str, torch.Tensor]:
        key = str(device)
        if key not in self._device_cache:
            self._device_cache[key] = {
                "offsets": torch.as_tensor(self.offsets, dtype=torch.float32, device=device),
                "channels": torch.as_tensor(self.channels, dtype=torch.int64, device=device),
                "thresholds": torch.as_tensor(self.thresholds, dtype=torch.float32, device=device),
                "left": torch.as_tensor(self.left, dtype=torch.int64, device=device),
                "right": torch.as_tensor(self.right, dtype=torch.int64, device=device),
            }
        return self._device_cache[key]

    def traverse(self, image: torch.Tensor, use_depth: bool) -> torch.Tensor:
        """Route every pixel of ``image`` to its leaf.

        Returns:
            (H, W) int64 tensor of leaf node ids
        """
        t = self._tensors(image.device)
        height, width = image.shape[1], image.shape[2]
        ys, xs = torch.meshgrid(
            torch.arange(height, device=image.device),
            torch.arange(width, device=image.device),
            indexing="ij",
        )
        ys = ys.reshape(-1)
        xs = xs.reshape(-1)
        node = torch.zeros(height * width, dtype=torch.int64, device=image.device)

        while True:
            active = (t["left"][node] >= 0).nonzero(as_tuple=True)[0]
            if active.numel() == 0:
                break
            current = node[active]
            value = evaluate_pairs(
                image,
                ys[active],
                xs[active],
                t["offsets"][current],
                t["channels"][current],
                use_depth,
            )
            go_left = value <= t["thresholds"][current]
            node[active] = torch.where(go_left, t["left"][current], t["right"][current])

        return node.view(height, width)


class RandomTreeImage:
    """Random decision tree classifying RGB-D pixels.

    Leaves keep the raw class counts of the training pixels that reached
    them; ``histograms`` holds the normalised class distribution used for
    prediction.
    """

    def __init__(self, tree_id: int, configuration: TrainingConfiguration) -> None:
        self.tree_id = tree_id
        self.configuration = configuration
        self.nodes: TreeNodes | None = None
        self.leaf_counts: np.ndarray | None = None
        self.label_prior: np.ndarray | None = None
        self.histogram_bias = 0.0
        self.training_time = 0.0

    @property
    def is_trained(self) -> bool:
        return self.nodes is not None

    @property
    def num_nodes(self) -> int:
        return self.nodes.num_nodes if self.nodes is not None else 0

    @property
    def num_classes(self) -> int:
        return self.configuration.num_labels

    @property
    def seed(self) -> int:
        return self.configuration.random_seed + self.tree_id

    def depth(self) -> int:
        if self.nodes is None:
            return 0
        depths = np.zeros(self.num_nodes, dtype=np.int64)
        for i in range(self.num_nodes):
            if self.nodes.left[i] >= 0:
                depths[self.nodes.left[i]] = depths[i] + 1
                depths[self.nodes.right[i]] = depths[i] + 1
        return int(depths.max()) + 1

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def _draw_samples(
        self, images: Sequence[LabeledRGBDImage], rng: np.random.Generator
    ) -> _Samples:
        cfg = self.configuration
        ignored = np.array(sorted(cfg.ignored_labels), dtype=np.int64)
        parts = []

        for index, image in enumerate(images):
            labels = image.labels.ravel()
            usable = (labels >= 0) & (labels < cfg.num_labels) & ~np.isin(labels, ignored)
            if cfg.use_depth_images:
                usable &= image.image.valid_depth().ravel()
            candidates = np.flatnonzero(usable)
            if candidates.size == 0:
                continue

            if cfg.subsampling_type == SubsamplingType.CLASS_UNIFORM:
                classes = np.unique(labels[candidates])
                per_class = max(1, cfg.samples_per_image // len(classes))
                chosen = []
                for c in classes:
                    pool = candidates[labels[candidates] == c]
                    chosen.append(rng.choice(pool, size=min(per_class, pool.size), replace=False))
                picked = np.concatenate(chosen)
            else:
                size = min(cfg.samples_per_image, candidates.size)
                picked = rng.choice(candidates, size=size, replace=False)

            ys, xs = np.unravel_index(picked, image.labels.shape)
            parts.append((np.full(picked.size, index), ys, xs, labels[picked]))

        if not parts:
            return _Samples(*(np.empty(0, dtype=np.int64) for _ in range(4)))
        return _Samples(*(np.concatenate(p).astype(np.int64) for p in zip(*parts)))

    def _evaluate(
        self,
        features: ImageFeatures,
        tensors: list[torch.Tensor],
        samples: _Samples,
        device: torch.device,
    ) -> torch.Tensor:
        values = torch.empty(len(features), len(samples), device=device)
        for index in np.unique(samples.image_index):
            mask = samples.image_index == index
            columns = torch.as_tensor(np.flatnonzero(mask), device=device)
            values[:, columns] = evaluate_batch(
                features,
                tensors[index],
                torch.as_tensor(samples.ys[mask], device=device),
                torch.as_tensor(samples.xs[mask], device=device),
                self.configuration.use_depth_images,
            )
        return values

    def _find_split(
        self,
        samples: _Samples,
        tensors: list[torch.Tensor],
        rng: np.random.Generator,
        device: torch.device,
    ) -> tuple[ImageFeatures, float, np.ndarray] | None:
        """Best (feature, threshold, goes_left) by information gain, or None."""
        cfg = self.configuration
        features = sample_features(rng, cfg.feature_count, cfg).to(device)
        values = self._evaluate(features, tensors, samples, device)

        labels = torch.as_tensor(samples.labels, device=device)
        one_hot = torch.nn.functional.one_hot(labels, cfg.num_labels).float()
        total = one_hot.sum(dim=0)
        parent_entropy = _entropy(total)
        n = float(len(samples))

        # Thresholds are drawn from the observed responses of random samples
        picks = torch.as_tensor(
            rng.integers(0, len(samples), size=(len(features), cfg.thresholds)), device=device
        )
        thresholds = torch.gather(values, 1, picks)

        best_gain, best = 0.0, None
        for start in range(0, len(features), FEATURE_CHUNK):
            v = values[start : start + FEATURE_CHUNK]
            thr = thresholds[start : start + FEATURE_CHUNK]
            goes_left = (v[:, None, :] <= thr[:, :, None]).float()
            left = goes_left @ one_hot
            right = total - left
            n_left = left.sum(dim=-1)
            n_right = n - n_left
            gain = parent_entropy - (n_left * _entropy(left) + n_right * _entropy(right)) / n
            valid = (n_left > 0) & (n_right > 0) & ~torch.isnan(thr)
            gain = torch.where(valid, gain, torch.full_like(gain, -1.0))

            flat = int(torch.argmax(gain))
            chunk_gain = float(gain.view(-1)[flat])
            if chunk_gain > best_gain + 1e-12:
                f, t = divmod(flat, thr.shape[1])
                best_gain = chunk_gain
                best = (start + f, float(thr[f, t]))

        if best is None:
            return None
        feature_index, threshold = best
        goes_left = (values[feature_index] <= threshold).cpu().numpy()
        return features[feature_index].to("cpu"), threshold, goes_left

    def train(
        self,
        images: Sequence[LabeledRGBDImage],
        device: torch.device | str = "cpu",
        cache: TensorCache | None = None,
    ) -> "RandomTreeImage":
        """Grow the tree from the labeled images on ``device``."""
        device = torch.device(device)
        cfg = self.configuration
        start_time = time.time()
        rng = np.random.default_rng(self.seed)

        samples = self._draw_samples(images, rng)
        if len(samples) == 0:
            raise ConfigurationError(f"Tree {self.tree_id}: no usable training pixels")

        cache = cache or TensorCache(0)
        tensors = [cache.get(img.image, cfg.use_depth_images, device) for img in images]

        kinds: list[int] = []
        offsets: list[np.ndarray] = []
        channels: list[np.ndarray] = []
        thresholds: list[float] = []
        left: list[int] = []
        right: list[int] = []
        counts: list[np.ndarray] = []

        def new_node() -> int:
            kinds.append(-1)
            offsets.append(np.zeros(4, dtype=np.float32))
            channels.append(np.zeros(2, dtype=np.int64))
            thresholds.append(0.0)
            left.append(-1)
            right.append(-1)
            counts.append(np.zeros(cfg.num_labels, dtype=np.float64))
            return len(left) - 1

        stack = [(new_node(), samples, 1)]
        while stack:
            node, node_samples, level = stack.pop()
            split = None
            if level < cfg.max_depth and len(node_samples) >= cfg.min_sample_count:
                split = self._find_split(node_samples, tensors, rng, device)

            if split is None:
                counts[node] = np.bincount(
                    node_samples.labels, minlength=cfg.num_labels
                ).astype(np.float64)
                continue

            feature, threshold, goes_left = split
            kinds[node] = int(feature.kinds[0])
            offsets[node] = feature.offsets[0].numpy()
            channels[node] = feature.channels[0].numpy()
            thresholds[node] = threshold
            left[node] = new_node()
            right[node] = new_node()
            stack.append((right[node], node_samples.subset(~goes_left), level + 1))
            stack.append((left[node], node_samples.subset(goes_left), level + 1))

        self.leaf_counts = np.stack(counts)
        self.label_prior = np.bincount(samples.labels, minlength=cfg.num_labels).astype(np.float64)
        self.nodes = TreeNodes(
            kinds=np.asarray(kinds, dtype=np.int64),
            offsets=np.stack(offsets).astype(np.float32),
            channels=np.stack(channels).astype(np.int64),
            thresholds=np.asarray(thresholds, dtype=np.float32),
            left=np.asarray(left, dtype=np.int64),
            right=np.asarray(right, dtype=np.int64),
            histograms=np.zeros_like(self.leaf_counts),
        )
        self.normalize_histograms(0.0)
        self.training_time = time.time() - start_time

        logger.debug(
            f"Tree {self.tree_id}: {len(samples)} samples, {self.num_nodes} nodes, "
            f"depth {self.depth()}, {self.training_time:.2f}s on {device}"
        )
        return self

    # ------------------------------------------------------------------
    # Histograms and introspection
    # ------------------------------------------------------------------

    def normalize_histograms(self, histogram_bias: float) -> None:
        """Recompute leaf distributions from the raw leaf counts.

        Counts are divided by the class prior of the training pixels, scaled
        to sum to one, and then ``histogram_bias`` is subtracted from every
        class probability (clipped at zero) before scaling to one again. The
        result only depends on the raw counts, so repeated calls with the
        same bias give the same histograms.
        """
        if self.nodes is None or self.leaf_counts is None:
            raise ValueError(f"Tree {self.tree_id} is not trained")

        prior = self.label_prior if self.label_prior is not None else np.ones(self.num_classes)
        with np.errstate(divide="ignore", invalid="ignore"):
            hist = np.where(prior > 0, self.leaf_counts / prior, 0.0)
            hist = _normalize_rows(hist)
            if histogram_bias > 0:
                biased = _normalize_rows(np.clip(hist - histogram_bias, 0.0, None))
                keep = biased.sum(axis=1) > 0
                hist = np.where(keep[:, None], biased, hist)

        hist[~self.nodes.is_leaf] = 0.0
        self.nodes.histograms = hist
        self.histogram_bias = histogram_bias

    def count_features(self) -> Counter:
        """Number of split nodes per feature type."""
        if self.nodes is None:
            return Counter()
        kinds = self.nodes.kinds[~self.nodes.is_leaf]
        return Counter(FEATURE_TYPES[k] for k in kinds)

    def predict_histograms(
        self, image: RGBDImage | torch.Tensor, use_depth: bool, device: torch.device | str = "cpu"
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Per-pixel class distribution and leaf id.

        Returns:
            Tuple of ((H, W, C) float64 histograms, (H, W) int64 leaf ids)
        """
        if self.nodes is None:
            raise ValueError(f"Tree {self.tree_id} is not trained")
        device = torch.device(device)
        if isinstance(image, RGBDImage):
            image = image.to_tensor(use_depth, device)
        leaves = self.nodes.traverse(image, use_depth)
        histograms = torch.as_tensor(self.nodes.histograms, dtype=torch.float64, device=device)
        return histograms[leaves], leaves

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        if self.nodes is None:
            raise ValueError(f"Tree {self.tree_id} is not trained")
        return {
            "tree_id": self.tree_id,
            "configuration": self.configuration.to_dict(),
            "histogram_bias": self.histogram_bias,
            "training_time": self.training_time,
            "label_prior": self.label_prior.tolist(),
            "nodes": {
                "kinds": self.nodes.kinds.tolist(),
                "offsets": self.nodes.offsets.tolist(),
                "channels": self.nodes.channels.tolist(),
                "thresholds": self.nodes.thresholds.tolist(),
                "left": self.nodes.left.tolist(),
                "right": self.nodes.right.tolist(),
                "leaf_counts": self.leaf_counts.tolist(),
            },
        }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        configuration: TrainingConfiguration | None = None,
    ) -> "RandomTreeImage":
        configuration = configuration or TrainingConfiguration.from_dict(data["configuration"])
        tree = cls(int(data["tree_id"]), configuration)
        nodes = data["nodes"]
        tree.leaf_counts = np.asarray(nodes["leaf_counts"], dtype=np.float64)
        tree.label_prior = np.asarray(data["label_prior"], dtype=np.float64)
        tree.training_time = float(data.get("training_time", 0.0))
        tree.nodes = TreeNodes(
            kinds=np.asarray(nodes["kinds"], dtype=np.int64),
            offsets=np.asarray(nodes["offsets"], dtype=np.float32).reshape(-1, 4),
            channels=np.asarray(nodes["channels"], dtype=np.int64).reshape(-1, 2),
            thresholds=np.asarray(nodes["thresholds"], dtype=np.float32),
            left=np.asarray(nodes["left"], dtype=np.int64),
            right=np.asarray(nodes["right"], dtype=np.int64),
            histograms=np.zeros_like(tree.leaf_counts),
        )
        tree.normalize_histograms(float(data.get("histogram_bias", 0.0)))
        return tree

    def save(self, path: str | Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f)
        return path

    @classmethod
    def load(cls, path: str | Path) -> "RandomTreeImage":
        with open(path) as f:
            return cls.from_dict(json.load(f))

    def __repr__(self) -> str:
        return (
            f"RandomTreeImage(id={self.tree_id}, nodes={self.num_nodes}, "
            f"classes={self.num_classes})"
        )


def _normalize_rows(values: np.ndarray) -> np.ndarray:
    sums = values.sum(axis=1, keepdims=True)
    return np.divide(values, sums, out=np.zeros_like(values), where=sums > 0)
