"""Random forest of RGB-D pixel classification trees."""

from __future__ import annotations

import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import numpy as np
import torch
from loguru import logger
from tqdm import tqdm

from rgbdforest.data.image import LabeledRGBDImage, RGBColor, RGBDImage, TensorCache
from rgbdforest.errors import (
    ConfigurationError,
    OutOfRangeError,
    PredictionFailure,
    RGBDForestError,
    TrainingFailure,
)
from rgbdforest.forest.configuration import AccelerationMode, TrainingConfiguration
from rgbdforest.forest.devices import DevicePool, resolve_device
from rgbdforest.forest.tree import RandomTreeImage


@dataclass
class ForestPrediction:
    """Output of ``RandomForestImage.predict``.

    Attributes:
        labels: (H, W) label image
        probabilities: (C, H, W) averaged class distribution, if requested
        node_offsets: (T, H, W) leaf node id per tree, if requested
    """

    labels: np.ndarray
    probabilities: np.ndarray | None = None
    node_offsets: np.ndarray | None = None


class RandomForestImage:
    """Ensemble of independently trained random trees.

    Per-pixel predictions average the class histograms of all trees with
    equal weight and take the most likely non-ignored class. Pixels where no
    tree assigns mass to a usable class get the configured void label.

    A forest is created in one of three ways:
        - ``RandomForestImage(tree_count, configuration)``: untrained slots, call ``train()``
        - ``RandomForestImage.from_files(tree_files, ...)``: load serialized trees
        - ``RandomForestImage.from_trees(trees, configuration)``: wrap trained trees
    """

    def __init__(self, tree_count: int, configuration: TrainingConfiguration) -> None:
        """Prepare a forest with ``tree_count`` untrained trees.

        Args:
            tree_count: Number of trees in the forest
            configuration: Configuration used for training
        """
        if tree_count < 1:
            raise ConfigurationError(f"Forest needs at least one tree, got {tree_count}")
        self._setup([RandomTreeImage(i, configuration) for i in range(tree_count)], configuration)

    def _setup(
        self, ensemble: list[RandomTreeImage], configuration: TrainingConfiguration
    ) -> None:
        self._configuration = configuration
        self._ensemble = ensemble

    @classmethod
    def from_trees(
        cls,
        trees: Sequence[RandomTreeImage],
        configuration: TrainingConfiguration,
    ) -> "RandomForestImage":
        """Assemble a forest from trees trained elsewhere.

        Args:
            trees: Trained trees, in the order they should be indexed
            configuration: Configuration used for prediction. The trees are
                shared, not copied, and keep their own training configuration.
        """
        if not trees:
            raise ConfigurationError("Forest needs at least one tree")

        for i, tree in enumerate(trees):
            if not tree.is_trained:
                raise ConfigurationError(f"Tree {i} is not trained")
            if tree.num_classes != configuration.num_labels:
                raise ConfigurationError(
                    f"Tree {i} has {tree.num_classes} classes, "
                    f"expected {configuration.num_labels}"
                )

        forest = cls.__new__(cls)
        forest._setup(list(trees), configuration)
        return forest

    @classmethod
    def from_files(
        cls,
        tree_files: Sequence[str | Path],
        device_ids: Sequence[int] = (0,),
        acceleration_mode: AccelerationMode = AccelerationMode.GPU_ONLY,
        histogram_bias: float = 0.0,
    ) -> "RandomForestImage":
        """Load a forest from JSON tree files.

        Args:
            tree_files: Paths of tree files; file order defines tree order
            device_ids: GPU device ids to use for prediction
            acceleration_mode: CPU or GPU prediction
            histogram_bias: If larger than 0.0, normalise histograms with this bias after loading
        """
        if not tree_files:
            raise ConfigurationError("No tree files given")

        trees = []
        for path in tree_files:
            trees.append(RandomTreeImage.load(path))
            logger.debug(f"Loaded tree from {path}")

        configuration = trees[0].configuration.replace(
            device_ids=tuple(device_ids),
            acceleration_mode=acceleration_mode,
        )
        forest = cls.from_trees(trees, configuration)
        logger.info(f"Loaded random forest with {forest.num_trees} trees")

        if histogram_bias > 0.0:
            forest.normalize_histograms(histogram_bias)
        return forest

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train(
        self,
        train_label_images: Sequence[LabeledRGBDImage],
        train_trees_sequentially: bool = False,
    ) -> None:
        """Train every tree of the forest on the same labeled images.

        Args:
            train_label_images: Labeled images to train from
            train_trees_sequentially: Train one tree at a time instead of
                fanning out over the device pool
        """
        cfg = self._configuration
        images = list(train_label_images)
        if cfg.max_images > 0:
            images = images[: cfg.max_images]
        if not images:
            raise ConfigurationError("No training images")

        pool = DevicePool.for_training(cfg, failure=TrainingFailure)
        workers = 1 if train_trees_sequentially else min(pool.size, self.num_trees)
        cache = TensorCache(cfg.image_cache_size_mb)

        logger.info(
            f"Training {self.num_trees} trees on {len(images)} images "
            f"({workers} parallel, devices {[str(d) for d in pool.devices]})"
        )
        start = time.time()

        def train_tree(tree: RandomTreeImage) -> RandomTreeImage:
            with pool.acquire() as device:
                try:
                    return tree.train(images, device, cache)
                except RGBDForestError:
                    raise
                except (RuntimeError, MemoryError) as e:
                    raise TrainingFailure(
                        f"Tree {tree.tree_id} failed on {device}: {e}"
                    ) from e

        if workers == 1:
            for tree in tqdm(self._ensemble, desc="Training trees", leave=False):
                train_tree(tree)
        else:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [executor.submit(train_tree, tree) for tree in self._ensemble]
                try:
                    for future in tqdm(
                        as_completed(futures), total=len(futures), desc="Training trees", leave=False
                    ):
                        future.result()
                except BaseException:
                    for future in futures:
                        future.cancel()
                    raise

        logger.info(f"Trained {self.num_trees} trees in {time.time() - start:.1f}s")

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------

    def predict(
        self,
        image: RGBDImage,
        on_gpu: bool | None = None,
        use_depth_images: bool = True,
        with_probabilities: bool = False,
        with_node_offsets: bool = False,
    ) -> ForestPrediction:
        """Classify every pixel of an image.

        Args:
            image: The image to classify
            on_gpu: Predict on the first configured GPU; defaults to the
                forest's acceleration mode
            use_depth_images: Use depth for feature scaling. Ignored when the
                forest was trained without depth.
            with_probabilities: Also return the (C, H, W) class distribution
            with_node_offsets: Also return the (T, H, W) leaf ids per tree

        Returns:
            ForestPrediction whose label image has the shape of ``image``
        """
        untrained = [t.tree_id for t in self._ensemble if not t.is_trained]
        if untrained:
            raise ValueError(f"Trees {untrained} are not trained")

        cfg = self._configuration
        use_depth = cfg.use_depth_images and use_depth_images
        if on_gpu is None:
            on_gpu = cfg.acceleration_mode != AccelerationMode.CPU_ONLY

        device = resolve_device(cfg.device_ids[0], on_gpu, failure=PredictionFailure)
        prediction = self._predict_on(
            image, device, use_depth, with_probabilities, with_node_offsets
        )

        if on_gpu and cfg.acceleration_mode == AccelerationMode.GPU_AND_CPU_COMPARE:
            reference = self._predict_on(image, torch.device("cpu"), use_depth, False, False)
            mismatches = int((reference.labels != prediction.labels).sum())
            if mismatches:
                raise PredictionFailure(
                    f"GPU and CPU predictions differ in {mismatches} pixels"
                )

        return prediction

    def _predict_on(
        self,
        image: RGBDImage,
        device: torch.device,
        use_depth: bool,
        with_probabilities: bool,
        with_node_offsets: bool,
    ) -> ForestPrediction:
        cfg = self._configuration
        try:
            tensor = image.to_tensor(use_depth, device)
            total = torch.zeros(
                image.height, image.width, cfg.num_labels, dtype=torch.float64, device=device
            )
            leaves = []
            for tree in self._ensemble:
                histograms, tree_leaves = tree.predict_histograms(tensor, use_depth, device)
                total += histograms
                if with_node_offsets:
                    leaves.append(tree_leaves.cpu().numpy())
        except RGBDForestError:
            raise
        except (RuntimeError, MemoryError) as e:
            raise PredictionFailure(f"Prediction failed on {device}: {e}") from e

        mean = total / self.num_trees
        scores = mean.clone()
        ignored = sorted(cfg.ignored_labels)
        if ignored:
            scores[..., ignored] = 0.0
        labels = scores.argmax(dim=-1)
        labels[scores.sum(dim=-1) <= 0.0] = cfg.void_label

        return ForestPrediction(
            labels=labels.cpu().numpy().astype(np.int32),
            probabilities=(
                mean.permute(2, 0, 1).float().cpu().numpy() if with_probabilities else None
            ),
            node_offsets=np.stack(leaves) if with_node_offsets else None,
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def count_features(self) -> dict[str, int]:
        """Number of split nodes per feature type, summed over all trees."""
        total: Counter = Counter()
        for tree in self._ensemble:
            total.update(tree.count_features())
        return dict(sorted(total.items()))

    @property
    def num_classes(self) -> int:
        return self._configuration.num_labels

    @property
    def num_trees(self) -> int:
        return len(self._ensemble)

    def __len__(self) -> int:
        return self.num_trees

    def get_tree(self, tree_nr: int) -> RandomTreeImage:
        """Return tree ``tree_nr`` where ``0 <= tree_nr < num_trees``."""
        if not 0 <= tree_nr < self.num_trees:
            raise OutOfRangeError(
                f"Tree index {tree_nr} out of range for forest of {self.num_trees} trees"
            )
        return self._ensemble[tree_nr]

    @property
    def trees(self) -> tuple[RandomTreeImage, ...]:
        return tuple(self._ensemble)

    @property
    def configuration(self) -> TrainingConfiguration:
        return self._configuration

    def should_ignore_label(self, label: int) -> bool:
        return self._configuration.should_ignore_label(label)

    def get_label_color_map(self) -> dict[int, RGBColor]:
        return self._configuration.label_color_map()

    def normalize_histograms(self, histogram_bias: float) -> None:
        """Apply a histogram bias to the leaf histograms of every tree."""
        logger.info(f"Normalizing histograms with bias {histogram_bias}")
        for tree in self._ensemble:
            tree.normalize_histograms(histogram_bias)

    def save(self, directory: str | Path) -> list[Path]:
        """Write one JSON file per tree; file order is tree order."""
        directory = Path(directory)
        paths = [
            tree.save(directory / f"tree_{i:03d}.json") for i, tree in enumerate(self._ensemble)
        ]
        logger.info(f"Saved {len(paths)} trees to {directory}")
        return paths

    def __str__(self) -> str:
        lines = [f"RandomForestImage: {self.num_trees} trees, {self.num_classes} classes"]
        for i, tree in enumerate(self._ensemble):
            features = ", ".join(f"{k}={v}" for k, v in sorted(tree.count_features().items()))
            lines.append(
                f"  tree {i}: {tree.num_nodes} nodes, depth {tree.depth()}"
                + (f", features: {features}" if features else "")
            )
        return "\n".join(lines)
