"""Confusion matrix and accuracy metrics for pixel labeling."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Iterable

import numpy as np
from loguru import logger
from sklearn.metrics import confusion_matrix

if TYPE_CHECKING:
    from rgbdforest.hpo.result import Result


class ConfusionMatrix:
    """Class x class table of pixel counts, rows = ground truth, columns = prediction.

    Args:
        num_classes: Number of classes
        ignored_labels: Void/ignored classes, dropped from "without void" metrics
    """

    def __init__(self, num_classes: int, ignored_labels: Iterable[int] = ()) -> None:
        if num_classes < 1:
            raise ValueError(f"num_classes must be positive, got {num_classes}")
        self.num_classes = num_classes
        self.ignored_labels = frozenset(int(label) for label in ignored_labels)
        self.matrix = np.zeros((num_classes, num_classes), dtype=np.float64)

    @classmethod
    def from_array(
        cls, matrix: np.ndarray | list[list[float]], ignored_labels: Iterable[int] = ()
    ) -> "ConfusionMatrix":
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
            raise ValueError(f"Confusion matrix must be square, got shape {matrix.shape}")
        cm = cls(matrix.shape[0], ignored_labels)
        cm.matrix = matrix.copy()
        return cm

    def accumulate(self, ground_truth: np.ndarray, prediction: np.ndarray) -> None:
        """Add the pixel counts of one (ground truth, prediction) label image pair.

        Ground-truth labels outside ``[0, num_classes)`` are skipped.
        """
        if ground_truth.shape != prediction.shape:
            raise ValueError(
                f"Shape mismatch: ground truth {ground_truth.shape}, prediction {prediction.shape}"
            )
        y_true = ground_truth.ravel()
        y_pred = prediction.ravel()
        keep = (y_true >= 0) & (y_true < self.num_classes)
        self.matrix += confusion_matrix(
            y_true[keep], y_pred[keep], labels=np.arange(self.num_classes)
        )

    def increment(self, label: int, prediction: int, count: float = 1.0) -> None:
        self.matrix[label, prediction] += count

    def __iadd__(self, other: "ConfusionMatrix") -> "ConfusionMatrix":
        if other.num_classes != self.num_classes:
            raise ValueError(
                f"Cannot add confusion matrices of {other.num_classes} and {self.num_classes} classes"
            )
        self.matrix += other.matrix
        return self

    def normalized(self) -> np.ndarray:
        """Rows scaled to sum to one (rows without pixels stay zero)."""
        sums = self.matrix.sum(axis=1, keepdims=True)
        return np.divide(self.matrix, sums, out=np.zeros_like(self.matrix), where=sums > 0)

    def _classes(self, include_void: bool) -> list[int]:
        present = self.matrix.sum(axis=1) > 0
        return [
            c
            for c in range(self.num_classes)
            if present[c] and (include_void or c not in self.ignored_labels)
        ]

    def class_accuracies(self) -> np.ndarray:
        """True-positive rate per class (NaN for classes absent from ground truth)."""
        sums = self.matrix.sum(axis=1)
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.where(sums > 0, np.diag(self.matrix) / sums, np.nan)

    def average_class_accuracy(self, include_void: bool = True) -> float:
        """Unweighted mean of per-class accuracies.

        Classes without ground-truth pixels do not count. With
        ``include_void=False`` the ignored classes are left out as well.
        """
        classes = self._classes(include_void)
        if not classes:
            return 0.0
        return float(np.mean(self.class_accuracies()[classes]))

    def pixel_accuracy(self, include_void: bool = True) -> float:
        """Fraction of correctly labeled pixels.

        With ``include_void=False`` pixels whose ground truth is an ignored
        class are not counted.
        """
        keep = np.ones(self.num_classes, dtype=bool)
        if not include_void:
            keep[[c for c in self.ignored_labels if c < self.num_classes]] = False
        total = self.matrix[keep].sum()
        correct = np.diag(self.matrix)[keep].sum()
        return float(correct / total) if total > 0 else 0.0

    @property
    def total(self) -> float:
        return float(self.matrix.sum())

    def to_list(self) -> list[list[float]]:
        return self.matrix.tolist()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ConfusionMatrix):
            return NotImplemented
        return (
            self.ignored_labels == other.ignored_labels
            and np.array_equal(self.matrix, other.matrix)
        )

    def __repr__(self) -> str:
        return f"ConfusionMatrix(num_classes={self.num_classes}, total={self.total:.0f})"


def print_metrics(result: "Result", class_names: list[str] | None = None) -> None:
    """Log the accuracy figures of a test result.

    Args:
        result: Result from ``HyperoptClient.test``
        class_names: Optional class names for the per-class table
    """
    cm = result.confusion_matrix
    logger.info("=" * 60)
    logger.info("EVALUATION METRICS")
    logger.info("=" * 60)

    logger.info(f"  Pixel accuracy:                  {result.pixel_accuracy:.4f}")
    logger.info(f"  Pixel accuracy (without void):   {result.pixel_accuracy_without_void:.4f}")
    logger.info(f"  Class accuracy:                  {result.class_accuracy:.4f}")
    logger.info(f"  Class accuracy (without void):   {result.class_accuracy_without_void:.4f}")
    logger.info(f"  Loss ({result.loss_function_type.value}): {result.get_loss():.4f}")

    names = class_names or [str(c) for c in range(cm.num_classes)]
    logger.info(f"{'Class':<20} {'Accuracy':>10} {'Pixels':>12}")
    logger.info("-" * 44)
    accuracies = cm.class_accuracies()
    for c, name in enumerate(names):
        marker = " (ignored)" if c in cm.ignored_labels else ""
        acc = "-" if np.isnan(accuracies[c]) else f"{accuracies[c]:.4f}"
        logger.info(f"{name + marker:<20} {acc:>10} {cm.matrix[c].sum():>12.0f}")
    logger.info("=" * 60)


def plot_confusion_matrix(
    cm: ConfusionMatrix,
    class_names: list[str] | None = None,
    save_path: str | Path | None = None,
    normalize: bool = True,
    figsize: tuple[int, int] = (10, 8),
) -> None:
    """Plot a confusion matrix heatmap.

    Args:
        cm: Confusion matrix
        class_names: Optional class names
        save_path: Optional path to save figure
        normalize: Whether to normalize by true labels
        figsize: Figure size
    """
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt
    import seaborn as sns

    names = class_names or [str(c) for c in range(cm.num_classes)]
    if normalize:
        data = cm.normalized()
        fmt = ".2f"
        title = "Normalized Confusion Matrix"
    else:
        data = cm.matrix
        fmt = ".0f"
        title = "Confusion Matrix"

    plt.figure(figsize=figsize)
    sns.heatmap(
        data,
        annot=True,
        fmt=fmt,
        cmap="Blues",
        xticklabels=names,
        yticklabels=names,
    )
    plt.title(title)
    plt.ylabel("True Label")
    plt.xlabel("Predicted Label")
    plt.tight_layout()

    if save_path is not None:
        plt.savefig(save_path, dpi=150)
        logger.info(f"Saved confusion matrix to {save_path}")

    plt.close()
