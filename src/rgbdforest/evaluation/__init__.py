"""Evaluation metrics and analysis."""

from rgbdforest.evaluation.metrics import (
    ConfusionMatrix,
    plot_confusion_matrix,
    print_metrics,
)

__all__ = [
    "ConfusionMatrix",
    "plot_confusion_matrix",
    "print_metrics",
]
