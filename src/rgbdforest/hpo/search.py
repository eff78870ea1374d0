"""Statistics for deciding how often to repeat a configuration."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Sequence

import numpy as np

if TYPE_CHECKING:
    from rgbdforest.hpo.result import Result

DEFAULT_CONFIDENCE_Z = 2.0


def _mean_and_std(values: Sequence[float]) -> tuple[float, float | None]:
    arr = np.asarray(values, dtype=np.float64)
    std = float(arr.std(ddof=1)) if arr.size >= 2 else None
    return float(arr.mean()), std


def continue_searching(
    current_best_accuracies: Sequence[float],
    current_run_accuracies: Sequence[float],
    z: float = DEFAULT_CONFIDENCE_Z,
) -> bool:
    """Decide whether another seed of the current configuration is worth training.

    Both histories hold accuracies (higher is better). The current
    configuration keeps being sampled while the upper end of its confidence
    band still reaches the lower end of the best configuration's band:

        run_mean + z * noise / sqrt(n_run) >= best_mean - z * best_std / sqrt(n_best)

    ``noise`` is the sample standard deviation of the run history, or of the
    best history while the run has a single sample. Without a usable noise
    estimate the answer is always ``True``.

    Args:
        current_best_accuracies: Accuracies of repeated runs of the best configuration so far
        current_run_accuracies: Accuracies of the runs of the current configuration
        z: Width of the confidence band in standard errors

    Returns:
        True if another run should be trained
    """
    if len(current_run_accuracies) == 0 or len(current_best_accuracies) == 0:
        return True

    run_mean, run_std = _mean_and_std(current_run_accuracies)
    best_mean, best_std = _mean_and_std(current_best_accuracies)

    noise = run_std if run_std is not None else best_std
    if noise is None:
        return True

    run_upper = run_mean + z * noise / math.sqrt(len(current_run_accuracies))
    best_lower = best_mean - z * (best_std or 0.0) / math.sqrt(len(current_best_accuracies))
    return run_upper >= best_lower


def average_loss_and_variance(losses: Sequence[float]) -> tuple[float, float]:
    """Mean and population variance of a list of losses.

    Returns ``(0.0, 0.0)`` for an empty list.
    """
    if len(losses) == 0:
        return 0.0, 0.0
    arr = np.asarray(losses, dtype=np.float64)
    return float(arr.mean()), float(arr.var())


def average_result_loss_and_variance(results: Sequence["Result"]) -> tuple[float, float]:
    """``average_loss_and_variance`` over the losses of test results."""
    return average_loss_and_variance([r.get_loss() for r in results])
