"""Hyperparameter search space for random forest tasks.

``rgbdforest submit`` draws configurations from this space and enqueues them
for the search workers. Sampling goes through ClearML's parameter ranges, so
the same definitions can drive a ``clearml.automation`` optimizer.
"""

import math
from typing import Any

from rgbdforest.hpo.parameters import TaskParameters

SECTION = "General"

SEARCH_SPACE: dict[str, Any] = {
    # Forest size and evaluation
    "num_trees": [3, 5, 8],
    "test_ratio": [0.2, 0.25, 0.3],

    # Tree growth
    "samples_per_image": {"min": 100, "max": 5000, "log": True},
    "feature_count": {"min": 50, "max": 2000, "log": True},
    "min_sample_count": [16, 32, 64, 128],
    "max_depth": {"min": 8, "max": 25},
    "box_radius": {"min": 8, "max": 120},
    "region_size": {"min": 2, "max": 16},
    "thresholds": [10, 20, 50],

    # Leaf normalisation
    "histogram_bias": {"min": 0.0, "max": 0.6},
}


def get_clearml_hyper_parameters() -> list:
    """Get ClearML parameter ranges for every field of ``SEARCH_SPACE``.

    Lists become discrete ranges, ``log`` ranges are sampled log-uniformly
    (base 10), integer bounds give integer ranges and float bounds give
    continuous ranges.

    Returns:
        List of ClearML ``Parameter`` objects named ``General/<field>``
    """
    from clearml.automation import (
        DiscreteParameterRange,
        LogUniformParameterRange,
        UniformIntegerParameterRange,
        UniformParameterRange,
    )

    ranges = []
    for name, dimension in SEARCH_SPACE.items():
        full_name = f"{SECTION}/{name}"
        if isinstance(dimension, list):
            ranges.append(DiscreteParameterRange(full_name, values=dimension))
        elif dimension.get("log"):
            ranges.append(
                LogUniformParameterRange(
                    full_name,
                    min_value=math.log10(dimension["min"]),
                    max_value=math.log10(dimension["max"]),
                    base=10,
                )
            )
        elif isinstance(dimension["min"], float) or isinstance(dimension["max"], float):
            ranges.append(
                UniformParameterRange(
                    full_name, min_value=dimension["min"], max_value=dimension["max"]
                )
            )
        else:
            ranges.append(
                UniformIntegerParameterRange(
                    full_name, min_value=dimension["min"], max_value=dimension["max"]
                )
            )
    return ranges


def _to_field(name: str, value: Any) -> Any:
    dimension = SEARCH_SPACE[name]
    if isinstance(dimension, dict) and dimension.get("log"):
        # Log ranges sample floats; integer fields need whole values inside the bounds
        return min(max(int(round(value)), dimension["min"]), dimension["max"])
    return value


def sample_task_parameters(overrides: dict[str, Any] | None = None) -> TaskParameters:
    """Draw one configuration from ``SEARCH_SPACE``.

    Uses ClearML's shared random state; seed it with ``sample_configurations``
    or ``clearml.automation.parameters.RandomSeed.set_random_seed``.

    Args:
        overrides: Fixed values replacing sampled ones (e.g. ``num_trees``)

    Returns:
        Validated task parameters
    """
    fields: dict[str, Any] = {}
    for parameter in get_clearml_hyper_parameters():
        for full_name, value in parameter.get_value().items():
            name = full_name.split("/", 1)[1]
            fields[name] = _to_field(name, value)
    fields.update(overrides or {})
    return TaskParameters.from_fields(fields)


def sample_configurations(
    count: int,
    seed: int,
    overrides: dict[str, Any] | None = None,
) -> list[TaskParameters]:
    """Draw ``count`` configurations, reproducibly for a given ``seed``."""
    from clearml.automation.parameters import RandomSeed

    RandomSeed.set_random_seed(seed)
    return [sample_task_parameters(overrides) for _ in range(count)]
