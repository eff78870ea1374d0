"""Distributed hyperparameter search over random forest configurations."""

from rgbdforest.hpo.client import HyperoptClient, TaskReport
from rgbdforest.hpo.parameters import HyperoptClientConfig, TaskParameters, get_parameter_double
from rgbdforest.hpo.result import LossFunctionType, Result, parse_loss_function
from rgbdforest.hpo.search import average_loss_and_variance, continue_searching
from rgbdforest.hpo.search_space import (
    SEARCH_SPACE,
    get_clearml_hyper_parameters,
    sample_configurations,
    sample_task_parameters,
)
from rgbdforest.hpo.task_source import (
    ClearMLTaskSource,
    InMemoryTaskSource,
    Task,
    TaskSource,
)

__all__ = [
    "SEARCH_SPACE",
    "ClearMLTaskSource",
    "HyperoptClient",
    "HyperoptClientConfig",
    "InMemoryTaskSource",
    "LossFunctionType",
    "Result",
    "Task",
    "TaskParameters",
    "TaskReport",
    "TaskSource",
    "average_loss_and_variance",
    "continue_searching",
    "get_parameter_double",
    "parse_loss_function",
    "get_clearml_hyper_parameters",
    "sample_configurations",
    "sample_task_parameters",
]
