"""Exception hierarchy for rgbdforest.

Configuration and task parsing errors are raised eagerly, before any
training starts. Training and prediction failures abort the current task
attempt and are never retried locally.
"""


class RGBDForestError(Exception):
    """Base class for all rgbdforest errors."""


class ConfigurationError(RGBDForestError, ValueError):
    """Invalid option value, device id or unusable image set."""


class UnknownLossFunctionError(ConfigurationError):
    """Loss function name is not one of the known loss function types."""


class MalformedTaskError(RGBDForestError, ValueError):
    """A task record is missing a required field or holds an invalid value."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"Task field '{field}': {message}")
        self.field = field


class OutOfRangeError(RGBDForestError, IndexError):
    """Tree index outside [0, num_trees)."""


class TrainingFailure(RGBDForestError, RuntimeError):
    """Device or resource failure while growing a tree."""


class PredictionFailure(RGBDForestError, RuntimeError):
    """Device or resource failure while predicting."""
