"""Result of one train/test run and the loss derived from it."""

from __future__ import annotations

from enum import Enum
from typing import Any

from rgbdforest.errors import UnknownLossFunctionError
from rgbdforest.evaluation.metrics import ConfusionMatrix


class LossFunctionType(str, Enum):
    """Which accuracy figure a result reports as ``1 - loss``."""

    CLASS_ACCURACY = "classAccuracy"
    CLASS_ACCURACY_WITHOUT_VOID = "classAccuracyWithoutVoid"
    PIXEL_ACCURACY = "pixelAccuracy"
    PIXEL_ACCURACY_WITHOUT_VOID = "pixelAccuracyWithoutVoid"


def parse_loss_function(name: str | LossFunctionType) -> LossFunctionType:
    """Look up a loss function by its (case-sensitive) name.

    Raises:
        UnknownLossFunctionError: If the name is not a known loss function
    """
    if isinstance(name, LossFunctionType):
        return name
    try:
        return LossFunctionType(name)
    except ValueError:
        known = ", ".join(t.value for t in LossFunctionType)
        raise UnknownLossFunctionError(
            f"Unknown loss function '{name}' (expected one of: {known})"
        ) from None


class Result:
    """Confusion matrix and pixel accuracies of one test run.

    The pixel accuracies are computed while testing and stored as given;
    class accuracies are derived from the confusion matrix on demand.
    """

    def __init__(
        self,
        confusion_matrix: ConfusionMatrix,
        pixel_accuracy: float,
        pixel_accuracy_without_void: float,
        loss_function_type: LossFunctionType,
        random_seed: int = 0,
    ) -> None:
        self._confusion_matrix = confusion_matrix
        self._pixel_accuracy = float(pixel_accuracy)
        self._pixel_accuracy_without_void = float(pixel_accuracy_without_void)
        self._loss_function_type = parse_loss_function(loss_function_type)
        self._random_seed = int(random_seed)

    @property
    def confusion_matrix(self) -> ConfusionMatrix:
        return self._confusion_matrix

    @property
    def pixel_accuracy(self) -> float:
        return self._pixel_accuracy

    @property
    def pixel_accuracy_without_void(self) -> float:
        return self._pixel_accuracy_without_void

    @property
    def class_accuracy(self) -> float:
        """Average class accuracy including void."""
        return self._confusion_matrix.average_class_accuracy(include_void=True)

    @property
    def class_accuracy_without_void(self) -> float:
        """Average class accuracy excluding void and ignored colors."""
        return self._confusion_matrix.average_class_accuracy(include_void=False)

    @property
    def loss_function_type(self) -> LossFunctionType:
        return self._loss_function_type

    def set_loss_function_type(self, loss_function_type: LossFunctionType | str) -> None:
        self._loss_function_type = parse_loss_function(loss_function_type)

    @property
    def random_seed(self) -> int:
        return self._random_seed

    def set_random_seed(self, random_seed: int) -> None:
        self._random_seed = int(random_seed)

    def accuracy(self) -> float:
        """The accuracy figure selected by the loss function type."""
        if self._loss_function_type == LossFunctionType.CLASS_ACCURACY:
            return self.class_accuracy
        if self._loss_function_type == LossFunctionType.CLASS_ACCURACY_WITHOUT_VOID:
            return self.class_accuracy_without_void
        if self._loss_function_type == LossFunctionType.PIXEL_ACCURACY:
            return self._pixel_accuracy
        return self._pixel_accuracy_without_void

    def get_loss(self) -> float:
        """Loss value ``1 - accuracy`` for the selected loss function type."""
        return 1.0 - self.accuracy()

    def to_dict(self) -> dict[str, Any]:
        """Structured document sufficient to rebuild the result."""
        return {
            "confusionMatrix": self._confusion_matrix.to_list(),
            "ignoredLabels": sorted(self._confusion_matrix.ignored_labels),
            "pixelAccuracy": self._pixel_accuracy,
            "pixelAccuracyWithoutVoid": self._pixel_accuracy_without_void,
            "classAccuracy": self.class_accuracy,
            "classAccuracyWithoutVoid": self.class_accuracy_without_void,
            "lossFunction": self._loss_function_type.value,
            "loss": self.get_loss(),
            "randomSeed": self._random_seed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Result":
        return cls(
            ConfusionMatrix.from_array(data["confusionMatrix"], data.get("ignoredLabels", ())),
            data["pixelAccuracy"],
            data["pixelAccuracyWithoutVoid"],
            parse_loss_function(data["lossFunction"]),
            random_seed=data.get("randomSeed", 0),
        )

    def __repr__(self) -> str:
        return (
            f"Result(loss={self.get_loss():.4f}, loss_function={self._loss_function_type.value}, "
            f"pixel_accuracy={self._pixel_accuracy:.4f}, seed={self._random_seed})"
        )
