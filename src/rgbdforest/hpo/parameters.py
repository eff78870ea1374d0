"""Hyperparameter search configuration and task parameter parsing."""

from __future__ import annotations

import math
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from rgbdforest.data.image import format_color, parse_color
from rgbdforest.errors import ConfigurationError, MalformedTaskError
from rgbdforest.forest.configuration import (
    AccelerationMode,
    SubsamplingType,
    TrainingConfiguration,
)
from rgbdforest.hpo.result import LossFunctionType, parse_loss_function

# Integer-valued task fields; all others are read as floats
INTEGER_FIELDS = (
    "num_trees",
    "samples_per_image",
    "feature_count",
    "min_sample_count",
    "max_depth",
    "box_radius",
    "region_size",
    "thresholds",
)


def get_parameter_double(fields: Mapping[str, Any], name: str) -> float:
    """Read a numeric task field.

    Numbers and numeric strings are accepted (queue backends commonly
    transport hyperparameters as strings).

    Raises:
        MalformedTaskError: If the field is missing, non-numeric or not finite
    """
    if name not in fields or fields[name] is None:
        raise MalformedTaskError(name, "missing")
    value = fields[name]
    if isinstance(value, bool):
        raise MalformedTaskError(name, f"expected a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise MalformedTaskError(name, f"expected a number, got {value!r}") from None
    if not math.isfinite(number):
        raise MalformedTaskError(name, f"expected a finite number, got {value!r}")
    return number


class TaskParameters(BaseModel):
    """Hyperparameters of one fetched task, validated once on receipt."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    num_trees: int = Field(ge=1)
    test_ratio: float = Field(ge=0.0, lt=1.0, description="0 selects the dedicated test set")
    samples_per_image: int = Field(ge=1)
    feature_count: int = Field(ge=1)
    min_sample_count: int = Field(ge=1)
    max_depth: int = Field(ge=1, le=64)
    box_radius: int = Field(ge=1)
    region_size: int = Field(ge=1)
    thresholds: int = Field(ge=1)
    histogram_bias: float = Field(ge=0.0, lt=1.0)
    loss_function: LossFunctionType | None = None

    @classmethod
    def from_fields(cls, fields: Mapping[str, Any]) -> "TaskParameters":
        """Parse the raw fields of a task record.

        Fields are checked in declaration order; the first invalid one is
        reported.

        Raises:
            MalformedTaskError: For a missing, non-numeric or out-of-range field
        """
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            if name == "loss_function":
                raw = fields.get(name)
                if raw not in (None, ""):
                    try:
                        values[name] = parse_loss_function(str(raw))
                    except ConfigurationError as e:
                        raise MalformedTaskError(name, str(e)) from None
                continue

            number = get_parameter_double(fields, name)
            if name in INTEGER_FIELDS:
                if not number.is_integer():
                    raise MalformedTaskError(name, f"expected an integer, got {fields[name]!r}")
                values[name] = int(number)
            else:
                values[name] = number

        try:
            return cls(**values)
        except ValidationError as e:
            error = e.errors()[0]
            field = str(error["loc"][0]) if error["loc"] else "?"
            raise MalformedTaskError(field, error["msg"]) from None

    def to_fields(self) -> dict[str, Any]:
        """Flat field mapping as stored on a task record."""
        fields = self.model_dump(exclude={"loss_function"})
        if self.loss_function is not None:
            fields["loss_function"] = self.loss_function.value
        return fields


class HyperoptClientConfig(BaseModel):
    """Options of a search worker that do not change between tasks."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    use_cielab: bool = True
    use_depth_filling: bool = False
    device_ids: tuple[int, ...] = (0,)
    max_images: int = Field(default=0, ge=0)
    image_cache_size_mb: int = Field(default=0, ge=0)
    random_seed: int = 4711
    num_threads: int = Field(default=1, ge=1)
    subsampling_type: SubsamplingType = SubsamplingType.CLASS_UNIFORM
    ignored_colors: tuple[str, ...] = ()
    use_depth_images: bool = True
    num_labels: int = Field(default=2, ge=1)
    loss_function: LossFunctionType = LossFunctionType.CLASS_ACCURACY_WITHOUT_VOID
    acceleration_mode: AccelerationMode = AccelerationMode.CPU_ONLY
    max_runs_per_task: int = Field(default=5, ge=1, description="Upper bound on seeds per task")
    confidence_z: float = Field(default=2.0, gt=0.0)
    fetch_retry_interval: float = Field(
        default=10.0, ge=0.0, description="Seconds to wait after a failed fetch"
    )

    def __init__(self, **data: Any) -> None:
        # Unknown names raise UnknownLossFunctionError, not a ValidationError
        if data.get("loss_function") is not None:
            data["loss_function"] = parse_loss_function(data["loss_function"])
        super().__init__(**data)

    @field_validator("device_ids")
    @classmethod
    def validate_device_ids(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        if not v:
            raise ValueError("At least one device id is required")
        if any(d < 0 for d in v):
            raise ValueError(f"Device ids must be non-negative, got {list(v)}")
        return v

    @field_validator("ignored_colors")
    @classmethod
    def validate_ignored_colors(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(format_color(parse_color(c)) for c in v)

    def training_configuration(
        self, parameters: TaskParameters, random_seed: int | None = None
    ) -> TrainingConfiguration:
        """Combine worker options and task hyperparameters.

        Raises:
            ConfigurationError: If the combination is not a valid configuration
        """
        try:
            return TrainingConfiguration(
                random_seed=self.random_seed if random_seed is None else random_seed,
                samples_per_image=parameters.samples_per_image,
                feature_count=parameters.feature_count,
                min_sample_count=parameters.min_sample_count,
                max_depth=parameters.max_depth,
                box_radius=parameters.box_radius,
                region_size=parameters.region_size,
                thresholds=parameters.thresholds,
                num_threads=self.num_threads,
                max_images=self.max_images,
                image_cache_size_mb=self.image_cache_size_mb,
                subsampling_type=self.subsampling_type,
                device_ids=self.device_ids,
                acceleration_mode=self.acceleration_mode,
                use_cielab=self.use_cielab,
                use_depth_filling=self.use_depth_filling,
                use_depth_images=self.use_depth_images,
                num_labels=self.num_labels,
                ignored_colors=self.ignored_colors,
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid training configuration: {e}") from e
