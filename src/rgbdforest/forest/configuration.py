"""Training configuration shared by all trees of a forest.

The configuration is immutable once constructed; a forest and every one of
its trees hold the same instance.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from rgbdforest.data.image import RGBColor, format_color, parse_color

FEATURE_TYPES = ("color", "depth")


class AccelerationMode(str, Enum):
    """Where trees are trained and queried."""

    GPU_ONLY = "gpu_only"
    CPU_ONLY = "cpu_only"
    GPU_AND_CPU_COMPARE = "gpu_and_cpu_compare"


class SubsamplingType(str, Enum):
    """How training pixels are drawn from each image."""

    PIXEL_UNIFORM = "pixelUniform"
    CLASS_UNIFORM = "classUniform"


def default_label_colors(num_labels: int) -> tuple[RGBColor, ...]:
    """PASCAL-style palette; label 0 is black."""
    colors = []
    for label in range(num_labels):
        r = g = b = 0
        c = label
        for shift in range(7, -1, -1):
            r |= ((c >> 0) & 1) << shift
            g |= ((c >> 1) & 1) << shift
            b |= ((c >> 2) & 1) << shift
            c >>= 3
        colors.append((r, g, b))
    return tuple(colors)


class TrainingConfiguration(BaseModel):
    """How the trees of a forest are grown."""

    model_config = ConfigDict(frozen=True, extra="forbid", use_enum_values=False)

    random_seed: int = Field(default=4711, description="Base seed; tree i uses seed + i")
    samples_per_image: int = Field(default=500, ge=1)
    feature_count: int = Field(default=100, ge=1, description="Candidate features per node")
    min_sample_count: int = Field(default=32, ge=1, description="Do not split smaller nodes")
    max_depth: int = Field(default=15, ge=1, le=64)
    box_radius: int = Field(default=16, ge=1, description="Max offset in pixels at depth 1.0")
    region_size: int = Field(default=8, ge=1)
    thresholds: int = Field(default=20, ge=1, description="Candidate thresholds per feature")
    num_threads: int = Field(default=1, ge=1)
    max_images: int = Field(default=0, ge=0)
    image_cache_size_mb: int = Field(default=0, ge=0)
    subsampling_type: SubsamplingType = SubsamplingType.PIXEL_UNIFORM
    device_ids: tuple[int, ...] = (0,)
    acceleration_mode: AccelerationMode = AccelerationMode.CPU_ONLY
    use_cielab: bool = False
    use_depth_filling: bool = False
    use_depth_images: bool = True
    num_labels: int = Field(default=2, ge=1)
    ignored_colors: tuple[str, ...] = ()
    label_colors: tuple[tuple[int, int, int], ...] = ()
    void_label: int = Field(default=0, ge=0)
    feature_types: tuple[str, ...] = FEATURE_TYPES

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

    @field_validator("feature_types")
    @classmethod
    def validate_feature_types(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        unknown = set(v) - set(FEATURE_TYPES)
        if not v or unknown:
            raise ValueError(f"feature_types must be a non-empty subset of {FEATURE_TYPES}")
        return v

    @model_validator(mode="after")
    def validate_labels(self) -> "TrainingConfiguration":
        if self.label_colors and len(self.label_colors) != self.num_labels:
            raise ValueError(
                f"label_colors has {len(self.label_colors)} entries, expected {self.num_labels}"
            )
        if self.void_label >= self.num_labels:
            raise ValueError(f"void_label {self.void_label} >= num_labels {self.num_labels}")
        return self

    def label_color_map(self) -> dict[int, RGBColor]:
        colors = self.label_colors or default_label_colors(self.num_labels)
        return {label: tuple(color) for label, color in enumerate(colors)}

    @property
    def ignored_labels(self) -> frozenset[int]:
        ignored = {parse_color(c) for c in self.ignored_colors}
        return frozenset(
            label for label, color in self.label_color_map().items() if color in ignored
        )

    def should_ignore_label(self, label: int) -> bool:
        return label in self.ignored_labels

    def replace(self, **changes: Any) -> "TrainingConfiguration":
        """Validated copy with some fields changed."""
        return type(self)(**{**self.model_dump(), **changes})

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TrainingConfiguration":
        return cls.model_validate(data)
