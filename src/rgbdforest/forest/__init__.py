"""Random forests for RGB-D pixel labeling."""

from rgbdforest.forest.configuration import (
    AccelerationMode,
    SubsamplingType,
    TrainingConfiguration,
)
from rgbdforest.forest.devices import DevicePool, resolve_device
from rgbdforest.forest.random_forest import ForestPrediction, RandomForestImage
from rgbdforest.forest.tree import RandomTreeImage, TreeNodes

__all__ = [
    "AccelerationMode",
    "DevicePool",
    "ForestPrediction",
    "RandomForestImage",
    "RandomTreeImage",
    "SubsamplingType",
    "TrainingConfiguration",
    "TreeNodes",
    "resolve_device",
]
