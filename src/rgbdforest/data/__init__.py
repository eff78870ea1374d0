"""RGB-D image data handling."""

from rgbdforest.data.image import (
    LabeledRGBDImage,
    RGBColor,
    RGBDImage,
    TensorCache,
    load_labeled_image,
    load_labeled_images,
    parse_color,
    save_labeled_image,
)
from rgbdforest.data.splits import random_split

__all__ = [
    "LabeledRGBDImage",
    "RGBColor",
    "RGBDImage",
    "TensorCache",
    "load_labeled_image",
    "load_labeled_images",
    "parse_color",
    "random_split",
    "save_labeled_image",
]
