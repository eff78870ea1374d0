"""rgbdforest: Random forests for RGB-D image labeling with distributed hyperparameter search."""

__version__ = "0.1.0"
