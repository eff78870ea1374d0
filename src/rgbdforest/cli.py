"""rgbdforest Command Line Interface."""

import sys
from pathlib import Path
from typing import Tuple

import click
import numpy as np
from loguru import logger
from rich.console import Console
from rich.table import Table

console = Console()

ACCELERATION_MODES = ["cpu_only", "gpu_only", "gpu_and_cpu_compare"]
SUBSAMPLING_TYPES = ["pixelUniform", "classUniform"]
LOSS_FUNCTIONS = [
    "classAccuracy",
    "classAccuracyWithoutVoid",
    "pixelAccuracy",
    "pixelAccuracyWithoutVoid",
]


def _configure_logging(verbose: bool, log_file: Path | None) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")
    if log_file is not None:
        logger.add(log_file, level="DEBUG", rotation="50 MB")


def _tree_files(forest_dir: Path) -> list[Path]:
    files = sorted(forest_dir.glob("tree_*.json"))
    if not files:
        console.print(f"[red]Error: no tree_*.json files in {forest_dir}[/red]")
        raise click.Abort()
    return files


def _print_forest(forest) -> None:
    table = Table(title=f"Random forest ({forest.num_trees} trees, {forest.num_classes} classes)")
    table.add_column("Tree", style="cyan", justify="right")
    table.add_column("Nodes", justify="right")
    table.add_column("Depth", justify="right")
    table.add_column("Features", style="yellow")
    table.add_column("Train time", justify="right")

    for i, tree in enumerate(forest.trees):
        features = ", ".join(f"{k}={v}" for k, v in sorted(tree.count_features().items()))
        table.add_row(
            str(i),
            str(tree.num_nodes),
            str(tree.depth()),
            features or "-",
            f"{tree.training_time:.1f}s" if tree.training_time else "-",
        )
    console.print(table)


def _print_result(result) -> None:
    table = Table(title="Test result")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Pixel accuracy", f"{result.pixel_accuracy:.4f}")
    table.add_row("Pixel accuracy (without void)", f"{result.pixel_accuracy_without_void:.4f}")
    table.add_row("Class accuracy", f"{result.class_accuracy:.4f}")
    table.add_row("Class accuracy (without void)", f"{result.class_accuracy_without_void:.4f}")
    table.add_row(f"Loss ({result.loss_function_type.value})", f"{result.get_loss():.4f}")
    console.print(table)


@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging")
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Also write the log to this file",
)
def main(verbose: bool, log_file: Path | None) -> None:
    """rgbdforest: Random forests for RGB-D image labeling."""
    _configure_logging(verbose, log_file)


@main.command()
@click.option(
    "--images",
    "-i",
    "image_paths",
    type=click.Path(exists=True, path_type=Path),
    multiple=True,
    required=True,
    help="Labeled .npz images or directories of them. Repeat for multiple.",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    required=True,
    help="Directory the tree files are written to",
)
@click.option("--num-trees", "-t", type=int, default=3, show_default=True)
@click.option("--num-labels", "-n", type=int, required=True, help="Number of classes")
@click.option("--samples-per-image", type=int, default=500, show_default=True)
@click.option("--feature-count", type=int, default=100, show_default=True)
@click.option("--min-sample-count", type=int, default=32, show_default=True)
@click.option("--max-depth", type=int, default=15, show_default=True)
@click.option("--box-radius", type=int, default=16, show_default=True)
@click.option("--region-size", type=int, default=8, show_default=True)
@click.option("--thresholds", type=int, default=20, show_default=True)
@click.option(
    "--subsampling-type",
    type=click.Choice(SUBSAMPLING_TYPES),
    default="classUniform",
    show_default=True,
)
@click.option(
    "--ignored-color",
    "ignored_colors",
    multiple=True,
    help="Label color 'r,g,b' excluded from training and 'without void' metrics",
)
@click.option("--seed", type=int, default=4711, show_default=True)
@click.option("--threads", type=int, default=1, show_default=True, help="Parallel trees on CPU")
@click.option("--max-images", type=int, default=0, help="Use at most this many images (0 = all)")
@click.option("--image-cache-size", type=int, default=0, help="Image tensor cache in MB")
@click.option("--cielab/--no-cielab", default=True, help="Convert colors to CIELab")
@click.option("--depth-filling/--no-depth-filling", default=False)
@click.option("--depth/--no-depth", "use_depth", default=True, help="Use depth for feature scaling")
@click.option(
    "--acceleration-mode",
    type=click.Choice(ACCELERATION_MODES),
    default="cpu_only",
    show_default=True,
)
@click.option("--device-id", "device_ids", type=int, multiple=True, default=(0,))
@click.option("--histogram-bias", type=float, default=0.0, show_default=True)
@click.option("--sequential", is_flag=True, default=False, help="Train one tree at a time")
def train(
    image_paths: Tuple[Path, ...],
    output: Path,
    num_trees: int,
    num_labels: int,
    samples_per_image: int,
    feature_count: int,
    min_sample_count: int,
    max_depth: int,
    box_radius: int,
    region_size: int,
    thresholds: int,
    subsampling_type: str,
    ignored_colors: Tuple[str, ...],
    seed: int,
    threads: int,
    max_images: int,
    image_cache_size: int,
    cielab: bool,
    depth_filling: bool,
    use_depth: bool,
    acceleration_mode: str,
    device_ids: Tuple[int, ...],
    histogram_bias: float,
    sequential: bool,
) -> None:
    """Train a random forest and save it as one JSON file per tree."""
    from pydantic import ValidationError

    from rgbdforest.data.image import load_labeled_images
    from rgbdforest.errors import RGBDForestError
    from rgbdforest.forest import (
        AccelerationMode,
        RandomForestImage,
        SubsamplingType,
        TrainingConfiguration,
    )

    try:
        configuration = TrainingConfiguration(
            random_seed=seed,
            samples_per_image=samples_per_image,
            feature_count=feature_count,
            min_sample_count=min_sample_count,
            max_depth=max_depth,
            box_radius=box_radius,
            region_size=region_size,
            thresholds=thresholds,
            num_threads=threads,
            max_images=max_images,
            image_cache_size_mb=image_cache_size,
            subsampling_type=SubsamplingType(subsampling_type),
            device_ids=device_ids,
            acceleration_mode=AccelerationMode(acceleration_mode),
            use_cielab=cielab,
            use_depth_filling=depth_filling,
            use_depth_images=use_depth,
            num_labels=num_labels,
            ignored_colors=ignored_colors,
        )
    except ValidationError as e:
        console.print(f"[red]Invalid configuration:[/red]\n{e}")
        raise click.Abort()

    console.print("[bold blue]rgbdforest Training[/bold blue]")
    console.print(f"Trees: {num_trees}, labels: {num_labels}, seed: {seed}")
    console.print(f"Acceleration: {acceleration_mode} (devices {list(device_ids)})")

    images = load_labeled_images(
        image_paths, max_images=max_images, use_cielab=cielab, use_depth_filling=depth_filling
    )
    forest = RandomForestImage(num_trees, configuration)
    try:
        forest.train(images, train_trees_sequentially=sequential)
    except RGBDForestError as e:
        console.print(f"[red]Training failed: {e}[/red]")
        raise click.Abort()

    if histogram_bias > 0.0:
        forest.normalize_histograms(histogram_bias)

    forest.save(output)
    _print_forest(forest)
    console.print(f"\n[bold green]Forest saved to {output}[/bold green]")


@main.command()
@click.option(
    "--forest",
    "-f",
    "forest_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    required=True,
    help="Directory holding tree_*.json files",
)
@click.option(
    "--images",
    "-i",
    "image_paths",
    type=click.Path(exists=True, path_type=Path),
    multiple=True,
    required=True,
)
@click.option(
    "--loss-function",
    type=click.Choice(LOSS_FUNCTIONS),
    default="classAccuracyWithoutVoid",
    show_default=True,
)
@click.option("--histogram-bias", type=float, default=0.0, show_default=True)
@click.option(
    "--acceleration-mode",
    type=click.Choice(ACCELERATION_MODES),
    default="cpu_only",
    show_default=True,
)
@click.option("--device-id", "device_ids", type=int, multiple=True, default=(0,))
@click.option(
    "--confusion-matrix",
    "cm_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Save a confusion matrix plot to this PNG file",
)
def test(
    forest_dir: Path,
    image_paths: Tuple[Path, ...],
    loss_function: str,
    histogram_bias: float,
    acceleration_mode: str,
    device_ids: Tuple[int, ...],
    cm_path: Path | None,
) -> None:
    """Evaluate a saved forest on labeled images."""
    from rgbdforest.data.image import load_labeled_images
    from rgbdforest.errors import RGBDForestError
    from rgbdforest.evaluation import plot_confusion_matrix, print_metrics
    from rgbdforest.forest import AccelerationMode, RandomForestImage
    from rgbdforest.hpo import HyperoptClient, HyperoptClientConfig, InMemoryTaskSource

    forest = RandomForestImage.from_files(
        _tree_files(forest_dir),
        device_ids=device_ids,
        acceleration_mode=AccelerationMode(acceleration_mode),
        histogram_bias=histogram_bias,
    )
    cfg = forest.configuration
    images = load_labeled_images(
        image_paths, use_cielab=cfg.use_cielab, use_depth_filling=cfg.use_depth_filling
    )

    config = HyperoptClientConfig(
        use_depth_images=cfg.use_depth_images,
        num_labels=cfg.num_labels,
        loss_function=loss_function,
    )
    client = HyperoptClient(images, [], config, InMemoryTaskSource())
    try:
        result = client.test(forest, images)
    except RGBDForestError as e:
        console.print(f"[red]Testing failed: {e}[/red]")
        raise click.Abort()

    print_metrics(result)
    _print_result(result)
    if cm_path is not None:
        plot_confusion_matrix(result.confusion_matrix, save_path=cm_path)


@main.command()
@click.option(
    "--forest",
    "-f",
    "forest_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    required=True,
)
@click.option(
    "--image",
    "-i",
    "image_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Labeled .npz image (labels are ignored)",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    required=True,
    help="Output .npz with 'labels' and 'colors'",
)
@click.option(
    "--acceleration-mode",
    type=click.Choice(ACCELERATION_MODES),
    default="cpu_only",
    show_default=True,
)
@click.option("--device-id", "device_ids", type=int, multiple=True, default=(0,))
@click.option("--probabilities", is_flag=True, default=False, help="Also save class probabilities")
def predict(
    forest_dir: Path,
    image_path: Path,
    output: Path,
    acceleration_mode: str,
    device_ids: Tuple[int, ...],
    probabilities: bool,
) -> None:
    """Label every pixel of an image with a saved forest."""
    from rgbdforest.data.image import load_labeled_image
    from rgbdforest.forest import AccelerationMode, RandomForestImage

    forest = RandomForestImage.from_files(
        _tree_files(forest_dir),
        device_ids=device_ids,
        acceleration_mode=AccelerationMode(acceleration_mode),
    )
    cfg = forest.configuration
    labeled = load_labeled_image(
        image_path, use_cielab=cfg.use_cielab, use_depth_filling=cfg.use_depth_filling
    )
    prediction = forest.predict(labeled.image, with_probabilities=probabilities)

    palette = np.array(
        [forest.get_label_color_map()[label] for label in range(forest.num_classes)],
        dtype=np.uint8,
    )
    arrays = {"labels": prediction.labels, "colors": palette[prediction.labels]}
    if probabilities:
        arrays["probabilities"] = prediction.probabilities

    output.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(output, **arrays)
    console.print(f"[bold green]Prediction saved to {output}[/bold green]")


@main.command()
@click.option(
    "--forest",
    "-f",
    "forest_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    required=True,
)
def features(forest_dir: Path) -> None:
    """Show the structure and feature usage of a saved forest."""
    from rgbdforest.forest import AccelerationMode, RandomForestImage

    forest = RandomForestImage.from_files(
        _tree_files(forest_dir), acceleration_mode=AccelerationMode.CPU_ONLY
    )
    _print_forest(forest)

    counts = forest.count_features()
    total = sum(counts.values()) or 1
    table = Table(title="Feature types")
    table.add_column("Type", style="cyan")
    table.add_column("Split nodes", justify="right")
    table.add_column("Share", justify="right")
    for kind, count in counts.items():
        table.add_row(kind, str(count), f"{100.0 * count / total:.1f}%")
    console.print(table)


@main.command()
@click.option(
    "--images",
    "-i",
    "image_paths",
    type=click.Path(exists=True, path_type=Path),
    multiple=True,
    required=True,
    help="Labeled images split into train/test per task",
)
@click.option(
    "--test-images",
    "test_image_paths",
    type=click.Path(exists=True, path_type=Path),
    multiple=True,
    help="Dedicated test images for tasks with test_ratio 0",
)
@click.option("--queue", "-q", "queue_name", default="rgbdforest", show_default=True)
@click.option("--num-labels", "-n", type=int, required=True)
@click.option(
    "--loss-function",
    type=click.Choice(LOSS_FUNCTIONS),
    default="classAccuracyWithoutVoid",
    show_default=True,
)
@click.option(
    "--subsampling-type",
    type=click.Choice(SUBSAMPLING_TYPES),
    default="classUniform",
    show_default=True,
)
@click.option("--ignored-color", "ignored_colors", multiple=True)
@click.option("--seed", type=int, default=4711, show_default=True)
@click.option("--threads", type=int, default=1, show_default=True)
@click.option("--max-images", type=int, default=0)
@click.option("--image-cache-size", type=int, default=0)
@click.option("--cielab/--no-cielab", default=True)
@click.option("--depth-filling/--no-depth-filling", default=False)
@click.option("--depth/--no-depth", "use_depth", default=True)
@click.option(
    "--acceleration-mode",
    type=click.Choice(ACCELERATION_MODES),
    default="cpu_only",
    show_default=True,
)
@click.option("--device-id", "device_ids", type=int, multiple=True, default=(0,))
@click.option("--max-runs", type=int, default=5, show_default=True, help="Max seeds per task")
@click.option("--max-tasks", type=int, default=None, help="Stop after this many tasks")
def hyperopt(
    image_paths: Tuple[Path, ...],
    test_image_paths: Tuple[Path, ...],
    queue_name: str,
    num_labels: int,
    loss_function: str,
    subsampling_type: str,
    ignored_colors: Tuple[str, ...],
    seed: int,
    threads: int,
    max_images: int,
    image_cache_size: int,
    cielab: bool,
    depth_filling: bool,
    use_depth: bool,
    acceleration_mode: str,
    device_ids: Tuple[int, ...],
    max_runs: int,
    max_tasks: int | None,
) -> None:
    """Run a search worker on a ClearML queue."""
    from rgbdforest.data.image import load_labeled_images
    from rgbdforest.errors import ConfigurationError
    from rgbdforest.hpo import ClearMLTaskSource, HyperoptClient, HyperoptClientConfig

    try:
        config = HyperoptClientConfig(
            use_cielab=cielab,
            use_depth_filling=depth_filling,
            device_ids=device_ids,
            max_images=max_images,
            image_cache_size_mb=image_cache_size,
            random_seed=seed,
            num_threads=threads,
            subsampling_type=subsampling_type,
            ignored_colors=ignored_colors,
            use_depth_images=use_depth,
            num_labels=num_labels,
            loss_function=loss_function,
            acceleration_mode=acceleration_mode,
            max_runs_per_task=max_runs,
        )
        source = ClearMLTaskSource.from_env(queue_name)
    except (ConfigurationError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort()

    images = load_labeled_images(
        image_paths, max_images=max_images, use_cielab=cielab, use_depth_filling=depth_filling
    )
    test_images = (
        load_labeled_images(test_image_paths, use_cielab=cielab, use_depth_filling=depth_filling)
        if test_image_paths
        else []
    )

    console.print("[bold blue]rgbdforest Hyperparameter Search Worker[/bold blue]")
    console.print(f"Queue: {queue_name}")
    console.print(f"Images: {len(images)} (+{len(test_images)} dedicated test)")

    client = HyperoptClient(images, test_images, config, source)
    handled = client.run(max_tasks=max_tasks)
    console.print(f"\n[bold green]Handled {handled} tasks[/bold green]")


@main.command()
@click.option("--queue", "-q", "queue_name", default="rgbdforest", show_default=True)
@click.option("--count", "-c", type=int, default=10, show_default=True)
@click.option("--seed", type=int, default=0, show_default=True)
@click.option("--num-trees", type=int, default=None, help="Fix the number of trees")
@click.option("--test-ratio", type=float, default=None, help="Fix the test ratio")
@click.option(
    "--loss-function",
    type=click.Choice(LOSS_FUNCTIONS),
    default=None,
    help="Loss function stored on the tasks",
)
@click.option("--project", default="rgbdforest/hyperopt", show_default=True)
def submit(
    queue_name: str,
    count: int,
    seed: int,
    num_trees: int | None,
    test_ratio: float | None,
    loss_function: str | None,
    project: str,
) -> None:
    """Enqueue random configurations from the search space."""
    from rgbdforest.errors import ConfigurationError
    from rgbdforest.hpo import ClearMLTaskSource, sample_configurations

    try:
        source = ClearMLTaskSource.from_env(queue_name, project_name=project)
    except ConfigurationError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort()

    overrides = {
        name: value
        for name, value in (
            ("num_trees", num_trees),
            ("test_ratio", test_ratio),
            ("loss_function", loss_function),
        )
        if value is not None
    }

    table = Table(title=f"Submitted to '{queue_name}'")
    table.add_column("Task", style="cyan")
    table.add_column("Trees", justify="right")
    table.add_column("Depth", justify="right")
    table.add_column("Features", justify="right")
    table.add_column("Samples/image", justify="right")
    table.add_column("Bias", justify="right")

    for i, parameters in enumerate(sample_configurations(count, seed, overrides)):
        task_id = source.submit(parameters, name=f"rgbdforest-hyperopt-{seed}-{i}")
        table.add_row(
            task_id[:8],
            str(parameters.num_trees),
            str(parameters.max_depth),
            str(parameters.feature_count),
            str(parameters.samples_per_image),
            f"{parameters.histogram_bias:.2f}",
        )
    console.print(table)


if __name__ == "__main__":
    main()
