"""Hyperparameter search worker.

Each worker runs ``HyperoptClient.run()``: it fetches one task at a time from
its task source and, per task,

    FETCHED -> SPLIT -> (TRAIN -> TEST)* -> AGGREGATED -> REPORTED

Workers share nothing but the queue. Configuration and parsing errors abort
the current task before any training; training and prediction failures abort
it as well. In both cases the task is reported as failed and the worker moves
on to the next one.
"""

from __future__ import annotations

import math
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Sequence

from loguru import logger

from rgbdforest.data.image import LabeledRGBDImage
from rgbdforest.data.splits import random_split
from rgbdforest.errors import ConfigurationError, MalformedTaskError, RGBDForestError
from rgbdforest.evaluation.metrics import ConfusionMatrix
from rgbdforest.forest.configuration import TrainingConfiguration
from rgbdforest.forest.random_forest import RandomForestImage
from rgbdforest.hpo import search
from rgbdforest.hpo.parameters import HyperoptClientConfig, TaskParameters, get_parameter_double
from rgbdforest.hpo.result import LossFunctionType, Result, parse_loss_function
from rgbdforest.hpo.task_source import Task, TaskSource


@dataclass
class TaskReport:
    """Aggregated outcome of one task, sent back to the queue."""

    loss: float
    variance: float
    status: str = "ok"
    results: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class HyperoptClient:
    """Evaluates hyperparameter tasks by training and testing forests.

    Args:
        all_images: Labeled images split into train/test per task
        test_images: Dedicated test images, used for tasks with ``test_ratio == 0``
        config: Worker options
        task_source: Queue the tasks come from and results go to
    """

    get_parameter_double = staticmethod(get_parameter_double)
    parse_loss_function = staticmethod(parse_loss_function)

    def __init__(
        self,
        all_images: Sequence[LabeledRGBDImage],
        test_images: Sequence[LabeledRGBDImage],
        config: HyperoptClientConfig,
        task_source: TaskSource,
    ) -> None:
        if not all_images:
            raise ConfigurationError("HyperoptClient needs at least one labeled image")
        self.all_images = list(all_images)
        self.test_images = list(test_images)
        self.config = config
        self.task_source = task_source

        self.train_images: list[LabeledRGBDImage] = []
        self.split_test_images: list[LabeledRGBDImage] = []

        # Best configuration seen by this worker, per loss function: its mean
        # loss and the accuracies of its repeated runs
        self.best_loss: dict[LossFunctionType, float] = {}
        self.best_accuracies: dict[LossFunctionType, list[float]] = {}

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    def run(self, max_tasks: int | None = None) -> int:
        """Fetch and handle tasks until ``max_tasks`` have been handled.

        With ``max_tasks=None`` the loop never returns.

        Returns:
            Number of tasks handled (succeeded or failed)
        """
        handled = 0
        while max_tasks is None or handled < max_tasks:
            try:
                task = self.task_source.fetch_next()
            except Exception as e:
                logger.error(f"Could not fetch a task: {type(e).__name__}: {e}")
                time.sleep(self.config.fetch_retry_interval)
                continue

            logger.info(f"[{task.task_id}] FETCHED")
            try:
                self.handle_task(task)
            except RGBDForestError as e:
                self._fail(task, f"{type(e).__name__}: {e}")
            except Exception as e:
                logger.exception(f"[{task.task_id}] Unexpected error")
                self._fail(task, f"{type(e).__name__}: {e}")
            handled += 1
        return handled

    def _fail(self, task: Task, reason: str) -> None:
        logger.error(f"[{task.task_id}] FAILED: {reason}")
        try:
            self.task_source.report_failure(task, reason)
        except Exception as e:
            logger.error(f"[{task.task_id}] Could not report failure: {type(e).__name__}: {e}")

    def handle_task(self, task: Task) -> TaskReport:
        """Evaluate one task and report its aggregated loss.

        Raises:
            MalformedTaskError: If the task parameters cannot be parsed
            ConfigurationError: If the parameters do not form a valid configuration
            TrainingFailure: If a forest cannot be trained
            PredictionFailure: If a forest cannot be tested
        """
        start = time.time()
        parameters = TaskParameters.from_fields(task.parameters)
        loss_function = parameters.loss_function or self.config.loss_function
        configuration = self.config.training_configuration(parameters)
        logger.info(
            f"[{task.task_id}] {parameters.num_trees} trees, loss {loss_function.value}, "
            f"max depth {parameters.max_depth}, {parameters.feature_count} features, "
            f"{parameters.samples_per_image} samples/image"
        )

        self.random_split(self.config.random_seed, parameters.test_ratio)
        logger.info(
            f"[{task.task_id}] SPLIT {len(self.train_images)} train / "
            f"{len(self.split_test_images)} test images"
        )

        loss, variance, results = self.measure_true_loss(
            parameters.num_trees,
            configuration,
            parameters.histogram_bias,
            loss_function=loss_function,
            task_id=task.task_id,
        )
        logger.info(
            f"[{task.task_id}] AGGREGATED loss {loss:.4f} (variance {variance:.6f}) "
            f"over {len(results)} runs in {time.time() - start:.1f}s"
        )

        report = TaskReport(loss=loss, variance=variance, results=[r.to_dict() for r in results])
        self.task_source.report(task, report)
        logger.info(f"[{task.task_id}] REPORTED")
        return report

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def random_split(
        self, seed: int, test_ratio: float
    ) -> tuple[list[LabeledRGBDImage], list[LabeledRGBDImage]]:
        """Partition ``all_images`` into the train and test images of the current task.

        A ``test_ratio`` of 0 trains on all images and tests on the dedicated
        test set.
        """
        if test_ratio == 0.0:
            if not self.test_images:
                raise MalformedTaskError(
                    "test_ratio", "0 requires a dedicated test image set"
                )
            train, test = list(self.all_images), list(self.test_images)
        else:
            train, test = random_split(self.all_images, seed, test_ratio)
        self.train_images, self.split_test_images = train, test
        return train, test

    def train(
        self,
        num_trees: int,
        configuration: TrainingConfiguration,
        images: Sequence[LabeledRGBDImage],
    ) -> RandomForestImage:
        forest = RandomForestImage(num_trees, configuration)
        forest.train(images)
        return forest

    def test(
        self,
        forest: RandomForestImage,
        images: Sequence[LabeledRGBDImage],
        loss_function: LossFunctionType | None = None,
    ) -> Result:
        """Predict every image and accumulate one confusion matrix over all of them."""
        configuration = forest.configuration
        cm = ConfusionMatrix(forest.num_classes, configuration.ignored_labels)
        for labeled in images:
            prediction = forest.predict(
                labeled.image, use_depth_images=self.config.use_depth_images
            )
            cm.accumulate(labeled.labels, prediction.labels)

        return Result(
            cm,
            cm.pixel_accuracy(include_void=True),
            cm.pixel_accuracy(include_void=False),
            loss_function or self.config.loss_function,
            random_seed=configuration.random_seed,
        )

    def measure_true_loss(
        self,
        num_trees: int,
        configuration: TrainingConfiguration,
        histogram_bias: float,
        test_ratio: float | None = None,
        loss_function: LossFunctionType | None = None,
        task_id: str = "-",
    ) -> tuple[float, float, list[Result]]:
        """Train and test forests with fresh seeds while the search heuristic allows.

        Tree ``t`` of a forest is grown with seed ``random_seed + t``, so run
        ``i`` starts at ``configuration.random_seed + i * num_trees`` and no
        two runs share a tree. Runs use the current split; passing
        ``test_ratio`` re-splits first.

        The best-configuration history used to stop early is kept per loss
        function, since accuracies under different loss functions are not
        comparable.

        Returns:
            Tuple of (mean loss, loss variance, per-run results)
        """
        if test_ratio is not None:
            self.random_split(configuration.random_seed, test_ratio)
        if not self.train_images or not self.split_test_images:
            raise ConfigurationError("No train/test split; call random_split first")

        key = loss_function or self.config.loss_function
        best_accuracies = self.best_accuracies.get(key, [])
        best_loss = self.best_loss.get(key, math.inf)

        results: list[Result] = []
        accuracies: list[float] = []
        for run in range(self.config.max_runs_per_task):
            run_configuration = configuration.replace(
                random_seed=configuration.random_seed + run * num_trees
            )
            logger.info(f"[{task_id}] TRAIN run {run} (seed {run_configuration.random_seed})")
            forest = self.train(num_trees, run_configuration, self.train_images)
            if histogram_bias > 0.0:
                forest.normalize_histograms(histogram_bias)

            result = self.test(forest, self.split_test_images, loss_function)
            results.append(result)
            accuracies.append(1.0 - result.get_loss())
            logger.info(f"[{task_id}] TEST run {run}: loss {result.get_loss():.4f}")

            if not search.continue_searching(
                best_accuracies, accuracies, z=self.config.confidence_z
            ):
                logger.info(f"[{task_id}] Stopping after {run + 1} runs: cannot beat best")
                break

        loss, variance = self.get_average_loss_and_variance(results)
        if loss < best_loss:
            logger.info(
                f"[{task_id}] New best {key.value} loss {loss:.4f} (was {best_loss:.4f})"
            )
            self.best_loss[key] = loss
            self.best_accuracies[key] = accuracies
        return loss, variance, results

    @staticmethod
    def get_average_loss_and_variance(results: Sequence[Result]) -> tuple[float, float]:
        return search.average_result_loss_and_variance(results)
