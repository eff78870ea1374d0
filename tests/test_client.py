"""Tests for the hyperparameter search worker."""

import numpy as np
import pytest

from rgbdforest.errors import ConfigurationError, MalformedTaskError, PredictionFailure
from rgbdforest.forest import RandomForestImage, SubsamplingType
from rgbdforest.hpo.client import HyperoptClient, TaskReport
from rgbdforest.hpo.parameters import HyperoptClientConfig
from rgbdforest.hpo.result import LossFunctionType, Result
from rgbdforest.hpo.task_source import InMemoryTaskSource


@pytest.fixture
def config():
    return HyperoptClientConfig(
        use_cielab=False,
        num_labels=2,
        random_seed=3,
        subsampling_type=SubsamplingType.PIXEL_UNIFORM,
        loss_function="pixelAccuracy",
        max_runs_per_task=2,
        fetch_retry_interval=0.0,
    )


@pytest.fixture
def source():
    return InMemoryTaskSource()


@pytest.fixture
def client(scenes, config, source):
    return HyperoptClient(scenes, [], config, source)


class TestSteps:
    """Tests for the individual steps of a task."""

    def test_random_split(self, client, scenes):
        train, test = client.random_split(seed=1, test_ratio=0.25)
        assert len(train) == 6 and len(test) == 2
        assert client.train_images == train
        assert client.split_test_images == test
        assert client.random_split(seed=1, test_ratio=0.25) == (train, test)

    def test_dedicated_test_set(self, scenes, config, source, scene_factory):
        test_images = [scene_factory(100), scene_factory(101)]
        client = HyperoptClient(scenes, test_images, config, source)
        train, test = client.random_split(seed=1, test_ratio=0.0)
        assert train == scenes
        assert test == test_images

    def test_dedicated_test_set_missing(self, client):
        with pytest.raises(MalformedTaskError, match="test_ratio"):
            client.random_split(seed=1, test_ratio=0.0)

    def test_train_and_test(self, client, scenes, configuration):
        forest = client.train(2, configuration, scenes[:6])
        assert isinstance(forest, RandomForestImage)
        assert forest.num_trees == 2

        result = client.test(forest, scenes[6:])
        assert isinstance(result, Result)
        assert result.loss_function_type is LossFunctionType.PIXEL_ACCURACY
        assert result.confusion_matrix.total == 2 * 16 * 16
        assert result.random_seed == configuration.random_seed
        assert 0.0 <= result.get_loss() <= 1.0
        assert result.get_loss() < 0.3

    def test_test_with_other_loss_function(self, client, scenes, configuration):
        forest = client.train(1, configuration, scenes)
        result = client.test(forest, scenes[:2], LossFunctionType.CLASS_ACCURACY)
        assert result.loss_function_type is LossFunctionType.CLASS_ACCURACY

    def test_measure_true_loss(self, client, configuration):
        loss, variance, results = client.measure_true_loss(
            2, configuration, histogram_bias=0.0, test_ratio=0.25
        )
        assert len(results) == 2
        assert [r.random_seed for r in results] == [42, 44]
        assert loss == pytest.approx(sum(r.get_loss() for r in results) / 2)
        assert variance >= 0.0
        assert client.best_loss == {LossFunctionType.PIXEL_ACCURACY: loss}
        assert len(client.best_accuracies[LossFunctionType.PIXEL_ACCURACY]) == 2

    def test_measure_true_loss_without_split(self, client, configuration):
        with pytest.raises(ConfigurationError):
            client.measure_true_loss(1, configuration, histogram_bias=0.0)

    def test_stops_when_best_is_clearly_better(self, client, configuration):
        """A configuration that cannot reach the best accuracy gets one run only."""
        client.best_accuracies[LossFunctionType.PIXEL_ACCURACY] = [0.999, 0.9995, 0.9990]
        client.best_loss[LossFunctionType.PIXEL_ACCURACY] = 0.0007
        _, _, results = client.measure_true_loss(
            1, configuration.replace(max_depth=1), histogram_bias=0.0, test_ratio=0.25
        )
        assert len(results) == 1
        assert client.best_loss[LossFunctionType.PIXEL_ACCURACY] == 0.0007

    def test_runs_share_no_trees(self, client, configuration, monkeypatch):
        """Repeated runs of a configuration grow entirely new trees."""
        forests = []
        train = client.train

        def recording_train(*args):
            forest = train(*args)
            forests.append(forest)
            return forest

        monkeypatch.setattr(client, "train", recording_train)
        client.measure_true_loss(3, configuration, histogram_bias=0.0, test_ratio=0.25)

        assert len(forests) == 2
        first, second = forests
        assert not {t.seed for t in first.trees} & {t.seed for t in second.trees}
        for a in first.trees:
            for b in second.trees:
                assert not (
                    np.array_equal(a.nodes.left, b.nodes.left)
                    and np.array_equal(a.nodes.thresholds, b.nodes.thresholds)
                )

    def test_best_history_kept_per_loss_function(self, client, configuration):
        """A best result under one loss function never stops runs under another."""
        client.best_accuracies[LossFunctionType.CLASS_ACCURACY] = [0.999, 0.9995, 0.9990]
        client.best_loss[LossFunctionType.CLASS_ACCURACY] = 0.0007
        _, _, results = client.measure_true_loss(
            1,
            configuration.replace(max_depth=1),
            histogram_bias=0.0,
            test_ratio=0.25,
            loss_function=LossFunctionType.PIXEL_ACCURACY,
        )
        assert len(results) == 2
        assert client.best_loss[LossFunctionType.CLASS_ACCURACY] == 0.0007
        assert LossFunctionType.PIXEL_ACCURACY in client.best_loss

    def test_static_helpers(self):
        assert HyperoptClient.parse_loss_function("classAccuracy") is LossFunctionType.CLASS_ACCURACY
        assert HyperoptClient.get_parameter_double({"x": "2"}, "x") == 2.0
        assert HyperoptClient.get_average_loss_and_variance([]) == (0.0, 0.0)

    def test_no_images(self, config, source):
        with pytest.raises(ConfigurationError):
            HyperoptClient([], [], config, source)


class TestWorkerLoop:
    """Tests for handle_task and run."""

    def test_handle_task(self, client, source, task_fields):
        task = source.put(task_fields)
        report = client.handle_task(task)
        assert isinstance(report, TaskReport)
        assert report.status == "ok"
        assert len(report.results) == 2
        assert report.results[0]["lossFunction"] == "pixelAccuracy"
        assert source.reports[task.task_id] is report

    def test_task_overrides_loss_function(self, client, source, task_fields):
        task = source.put({**task_fields, "loss_function": "classAccuracyWithoutVoid"})
        report = client.handle_task(task)
        assert all(r["lossFunction"] == "classAccuracyWithoutVoid" for r in report.results)

    def test_run_reports_failures_and_continues(self, client, source, task_fields):
        bad = source.put({**task_fields, "num_trees": "many"})
        no_test_set = source.put({**task_fields, "test_ratio": 0})
        good = source.put(task_fields)

        assert client.run(max_tasks=3) == 3
        assert "MalformedTaskError" in source.failures[bad.task_id]
        assert "num_trees" in source.failures[bad.task_id]
        assert "test_ratio" in source.failures[no_test_set.task_id]
        assert set(source.reports) == {good.task_id}

    def test_prediction_failure_is_reported(self, client, source, task_fields, monkeypatch):
        def broken(*args, **kwargs):
            raise PredictionFailure("GPU and CPU predictions differ in 3 pixels")

        monkeypatch.setattr(RandomForestImage, "predict", broken)
        task = source.put(task_fields)
        assert client.run(max_tasks=1) == 1
        assert "PredictionFailure" in source.failures[task.task_id]
        assert source.reports == {}

    def test_fetch_error_is_skipped(self, client, source, task_fields, monkeypatch):
        """A fetch that fails is logged and the worker fetches again."""
        task = source.put(task_fields)
        fetch = source.fetch_next
        calls = []

        def flaky_fetch(timeout=None):
            calls.append(timeout)
            if len(calls) == 1:
                raise ConnectionError("queue unreachable")
            return fetch(timeout)

        monkeypatch.setattr(source, "fetch_next", flaky_fetch)
        assert client.run(max_tasks=1) == 1
        assert len(calls) == 2
        assert set(source.reports) == {task.task_id}

    def test_report_error_fails_task_and_continues(
        self, client, source, task_fields, monkeypatch
    ):
        def broken_report(task, report):
            raise OSError("artifact upload failed")

        monkeypatch.setattr(source, "report", broken_report)
        first = source.put(task_fields)
        second = source.put(task_fields)

        assert client.run(max_tasks=2) == 2
        assert "OSError: artifact upload failed" == source.failures[first.task_id]
        assert second.task_id in source.failures

    def test_unexpected_training_error_is_reported(
        self, client, source, task_fields, monkeypatch
    ):
        def broken(self, *args, **kwargs):
            raise ValueError("bad sample buffer")

        monkeypatch.setattr(RandomForestImage, "train", broken)
        task = source.put(task_fields)
        assert client.run(max_tasks=1) == 1
        assert source.failures[task.task_id] == "ValueError: bad sample buffer"

    def test_parameters_parsed_before_training(self, client, source, task_fields, monkeypatch):
        """Malformed tasks never reach training."""
        trained = []
        monkeypatch.setattr(client, "train", lambda *args: trained.append(args))
        task = source.put({**task_fields, "max_depth": "deep"})
        client.run(max_tasks=1)
        assert trained == []
        assert task.task_id in source.failures
