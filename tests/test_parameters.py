"""Tests for task parameter parsing, worker configuration and the search space."""

import pytest
from pydantic import ValidationError

from rgbdforest.errors import ConfigurationError, MalformedTaskError, UnknownLossFunctionError
from rgbdforest.forest import AccelerationMode, SubsamplingType
from rgbdforest.hpo.parameters import HyperoptClientConfig, TaskParameters, get_parameter_double
from rgbdforest.hpo.result import LossFunctionType
from rgbdforest.hpo.search_space import (
    SEARCH_SPACE,
    get_clearml_hyper_parameters,
    sample_configurations,
    sample_task_parameters,
)


class TestGetParameterDouble:
    """Tests for get_parameter_double."""

    def test_numbers_and_strings(self):
        fields = {"a": 3, "b": 0.5, "c": "0.25", "d": " 7 "}
        assert get_parameter_double(fields, "a") == 3.0
        assert get_parameter_double(fields, "b") == 0.5
        assert get_parameter_double(fields, "c") == 0.25
        assert get_parameter_double(fields, "d") == 7.0

    def test_missing(self):
        with pytest.raises(MalformedTaskError) as exc_info:
            get_parameter_double({}, "num_trees")
        assert exc_info.value.field == "num_trees"

    @pytest.mark.parametrize("value", ["many", None, True, [1], "nan", "inf"])
    def test_invalid(self, value):
        with pytest.raises(MalformedTaskError):
            get_parameter_double({"x": value}, "x")


class TestTaskParameters:
    """Tests for TaskParameters.from_fields."""

    def test_parse(self, task_fields):
        params = TaskParameters.from_fields(task_fields)
        assert params.num_trees == 2
        assert params.test_ratio == 0.25
        assert params.loss_function is None

    def test_string_fields(self, task_fields):
        """Queue backends deliver strings."""
        params = TaskParameters.from_fields({k: str(v) for k, v in task_fields.items()})
        assert params.max_depth == 5
        assert params.histogram_bias == 0.0

    def test_extra_fields_ignored(self, task_fields):
        params = TaskParameters.from_fields({**task_fields, "comment": "hello"})
        assert params.num_trees == 2

    def test_loss_function(self, task_fields):
        params = TaskParameters.from_fields({**task_fields, "loss_function": "pixelAccuracy"})
        assert params.loss_function is LossFunctionType.PIXEL_ACCURACY

    def test_unknown_loss_function(self, task_fields):
        with pytest.raises(MalformedTaskError) as exc_info:
            TaskParameters.from_fields({**task_fields, "loss_function": "iou"})
        assert exc_info.value.field == "loss_function"

    def test_first_bad_field_reported(self, task_fields):
        fields = {**task_fields, "num_trees": "lots", "max_depth": None}
        with pytest.raises(MalformedTaskError) as exc_info:
            TaskParameters.from_fields(fields)
        assert exc_info.value.field == "num_trees"

    def test_missing_field(self, task_fields):
        del task_fields["thresholds"]
        with pytest.raises(MalformedTaskError, match="thresholds"):
            TaskParameters.from_fields(task_fields)

    def test_non_integer(self, task_fields):
        with pytest.raises(MalformedTaskError, match="num_trees"):
            TaskParameters.from_fields({**task_fields, "num_trees": 2.5})

    def test_out_of_range(self, task_fields):
        with pytest.raises(MalformedTaskError) as exc_info:
            TaskParameters.from_fields({**task_fields, "test_ratio": 1.5})
        assert exc_info.value.field == "test_ratio"

    def test_to_fields_round_trip(self, task_fields):
        params = TaskParameters.from_fields({**task_fields, "loss_function": "classAccuracy"})
        assert TaskParameters.from_fields(params.to_fields()) == params


class TestHyperoptClientConfig:
    """Tests for HyperoptClientConfig."""

    def test_defaults(self):
        config = HyperoptClientConfig()
        assert config.loss_function is LossFunctionType.CLASS_ACCURACY_WITHOUT_VOID
        assert config.acceleration_mode is AccelerationMode.CPU_ONLY

    def test_loss_function_by_name(self):
        config = HyperoptClientConfig(loss_function="pixelAccuracyWithoutVoid")
        assert config.loss_function is LossFunctionType.PIXEL_ACCURACY_WITHOUT_VOID

    def test_unknown_loss_function(self):
        """An unknown loss function fails construction, never defaults."""
        with pytest.raises(UnknownLossFunctionError):
            HyperoptClientConfig(loss_function="PixelAccuracy")

    def test_invalid_device_id(self):
        with pytest.raises(ValidationError):
            HyperoptClientConfig(device_ids=(-1,))

    def test_invalid_ignored_color(self):
        with pytest.raises(ValidationError):
            HyperoptClientConfig(ignored_colors=("red",))

    def test_training_configuration(self, task_fields):
        config = HyperoptClientConfig(
            num_labels=3,
            ignored_colors=("0, 0, 0",),
            subsampling_type=SubsamplingType.PIXEL_UNIFORM,
        )
        params = TaskParameters.from_fields(task_fields)
        cfg = config.training_configuration(params, random_seed=7)
        assert cfg.random_seed == 7
        assert cfg.max_depth == 5
        assert cfg.num_labels == 3
        assert cfg.ignored_colors == ("0,0,0",)
        assert cfg.ignored_labels == frozenset({0})

    def test_invalid_combination(self, task_fields):
        """Values outside the training configuration ranges are configuration errors."""
        params = TaskParameters.model_construct(
            **{**TaskParameters.from_fields(task_fields).model_dump(), "max_depth": 100}
        )
        with pytest.raises(ConfigurationError, match="max_depth"):
            HyperoptClientConfig().training_configuration(params)


class TestSearchSpace:
    """Tests for sampling from the search space through ClearML parameter ranges."""

    def test_ranges_cover_every_field(self):
        ranges = get_clearml_hyper_parameters()
        assert [p.name for p in ranges] == [f"General/{name}" for name in SEARCH_SPACE]

    def test_range_types(self):
        from clearml.automation import (
            DiscreteParameterRange,
            LogUniformParameterRange,
            UniformIntegerParameterRange,
            UniformParameterRange,
        )

        ranges = {p.name.split("/", 1)[1]: p for p in get_clearml_hyper_parameters()}
        assert isinstance(ranges["num_trees"], DiscreteParameterRange)
        assert isinstance(ranges["samples_per_image"], LogUniformParameterRange)
        assert isinstance(ranges["max_depth"], UniformIntegerParameterRange)
        assert isinstance(ranges["histogram_bias"], UniformParameterRange)

    def test_samples_are_valid(self):
        for params in sample_configurations(50, seed=0):
            assert params.num_trees in SEARCH_SPACE["num_trees"]
            assert SEARCH_SPACE["max_depth"]["min"] <= params.max_depth <= SEARCH_SPACE["max_depth"]["max"]
            space = SEARCH_SPACE["samples_per_image"]
            assert space["min"] <= params.samples_per_image <= space["max"]
            assert 0.0 <= params.histogram_bias <= 0.6

    def test_overrides(self):
        (params,) = sample_configurations(
            1, seed=1, overrides={"num_trees": 1, "loss_function": "pixelAccuracy"}
        )
        assert params.num_trees == 1
        assert params.loss_function is LossFunctionType.PIXEL_ACCURACY

    def test_deterministic(self):
        assert sample_configurations(5, seed=3) == sample_configurations(5, seed=3)

    def test_single_draw(self):
        params = sample_task_parameters({"max_depth": 10})
        assert params.max_depth == 10
