"""Unit tests for deployment and runtime configuration types."""

import pytest

from autoserve.core.config import (
    APISpec, ComputeSpec, ControllerConfig, MetricsConfig, PredictorSpec,
    PredictorType, ReplicaConfig, ServingConfig
)
from autoserve.core.exceptions import ConfigurationError


def _predictor():
    return PredictorSpec(type=PredictorType.PYTHON, path="pkg.module:Model")


class TestPredictorType:
    """Test predictor type parsing."""

    def test_from_string(self):
        assert PredictorType.from_string("torchscript") == PredictorType.TORCHSCRIPT
        assert PredictorType.from_string("PYTHON") == PredictorType.PYTHON

    def test_invalid_type(self):
        with pytest.raises(ValueError, match="Invalid predictor type"):
            PredictorType.from_string("onnx")


class TestAPISpec:
    """Test APISpec validation."""

    def test_defaults(self):
        spec = APISpec(name="iris", predictor=_predictor())

        assert spec.target_replica_concurrency == 1
        assert spec.min_replicas == 0
        assert spec.max_replicas == 1
        assert spec.max_queue_size == 100
        assert spec.compute == ComputeSpec()

    @pytest.mark.parametrize("field_name,value,message", [
        ("target_replica_concurrency", 0, "target_replica_concurrency must be positive"),
        ("min_replicas", -1, "min_replicas must be non-negative"),
        ("max_replicas", 0, "max_replicas must be positive"),
        ("stabilization_window", -1, "stabilization_window must be non-negative"),
        ("cold_start_timeout", 0, "cold_start_timeout must be positive"),
        ("max_queue_size", 0, "max_queue_size must be positive"),
        ("max_queue_wait", 0, "max_queue_wait must be positive"),
        ("drain_timeout", -1, "drain_timeout must be non-negative"),
    ])
    def test_invalid_values(self, field_name, value, message):
        with pytest.raises(ValueError, match=message):
            APISpec(name="iris", predictor=_predictor(), **{field_name: value})

    def test_max_below_min(self):
        with pytest.raises(ValueError, match="max_replicas must be >= min_replicas"):
            APISpec(name="iris", predictor=_predictor(), min_replicas=3, max_replicas=2)

    def test_immutable(self):
        spec = APISpec(name="iris", predictor=_predictor())

        with pytest.raises(AttributeError):
            spec.max_replicas = 5

    def test_from_dict(self):
        spec = APISpec.from_dict({
            "name": "iris",
            "predictor": {"type": "torchscript", "path": "models/iris.pt", "config": {"device": "cpu"}},
            "compute": {"cpu": 1, "mem": "2Gi"},
            "autoscaling": {
                "min_replicas": 1,
                "max_replicas": 3,
                "target_replica_concurrency": 4,
                "stabilization_window": 60,
            },
        })

        assert spec.name == "iris"
        assert spec.predictor.type == PredictorType.TORCHSCRIPT
        assert spec.predictor.config == {"device": "cpu"}
        assert spec.compute.mem == "2Gi"
        assert spec.min_replicas == 1
        assert spec.max_replicas == 3
        assert spec.target_replica_concurrency == 4
        assert spec.stabilization_window == 60

    def test_from_dict_round_trip(self):
        data = {
            "name": "iris",
            "predictor": {"type": "python", "path": "pkg:Model"},
            "autoscaling": {"max_replicas": 2},
        }

        spec = APISpec.from_dict(data)

        assert APISpec.from_dict(spec.to_dict()) == spec

    def test_from_dict_missing_name(self):
        with pytest.raises(ConfigurationError, match="name"):
            APISpec.from_dict({"predictor": {"path": "x"}})

    def test_from_dict_missing_path(self):
        with pytest.raises(ConfigurationError, match="predictor.path"):
            APISpec.from_dict({"name": "iris", "predictor": {"type": "python"}})

    def test_from_dict_unknown_autoscaling_field(self):
        with pytest.raises(ConfigurationError, match="unknown autoscaling fields"):
            APISpec.from_dict({
                "name": "iris",
                "predictor": {"path": "pkg:Model"},
                "autoscaling": {"max_replica": 2},
            })

    def test_from_dict_invalid_bounds(self):
        with pytest.raises(ConfigurationError) as exc_info:
            APISpec.from_dict({
                "name": "iris",
                "predictor": {"path": "pkg:Model"},
                "autoscaling": {"min_replicas": 5, "max_replicas": 1},
            })

        assert exc_info.value.status_code == 400
        assert exc_info.value.context["api_name"] == "iris"


class TestServingConfig:
    """Test runtime configuration sections."""

    def test_defaults(self):
        config = ServingConfig()

        assert config.metrics.window_seconds == 60.0
        assert config.controller.control_interval == 5.0
        assert config.replica.health_check_interval == 0.5
        assert config.server.port == 8000

    def test_metrics_validation(self):
        with pytest.raises(ValueError, match="window_seconds must be positive"):
            MetricsConfig(window_seconds=0)

    def test_controller_validation(self):
        with pytest.raises(ValueError, match="control_interval must be positive"):
            ControllerConfig(control_interval=0)
        with pytest.raises(ValueError, match="backoff_max must be >= backoff_base"):
            ControllerConfig(backoff_base=10, backoff_max=5)

    def test_replica_validation(self):
        with pytest.raises(ValueError, match="executor_workers must be positive"):
            ReplicaConfig(executor_workers=0)
