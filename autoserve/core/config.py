"""
Configuration types for autoserve.

Deployment configuration (one ``APISpec`` per served API) and runtime
configuration (``ServingConfig``) are plain dataclasses validated on
construction. ``APISpec`` is frozen: a redeploy replaces it wholesale.
"""

from dataclasses import dataclass, field, asdict
from typing import Dict, Any, Optional
from enum import Enum

from .exceptions import ConfigurationError


class PredictorType(Enum):
    """Supported inference backends."""
    TORCHSCRIPT = "torchscript"
    PYTHON = "python"

    @classmethod
    def from_string(cls, value: str) -> "PredictorType":
        """Create PredictorType from string value."""
        value = (value or "").lower()
        for predictor_type in cls:
            if predictor_type.value == value:
                return predictor_type

        valid_values = [pt.value for pt in cls]
        raise ValueError(f"Invalid predictor type: '{value}'. Must be one of: {valid_values}")


@dataclass(frozen=True)
class PredictorSpec:
    """Reference to the predictor a replica runs. ``path`` is opaque to the core."""
    type: PredictorType
    path: str
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ComputeSpec:
    """Resource request passed through to the execution substrate."""
    cpu: Optional[float] = None
    mem: Optional[str] = None


@dataclass(frozen=True)
class APISpec:
    """Immutable per-deployment configuration of one API."""
    name: str
    predictor: PredictorSpec
    target_replica_concurrency: int = 1
    min_replicas: int = 0
    max_replicas: int = 1
    stabilization_window: float = 300.0
    cold_start_timeout: float = 30.0
    max_queue_size: int = 100
    max_queue_wait: float = 30.0
    drain_timeout: float = 30.0
    startup_timeout: float = 60.0
    compute: ComputeSpec = field(default_factory=ComputeSpec)

    def __post_init__(self):
        if not self.name:
            raise ValueError("name must not be empty")
        if self.target_replica_concurrency <= 0:
            raise ValueError("target_replica_concurrency must be positive")
        if self.min_replicas < 0:
            raise ValueError("min_replicas must be non-negative")
        if self.max_replicas <= 0:
            raise ValueError("max_replicas must be positive")
        if self.max_replicas < self.min_replicas:
            raise ValueError("max_replicas must be >= min_replicas")
        if self.stabilization_window < 0:
            raise ValueError("stabilization_window must be non-negative")
        if self.cold_start_timeout <= 0:
            raise ValueError("cold_start_timeout must be positive")
        if self.max_queue_size <= 0:
            raise ValueError("max_queue_size must be positive")
        if self.max_queue_wait <= 0:
            raise ValueError("max_queue_wait must be positive")
        if self.drain_timeout < 0:
            raise ValueError("drain_timeout must be non-negative")
        if self.startup_timeout <= 0:
            raise ValueError("startup_timeout must be positive")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "APISpec":
        """
        Build an APISpec from a deployment structure.

        Args:
            data: Mapping with ``name``, ``predictor``, optional ``compute`` and
                optional ``autoscaling`` sections.

        Raises:
            ConfigurationError: If a field is missing or invalid.
        """
        name = data.get("name")
        if not name:
            raise ConfigurationError("name", "API name is required")

        predictor_data = data.get("predictor") or {}
        if "path" not in predictor_data:
            raise ConfigurationError("predictor.path", "predictor path is required", context={"api_name": name})

        try:
            predictor = PredictorSpec(
                type=PredictorType.from_string(predictor_data.get("type", "python")),
                path=str(predictor_data["path"]),
                config=dict(predictor_data.get("config") or {})
            )
            compute_data = data.get("compute") or {}
            compute = ComputeSpec(cpu=compute_data.get("cpu"), mem=compute_data.get("mem"))
            scaling = data.get("autoscaling") or {}
            known = {f for f in cls.__dataclass_fields__ if f not in ("name", "predictor", "compute")}
            unknown = set(scaling) - known
            if unknown:
                raise ValueError(f"unknown autoscaling fields: {sorted(unknown)}")
            return cls(name=name, predictor=predictor, compute=compute, **scaling)
        except (TypeError, ValueError) as e:
            raise ConfigurationError("autoscaling", str(e), context={"api_name": name}, cause=e)

    def to_dict(self) -> Dict[str, Any]:
        """Deployment structure form, the inverse of ``from_dict``."""
        scaling = asdict(self)
        for key in ("name", "predictor", "compute"):
            scaling.pop(key)
        return {
            "name": self.name,
            "predictor": {
                "type": self.predictor.type.value,
                "path": self.predictor.path,
                "config": dict(self.predictor.config)
            },
            "compute": {"cpu": self.compute.cpu, "mem": self.compute.mem},
            "autoscaling": scaling
        }


@dataclass
class MetricsConfig:
    """Sliding-window aggregation settings."""
    window_seconds: float = 60.0
    prune_interval: float = 10.0

    def __post_init__(self):
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if self.prune_interval <= 0:
            raise ValueError("prune_interval must be positive")


@dataclass
class ControllerConfig:
    """Autoscaler control loop and scale-up backoff settings."""
    control_interval: float = 5.0
    backoff_base: float = 1.0
    backoff_max: float = 60.0
    backoff_multiplier: float = 2.0
    backoff_jitter: bool = True
    max_history: int = 1000

    def __post_init__(self):
        if self.control_interval <= 0:
            raise ValueError("control_interval must be positive")
        if self.backoff_base <= 0:
            raise ValueError("backoff_base must be positive")
        if self.backoff_max < self.backoff_base:
            raise ValueError("backoff_max must be >= backoff_base")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")


@dataclass
class ReplicaConfig:
    """Replica lifecycle settings shared by all APIs."""
    health_check_interval: float = 0.5
    executor_workers: int = 8
    terminated_history: int = 50

    def __post_init__(self):
        if self.health_check_interval <= 0:
            raise ValueError("health_check_interval must be positive")
        if self.executor_workers <= 0:
            raise ValueError("executor_workers must be positive")


@dataclass
class ServerConfig:
    """HTTP server and logging settings."""
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    log_dir: str = "logs"
    file_logging: bool = True


@dataclass
class ServingConfig:
    """Runtime configuration of a serving engine."""
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    replica: ReplicaConfig = field(default_factory=ReplicaConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    environment: str = "development"
