"""
Predictor interface and registry.

A predictor is the framework-specific code that runs inside a replica. The
serving core never looks inside it: it creates one through ``create_predictor``
using the ``predictor.type`` of the deployment, calls ``init`` once while the
replica starts and ``predict`` for every request.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Type
import logging

from ..core.config import PredictorSpec, PredictorType
from ..core.exceptions import ConfigurationError


logger = logging.getLogger(__name__)


class BasePredictor(ABC):
    """
    Abstract base class for all predictor implementations.

    Subclasses raise ``InitializationError`` from ``init`` and
    ``InferenceError`` from ``predict``.
    """

    def __init__(self, path: str):
        self.path = path
        self.config: Dict[str, Any] = {}
        self._initialized = False
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    def init(self, config: Dict[str, Any]) -> None:
        """Load whatever the predictor needs. Called once before any predict."""

    @abstractmethod
    def predict(self, payload: Any) -> Any:
        """Run inference on one JSON-compatible payload and return a JSON-compatible response."""

    def cleanup(self) -> None:
        """Release resources held by the predictor."""
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized


_PREDICTOR_REGISTRY: Dict[PredictorType, Type[BasePredictor]] = {}


def register_predictor(predictor_type: PredictorType) -> Callable[[Type[BasePredictor]], Type[BasePredictor]]:
    """Class decorator binding a predictor implementation to a PredictorType."""
    def decorator(cls: Type[BasePredictor]) -> Type[BasePredictor]:
        _PREDICTOR_REGISTRY[predictor_type] = cls
        return cls
    return decorator


def get_predictor_class(predictor_type: PredictorType) -> Type[BasePredictor]:
    try:
        return _PREDICTOR_REGISTRY[predictor_type]
    except KeyError:
        raise ConfigurationError(
            "predictor.type",
            f"no predictor registered for '{predictor_type.value}'",
            context={"registered": [t.value for t in _PREDICTOR_REGISTRY]}
        )


def create_predictor(spec: PredictorSpec) -> BasePredictor:
    """Instantiate the predictor variant selected by ``spec.type`` (not yet initialized)."""
    predictor_class = get_predictor_class(spec.type)
    logger.debug(f"Creating {predictor_class.__name__} for {spec.path}")
    return predictor_class(spec.path)
