"""
Python predictor.

``predictor.path`` names a class as ``"package.module:ClassName"``. The class
is constructed with the predictor config and must expose ``predict(payload)``.
"""

import importlib
from typing import Any, Dict

from .base import BasePredictor, register_predictor
from ..core.config import PredictorType
from ..core.exceptions import InferenceError, InitializationError, ServingError


@register_predictor(PredictorType.PYTHON)
class PythonPredictor(BasePredictor):
    """Wraps a user-supplied Python class."""

    def __init__(self, path: str):
        super().__init__(path)
        self.instance = None

    def init(self, config: Dict[str, Any]) -> None:
        self.config = dict(config or {})
        module_name, sep, class_name = self.path.partition(":")
        if not sep or not module_name or not class_name:
            raise InitializationError(self.path, context={"reason": "path must look like 'module:ClassName'"})

        try:
            module = importlib.import_module(module_name)
            predictor_class = getattr(module, class_name)
        except (ImportError, AttributeError) as e:
            raise InitializationError(self.path, cause=e)

        if not callable(getattr(predictor_class, "predict", None)):
            raise InitializationError(self.path, context={"reason": f"{class_name} has no predict method"})

        try:
            self.instance = predictor_class(self.config)
        except ServingError:
            raise
        except Exception as e:
            raise InitializationError(self.path, cause=e)

        self._initialized = True
        self.logger.info(f"Initialized Python predictor {self.path}")

    def predict(self, payload: Any) -> Any:
        if not self._initialized:
            raise InferenceError("predictor is not initialized")

        try:
            return self.instance.predict(payload)
        except InferenceError:
            raise
        except Exception as e:
            raise InferenceError(str(e) or e.__class__.__name__, cause=e)

    def cleanup(self) -> None:
        cleanup = getattr(self.instance, "cleanup", None)
        if callable(cleanup):
            cleanup()
        self.instance = None
        super().cleanup()
