"""
TorchScript predictor.

Loads a serialized TorchScript module with ``torch.jit.load`` and runs it
under ``torch.no_grad``. Requests carry ``{"inputs": <nested list>}`` and
responses are ``{"outputs": <nested list>}``.
"""

from pathlib import Path
from typing import Any, Dict

import torch

from .base import BasePredictor, register_predictor
from ..core.config import PredictorType
from ..core.exceptions import InferenceError, InitializationError


@register_predictor(PredictorType.TORCHSCRIPT)
class TorchScriptPredictor(BasePredictor):
    """Runs a TorchScript module on CPU or a configured device."""

    def __init__(self, path: str):
        super().__init__(path)
        self.model = None
        self.device = torch.device("cpu")
        self.dtype = torch.float32

    def init(self, config: Dict[str, Any]) -> None:
        self.config = dict(config or {})
        model_path = Path(self.path)
        if not model_path.exists():
            raise InitializationError(self.path, context={"reason": "file not found"})

        try:
            self.device = torch.device(self.config.get("device", "cpu"))
            self.dtype = getattr(torch, self.config.get("dtype", "float32"))
            self.model = torch.jit.load(str(model_path), map_location=self.device)
            self.model.eval()
        except (RuntimeError, ValueError, AttributeError) as e:
            raise InitializationError(self.path, cause=e)

        self._initialized = True
        self.logger.info(f"Loaded TorchScript model from {self.path} on {self.device}")

    def predict(self, payload: Any) -> Any:
        if not self._initialized:
            raise InferenceError("predictor is not initialized")
        if not isinstance(payload, dict) or "inputs" not in payload:
            raise InferenceError("payload must be an object with an 'inputs' field")

        try:
            inputs = torch.as_tensor(payload["inputs"], dtype=self.dtype, device=self.device)
        except (TypeError, ValueError, RuntimeError) as e:
            raise InferenceError("inputs cannot be converted to a tensor", cause=e)

        try:
            with torch.no_grad():
                outputs = self.model(inputs)
        except RuntimeError as e:
            raise InferenceError(str(e), cause=e, context={"input_shape": list(inputs.shape)})

        return {"outputs": self._to_json(outputs)}

    def _to_json(self, outputs: Any) -> Any:
        if isinstance(outputs, torch.Tensor):
            return outputs.detach().cpu().tolist()
        if isinstance(outputs, (list, tuple)):
            return [self._to_json(o) for o in outputs]
        if isinstance(outputs, dict):
            return {k: self._to_json(v) for k, v in outputs.items()}
        return outputs

    def cleanup(self) -> None:
        self.model = None
        super().cleanup()
