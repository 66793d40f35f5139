"""Predictor variants, one per supported inference backend."""

from .base import BasePredictor, create_predictor, get_predictor_class, register_predictor
from .python_predictor import PythonPredictor
from .torch_predictor import TorchScriptPredictor

__all__ = [
    'BasePredictor',
    'create_predictor',
    'get_predictor_class',
    'register_predictor',
    'PythonPredictor',
    'TorchScriptPredictor',
]
