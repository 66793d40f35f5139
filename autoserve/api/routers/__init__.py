"""HTTP routers."""

from .apis import router as apis_router
from .core import router as core_router
from .predict import router as predict_router

__all__ = ["apis_router", "core_router", "predict_router"]
