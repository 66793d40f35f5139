"""
Inference endpoint, one path per deployed API.
"""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from ..dependencies import get_engine
from ...core.serving_engine import ServingEngine

router = APIRouter(prefix="/predict", tags=["predict"])
logger = logging.getLogger(__name__)


@router.post("/{api_name}",
             summary="Run inference",
             description="Route a JSON payload to a replica of the API and return the predictor's response")
async def predict(api_name: str,
                  payload: Any = Body(...),
                  engine: ServingEngine = Depends(get_engine)) -> JSONResponse:
    # Serving errors propagate to the application's exception handlers
    result = await engine.predict(api_name, payload)
    return JSONResponse(content=result)
