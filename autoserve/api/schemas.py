"""
Pydantic request and response models for the HTTP API.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..core.config import PredictorType


class APIResponse(BaseModel):
    """Standard API response model."""
    success: bool = Field(..., description="Whether the operation was successful")
    data: Optional[Any] = Field(None, description="Response data")
    message: Optional[str] = Field(None, description="Response message")
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat(), description="Response timestamp")


class ErrorResponse(BaseModel):
    """Error response model."""
    success: bool = Field(False, description="Always false for error responses")
    error: str = Field(..., description="Error message")
    error_code: Optional[str] = Field(None, description="Error code")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
    suggestions: List[str] = Field(default_factory=list, description="Hints for resolving the error")
    retry_after: Optional[float] = Field(None, description="Seconds to wait before retrying")
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat(), description="Error timestamp")


class HealthResponse(BaseModel):
    """Health check response model."""
    healthy: bool = Field(..., description="Overall health status")
    checks: Dict[str, Any] = Field(..., description="Individual component health checks")
    timestamp: float = Field(..., description="Timestamp of health check")
    version: Optional[str] = Field(None, description="Application version")
    uptime: Optional[float] = Field(None, description="Application uptime in seconds")


class PredictorModel(BaseModel):
    """Predictor reference of a deployment."""
    type: str = Field(PredictorType.PYTHON.value, description="Inference backend")
    path: str = Field(..., description="Model file or 'module:Class' reference")
    config: Dict[str, Any] = Field(default_factory=dict, description="Backend-specific settings")

    @field_validator('type')
    @classmethod
    def validate_type(cls, v):
        return PredictorType.from_string(v).value


class ComputeModel(BaseModel):
    """Resources requested per replica."""
    cpu: Optional[float] = Field(None, gt=0, description="CPU cores")
    mem: Optional[str] = Field(None, description="Memory, e.g. '2Gi'")


class AutoscalingModel(BaseModel):
    """Autoscaling and admission settings of a deployment."""
    min_replicas: int = Field(0, ge=0, description="Replicas kept when idle")
    max_replicas: int = Field(1, gt=0, description="Upper replica bound")
    target_replica_concurrency: int = Field(1, gt=0, description="In-flight requests per replica before queueing")
    stabilization_window: float = Field(300.0, ge=0, description="Seconds a lower replica count must persist before scaling down")
    cold_start_timeout: float = Field(30.0, gt=0, description="Seconds a request waits for a cold start")
    max_queue_size: int = Field(100, gt=0, description="Queued requests before rejecting")
    max_queue_wait: float = Field(30.0, gt=0, description="Seconds a request waits in queue")
    drain_timeout: float = Field(30.0, ge=0, description="Seconds a draining replica may finish in-flight requests")
    startup_timeout: float = Field(60.0, gt=0, description="Seconds a replica may take to become healthy")


class DeployRequest(BaseModel):
    """Deployment of one API."""
    name: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9][A-Za-z0-9_.-]*$", description="Unique API name")
    predictor: PredictorModel
    compute: ComputeModel = Field(default_factory=ComputeModel)
    autoscaling: AutoscalingModel = Field(default_factory=AutoscalingModel)
