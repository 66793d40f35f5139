"""
Deployment management endpoints.
"""

import logging

from fastapi import APIRouter, Depends

from ..dependencies import get_engine
from ..schemas import APIResponse, DeployRequest
from ...core.config import APISpec
from ...core.serving_engine import ServingEngine

router = APIRouter(prefix="/apis", tags=["apis"])
logger = logging.getLogger(__name__)


@router.get("")
async def list_apis(engine: ServingEngine = Depends(get_engine)) -> APIResponse:
    """List deployed APIs with their load, replicas and queue depth."""
    apis = engine.list_apis()
    return APIResponse(success=True, data=apis, message=f"{len(apis)} APIs deployed")


@router.get("/{api_name}")
async def get_api(api_name: str, engine: ServingEngine = Depends(get_engine)) -> APIResponse:
    """Status of one API."""
    return APIResponse(success=True, data=engine.get_status(api_name))


@router.post("")
async def deploy_api(request: DeployRequest, engine: ServingEngine = Depends(get_engine)) -> APIResponse:
    """Deploy a new API or replace the spec of an existing one."""
    spec = APISpec.from_dict(request.model_dump())
    redeploy = engine.has_api(spec.name)
    status = await engine.deploy(spec)
    logger.info(f"[API] {'Redeployed' if redeploy else 'Deployed'} {spec.name}")
    return APIResponse(
        success=True,
        data=status,
        message=f"API {spec.name} {'redeployed' if redeploy else 'deployed'}"
    )


@router.delete("/{api_name}")
async def undeploy_api(api_name: str, engine: ServingEngine = Depends(get_engine)) -> APIResponse:
    """Undeploy an API. Queued requests fail and replicas drain."""
    await engine.undeploy(api_name)
    return APIResponse(success=True, data={"name": api_name}, message=f"API {api_name} undeployed")
