"""
Stack API Router

Status and lifecycle operations on the running stack. Lifecycle operations
share the setup pipeline's lock and are rejected with 409 while it runs.
"""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from trh_launcher.api.errors import api_exception_handler
from trh_launcher.api.services import AppServices, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stack", tags=["stack"])


class StackStatusResponse(BaseModel):
    """Derived status of the managed stack"""

    installed: bool
    running: bool
    containers_up: bool
    healthy: bool
    error: str | None = None


class OperationResponse(BaseModel):
    success: bool
    message: str | None = None


@router.get("/status", response_model=StackStatusResponse)
@api_exception_handler("stack_status")
async def get_stack_status(services: AppServices = Depends(get_services)):
    """Recompute the stack status from the runtime"""
    status = await services.orchestrator.status()
    return StackStatusResponse(**status.to_dict())


@router.post("/stop", response_model=OperationResponse)
@api_exception_handler("stop_stack")
async def stop_stack(services: AppServices = Depends(get_services)):
    await services.orchestrator.stop()
    return OperationResponse(success=True, message="Containers stopped")


@router.post("/restart", response_model=OperationResponse)
@api_exception_handler("restart_stack")
async def restart_stack(services: AppServices = Depends(get_services)):
    """Stop and start the stack with the credentials of the last setup run"""
    await services.orchestrator.restart()
    return OperationResponse(success=True, message="Containers restarted")


@router.post("/prune", response_model=OperationResponse)
@api_exception_handler("prune_stack")
async def prune_stack(services: AppServices = Depends(get_services)):
    """Remove stopped containers, dangling images and unused networks"""
    await services.orchestrator.prune()
    return OperationResponse(success=True, message="Docker resources pruned")


@router.post("/start-daemon", response_model=OperationResponse)
@api_exception_handler("start_daemon")
async def start_daemon(services: AppServices = Depends(get_services)):
    """Try to launch Docker Desktop and wait for the daemon to answer"""
    started = await services.orchestrator.start_daemon()
    return OperationResponse(
        success=started,
        message="Docker daemon is running" if started else "Docker daemon did not start",
    )
