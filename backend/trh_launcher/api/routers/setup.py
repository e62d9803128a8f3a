"""
Setup API Router

Starts, retries and inspects the setup pipeline, and answers the
port-freeing confirmation the pipeline may be waiting on.
"""

import logging

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from trh_launcher.api.errors import api_exception_handler
from trh_launcher.api.services import AppServices, get_services
from trh_launcher.core.validation import ContainerCredentials

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/setup", tags=["setup"])


# ============================================================================
# Pydantic Models
# ============================================================================


class StartSetupRequest(BaseModel):
    """Optional admin credentials passed to the stack containers"""

    admin_email: str | None = Field(None, description="Platform admin email")
    admin_password: str | None = Field(None, description="Platform admin password")


class SetupAcceptedResponse(BaseModel):
    """Response for a setup run that was started in the background"""

    run_id: str
    status: str = "accepted"


class PortDecisionResponse(BaseModel):
    confirmed: bool
    ports: list[int]


class InstallUrlResponse(BaseModel):
    url: str


# ============================================================================
# Endpoints
# ============================================================================


@router.get("/state")
async def get_setup_state(services: AppServices = Depends(get_services)) -> dict:
    """
    Get the current setup run snapshot

    Includes any port conflicts awaiting confirmation and the name of the
    operation currently holding the lock.
    """
    orchestrator = services.orchestrator
    return {
        **orchestrator.run.to_dict(),
        "busy": orchestrator.busy,
        "operation": orchestrator.current_operation,
        "pending_conflicts": [c.to_dict() for c in services.presenter.pending_conflicts],
    }


@router.post(
    "/start", response_model=SetupAcceptedResponse, status_code=status.HTTP_202_ACCEPTED
)
@api_exception_handler("start_setup")
async def start_setup(
    request: StartSetupRequest | None = None,
    services: AppServices = Depends(get_services),
):
    """
    Start the setup pipeline in the background

    Returns:
        202: Run accepted; progress is pushed over /ws/setup
        409: Another operation is in progress
        422: Invalid credentials
    """
    credentials = None
    if request is not None:
        credentials = ContainerCredentials(
            admin_email=request.admin_email, admin_password=request.admin_password
        )
    run = services.orchestrator.launch(credentials)
    logger.info(f"Setup run {run.run_id} started")
    return SetupAcceptedResponse(run_id=run.run_id)


@router.post(
    "/retry", response_model=SetupAcceptedResponse, status_code=status.HTTP_202_ACCEPTED
)
@api_exception_handler("retry_setup")
async def retry_setup(services: AppServices = Depends(get_services)):
    """
    Retry a failed run from the first step

    Returns:
        202: Retry accepted
        409: Busy, or the last run did not fail
    """
    run = services.orchestrator.launch_retry()
    logger.info(f"Setup run {run.run_id} started (retry)")
    return SetupAcceptedResponse(run_id=run.run_id)


@router.post("/ports/confirm", response_model=PortDecisionResponse)
@api_exception_handler("confirm_free_ports")
async def confirm_free_ports(services: AppServices = Depends(get_services)):
    """Allow the pipeline to stop the processes holding required ports"""
    conflicts = services.presenter.resolve(True)
    return PortDecisionResponse(confirmed=True, ports=sorted({c.port for c in conflicts}))


@router.post("/ports/cancel", response_model=PortDecisionResponse)
@api_exception_handler("cancel_free_ports")
async def cancel_free_ports(services: AppServices = Depends(get_services)):
    """Decline freeing ports; the run fails with a port conflict"""
    conflicts = services.presenter.resolve(False)
    return PortDecisionResponse(confirmed=False, ports=sorted({c.port for c in conflicts}))


@router.get("/install-url", response_model=InstallUrlResponse)
async def get_install_url(services: AppServices = Depends(get_services)):
    """Docker Desktop download page for this platform"""
    return InstallUrlResponse(url=services.orchestrator.gateway.install_url())
