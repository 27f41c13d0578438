"""Connection and sync routes."""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from paysync.api.deps import get_correlation_id, get_owner, get_service
from paysync.models.connection import OwnerRef
from paysync.schemas import ConnectionSummary, ConnectStarted, JobStatus, SyncStarted
from paysync.service import IntegrationService

router = APIRouter()


class ExchangeRequest(BaseModel):
    code: str


@router.post("/{provider}/connect", response_model=ConnectStarted)
def initiate_connect(
    provider: str,
    owner: OwnerRef = Depends(get_owner),
    correlation_id: Optional[str] = Depends(get_correlation_id),
    service: IntegrationService = Depends(get_service),
):
    """Return the provider authorization URL for the caller."""
    return service.begin_connect(owner, provider, correlation_id)


@router.get("/{provider}/callback", response_model=ConnectionSummary)
async def oauth_callback(
    provider: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
    service: IntegrationService = Depends(get_service),
):
    """
    Provider redirect target. Public: the owner comes from the encrypted state.
    """
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing authorization code or state")
    return await service.complete_connect(provider, state, code)


@router.post("/{provider}/exchange", response_model=ConnectionSummary, status_code=201)
async def exchange_code(
    provider: str,
    request: ExchangeRequest,
    owner: OwnerRef = Depends(get_owner),
    correlation_id: Optional[str] = Depends(get_correlation_id),
    service: IntegrationService = Depends(get_service),
):
    """Exchange a code the caller obtained itself (e.g. a frontend Connect widget)."""
    return await service.start_connection(owner, provider, request.code, correlation_id)


@router.get("/connections", response_model=List[ConnectionSummary])
def list_connections(
    owner: OwnerRef = Depends(get_owner),
    service: IntegrationService = Depends(get_service),
):
    return service.list_connections(owner)


@router.delete("/connections/{connection_id}", response_model=ConnectionSummary)
def disconnect(
    connection_id: str,
    owner: OwnerRef = Depends(get_owner),
    service: IntegrationService = Depends(get_service),
):
    return service.disconnect(connection_id, owner)


@router.post("/connections/{connection_id}/sync", response_model=SyncStarted, status_code=202)
async def trigger_sync(
    connection_id: str,
    owner: OwnerRef = Depends(get_owner),
    service: IntegrationService = Depends(get_service),
):
    """
    Start a sync for a connection. Returns immediately with the job id;
    poll GET /integrations/jobs/{job_id} for progress.
    """
    return service.start_sync(connection_id, owner)


@router.get("/connections/{connection_id}/jobs", response_model=List[JobStatus])
def list_jobs(
    connection_id: str,
    owner: OwnerRef = Depends(get_owner),
    service: IntegrationService = Depends(get_service),
):
    return service.list_jobs(connection_id, owner)


@router.get("/jobs/{job_id}", response_model=JobStatus)
def job_status(
    job_id: str,
    owner: OwnerRef = Depends(get_owner),
    service: IntegrationService = Depends(get_service),
):
    return service.get_job_status(job_id, owner)
