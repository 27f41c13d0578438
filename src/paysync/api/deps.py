"""FastAPI dependencies: the wired service and the caller's verified identity."""
from typing import Optional

from fastapi import Header, HTTPException, Request

from paysync.models.connection import OwnerRef
from paysync.service import IntegrationService


def get_service(request: Request) -> IntegrationService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Service not initialised")
    return service


def get_owner(
    x_taxpayer_id: Optional[str] = Header(default=None),
    x_business_id: Optional[str] = Header(default=None),
) -> OwnerRef:
    """
    Identity asserted by the upstream auth gateway.

    Authentication happens before requests reach paysync; the gateway forwards
    the verified owner as X-Taxpayer-Id or X-Business-Id.
    """
    if not x_taxpayer_id and not x_business_id:
        raise HTTPException(status_code=401, detail="Missing verified identity")
    return OwnerRef(taxpayer_id=x_taxpayer_id, business_id=x_business_id).validate()


def get_correlation_id(request: Request) -> Optional[str]:
    return getattr(request.state, "correlation_id", None)
