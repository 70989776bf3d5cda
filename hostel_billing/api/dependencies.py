"""Dependency injection for FastAPI endpoints"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from hostel_billing.config import settings
from hostel_billing.domain.models import BillingPolicy, CallerIdentity, CallerRole
from hostel_billing.infrastructure.clients.notifier import NotifierClient


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_notifier_client() -> NotifierClient:
    """Provide Notifier API client instance"""
    return NotifierClient()


def get_policy() -> BillingPolicy:
    """Billing constants for this deployment"""
    return BillingPolicy.from_settings(settings)


def get_caller(
    caller_id: Optional[str] = Header(None, alias="X-Caller-Id"),
    caller_role: Optional[str] = Header(None, alias="X-Caller-Role"),
    tenant_id: Optional[str] = Header(None, alias="X-Tenant-Id"),
) -> CallerIdentity:
    """
    Caller identity asserted by the upstream auth gateway.

    Missing or malformed headers mean the request never passed the gateway (401).
    """
    if not caller_id or not caller_role or not tenant_id:
        raise HTTPException(status_code=401, detail="Missing caller identity")
    try:
        return CallerIdentity(caller_id=int(caller_id), role=CallerRole(caller_role.lower()), tenant_id=int(tenant_id))
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid caller identity")


def require_admin(caller: CallerIdentity = Depends(get_caller)) -> CallerIdentity:
    if caller.role != CallerRole.ADMIN:
        raise HTTPException(status_code=403, detail="Admin role required")
    return caller


def require_resident(caller: CallerIdentity = Depends(get_caller)) -> CallerIdentity:
    if caller.role != CallerRole.RESIDENT:
        raise HTTPException(status_code=403, detail="Resident role required")
    return caller
