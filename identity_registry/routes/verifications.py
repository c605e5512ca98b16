"""
Identity Registry Verification API
Verification requests by subjects and their resolution by authorized verifiers.
"""

from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from identity_registry.routes.dependencies import get_caller, get_registry, registry_http_error
from identity_registry.services.errors import RegistryError
from identity_registry.services.registry import (
    IdentityRegistry,
    VerificationRequest,
    hash_to_hex,
    parse_status,
)


router = APIRouter()


class RequestVerificationRequest(BaseModel):
    """Verification request payload."""
    credential_type: str = Field(..., min_length=1)
    content_hash: str = Field(..., description="32-byte content hash as hex")


class ResolveVerificationRequest(BaseModel):
    """Verifier decision payload."""
    subject: str = Field(..., description="Address of the identity owner")
    credential_type: str = Field(..., min_length=1)
    decision: str = Field(..., description="Approved or Rejected")


class VerificationResponse(BaseModel):
    """Verification request record."""
    request_id: int
    subject: str
    credential_type: str
    content_hash: str
    status: str
    requested_at: int
    resolver: Optional[str] = None
    resolved_at: Optional[int] = None


def verification_response(request: VerificationRequest) -> VerificationResponse:
    return VerificationResponse(
        request_id=request.request_id,
        subject=request.subject,
        credential_type=request.credential_type,
        content_hash=hash_to_hex(request.content_hash),
        status=request.status.value,
        requested_at=request.requested_at,
        resolver=request.resolver,
        resolved_at=request.resolved_at
    )


@router.post("/verifications", response_model=VerificationResponse, status_code=status.HTTP_201_CREATED)
async def request_verification(
    body: RequestVerificationRequest,
    caller: str = Depends(get_caller),
    registry: IdentityRegistry = Depends(get_registry)
):
    """Ask for verification of one of the caller's credentials."""
    try:
        request = registry.request_verification(caller, body.credential_type, body.content_hash)
    except (RegistryError, ValueError) as e:
        raise registry_http_error(e)
    return verification_response(request)


@router.post("/verifications/resolve", response_model=VerificationResponse)
async def resolve_verification(
    body: ResolveVerificationRequest,
    caller: str = Depends(get_caller),
    registry: IdentityRegistry = Depends(get_registry)
):
    """Approve or reject a pending request. Authorized verifiers only."""
    try:
        request = registry.resolve_verification(
            caller, body.subject, body.credential_type, body.decision
        )
    except (RegistryError, ValueError) as e:
        raise registry_http_error(e)
    return verification_response(request)


@router.get("/verifications", response_model=List[VerificationResponse])
async def list_verifications(
    subject: Optional[str] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    registry: IdentityRegistry = Depends(get_registry)
):
    """List verification requests, optionally by subject and status."""
    try:
        request_status = parse_status(status_filter) if status_filter else None
        requests = registry.list_requests(subject=subject, status=request_status)
    except ValueError as e:
        raise registry_http_error(e)
    return [verification_response(r) for r in requests]


@router.get("/verifications/{request_id}", response_model=VerificationResponse)
async def get_verification(request_id: int, registry: IdentityRegistry = Depends(get_registry)):
    """Look up a verification request by id."""
    request = registry.get_request(request_id)
    if not request:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Verification request not found: {request_id}"
        )
    return verification_response(request)
