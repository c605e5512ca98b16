"""
Identity Registry Admin API
Verifier authorization, registry state and the event feed.
"""

from typing import Dict, List, Optional, Any
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from identity_registry.routes.dependencies import get_caller, get_registry, registry_http_error
from identity_registry.services.errors import RegistryError
from identity_registry.services.registry import IdentityRegistry, normalize_address


router = APIRouter()


class SetVerifierRequest(BaseModel):
    """Verifier authorization payload."""
    enabled: bool


class VerifierResponse(BaseModel):
    """Verifier mapping entry. `configured` is False for never-set addresses."""
    address: str
    authorized: bool
    configured: bool


class RegistryResponse(BaseModel):
    """Registry owner and counters."""
    contract_owner: str
    verifiers: List[str]
    statistics: Dict[str, int]


def _verifier_response(registry: IdentityRegistry, address: str) -> VerifierResponse:
    entry = registry.verifier_status(address)
    return VerifierResponse(
        address=address,
        authorized=bool(entry),
        configured=entry is not None
    )


@router.put("/verifiers/{address}", response_model=VerifierResponse)
async def set_verifier(
    address: str,
    body: SetVerifierRequest,
    caller: str = Depends(get_caller),
    registry: IdentityRegistry = Depends(get_registry)
):
    """Grant or revoke verifier authorization. Contract owner only."""
    try:
        registry.set_authorized_verifier(caller, address, body.enabled)
    except (RegistryError, ValueError) as e:
        raise registry_http_error(e)
    return _verifier_response(registry, normalize_address(address))


@router.get("/verifiers/{address}", response_model=VerifierResponse)
async def get_verifier(address: str, registry: IdentityRegistry = Depends(get_registry)):
    """Read the authorizedVerifiers mapping for an address."""
    try:
        address = normalize_address(address)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return _verifier_response(registry, address)


@router.get("/registry", response_model=RegistryResponse)
async def get_registry_state(registry: IdentityRegistry = Depends(get_registry)):
    """Contract owner, authorized verifiers and counters."""
    return RegistryResponse(
        contract_owner=registry.contract_owner,
        verifiers=registry.list_verifiers(),
        statistics=registry.get_statistics()
    )


@router.get("/events")
async def list_events(
    event_type: Optional[str] = Query(None, alias="type"),
    limit: int = Query(100, ge=1, le=1000),
    registry: IdentityRegistry = Depends(get_registry)
) -> List[Dict[str, Any]]:
    """Most recent registry events, oldest first."""
    events = [e.to_dict() for e in registry.events()]
    if event_type:
        events = [e for e in events if e["event"] == event_type]
    return events[-limit:]
