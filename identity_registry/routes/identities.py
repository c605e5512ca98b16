"""
Identity Registry Identities API
Identity registration and credential management for the calling subject.
"""

from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from identity_registry.routes.dependencies import get_caller, get_registry, registry_http_error
from identity_registry.services.errors import RegistryError
from identity_registry.services.registry import (
    IdentityRegistry,
    Identity,
    Credential,
    hash_to_hex,
    normalize_address,
)


router = APIRouter()


class CreateIdentityRequest(BaseModel):
    """Identity creation payload."""
    name: str = Field(..., min_length=1, description="Display name")
    contact: str = Field("", description="Contact reference, e.g. email")


class IdentityResponse(BaseModel):
    """Registered identity."""
    address: str
    name: str
    contact: str
    created_at: int


class AddCredentialRequest(BaseModel):
    """Credential payload."""
    credential_type: str = Field(..., min_length=1, description="Credential category, e.g. education")
    content_hash: str = Field(..., description="32-byte content hash as hex")


class CredentialResponse(BaseModel):
    """Credential record."""
    subject: str
    credential_type: str
    content_hash: str
    added_at: int
    verified: bool
    verified_by: Optional[str] = None
    verified_at: Optional[int] = None


def identity_response(identity: Identity) -> IdentityResponse:
    return IdentityResponse(
        address=identity.address,
        name=identity.name,
        contact=identity.contact,
        created_at=identity.created_at
    )


def credential_response(credential: Credential) -> CredentialResponse:
    return CredentialResponse(
        subject=credential.subject,
        credential_type=credential.credential_type,
        content_hash=hash_to_hex(credential.content_hash),
        added_at=credential.added_at,
        verified=credential.verified,
        verified_by=credential.verified_by,
        verified_at=credential.verified_at
    )


def _parse_address(address: str) -> str:
    try:
        return normalize_address(address)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/identities", response_model=IdentityResponse, status_code=status.HTTP_201_CREATED)
async def create_identity(
    body: CreateIdentityRequest,
    caller: str = Depends(get_caller),
    registry: IdentityRegistry = Depends(get_registry)
):
    """Register an identity for the calling address (once per address)."""
    try:
        identity = registry.create_identity(caller, body.name, body.contact)
    except (RegistryError, ValueError) as e:
        raise registry_http_error(e)
    return identity_response(identity)


@router.get("/identities/{address}", response_model=IdentityResponse)
async def get_identity(address: str, registry: IdentityRegistry = Depends(get_registry)):
    """Look up an identity by subject address."""
    identity = registry.get_identity(_parse_address(address))
    if not identity:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No identity registered for {address}"
        )
    return identity_response(identity)


@router.get("/identities/{address}/credentials", response_model=List[CredentialResponse])
async def list_credentials(address: str, registry: IdentityRegistry = Depends(get_registry)):
    """List the credentials recorded for a subject."""
    subject = _parse_address(address)
    if not registry.has_identity(subject):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No identity registered for {address}"
        )
    return [credential_response(c) for c in registry.list_credentials(subject)]


@router.post("/credentials", response_model=CredentialResponse, status_code=status.HTTP_201_CREATED)
async def add_credential(
    body: AddCredentialRequest,
    caller: str = Depends(get_caller),
    registry: IdentityRegistry = Depends(get_registry)
):
    """Add (or overwrite) a credential of the given type for the caller."""
    try:
        credential = registry.add_credential(caller, body.credential_type, body.content_hash)
    except (RegistryError, ValueError) as e:
        raise registry_http_error(e)
    return credential_response(credential)
