"""
Shared route dependencies: registry handle, caller identity, error mapping.
"""

from typing import Optional
from fastapi import Header, HTTPException, Request, status

from identity_registry.services.auth import verify_caller
from identity_registry.services.errors import (
    RegistryError,
    AlreadyExists,
    NotRegistered,
    UnknownCredential,
    Unauthorized,
    NotFound,
)
from identity_registry.services.registry import IdentityRegistry, normalize_address


STATUS_BY_ERROR = {
    AlreadyExists: status.HTTP_409_CONFLICT,
    Unauthorized: status.HTTP_403_FORBIDDEN,
    NotRegistered: status.HTTP_404_NOT_FOUND,
    UnknownCredential: status.HTTP_404_NOT_FOUND,
    NotFound: status.HTTP_404_NOT_FOUND,
}


def get_registry(request: Request) -> IdentityRegistry:
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Registry is not deployed"
        )
    return registry


async def get_caller(
    request: Request,
    x_caller_address: Optional[str] = Header(None),
    x_caller_signature: Optional[str] = Header(None),
    x_caller_nonce: Optional[str] = Header(None)
) -> str:
    """
    Resolve the calling address from X-Caller-Address.

    When signatures are required, X-Caller-Signature must be the caller's
    EIP-191 signature over the request method, path, X-Caller-Nonce and
    body hash, and the nonce must not have been used before.
    """
    if not x_caller_address:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Caller-Address header is required"
        )

    try:
        caller = normalize_address(x_caller_address)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if getattr(request.app.state, "require_signatures", False):
        if not x_caller_signature or not x_caller_nonce:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="X-Caller-Signature and X-Caller-Nonce headers are required"
            )
        try:
            nonce = int(x_caller_nonce)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="X-Caller-Nonce must be an integer"
            )

        body = await request.body()
        if not verify_caller(caller, request.method, request.url.path, nonce, body, x_caller_signature):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid caller signature"
            )
        # only consumed once the signature checks out
        if not request.app.state.nonces.accept(caller, nonce):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Stale or reused X-Caller-Nonce"
            )

    return caller


def registry_http_error(error: Exception) -> HTTPException:
    """Convert a registry rejection or input error into an HTTP error."""
    if isinstance(error, RegistryError):
        return HTTPException(
            status_code=STATUS_BY_ERROR.get(type(error), status.HTTP_400_BAD_REQUEST),
            detail=error.message,
            headers={"X-Registry-Error": error.kind}
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
