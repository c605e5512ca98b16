"""
Identity Registry Services Package
Provides the registry state machine, persistence helpers, and deployment tooling.
"""

from identity_registry.services.errors import (
    RegistryError,
    AlreadyExists,
    NotRegistered,
    UnknownCredential,
    Unauthorized,
    NotFound,
    DeploymentError,
)
from identity_registry.services.registry import (
    IdentityRegistry,
    Identity,
    Credential,
    VerificationRequest,
    RequestStatus,
    RegistryEvent,
    EventType,
)

__all__ = [
    'RegistryError',
    'AlreadyExists',
    'NotRegistered',
    'UnknownCredential',
    'Unauthorized',
    'NotFound',
    'DeploymentError',
    'IdentityRegistry',
    'Identity',
    'Credential',
    'VerificationRequest',
    'RequestStatus',
    'RegistryEvent',
    'EventType',
]
