"""
Identity Registry Errors
Rejection reasons returned by registry operations.
"""


class RegistryError(Exception):
    """Base class for registry precondition failures."""

    kind = "RegistryError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message}


class AlreadyExists(RegistryError):
    """Caller already has an identity."""
    kind = "AlreadyExists"


class NotRegistered(RegistryError):
    """Caller has no identity."""
    kind = "NotRegistered"


class UnknownCredential(RegistryError):
    """No credential matches the given type and hash."""
    kind = "UnknownCredential"


class Unauthorized(RegistryError):
    """Caller lacks the role required by the operation."""
    kind = "Unauthorized"


class NotFound(RegistryError):
    """No pending verification request matches."""
    kind = "NotFound"


class DeploymentError(Exception):
    """Deployment-time failure with an operator remediation hint."""

    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    NETWORK_ERROR = "NETWORK_ERROR"
    GAS_ERROR = "GAS_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    UNKNOWN = "UNKNOWN"

    def __init__(self, code: str, message: str, hint: str = ""):
        super().__init__(message)
        self.code = code
        self.message = message
        self.hint = hint
