"""
Identity Registry
=================

State machine behind the DecentralizedIdentityManagement contract.

Tables:
- identities: subject address -> Identity
- credentials: (subject, credential type) -> Credential
- requests: request id -> VerificationRequest
- verifiers: address -> bool (written only by the contract owner)

Every operation validates its preconditions, then emits a single
RegistryEvent. Listeners see the event before it is applied, so a
listener failure (e.g. the journal write) leaves the state untouched.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, List, Dict, Any, Callable, Iterable, Tuple, Union

from web3 import Web3

from identity_registry.services.errors import (
    RegistryError,
    AlreadyExists,
    NotRegistered,
    UnknownCredential,
    Unauthorized,
    NotFound,
)

logger = logging.getLogger(__name__)


HASH_BYTES = 32


class RequestStatus(Enum):
    """Verification request lifecycle"""
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class EventType(Enum):
    """State transitions recorded by the registry"""
    REGISTRY_DEPLOYED = "RegistryDeployed"
    IDENTITY_CREATED = "IdentityCreated"
    CREDENTIAL_ADDED = "CredentialAdded"
    VERIFICATION_REQUESTED = "VerificationRequested"
    VERIFICATION_RESOLVED = "VerificationResolved"
    VERIFIER_AUTHORIZATION_CHANGED = "VerifierAuthorizationChanged"


# ==================== INPUT NORMALIZATION ====================

def normalize_address(address: str) -> str:
    """Validate an Ethereum address and return its checksum form."""
    if not isinstance(address, str) or not Web3.is_address(address):
        raise ValueError(f"Invalid address: {address!r}")
    return Web3.to_checksum_address(address)


def normalize_hash(content_hash: Union[bytes, bytearray, str]) -> bytes:
    """
    Coerce a content hash to 32 raw bytes.

    Accepts raw bytes or a hex string with or without the 0x prefix.
    """
    if isinstance(content_hash, str):
        hex_value = content_hash[2:] if content_hash.lower().startswith("0x") else content_hash
        try:
            raw = bytes.fromhex(hex_value)
        except ValueError:
            raise ValueError(f"Content hash is not valid hex: {content_hash!r}")
    elif isinstance(content_hash, (bytes, bytearray)):
        raw = bytes(content_hash)
    else:
        raise ValueError("Content hash must be bytes or a hex string")

    if len(raw) != HASH_BYTES:
        raise ValueError(f"Content hash must be {HASH_BYTES} bytes")
    return raw


def hash_to_hex(content_hash: bytes) -> str:
    return "0x" + content_hash.hex()


def parse_status(value: str) -> RequestStatus:
    """Case-insensitive lookup of a request status by name."""
    lookup = {status.value.lower(): status for status in RequestStatus}
    status = lookup.get(value.strip().lower())
    if status is None:
        raise ValueError(f"Unknown request status: {value!r}")
    return status


def parse_decision(decision: Union[RequestStatus, str, bool]) -> RequestStatus:
    """Map a verifier decision onto a terminal request status."""
    if isinstance(decision, bool):
        return RequestStatus.APPROVED if decision else RequestStatus.REJECTED

    if isinstance(decision, str):
        decision = parse_status(decision)

    if decision not in (RequestStatus.APPROVED, RequestStatus.REJECTED):
        raise ValueError("Decision must be Approved or Rejected")
    return decision


def _require_text(value: str, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field_name} must be a non-empty string")
    return value


def _require_str(value: str, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string")
    return value


# ==================== RECORDS ====================

@dataclass
class Identity:
    """A subject's registered identity"""
    address: str
    name: str
    contact: str
    created_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "name": self.name,
            "contact": self.contact,
            "createdAt": self.created_at,
        }


@dataclass
class Credential:
    """Content hash of off-chain proof material, keyed by type"""
    subject: str
    credential_type: str
    content_hash: bytes
    added_at: int
    verified: bool = False
    verified_by: Optional[str] = None
    verified_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "credentialType": self.credential_type,
            "contentHash": hash_to_hex(self.content_hash),
            "addedAt": self.added_at,
            "verified": self.verified,
            "verifiedBy": self.verified_by,
            "verifiedAt": self.verified_at,
        }


@dataclass
class VerificationRequest:
    """A subject's request to have one credential verified"""
    request_id: int
    subject: str
    credential_type: str
    content_hash: bytes
    requested_at: int
    status: RequestStatus = RequestStatus.PENDING
    resolver: Optional[str] = None
    resolved_at: Optional[int] = None

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "subject": self.subject,
            "credentialType": self.credential_type,
            "contentHash": hash_to_hex(self.content_hash),
            "requestedAt": self.requested_at,
            "status": self.status.value,
            "resolver": self.resolver,
            "resolvedAt": self.resolved_at,
        }


@dataclass
class RegistryEvent:
    """A committed state transition. Payload values are JSON-safe."""
    event_type: EventType
    payload: Dict[str, Any]
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event_type.value,
            "payload": dict(self.payload),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegistryEvent":
        return cls(
            event_type=EventType(data["event"]),
            payload=dict(data.get("payload", {})),
            timestamp=int(data["timestamp"]),
        )


EventListener = Callable[[RegistryEvent], None]


# ==================== REGISTRY ====================

class IdentityRegistry:
    """
    Identity registry with owner-managed verifier authorization.

    Constructing an instance is the deployment: the deploying address
    becomes the contract owner and all tables start empty. The owner is
    not an authorized verifier unless it authorizes itself.
    """

    def __init__(
        self,
        owner: str,
        clock: Optional[Callable[[], int]] = None,
        listeners: Optional[Iterable[EventListener]] = None
    ):
        self._init_state(clock, listeners)
        with self._lock:
            event = self._event(
                EventType.REGISTRY_DEPLOYED,
                {"owner": normalize_address(owner)}
            )
            self._commit(event)

    def _init_state(
        self,
        clock: Optional[Callable[[], int]],
        listeners: Optional[Iterable[EventListener]]
    ) -> None:
        self._lock = threading.RLock()
        self._clock = clock or (lambda: int(time.time()))
        self._listeners: List[EventListener] = list(listeners or [])

        self._owner: Optional[str] = None
        self._identities: Dict[str, Identity] = {}
        self._credentials: Dict[Tuple[str, str], Credential] = {}
        self._requests: Dict[int, VerificationRequest] = {}
        self._pending: Dict[Tuple[str, str], int] = {}
        self._verifiers: Dict[str, bool] = {}
        self._next_request_id = 1
        self._events: List[RegistryEvent] = []

        self._appliers = {
            EventType.REGISTRY_DEPLOYED: self._apply_deployed,
            EventType.IDENTITY_CREATED: self._apply_identity_created,
            EventType.CREDENTIAL_ADDED: self._apply_credential_added,
            EventType.VERIFICATION_REQUESTED: self._apply_verification_requested,
            EventType.VERIFICATION_RESOLVED: self._apply_verification_resolved,
            EventType.VERIFIER_AUTHORIZATION_CHANGED: self._apply_verifier_changed,
        }

    @classmethod
    def from_events(
        cls,
        events: Iterable[RegistryEvent],
        clock: Optional[Callable[[], int]] = None,
        listeners: Optional[Iterable[EventListener]] = None
    ) -> "IdentityRegistry":
        """
        Rebuild a registry from its event journal.

        Listeners are attached after the replay, so replayed events are
        not written back to the journal.
        """
        events = list(events)
        if not events or events[0].event_type != EventType.REGISTRY_DEPLOYED:
            raise ValueError("Event journal must start with RegistryDeployed")

        registry = cls.__new__(cls)
        registry._init_state(clock, None)
        for event in events:
            registry._apply(event)
            registry._events.append(event)

        registry._listeners = list(listeners or [])
        logger.info(
            "Replayed %d registry events (owner=%s)", len(events), registry._owner
        )
        return registry

    # ==================== LISTENERS ====================

    def add_listener(self, listener: EventListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        with self._lock:
            self._listeners.remove(listener)

    # ==================== IDENTITY OPERATIONS ====================

    def create_identity(self, caller: str, name: str, contact: str) -> Identity:
        """
        Register the caller's identity.

        Raises:
            AlreadyExists: caller already has an identity
        """
        caller = normalize_address(caller)
        with self._lock:
            if caller in self._identities:
                raise self._reject(AlreadyExists(f"Identity already exists for {caller}"))

            event = self._event(EventType.IDENTITY_CREATED, {
                "subject": caller,
                "name": _require_text(name, "name"),
                "contact": _require_str(contact, "contact"),
            })
            self._commit(event)
            return replace(self._identities[caller])

    def add_credential(
        self,
        caller: str,
        credential_type: str,
        content_hash: Union[bytes, str]
    ) -> Credential:
        """
        Record a credential for the caller, overwriting any credential of
        the same type. Re-adding an identical hash is a no-op.

        Raises:
            NotRegistered: caller has no identity
        """
        caller = normalize_address(caller)
        with self._lock:
            self._require_identity(caller)
            credential_type = _require_text(credential_type, "credential_type")
            raw_hash = normalize_hash(content_hash)

            key = (caller, credential_type)
            existing = self._credentials.get(key)
            if existing and existing.content_hash == raw_hash:
                return replace(existing)

            event = self._event(EventType.CREDENTIAL_ADDED, {
                "subject": caller,
                "credential_type": credential_type,
                "content_hash": hash_to_hex(raw_hash),
                "superseded_hash": hash_to_hex(existing.content_hash) if existing else None,
            })
            self._commit(event)
            return replace(self._credentials[key])

    # ==================== VERIFICATION OPERATIONS ====================

    def request_verification(
        self,
        caller: str,
        credential_type: str,
        content_hash: Union[bytes, str]
    ) -> VerificationRequest:
        """
        Open a verification request for one of the caller's credentials.

        An identical request that is still pending is returned as-is.

        Raises:
            NotRegistered: caller has no identity
            UnknownCredential: no credential matches (caller, type, hash)
        """
        caller = normalize_address(caller)
        with self._lock:
            self._require_identity(caller)
            raw_hash = normalize_hash(content_hash)

            key = (caller, credential_type)
            credential = self._credentials.get(key)
            if credential is None or credential.content_hash != raw_hash:
                raise self._reject(UnknownCredential(
                    f"No credential '{credential_type}' with hash {hash_to_hex(raw_hash)} for {caller}"
                ))

            pending_id = self._pending.get(key)
            if pending_id is not None:
                return replace(self._requests[pending_id])

            request_id = self._next_request_id
            event = self._event(EventType.VERIFICATION_REQUESTED, {
                "request_id": request_id,
                "subject": caller,
                "credential_type": credential_type,
                "content_hash": hash_to_hex(raw_hash),
            })
            self._commit(event)
            return replace(self._requests[request_id])

    def resolve_verification(
        self,
        caller: str,
        subject: str,
        credential_type: str,
        decision: Union[RequestStatus, str, bool]
    ) -> VerificationRequest:
        """
        Approve or reject the subject's pending request for a credential type.

        Raises:
            Unauthorized: caller is not an authorized verifier
            NotFound: no pending request matches
        """
        caller = normalize_address(caller)
        with self._lock:
            if not self._verifiers.get(caller, False):
                raise self._reject(Unauthorized(f"{caller} is not an authorized verifier"))

            subject = normalize_address(subject)
            status = parse_decision(decision)

            request_id = self._pending.get((subject, credential_type))
            if request_id is None:
                raise self._reject(NotFound(
                    f"No pending verification request for '{credential_type}' of {subject}"
                ))

            event = self._event(EventType.VERIFICATION_RESOLVED, {
                "request_id": request_id,
                "resolver": caller,
                "status": status.value,
            })
            self._commit(event)
            return replace(self._requests[request_id])

    # ==================== ACCESS CONTROL ====================

    def set_authorized_verifier(self, caller: str, address: str, enabled: bool) -> bool:
        """
        Grant or revoke verifier authorization.

        Raises:
            Unauthorized: caller is not the contract owner
        """
        caller = normalize_address(caller)
        with self._lock:
            if caller != self._owner:
                raise self._reject(Unauthorized(f"{caller} is not the contract owner"))

            event = self._event(EventType.VERIFIER_AUTHORIZATION_CHANGED, {
                "verifier": normalize_address(address),
                "enabled": bool(enabled),
            })
            self._commit(event)
            return bool(enabled)

    # ==================== READS ====================

    @property
    def contract_owner(self) -> str:
        return self._owner

    def authorized_verifiers(self, address: str) -> bool:
        """Mapping getter. Addresses never written read as False."""
        with self._lock:
            return self._verifiers.get(normalize_address(address), False)

    def verifier_status(self, address: str) -> Optional[bool]:
        """Like authorized_verifiers, but None when the entry was never set."""
        with self._lock:
            return self._verifiers.get(normalize_address(address))

    def list_verifiers(self) -> List[str]:
        with self._lock:
            return [address for address, enabled in self._verifiers.items() if enabled]

    def has_identity(self, address: str) -> bool:
        with self._lock:
            return normalize_address(address) in self._identities

    def get_identity(self, address: str) -> Optional[Identity]:
        with self._lock:
            identity = self._identities.get(normalize_address(address))
            return replace(identity) if identity else None

    def get_credential(self, address: str, credential_type: str) -> Optional[Credential]:
        with self._lock:
            credential = self._credentials.get((normalize_address(address), credential_type))
            return replace(credential) if credential else None

    def list_credentials(self, address: str) -> List[Credential]:
        subject = normalize_address(address)
        with self._lock:
            return [
                replace(credential)
                for (owner, _), credential in self._credentials.items()
                if owner == subject
            ]

    def get_request(self, request_id: int) -> Optional[VerificationRequest]:
        with self._lock:
            request = self._requests.get(request_id)
            return replace(request) if request else None

    def list_requests(
        self,
        subject: Optional[str] = None,
        status: Optional[RequestStatus] = None
    ) -> List[VerificationRequest]:
        """List requests in creation order, optionally filtered."""
        subject = normalize_address(subject) if subject else None
        with self._lock:
            requests = [
                replace(request) for request in self._requests.values()
                if (subject is None or request.subject == subject)
                and (status is None or request.status == status)
            ]
        return sorted(requests, key=lambda r: r.request_id)

    def events(self) -> List[RegistryEvent]:
        with self._lock:
            return list(self._events)

    def get_statistics(self) -> Dict[str, int]:
        """Get statistics about registry contents"""
        with self._lock:
            by_status = {status: 0 for status in RequestStatus}
            for request in self._requests.values():
                by_status[request.status] += 1

            return {
                "identities": len(self._identities),
                "credentials": len(self._credentials),
                "verified_credentials": sum(1 for c in self._credentials.values() if c.verified),
                "pending_requests": by_status[RequestStatus.PENDING],
                "approved_requests": by_status[RequestStatus.APPROVED],
                "rejected_requests": by_status[RequestStatus.REJECTED],
                "authorized_verifiers": sum(1 for enabled in self._verifiers.values() if enabled),
                "events": len(self._events),
            }

    # ==================== COMMIT / APPLY ====================

    def _event(self, event_type: EventType, payload: Dict[str, Any]) -> RegistryEvent:
        return RegistryEvent(event_type=event_type, payload=payload, timestamp=self._clock())

    def _commit(self, event: RegistryEvent) -> None:
        for listener in list(self._listeners):
            listener(event)
        self._apply(event)
        self._events.append(event)
        # contact details stay out of the log
        fields = {k: v for k, v in event.payload.items() if k not in ("name", "contact")}
        logger.info("%s %s", event.event_type.value, fields)

    def _apply(self, event: RegistryEvent) -> None:
        self._appliers[event.event_type](event.payload, event.timestamp)

    def _apply_deployed(self, payload: Dict[str, Any], timestamp: int) -> None:
        if self._owner is not None:
            raise ValueError("Registry is already deployed")
        self._owner = payload["owner"]

    def _apply_identity_created(self, payload: Dict[str, Any], timestamp: int) -> None:
        subject = payload["subject"]
        self._identities[subject] = Identity(
            address=subject,
            name=payload["name"],
            contact=payload["contact"],
            created_at=timestamp,
        )

    def _apply_credential_added(self, payload: Dict[str, Any], timestamp: int) -> None:
        key = (payload["subject"], payload["credential_type"])

        # A pending request for the superseded hash can no longer be resolved
        pending_id = self._pending.pop(key, None)
        if pending_id is not None:
            del self._requests[pending_id]

        self._credentials[key] = Credential(
            subject=payload["subject"],
            credential_type=payload["credential_type"],
            content_hash=normalize_hash(payload["content_hash"]),
            added_at=timestamp,
        )

    def _apply_verification_requested(self, payload: Dict[str, Any], timestamp: int) -> None:
        request_id = payload["request_id"]
        key = (payload["subject"], payload["credential_type"])
        self._requests[request_id] = VerificationRequest(
            request_id=request_id,
            subject=payload["subject"],
            credential_type=payload["credential_type"],
            content_hash=normalize_hash(payload["content_hash"]),
            requested_at=timestamp,
        )
        self._pending[key] = request_id
        self._next_request_id = max(self._next_request_id, request_id + 1)

    def _apply_verification_resolved(self, payload: Dict[str, Any], timestamp: int) -> None:
        request = self._requests[payload["request_id"]]
        request.status = RequestStatus(payload["status"])
        request.resolver = payload["resolver"]
        request.resolved_at = timestamp
        self._pending.pop((request.subject, request.credential_type), None)

        if request.status == RequestStatus.APPROVED:
            credential = self._credentials[(request.subject, request.credential_type)]
            credential.verified = True
            credential.verified_by = request.resolver
            credential.verified_at = timestamp

    def _apply_verifier_changed(self, payload: Dict[str, Any], timestamp: int) -> None:
        self._verifiers[payload["verifier"]] = payload["enabled"]

    # ==================== HELPERS ====================

    def _require_identity(self, caller: str) -> Identity:
        identity = self._identities.get(caller)
        if identity is None:
            raise self._reject(NotRegistered(f"No identity registered for {caller}"))
        return identity

    def _reject(self, error: RegistryError) -> RegistryError:
        logger.warning("Rejected: %s - %s", error.kind, error.message)
        return error
