"""
Identity Registry Tests
=======================

State machine, access control and atomicity of the registry core.
"""

import hashlib
import threading

import pytest
from web3 import Web3

from identity_registry.services.errors import (
    RegistryError,
    AlreadyExists,
    NotRegistered,
    UnknownCredential,
    Unauthorized,
    NotFound,
)
from identity_registry.services.registry import (
    IdentityRegistry,
    RegistryEvent,
    EventType,
    RequestStatus,
    normalize_hash,
    parse_decision,
    parse_status,
)


OWNER = Web3.to_checksum_address("0x" + "a1" * 20)
ALICE = Web3.to_checksum_address("0x" + "b2" * 20)
BOB = Web3.to_checksum_address("0x" + "c3" * 20)
VERIFIER = Web3.to_checksum_address("0x" + "d4" * 20)

EDUCATION_HASH = hashlib.sha256(b"BSc Computer Science").digest()
OTHER_HASH = hashlib.sha256(b"MSc Computer Science").digest()


class FakeClock:
    def __init__(self, start: int = 1_700_000_000):
        self.now = start

    def __call__(self) -> int:
        self.now += 1
        return self.now


class TestDeployment:
    """Registry construction"""

    def test_owner_is_deployer(self):
        registry = IdentityRegistry(OWNER)
        assert registry.contract_owner == OWNER

    def test_owner_is_not_verifier_after_deployment(self):
        registry = IdentityRegistry(OWNER)
        assert registry.authorized_verifiers(OWNER) is False

    def test_owner_address_is_checksummed(self):
        registry = IdentityRegistry(OWNER.lower())
        assert registry.contract_owner == OWNER

    def test_invalid_owner_rejected(self):
        with pytest.raises(ValueError):
            IdentityRegistry("not-an-address")

    def test_tables_start_empty(self):
        stats = IdentityRegistry(OWNER).get_statistics()
        assert stats["identities"] == 0
        assert stats["credentials"] == 0
        assert stats["pending_requests"] == 0
        assert stats["authorized_verifiers"] == 0
        assert stats["events"] == 1


class TestIdentities:
    """createIdentity"""

    def setup_method(self):
        self.registry = IdentityRegistry(OWNER, clock=FakeClock())

    def test_create_identity(self):
        identity = self.registry.create_identity(ALICE, "John Doe", "john@example.com")

        assert identity.address == ALICE
        assert identity.name == "John Doe"
        assert identity.contact == "john@example.com"
        assert self.registry.has_identity(ALICE)

    def test_second_create_fails_with_already_exists(self):
        self.registry.create_identity(ALICE, "John Doe", "john@example.com")

        with pytest.raises(AlreadyExists):
            self.registry.create_identity(ALICE, "Johnny", "johnny@example.com")

        # First record is untouched
        assert self.registry.get_identity(ALICE).name == "John Doe"

    def test_lowercase_caller_maps_to_same_identity(self):
        self.registry.create_identity(ALICE, "John Doe", "john@example.com")
        with pytest.raises(AlreadyExists):
            self.registry.create_identity(ALICE.lower(), "John Doe", "john@example.com")

    def test_empty_name_rejected(self):
        with pytest.raises(ValueError):
            self.registry.create_identity(ALICE, "  ", "john@example.com")
        assert not self.registry.has_identity(ALICE)

    @pytest.mark.parametrize("contact", [None, 42, b"john@example.com"])
    def test_non_string_contact_rejected(self, contact):
        with pytest.raises(ValueError):
            self.registry.create_identity(ALICE, "John Doe", contact)
        assert not self.registry.has_identity(ALICE)
        assert len(self.registry.events()) == 1

    def test_empty_contact_allowed(self):
        assert self.registry.create_identity(ALICE, "John Doe", "").contact == ""

    def test_get_identity_returns_copy(self):
        self.registry.create_identity(ALICE, "John Doe", "john@example.com")
        copy = self.registry.get_identity(ALICE)
        copy.name = "Mallory"
        assert self.registry.get_identity(ALICE).name == "John Doe"

    def test_unknown_identity_is_none(self):
        assert self.registry.get_identity(BOB) is None


class TestCredentials:
    """addCredential"""

    def setup_method(self):
        self.registry = IdentityRegistry(OWNER, clock=FakeClock())

    def test_add_credential_requires_identity(self):
        with pytest.raises(NotRegistered):
            self.registry.add_credential(ALICE, "education", EDUCATION_HASH)

    def test_add_credential(self):
        self.registry.create_identity(ALICE, "John Doe", "john@example.com")
        credential = self.registry.add_credential(ALICE, "education", EDUCATION_HASH)

        assert credential.credential_type == "education"
        assert credential.content_hash == EDUCATION_HASH
        assert credential.verified is False

    def test_hex_hash_accepted(self):
        self.registry.create_identity(ALICE, "John Doe", "john@example.com")
        credential = self.registry.add_credential(ALICE, "education", "0x" + EDUCATION_HASH.hex())
        assert credential.content_hash == EDUCATION_HASH

    def test_short_hash_rejected_without_side_effects(self):
        self.registry.create_identity(ALICE, "John Doe", "john@example.com")
        events_before = len(self.registry.events())

        with pytest.raises(ValueError):
            self.registry.add_credential(ALICE, "education", b"\x01" * 31)

        assert self.registry.get_credential(ALICE, "education") is None
        assert len(self.registry.events()) == events_before

    def test_multiple_types_per_identity(self):
        self.registry.create_identity(ALICE, "John Doe", "john@example.com")
        self.registry.add_credential(ALICE, "education", EDUCATION_HASH)
        self.registry.add_credential(ALICE, "employment", OTHER_HASH)

        types = {c.credential_type for c in self.registry.list_credentials(ALICE)}
        assert types == {"education", "employment"}

    def test_readding_type_overwrites(self):
        self.registry.create_identity(ALICE, "John Doe", "john@example.com")
        self.registry.add_credential(ALICE, "education", EDUCATION_HASH)
        self.registry.add_credential(ALICE, "education", OTHER_HASH)

        assert self.registry.get_credential(ALICE, "education").content_hash == OTHER_HASH
        assert len(self.registry.list_credentials(ALICE)) == 1

    def test_readding_identical_hash_is_noop(self):
        self.registry.create_identity(ALICE, "John Doe", "john@example.com")
        self.registry.add_credential(ALICE, "education", EDUCATION_HASH)
        events_before = len(self.registry.events())

        self.registry.add_credential(ALICE, "education", EDUCATION_HASH)

        assert len(self.registry.events()) == events_before


class TestVerification:
    """requestVerification / resolveVerification"""

    def setup_method(self):
        self.registry = IdentityRegistry(OWNER, clock=FakeClock())
        self.registry.create_identity(ALICE, "John Doe", "john@example.com")
        self.registry.add_credential(ALICE, "education", EDUCATION_HASH)
        self.registry.set_authorized_verifier(OWNER, VERIFIER, True)

    def test_request_requires_identity(self):
        with pytest.raises(NotRegistered):
            self.registry.request_verification(BOB, "education", EDUCATION_HASH)

    def test_request_unknown_type(self):
        with pytest.raises(UnknownCredential):
            self.registry.request_verification(ALICE, "passport", EDUCATION_HASH)

    def test_request_hash_mismatch(self):
        with pytest.raises(UnknownCredential):
            self.registry.request_verification(ALICE, "education", OTHER_HASH)

    def test_request_creates_pending(self):
        request = self.registry.request_verification(ALICE, "education", EDUCATION_HASH)

        assert request.status == RequestStatus.PENDING
        assert request.subject == ALICE
        assert request.content_hash == EDUCATION_HASH

    def test_duplicate_pending_request_is_reused(self):
        first = self.registry.request_verification(ALICE, "education", EDUCATION_HASH)
        second = self.registry.request_verification(ALICE, "education", EDUCATION_HASH)

        assert first.request_id == second.request_id
        assert len(self.registry.list_requests()) == 1

    def test_unauthorized_resolver_without_request(self):
        with pytest.raises(Unauthorized):
            self.registry.resolve_verification(BOB, ALICE, "education", "Approved")

    def test_unauthorized_resolver_with_request(self):
        self.registry.request_verification(ALICE, "education", EDUCATION_HASH)

        with pytest.raises(Unauthorized):
            self.registry.resolve_verification(BOB, ALICE, "education", "Approved")

        assert self.registry.list_requests()[0].is_pending

    def test_owner_is_not_implicitly_a_verifier(self):
        self.registry.request_verification(ALICE, "education", EDUCATION_HASH)
        with pytest.raises(Unauthorized):
            self.registry.resolve_verification(OWNER, ALICE, "education", "Approved")

    def test_resolve_without_pending_request(self):
        with pytest.raises(NotFound):
            self.registry.resolve_verification(VERIFIER, ALICE, "education", "Approved")

    def test_approval_marks_credential_verified(self):
        self.registry.request_verification(ALICE, "education", EDUCATION_HASH)
        request = self.registry.resolve_verification(VERIFIER, ALICE, "education", RequestStatus.APPROVED)

        assert request.status == RequestStatus.APPROVED
        assert request.resolver == VERIFIER
        assert request.resolved_at is not None

        credential = self.registry.get_credential(ALICE, "education")
        assert credential.verified is True
        assert credential.verified_by == VERIFIER

    def test_rejection_leaves_credential_unverified(self):
        self.registry.request_verification(ALICE, "education", EDUCATION_HASH)
        request = self.registry.resolve_verification(VERIFIER, ALICE, "education", "rejected")

        assert request.status == RequestStatus.REJECTED
        assert self.registry.get_credential(ALICE, "education").verified is False

    @pytest.mark.parametrize("decision", ["Approved", "Rejected"])
    def test_terminal_request_cannot_be_resolved_again(self, decision):
        self.registry.request_verification(ALICE, "education", EDUCATION_HASH)
        self.registry.resolve_verification(VERIFIER, ALICE, "education", decision)

        with pytest.raises(NotFound):
            self.registry.resolve_verification(VERIFIER, ALICE, "education", "Approved")

    def test_new_request_after_resolution_gets_new_id(self):
        first = self.registry.request_verification(ALICE, "education", EDUCATION_HASH)
        self.registry.resolve_verification(VERIFIER, ALICE, "education", "Rejected")

        second = self.registry.request_verification(ALICE, "education", EDUCATION_HASH)

        assert second.request_id != first.request_id
        assert second.is_pending
        assert self.registry.get_request(first.request_id).status == RequestStatus.REJECTED

    def test_pending_decision_rejected(self):
        self.registry.request_verification(ALICE, "education", EDUCATION_HASH)
        with pytest.raises(ValueError):
            self.registry.resolve_verification(VERIFIER, ALICE, "education", RequestStatus.PENDING)

    def test_overwrite_discards_pending_request(self):
        request = self.registry.request_verification(ALICE, "education", EDUCATION_HASH)
        self.registry.add_credential(ALICE, "education", OTHER_HASH)

        assert self.registry.get_request(request.request_id) is None
        with pytest.raises(NotFound):
            self.registry.resolve_verification(VERIFIER, ALICE, "education", "Approved")

    def test_overwrite_clears_verified_flag(self):
        self.registry.request_verification(ALICE, "education", EDUCATION_HASH)
        self.registry.resolve_verification(VERIFIER, ALICE, "education", "Approved")

        self.registry.add_credential(ALICE, "education", OTHER_HASH)

        assert self.registry.get_credential(ALICE, "education").verified is False

    def test_list_requests_filters(self):
        self.registry.create_identity(BOB, "Jane Roe", "jane@example.com")
        self.registry.add_credential(BOB, "education", OTHER_HASH)
        self.registry.request_verification(ALICE, "education", EDUCATION_HASH)
        self.registry.request_verification(BOB, "education", OTHER_HASH)
        self.registry.resolve_verification(VERIFIER, BOB, "education", "Approved")

        assert [r.subject for r in self.registry.list_requests(subject=ALICE)] == [ALICE]
        pending = self.registry.list_requests(status=RequestStatus.PENDING)
        assert [r.subject for r in pending] == [ALICE]


class TestVerifierAuthorization:
    """setAuthorizedVerifier"""

    def setup_method(self):
        self.registry = IdentityRegistry(OWNER)

    def test_only_owner_can_authorize(self):
        with pytest.raises(Unauthorized):
            self.registry.set_authorized_verifier(ALICE, VERIFIER, True)
        assert self.registry.authorized_verifiers(VERIFIER) is False

    def test_authorize_and_revoke(self):
        self.registry.set_authorized_verifier(OWNER, VERIFIER, True)
        assert self.registry.authorized_verifiers(VERIFIER) is True

        self.registry.set_authorized_verifier(OWNER, VERIFIER, False)
        assert self.registry.authorized_verifiers(VERIFIER) is False

    def test_unset_entry_distinguished_from_revoked(self):
        assert self.registry.verifier_status(VERIFIER) is None

        self.registry.set_authorized_verifier(OWNER, VERIFIER, True)
        self.registry.set_authorized_verifier(OWNER, VERIFIER, False)

        assert self.registry.verifier_status(VERIFIER) is False

    def test_revoked_verifier_cannot_resolve(self):
        self.registry.create_identity(ALICE, "John Doe", "john@example.com")
        self.registry.add_credential(ALICE, "education", EDUCATION_HASH)
        self.registry.request_verification(ALICE, "education", EDUCATION_HASH)
        self.registry.set_authorized_verifier(OWNER, VERIFIER, True)
        self.registry.set_authorized_verifier(OWNER, VERIFIER, False)

        with pytest.raises(Unauthorized):
            self.registry.resolve_verification(VERIFIER, ALICE, "education", "Approved")

    def test_owner_may_authorize_itself(self):
        self.registry.set_authorized_verifier(OWNER, OWNER, True)
        assert self.registry.authorized_verifiers(OWNER) is True

    def test_list_verifiers(self):
        self.registry.set_authorized_verifier(OWNER, VERIFIER, True)
        self.registry.set_authorized_verifier(OWNER, BOB, True)
        self.registry.set_authorized_verifier(OWNER, BOB, False)

        assert self.registry.list_verifiers() == [VERIFIER]


class TestAtomicity:
    """Write-ahead listeners and event replay"""

    def test_failing_listener_leaves_state_unchanged(self):
        registry = IdentityRegistry(OWNER)

        def failing_listener(event):
            raise IOError("journal unavailable")

        registry.add_listener(failing_listener)
        with pytest.raises(IOError):
            registry.create_identity(ALICE, "John Doe", "john@example.com")

        registry.remove_listener(failing_listener)
        assert not registry.has_identity(ALICE)
        assert len(registry.events()) == 1

        # The identity can still be created once the journal recovers
        registry.create_identity(ALICE, "John Doe", "john@example.com")
        assert registry.has_identity(ALICE)

    def test_listener_sees_event_before_it_is_applied(self):
        registry = IdentityRegistry(OWNER)
        seen = []

        def listener(event):
            seen.append((event.event_type, registry.has_identity(ALICE)))

        registry.add_listener(listener)
        registry.create_identity(ALICE, "John Doe", "john@example.com")

        assert seen == [(EventType.IDENTITY_CREATED, False)]

    def test_rejected_operation_emits_no_event(self):
        seen = []
        registry = IdentityRegistry(OWNER, listeners=[seen.append])

        with pytest.raises(NotRegistered):
            registry.add_credential(ALICE, "education", EDUCATION_HASH)

        assert [e.event_type for e in seen] == [EventType.REGISTRY_DEPLOYED]

    def test_replay_rebuilds_state(self):
        registry = IdentityRegistry(OWNER, clock=FakeClock())
        registry.create_identity(ALICE, "John Doe", "john@example.com")
        registry.add_credential(ALICE, "education", EDUCATION_HASH)
        registry.request_verification(ALICE, "education", EDUCATION_HASH)
        registry.set_authorized_verifier(OWNER, VERIFIER, True)
        registry.resolve_verification(VERIFIER, ALICE, "education", "Approved")

        journal = [RegistryEvent.from_dict(e.to_dict()) for e in registry.events()]
        replayed = IdentityRegistry.from_events(journal)

        assert replayed.contract_owner == OWNER
        assert replayed.get_identity(ALICE) == registry.get_identity(ALICE)
        assert replayed.get_credential(ALICE, "education") == registry.get_credential(ALICE, "education")
        assert replayed.list_requests() == registry.list_requests()
        assert replayed.get_statistics() == registry.get_statistics()

    def test_replay_continues_request_numbering(self):
        registry = IdentityRegistry(OWNER)
        registry.create_identity(ALICE, "John Doe", "john@example.com")
        registry.add_credential(ALICE, "education", EDUCATION_HASH)
        first = registry.request_verification(ALICE, "education", EDUCATION_HASH)

        replayed = IdentityRegistry.from_events(registry.events())
        replayed.set_authorized_verifier(OWNER, VERIFIER, True)
        replayed.resolve_verification(VERIFIER, ALICE, "education", "Rejected")
        second = replayed.request_verification(ALICE, "education", EDUCATION_HASH)

        assert second.request_id == first.request_id + 1

    def test_replay_requires_deployment_event(self):
        registry = IdentityRegistry(OWNER)
        registry.create_identity(ALICE, "John Doe", "john@example.com")

        with pytest.raises(ValueError):
            IdentityRegistry.from_events(registry.events()[1:])

    def test_replay_rejects_second_deployment(self):
        events = IdentityRegistry(OWNER).events() + IdentityRegistry(ALICE).events()
        with pytest.raises(ValueError):
            IdentityRegistry.from_events(events)


class TestSerialization:
    """Concurrent callers against one registry"""

    THREADS = 16

    def _race(self, target):
        barrier = threading.Barrier(self.THREADS)
        outcomes = []
        outcomes_lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                target()
                result = "ok"
            except RegistryError as e:
                result = e.kind
            with outcomes_lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker) for _ in range(self.THREADS)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return outcomes

    def test_racing_create_identity_commits_once(self):
        journal = []
        registry = IdentityRegistry(OWNER, listeners=[journal.append])

        outcomes = self._race(lambda: registry.create_identity(ALICE, "John Doe", "john@example.com"))

        assert outcomes.count("ok") == 1
        assert outcomes.count("AlreadyExists") == self.THREADS - 1
        created = [e for e in journal if e.event_type == EventType.IDENTITY_CREATED]
        assert len(created) == 1
        assert registry.get_statistics()["identities"] == 1

    def test_racing_resolutions_resolve_once(self):
        journal = []
        registry = IdentityRegistry(OWNER, listeners=[journal.append])
        registry.create_identity(ALICE, "John Doe", "john@example.com")
        registry.add_credential(ALICE, "education", EDUCATION_HASH)
        request = registry.request_verification(ALICE, "education", EDUCATION_HASH)
        registry.set_authorized_verifier(OWNER, VERIFIER, True)

        outcomes = self._race(
            lambda: registry.resolve_verification(VERIFIER, ALICE, "education", "Approved")
        )

        assert outcomes.count("ok") == 1
        assert outcomes.count("NotFound") == self.THREADS - 1
        resolved = [e for e in journal if e.event_type == EventType.VERIFICATION_RESOLVED]
        assert len(resolved) == 1
        assert registry.get_request(request.request_id).status == RequestStatus.APPROVED


class TestScenario:
    """End-to-end flow from deployment to an approved credential"""

    def test_full_verification_flow(self):
        registry = IdentityRegistry(OWNER)
        assert registry.authorized_verifiers(OWNER) is False

        registry.create_identity(ALICE, "John Doe", "john@example.com")
        registry.add_credential(ALICE, "education", EDUCATION_HASH)
        request = registry.request_verification(ALICE, "education", EDUCATION_HASH)
        assert request.status == RequestStatus.PENDING

        registry.set_authorized_verifier(OWNER, VERIFIER, True)
        resolved = registry.resolve_verification(VERIFIER, ALICE, "education", "Approved")
        assert resolved.status == RequestStatus.APPROVED

        with pytest.raises(NotFound):
            registry.resolve_verification(VERIFIER, ALICE, "education", "Approved")

        stats = registry.get_statistics()
        assert stats["approved_requests"] == 1
        assert stats["verified_credentials"] == 1


class TestHelpers:
    """Input normalization"""

    def test_normalize_hash_accepts_unprefixed_hex(self):
        assert normalize_hash(EDUCATION_HASH.hex()) == EDUCATION_HASH

    @pytest.mark.parametrize("value", ["0x1234", "zz" * 32, 12345, b""])
    def test_normalize_hash_rejects_bad_input(self, value):
        with pytest.raises(ValueError):
            normalize_hash(value)

    @pytest.mark.parametrize("value,expected", [
        ("Approved", RequestStatus.APPROVED),
        ("REJECTED", RequestStatus.REJECTED),
        (True, RequestStatus.APPROVED),
        (False, RequestStatus.REJECTED),
    ])
    def test_parse_decision(self, value, expected):
        assert parse_decision(value) == expected

    @pytest.mark.parametrize("value,expected", [
        ("pending", RequestStatus.PENDING),
        (" Approved ", RequestStatus.APPROVED),
        ("REJECTED", RequestStatus.REJECTED),
    ])
    def test_parse_status_ignores_case(self, value, expected):
        assert parse_status(value) == expected

    def test_parse_status_rejects_unknown(self):
        with pytest.raises(ValueError):
            parse_status("Unknown")

    @pytest.mark.parametrize("value", ["Pending", "maybe"])
    def test_parse_decision_rejects(self, value):
        with pytest.raises(ValueError):
            parse_decision(value)
