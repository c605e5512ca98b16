"""Tests for the SQLite event journal and deployment records."""

import hashlib
import os

import pytest
from web3 import Web3

from identity_registry.database import (
    init_database,
    append_event,
    load_events,
    make_journal_listener,
    save_deployment,
    get_latest_deployment,
    list_deployments,
    get_db_connection,
)
from identity_registry.services.encryption import EncryptionService, content_hash
from identity_registry.services.errors import AlreadyExists
from identity_registry.services.registry import IdentityRegistry, EventType


OWNER = Web3.to_checksum_address("0x" + "a1" * 20)
ALICE = Web3.to_checksum_address("0x" + "b2" * 20)
VERIFIER = Web3.to_checksum_address("0x" + "d4" * 20)
EDUCATION_HASH = hashlib.sha256(b"BSc Computer Science").digest()


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "registry.db")
    init_database(path)
    return path


def _deployment(network="hardhat", address="0x" + "11" * 20):
    return {
        "network": network,
        "contractAddress": address,
        "deployerAddress": OWNER,
        "transactionHash": "0x" + "ab" * 32,
        "blockNumber": 1,
        "timestamp": "2026-01-01T00:00:00+00:00",
        "gasUsed": "0",
        "contractOwner": OWNER,
        "deployerIsVerifier": False,
    }


def test_init_database_is_idempotent(db_path):
    init_database(db_path)
    with get_db_connection(db_path) as conn:
        tables = {
            row["name"] for row in
            conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
        }
    assert {"events", "deployments"} <= tables


def test_append_and_load_events(db_path):
    registry = IdentityRegistry(OWNER)
    registry.create_identity(ALICE, "John Doe", "john@example.com")

    for event in registry.events():
        append_event(event, db_path=db_path)

    loaded = load_events(db_path)
    assert [e.event_type for e in loaded] == [EventType.REGISTRY_DEPLOYED, EventType.IDENTITY_CREATED]
    assert loaded[1].payload["name"] == "John Doe"
    assert loaded == registry.events()


def test_journal_listener_replays_full_history(db_path):
    registry = IdentityRegistry(OWNER, listeners=[make_journal_listener(db_path)])
    registry.create_identity(ALICE, "John Doe", "john@example.com")
    registry.add_credential(ALICE, "education", EDUCATION_HASH)
    registry.request_verification(ALICE, "education", EDUCATION_HASH)
    registry.set_authorized_verifier(OWNER, VERIFIER, True)
    registry.resolve_verification(VERIFIER, ALICE, "education", "Approved")

    replayed = IdentityRegistry.from_events(load_events(db_path))

    assert replayed.get_credential(ALICE, "education").verified is True
    assert replayed.authorized_verifiers(VERIFIER) is True
    assert replayed.get_statistics() == registry.get_statistics()


def test_rejected_operations_are_not_journaled(db_path):
    registry = IdentityRegistry(OWNER, listeners=[make_journal_listener(db_path)])
    registry.create_identity(ALICE, "John Doe", "john@example.com")

    with pytest.raises(AlreadyExists):
        registry.create_identity(ALICE, "John Doe", "john@example.com")

    assert len(load_events(db_path)) == 2


def test_encrypted_journal(db_path):
    encryption = EncryptionService(os.urandom(32).hex())
    registry = IdentityRegistry(OWNER, listeners=[make_journal_listener(db_path, encryption)])
    registry.create_identity(ALICE, "John Doe", "john@example.com")

    with get_db_connection(db_path) as conn:
        raw = [row["payload"] for row in conn.execute("SELECT payload FROM events").fetchall()]
    assert all("john@example.com" not in payload for payload in raw)

    loaded = load_events(db_path, encryption)
    assert loaded[1].payload["contact"] == "john@example.com"


def test_encrypted_journal_requires_key(db_path):
    encryption = EncryptionService(os.urandom(32).hex())
    IdentityRegistry(OWNER, listeners=[make_journal_listener(db_path, encryption)])

    with pytest.raises(ValueError):
        load_events(db_path)


def test_save_and_get_latest_deployment(db_path):
    save_deployment(_deployment(address="0x" + "11" * 20), db_path)
    save_deployment(_deployment(address="0x" + "22" * 20), db_path)
    save_deployment(_deployment(network="core_testnet2", address="0x" + "33" * 20), db_path)

    latest = get_latest_deployment(db_path=db_path)
    assert latest["contractAddress"] == "0x" + "33" * 20

    latest_local = get_latest_deployment("hardhat", db_path=db_path)
    assert latest_local["contractAddress"] == "0x" + "22" * 20
    assert latest_local["deployerIsVerifier"] is False

    assert len(list_deployments(db_path)) == 3


def test_no_deployment_recorded(db_path):
    assert get_latest_deployment(db_path=db_path) is None
    assert list_deployments(db_path) == []


def test_master_key_must_be_256_bits():
    with pytest.raises(ValueError):
        EncryptionService("00" * 16)
    with pytest.raises(ValueError):
        EncryptionService("not-hex" * 8)


def test_encrypt_text_uses_fresh_iv():
    encryption = EncryptionService("0x" + "11" * 32)
    first = encryption.encrypt_text("john@example.com")

    assert first != encryption.encrypt_text("john@example.com")
    assert encryption.decrypt_text(first) == "john@example.com"


def test_content_hash_matches_credential_encoding():
    assert content_hash("BSc Computer Science") == "0x" + EDUCATION_HASH.hex()
    assert content_hash(b"BSc Computer Science") == content_hash("BSc Computer Science")
