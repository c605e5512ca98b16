"""
Identity Registry Database Module
SQLite storage for the registry event journal and deployment records.
"""

import json
import sqlite3
from contextlib import contextmanager
from typing import Optional, Dict, Any, List

from identity_registry.config import config
from identity_registry.services.encryption import EncryptionService
from identity_registry.services.registry import RegistryEvent, EventListener


def init_database(db_path: Optional[str] = None):
    """Initialize the database and create tables if they don't exist."""
    if db_path is None:
        config.ensure_data_dir()

    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()

        # Append-only registry journal
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT NOT NULL,
                payload TEXT NOT NULL,
                encrypted BOOLEAN NOT NULL DEFAULT 0,
                event_timestamp INTEGER NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # One row per deployment run
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS deployments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                network TEXT NOT NULL,
                contract_address TEXT NOT NULL,
                deployer_address TEXT NOT NULL,
                transaction_hash TEXT NOT NULL,
                block_number INTEGER,
                gas_used TEXT,
                contract_owner TEXT NOT NULL,
                deployer_is_verifier BOOLEAN NOT NULL,
                deployed_at TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        conn.commit()


@contextmanager
def get_db_connection(db_path: Optional[str] = None):
    """Context manager for database connections."""
    conn = sqlite3.connect(db_path or config.DB_PATH)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


# ==================== EVENT JOURNAL ====================

def append_event(
    event: RegistryEvent,
    db_path: Optional[str] = None,
    encryption: Optional[EncryptionService] = None
) -> int:
    """Append a registry event to the journal."""
    payload = json.dumps(event.payload, sort_keys=True)
    if encryption:
        payload = encryption.encrypt_text(payload)

    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("""
            INSERT INTO events (event_type, payload, encrypted, event_timestamp)
            VALUES (?, ?, ?, ?)
        """, (event.event_type.value, payload, encryption is not None, event.timestamp))
        conn.commit()
        return cursor.lastrowid


def load_events(
    db_path: Optional[str] = None,
    encryption: Optional[EncryptionService] = None
) -> List[RegistryEvent]:
    """Load the journal in commit order."""
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("""
            SELECT event_type, payload, encrypted, event_timestamp
            FROM events
            ORDER BY seq ASC
        """)
        rows = cursor.fetchall()

    events = []
    for row in rows:
        payload = row["payload"]
        if row["encrypted"]:
            if encryption is None:
                raise ValueError("Event journal is encrypted but MASTER_KEY is not configured")
            payload = encryption.decrypt_text(payload)

        events.append(RegistryEvent.from_dict({
            "event": row["event_type"],
            "payload": json.loads(payload),
            "timestamp": row["event_timestamp"],
        }))
    return events


def make_journal_listener(
    db_path: Optional[str] = None,
    encryption: Optional[EncryptionService] = None
) -> EventListener:
    """Registry listener that writes each event to the journal before it is applied."""
    def listener(event: RegistryEvent) -> None:
        append_event(event, db_path=db_path, encryption=encryption)
    return listener


# ==================== DEPLOYMENTS ====================

def save_deployment(deployment: Dict[str, Any], db_path: Optional[str] = None) -> int:
    """Store a deployment summary (DeploymentResult.to_dict() layout)."""
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("""
            INSERT INTO deployments (
                network, contract_address, deployer_address, transaction_hash,
                block_number, gas_used, contract_owner, deployer_is_verifier, deployed_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            deployment["network"],
            deployment["contractAddress"],
            deployment["deployerAddress"],
            deployment["transactionHash"],
            deployment.get("blockNumber"),
            deployment.get("gasUsed"),
            deployment["contractOwner"],
            bool(deployment.get("deployerIsVerifier", False)),
            deployment["timestamp"],
        ))
        conn.commit()
        return cursor.lastrowid


def _deployment_row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "network": row["network"],
        "contractAddress": row["contract_address"],
        "deployerAddress": row["deployer_address"],
        "transactionHash": row["transaction_hash"],
        "blockNumber": row["block_number"],
        "gasUsed": row["gas_used"],
        "contractOwner": row["contract_owner"],
        "deployerIsVerifier": bool(row["deployer_is_verifier"]),
        "timestamp": row["deployed_at"],
    }


def get_latest_deployment(
    network: Optional[str] = None,
    db_path: Optional[str] = None
) -> Optional[Dict[str, Any]]:
    """Most recent deployment, optionally for one network."""
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        if network:
            cursor.execute(
                "SELECT * FROM deployments WHERE network = ? ORDER BY id DESC LIMIT 1",
                (network,)
            )
        else:
            cursor.execute("SELECT * FROM deployments ORDER BY id DESC LIMIT 1")
        row = cursor.fetchone()

        if row:
            return _deployment_row_to_dict(row)
        return None


def list_deployments(db_path: Optional[str] = None) -> List[Dict[str, Any]]:
    """All deployments, newest first."""
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM deployments ORDER BY id DESC")
        return [_deployment_row_to_dict(row) for row in cursor.fetchall()]
