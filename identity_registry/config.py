"""
Identity Registry Configuration Module
Loads environment variables and provides configuration settings for the
registry API and the deployment tooling.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class NetworkConfig:
    """Target network for registry deployment."""
    name: str
    chain_id: int
    rpc_url: Optional[str] = None  # None = in-process network
    gas_price: Optional[int] = None  # wei, None = ask the node
    gas: Optional[int] = None
    timeout: int = 120  # seconds to wait for a receipt
    explorer_url: Optional[str] = None

    @property
    def is_local(self) -> bool:
        return self.rpc_url is None

    def get_address_url(self, address: str) -> Optional[str]:
        if not self.explorer_url:
            return None
        return f"{self.explorer_url}/address/{address}"

    def get_tx_url(self, tx_hash: str) -> Optional[str]:
        if not self.explorer_url:
            return None
        return f"{self.explorer_url}/tx/{tx_hash}"


NETWORKS: Dict[str, NetworkConfig] = {
    # Core Testnet 2
    "core_testnet2": NetworkConfig(
        name="core_testnet2",
        chain_id=1115,
        rpc_url=os.getenv("CORE_TESTNET2_RPC_URL", "https://rpc.test2.btcs.network"),
        gas_price=20_000_000_000,  # 20 gwei
        gas=8_000_000,
        timeout=60,
        explorer_url="https://scan.test2.btcs.network",
    ),
    # Local node (e.g. `npx hardhat node`)
    "localhost": NetworkConfig(
        name="localhost",
        chain_id=31337,
        rpc_url=os.getenv("LOCALHOST_RPC_URL", "http://127.0.0.1:8545"),
    ),
    # In-process registry
    "hardhat": NetworkConfig(
        name="hardhat",
        chain_id=31337,
    ),
}


@dataclass
class Config:
    """Application configuration settings."""

    # ============ API Settings ============
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))
    API_LOG_LEVEL: str = os.getenv("API_LOG_LEVEL", "info")

    # Require EIP-191 signatures from callers
    REQUIRE_SIGNATURES: bool = _env_bool("REQUIRE_SIGNATURES")

    # Seconds a signed request's nonce may be off from the server clock
    SIGNATURE_MAX_AGE: int = int(os.getenv("SIGNATURE_MAX_AGE", "300"))

    # ============ Storage ============
    DB_PATH: str = os.getenv("DB_PATH", str(Path(os.getenv("DATA_DIR", "data")) / "registry.db"))

    # ============ Deployment ============
    NETWORK: str = os.getenv("NETWORK", "hardhat")

    # Deployer wallet
    PRIVATE_KEY: str = os.getenv("PRIVATE_KEY", "")

    # Owner of the in-process registry (defaults to the deployer address)
    REGISTRY_OWNER: str = os.getenv("REGISTRY_OWNER", "")

    # Compiled contract artifact (Hardhat output)
    CONTRACT_ARTIFACT: str = os.getenv(
        "CONTRACT_ARTIFACT",
        "artifacts/contracts/DecentralizedIdentityManagement.sol/DecentralizedIdentityManagement.json"
    )

    # Deployed contract, for the RPC client
    CONTRACT_ADDRESS: str = os.getenv("CONTRACT_ADDRESS", "")

    LOW_BALANCE_THRESHOLD_ETH: float = float(os.getenv("LOW_BALANCE_THRESHOLD_ETH", "0.01"))

    # ============ Encryption ============
    # 32-byte (256-bit) master key as hex string, encrypts the event journal
    MASTER_KEY: str = os.getenv("MASTER_KEY", "")

    networks: Dict[str, NetworkConfig] = field(default_factory=lambda: dict(NETWORKS))

    def get_network(self, name: Optional[str] = None) -> NetworkConfig:
        """Look up a network by name (defaults to NETWORK)."""
        name = name or self.NETWORK
        try:
            return self.networks[name]
        except KeyError:
            raise ValueError(
                f"Unknown network '{name}'. Available: {', '.join(sorted(self.networks))}"
            )

    def ensure_data_dir(self) -> None:
        """Create the directory holding the SQLite database."""
        Path(self.DB_PATH).parent.mkdir(parents=True, exist_ok=True)


# Global config instance
config = Config()
