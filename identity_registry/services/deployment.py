"""
Registry Deployment
===================

Deploys the identity registry to a configured network and reads back its
initial state (owner address, deployer's verifier flag).

- In-process network ("hardhat"): the registry is constructed locally and
  its deployment event is written to the journal.
- RPC networks: the compiled contract is deployed with web3.

Failures are classified into DeploymentError codes with operator hints.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple, Iterable, Union

from requests.exceptions import ConnectionError as RequestsConnectionError, Timeout
from web3 import Web3
from web3.exceptions import TimeExhausted
from eth_account import Account

from identity_registry.config import NetworkConfig, config
from identity_registry.services.blockchain import BlockchainService, RegistryContractClient
from identity_registry.services.errors import DeploymentError
from identity_registry.services.registry import IdentityRegistry, EventListener, normalize_address

logger = logging.getLogger(__name__)


CONTRACT_NAME = "DecentralizedIdentityManagement"

HINTS = {
    DeploymentError.INSUFFICIENT_FUNDS: "Add more ETH to your deployer account",
    DeploymentError.NETWORK_ERROR: "Check your network connection and RPC URL",
    DeploymentError.GAS_ERROR: "Try increasing gas limit or gas price",
    DeploymentError.CONFIGURATION_ERROR: "Check your .env settings and compiled artifacts",
}


@dataclass
class DeploymentResult:
    """Summary of one deployment"""
    network: str
    contract_address: str
    deployer_address: str
    transaction_hash: str
    contract_owner: str
    deployer_is_verifier: bool
    block_number: Optional[int] = None
    gas_used: str = "0"
    balance_eth: Optional[float] = None
    warnings: List[str] = field(default_factory=list)
    timestamp: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "network": self.network,
            "contractAddress": self.contract_address,
            "deployerAddress": self.deployer_address,
            "transactionHash": self.transaction_hash,
            "blockNumber": self.block_number,
            "timestamp": self.timestamp,
            "gasUsed": self.gas_used,
            "contractOwner": self.contract_owner,
            "deployerIsVerifier": self.deployer_is_verifier,
        }


def _to_hex(value: Union[bytes, str]) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return value if value.startswith("0x") else "0x" + value


# ==================== ERROR CLASSIFICATION ====================

def classify_deployment_error(error: Exception) -> DeploymentError:
    """Map an exception raised while deploying onto a DeploymentError."""
    if isinstance(error, DeploymentError):
        return error

    message = str(error) or error.__class__.__name__
    lowered = message.lower()
    code = getattr(error, "code", None)

    if code == DeploymentError.INSUFFICIENT_FUNDS or "insufficient funds" in lowered:
        kind = DeploymentError.INSUFFICIENT_FUNDS
    elif code == DeploymentError.NETWORK_ERROR or isinstance(
        error, (RequestsConnectionError, Timeout, TimeExhausted, ConnectionError)
    ):
        kind = DeploymentError.NETWORK_ERROR
    elif "gas" in lowered:
        kind = DeploymentError.GAS_ERROR
    else:
        kind = DeploymentError.UNKNOWN

    return DeploymentError(kind, message, HINTS.get(kind, ""))


# ==================== ARTIFACTS ====================

def load_contract_artifact(path: Union[str, Path]) -> Tuple[list, str]:
    """
    Load ABI and bytecode from a Hardhat artifact JSON.

    Raises:
        DeploymentError: missing or malformed artifact
    """
    path = Path(path)
    if not path.exists():
        raise DeploymentError(
            DeploymentError.CONFIGURATION_ERROR,
            f"Contract artifact not found: {path}",
            "Compile the contract (npx hardhat compile) or set CONTRACT_ARTIFACT"
        )

    try:
        artifact = json.loads(path.read_text())
        abi, bytecode = artifact["abi"], artifact["bytecode"]
    except (json.JSONDecodeError, KeyError) as e:
        raise DeploymentError(
            DeploymentError.CONFIGURATION_ERROR,
            f"Malformed contract artifact {path}: {e}",
            HINTS[DeploymentError.CONFIGURATION_ERROR]
        )

    if not bytecode or bytecode == "0x":
        raise DeploymentError(
            DeploymentError.CONFIGURATION_ERROR,
            f"Contract artifact {path} has no bytecode",
            "Make sure the contract is not abstract and recompile"
        )
    return abi, bytecode


# ==================== DEPLOYERS ====================

class LocalDeployer:
    """Deploys registries on the in-process network."""

    def __init__(self, network: NetworkConfig):
        self.network = network
        self._nonces: Dict[str, int] = {}
        self._height = 0

    def deploy(
        self,
        deployer_address: str,
        listeners: Optional[Iterable[EventListener]] = None
    ) -> Tuple[IdentityRegistry, DeploymentResult]:
        deployer = normalize_address(deployer_address)
        nonce = self._nonces.get(deployer, 0)

        registry = IdentityRegistry(deployer, listeners=listeners)

        self._nonces[deployer] = nonce + 1
        self._height += 1

        # Contract address derived from deployer and nonce, as on-chain
        digest = bytes(Web3.keccak(text=f"{deployer}:{nonce}"))
        contract_address = Web3.to_checksum_address("0x" + digest[12:].hex())
        tx_hash = _to_hex(bytes(Web3.keccak(text=f"{CONTRACT_NAME}:{contract_address}")))

        result = DeploymentResult(
            network=self.network.name,
            contract_address=contract_address,
            deployer_address=deployer,
            transaction_hash=tx_hash,
            contract_owner=registry.contract_owner,
            deployer_is_verifier=registry.authorized_verifiers(deployer),
            block_number=self._height,
        )
        return registry, result


class ContractDeployer:
    """Deploys the compiled contract to an RPC network."""

    def __init__(self, service: BlockchainService, abi: list, bytecode: str):
        self.service = service
        self.abi = abi
        self.bytecode = bytecode

    def deploy(self) -> Tuple[RegistryContractClient, DeploymentResult]:
        factory = self.service.w3.eth.contract(abi=self.abi, bytecode=self.bytecode)

        logger.info("Deploying %s contract to %s...", CONTRACT_NAME, self.service.network.name)
        receipt = self.service.send_transaction(factory.constructor())

        client = RegistryContractClient(self.service, receipt["contractAddress"], abi=self.abi)

        result = DeploymentResult(
            network=self.service.network.name,
            contract_address=client.address,
            deployer_address=self.service.address,
            transaction_hash=_to_hex(receipt["transactionHash"]),
            contract_owner=client.contract_owner(),
            deployer_is_verifier=client.authorized_verifiers(self.service.address),
            block_number=receipt.get("blockNumber"),
            gas_used=str(receipt.get("gasUsed", 0)),
        )
        return client, result


# ==================== ORCHESTRATION ====================

def resolve_deployer_key(private_key: Optional[str] = None) -> Optional[str]:
    return private_key or config.PRIVATE_KEY or None


def deploy_registry(
    network: NetworkConfig,
    private_key: Optional[str] = None,
    artifact_path: Optional[str] = None,
    listeners: Optional[Iterable[EventListener]] = None,
    service: Optional[BlockchainService] = None,
    low_balance_threshold_eth: Optional[float] = None
) -> Tuple[Union[IdentityRegistry, RegistryContractClient], DeploymentResult]:
    """
    Deploy the registry to a network.

    Args:
        network: Target network
        private_key: Deployer key (defaults to PRIVATE_KEY)
        artifact_path: Hardhat artifact for RPC networks (defaults to CONTRACT_ARTIFACT)
        listeners: Journal listeners for the in-process registry
        service: Pre-built blockchain service (RPC networks)
        low_balance_threshold_eth: Balance under which a warning is added

    Returns:
        Tuple of (registry handle, deployment result)

    Raises:
        DeploymentError: classified failure with remediation hint
    """
    private_key = resolve_deployer_key(private_key)
    threshold = (
        config.LOW_BALANCE_THRESHOLD_ETH
        if low_balance_threshold_eth is None else low_balance_threshold_eth
    )

    try:
        if network.is_local:
            if private_key:
                deployer = Account.from_key(private_key).address
            elif config.REGISTRY_OWNER:
                deployer = config.REGISTRY_OWNER
            else:
                # the owner must be an address someone holds the key for
                raise DeploymentError(
                    DeploymentError.CONFIGURATION_ERROR,
                    f"No registry owner configured for {network.name}",
                    "Set PRIVATE_KEY or REGISTRY_OWNER in your .env file"
                )

            handle, result = LocalDeployer(network).deploy(deployer, listeners=listeners)

        else:
            if service is None:
                if not private_key:
                    raise DeploymentError(
                        DeploymentError.CONFIGURATION_ERROR,
                        f"PRIVATE_KEY is required to deploy to {network.name}",
                        "Set PRIVATE_KEY in your .env file"
                    )
                service = BlockchainService(network, private_key)

            abi, bytecode = load_contract_artifact(artifact_path or config.CONTRACT_ARTIFACT)

            if not service.is_connected():
                raise DeploymentError(
                    DeploymentError.NETWORK_ERROR,
                    f"Cannot connect to {network.name} at {network.rpc_url}",
                    HINTS[DeploymentError.NETWORK_ERROR]
                )

            logger.info("Deploying contracts with the account: %s", service.address)
            balance_eth = service.get_balance_eth()
            logger.info("Account balance: %s ETH", balance_eth)

            warnings = []
            if balance_eth < threshold:
                warnings.append("Low balance. Make sure you have enough ETH for deployment.")
                logger.warning(warnings[-1])

            handle, result = ContractDeployer(service, abi, bytecode).deploy()
            result.balance_eth = balance_eth
            result.warnings.extend(warnings)

    except DeploymentError as e:
        logger.error("Deployment failed [%s]: %s", e.code, e.message)
        raise
    except Exception as e:
        error = classify_deployment_error(e)
        logger.error("Deployment failed [%s]: %s", error.code, error.message)
        raise error from e

    logger.info(
        "%s deployed at %s on %s (owner=%s)",
        CONTRACT_NAME, result.contract_address, result.network, result.contract_owner
    )
    return handle, result
