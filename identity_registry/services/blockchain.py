"""
Identity Registry Blockchain Service
web3 access to RPC networks: deployer wallet, transaction submission, and a
client for a deployed DecentralizedIdentityManagement contract.
"""

import logging
from typing import Optional, Dict, Any, Union
from web3 import Web3
from eth_account import Account

from identity_registry.config import NetworkConfig
from identity_registry.services.registry import normalize_address, normalize_hash

logger = logging.getLogger(__name__)


# Contract ABI - the registry's external call surface
CONTRACT_ABI = [
    {
        "inputs": [],
        "stateMutability": "nonpayable",
        "type": "constructor"
    },
    {
        "inputs": [],
        "name": "contractOwner",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [{"name": "", "type": "address"}],
        "name": "authorizedVerifiers",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [
            {"name": "name", "type": "string"},
            {"name": "email", "type": "string"}
        ],
        "name": "createIdentity",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [
            {"name": "credentialType", "type": "string"},
            {"name": "credentialHash", "type": "bytes32"}
        ],
        "name": "addCredential",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [
            {"name": "credentialType", "type": "string"},
            {"name": "credentialHash", "type": "bytes32"}
        ],
        "name": "requestVerification",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [
            {"name": "subject", "type": "address"},
            {"name": "credentialType", "type": "string"},
            {"name": "approved", "type": "bool"}
        ],
        "name": "resolveVerification",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [
            {"name": "verifier", "type": "address"},
            {"name": "enabled", "type": "bool"}
        ],
        "name": "setAuthorizedVerifier",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "subject", "type": "address"},
            {"indexed": False, "name": "name", "type": "string"},
            {"indexed": False, "name": "timestamp", "type": "uint256"}
        ],
        "name": "IdentityCreated",
        "type": "event"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "subject", "type": "address"},
            {"indexed": False, "name": "credentialType", "type": "string"},
            {"indexed": False, "name": "approved", "type": "bool"}
        ],
        "name": "VerificationResolved",
        "type": "event"
    }
]


class TransactionFailed(Exception):
    """Transaction was mined but reverted."""

    def __init__(self, tx_hash: str, receipt: Any):
        super().__init__(f"Transaction {tx_hash} reverted")
        self.tx_hash = tx_hash
        self.receipt = receipt


class BlockchainService:
    """Wallet and transaction plumbing for one RPC network."""

    def __init__(
        self,
        network: NetworkConfig,
        private_key: str,
        w3: Optional[Web3] = None
    ):
        if network.is_local:
            raise ValueError(f"Network '{network.name}' has no RPC endpoint")
        if not private_key:
            raise ValueError("PRIVATE_KEY is not configured")

        self.network = network
        self.w3 = w3 or Web3(Web3.HTTPProvider(
            network.rpc_url,
            request_kwargs={"timeout": network.timeout}
        ))
        self._private_key = private_key
        self.account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self.account.address

    def is_connected(self) -> bool:
        """Check if connected to blockchain."""
        try:
            return self.w3.is_connected()
        except Exception:
            return False

    def get_balance(self, address: Optional[str] = None) -> int:
        """Balance in wei (defaults to the deployer)."""
        return self.w3.eth.get_balance(address or self.address)

    def get_balance_eth(self, address: Optional[str] = None) -> float:
        return float(Web3.from_wei(self.get_balance(address), "ether"))

    def _transaction_params(self, function) -> Dict[str, Any]:
        params = {
            "from": self.address,
            "nonce": self.w3.eth.get_transaction_count(self.address),
            "chainId": self.network.chain_id,
            "gasPrice": self.network.gas_price or self.w3.eth.gas_price,
        }
        if self.network.gas:
            params["gas"] = self.network.gas
        else:
            # 20% buffer over the estimate
            params["gas"] = int(function.estimate_gas({"from": self.address}) * 1.2)
        return params

    def send_transaction(self, function) -> Dict[str, Any]:
        """
        Build, sign, send and wait for a contract call or constructor.

        Args:
            function: Contract function call or constructor

        Returns:
            Transaction receipt

        Raises:
            TransactionFailed: the transaction reverted
        """
        tx = function.build_transaction(self._transaction_params(function))

        signed_tx = self.w3.eth.account.sign_transaction(tx, private_key=self._private_key)
        tx_hash = self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
        logger.info("Sent transaction %s on %s", tx_hash.hex(), self.network.name)

        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.network.timeout)

        if receipt["status"] != 1:
            logger.error("Transaction %s reverted", tx_hash.hex())
            raise TransactionFailed(tx_hash.hex(), receipt)
        return receipt


class RegistryContractClient:
    """Client for a deployed DecentralizedIdentityManagement contract."""

    def __init__(self, service: BlockchainService, contract_address: str, abi: Optional[list] = None):
        self.service = service
        self.contract = service.w3.eth.contract(
            address=normalize_address(contract_address),
            abi=abi or CONTRACT_ABI
        )

    @property
    def address(self) -> str:
        return self.contract.address

    # ==================== VIEWS ====================

    def contract_owner(self) -> str:
        return self.contract.functions.contractOwner().call()

    def authorized_verifiers(self, address: str) -> bool:
        return self.contract.functions.authorizedVerifiers(normalize_address(address)).call()

    # ==================== TRANSACTIONS ====================

    def create_identity(self, name: str, contact: str) -> Dict[str, Any]:
        return self.service.send_transaction(
            self.contract.functions.createIdentity(name, contact)
        )

    def add_credential(self, credential_type: str, content_hash: Union[bytes, str]) -> Dict[str, Any]:
        return self.service.send_transaction(
            self.contract.functions.addCredential(credential_type, normalize_hash(content_hash))
        )

    def request_verification(self, credential_type: str, content_hash: Union[bytes, str]) -> Dict[str, Any]:
        return self.service.send_transaction(
            self.contract.functions.requestVerification(credential_type, normalize_hash(content_hash))
        )

    def resolve_verification(self, subject: str, credential_type: str, approved: bool) -> Dict[str, Any]:
        return self.service.send_transaction(
            self.contract.functions.resolveVerification(
                normalize_address(subject), credential_type, bool(approved)
            )
        )

    def set_authorized_verifier(self, address: str, enabled: bool) -> Dict[str, Any]:
        return self.service.send_transaction(
            self.contract.functions.setAuthorizedVerifier(normalize_address(address), bool(enabled))
        )
