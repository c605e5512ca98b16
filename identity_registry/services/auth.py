"""
Caller Authentication
EIP-191 personal-sign signatures binding an Ethereum address to one API request.

The signed text carries a nonce (the caller's clock in milliseconds) so a
captured request cannot be sent again: the nonce must be recent and must
exceed the last one accepted from the same address.
"""

import hashlib
import threading
import time
from typing import Callable, Dict, Optional

from eth_account import Account
from eth_account.messages import encode_defunct

from identity_registry.services.registry import normalize_address


def new_nonce() -> int:
    """Current time in milliseconds (client side helper)."""
    return int(time.time() * 1000)


def request_message(method: str, path: str, nonce: int, body: bytes) -> str:
    """Canonical text a caller signs for a request."""
    return f"{method.upper()} {path}\n{nonce}\n{hashlib.sha256(body).hexdigest()}"


def sign_request(private_key: str, method: str, path: str, nonce: int, body: bytes = b"") -> str:
    """Sign a request message (client side helper)."""
    message = encode_defunct(text=request_message(method, path, nonce, body))
    signed = Account.sign_message(message, private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


def recover_signer(method: str, path: str, nonce: int, body: bytes, signature: str) -> Optional[str]:
    """Recover the signing address, or None for an unparseable signature."""
    message = encode_defunct(text=request_message(method, path, nonce, body))
    try:
        return Account.recover_message(message, signature=signature)
    except Exception:
        return None


def verify_caller(
    address: str,
    method: str,
    path: str,
    nonce: int,
    body: bytes,
    signature: str
) -> bool:
    """Check that `signature` was produced by `address` for this request."""
    signer = recover_signer(method, path, nonce, body, signature)
    return signer is not None and signer == normalize_address(address)


class NonceTracker:
    """Replay guard: remembers the last accepted nonce per address."""

    def __init__(self, max_age: int = 300, clock: Optional[Callable[[], float]] = None):
        """
        Args:
            max_age: Seconds a nonce may differ from the server clock
            clock: Time source in seconds (defaults to time.time)
        """
        self.max_age_ms = max_age * 1000
        self._clock = clock or time.time
        self._last: Dict[str, int] = {}
        self._lock = threading.Lock()

    def accept(self, address: str, nonce: int) -> bool:
        """Record `nonce` for `address` if it is fresh and unused."""
        now_ms = int(self._clock() * 1000)
        if abs(now_ms - nonce) > self.max_age_ms:
            return False

        address = normalize_address(address)
        with self._lock:
            if nonce <= self._last.get(address, -1):
                return False
            self._last[address] = nonce

            # entries older than the window can no longer be replayed anyway
            cutoff = now_ms - self.max_age_ms
            for stale in [a for a, n in self._last.items() if n < cutoff]:
                del self._last[stale]
        return True
