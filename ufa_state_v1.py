"""
UFA Chaincode - State Accessor
Version: 1.0.0

Key-value state supplied by the hosting ledger platform. Only single-key
overwrites are atomic; there are no multi-key transactions.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional
import threading

from ufa_enforcement_v1 import StoreReadFailed, StoreWriteFailed, logger
from ufa_metrics import record_store_failure

# ============================================
# STATE STORE INTERFACE
# ============================================

class StateStore(ABC):
    """get/put by key with last-write-wins semantics."""

    supports_conditional_put = False

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the stored bytes, or None when the key is unset.

        Raises StoreReadFailed when the store cannot serve the read.
        """
        pass

    @abstractmethod
    def put(self, key: str, value: bytes):
        """Unconditionally overwrite ``key``. Durable once this returns."""
        pass

    def put_if_unchanged(self, key: str, expected: Optional[bytes], value: bytes) -> bool:
        """Write ``value`` only if ``key`` still holds ``expected``.

        Stores that cannot offer this leave ``supports_conditional_put`` False
        and callers fall back to ``put``.
        """
        raise NotImplementedError(f"{type(self).__name__} has no conditional put")

# ============================================
# IN-MEMORY STORE
# ============================================

class InMemoryStateStore(StateStore):
    """In-memory state (the hosting ledger provides the durable one)."""

    supports_conditional_put = True

    def __init__(self):
        self.state: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _check_write(key: str, value: bytes):
        if not isinstance(key, str) or not key:
            record_store_failure("put")
            raise StoreWriteFailed(f"Invalid state key {key!r}")
        if not isinstance(value, (bytes, bytearray)):
            record_store_failure("put")
            raise StoreWriteFailed(f"Refusing to store non-bytes value under {key}")

    def get(self, key: str) -> Optional[bytes]:
        if not isinstance(key, str) or not key:
            record_store_failure("get")
            raise StoreReadFailed(f"Invalid state key {key!r}")

        with self._lock:
            return self.state.get(key)

    def put(self, key: str, value: bytes):
        self._check_write(key, value)

        with self._lock:
            self.state[key] = bytes(value)
        logger.debug(f"[STATE] put {key} ({len(value)} bytes)")

    def put_if_unchanged(self, key: str, expected: Optional[bytes], value: bytes) -> bool:
        self._check_write(key, value)

        with self._lock:
            if self.state.get(key) != expected:
                return False
            self.state[key] = bytes(value)
        return True
