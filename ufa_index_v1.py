"""
UFA Chaincode - Index and Ledger Maintenance
Version: 1.0.0

Ordered sequences of identifiers kept under a single state key: the master
list of agreements, each agreement's audit trail and each agreement's
invoice list.

Every append is a read-modify-write of the whole sequence. When the store
supports conditional writes the append fails with ConcurrentModification if
another writer got there first. Otherwise the host must serialise writes to
the same key, or a concurrent append is lost.
"""

from typing import List, Optional, Tuple

from ufa_enforcement_v1 import (
    ALL_ELEMENTS_KEY,
    UFA_INVOICE_PREFIX,
    UFA_TRXN_PREFIX,
    ConcurrentModification,
    DecodeFailure,
    logger
)
from ufa_metrics import record_store_failure
from ufa_records_v1 import Invoice, decode_mapping, encode, load_json
from ufa_state_v1 import StateStore

# ============================================
# GENERIC INDEX
# ============================================

class IndexStore:
    """Append-only JSON array of strings stored under one key."""

    # An absent key reads as an empty sequence
    lazy_init = True

    def __init__(self, store: StateStore, key: str):
        self.store = store
        self.key = key

    def _load(self) -> Tuple[Optional[bytes], List[str]]:
        raw = self.store.get(self.key)
        if raw is None:
            if not self.lazy_init:
                raise DecodeFailure(f"Index {self.key} is not initialized")
            return None, []

        items = load_json(raw, DecodeFailure, f"Index {self.key}")
        if not isinstance(items, list) or not all(isinstance(item, str) for item in items):
            raise DecodeFailure(f"Index {self.key} is not a list of strings")
        return raw, items

    def read_all(self) -> List[str]:
        return self._load()[1]

    def append(self, item: str):
        raw, items = self._load()
        items.append(item)
        updated = encode(items)

        if self.store.supports_conditional_put:
            if not self.store.put_if_unchanged(self.key, raw, updated):
                record_store_failure("conflict")
                logger.error(f"[INDEX] Concurrent write detected on {self.key}")
                raise ConcurrentModification(f"{self.key} changed while appending {item!r}")
        else:
            self.store.put(self.key, updated)

        logger.info(f"[INDEX] {self.key} now holds {len(items)} entries")

# ============================================
# MASTER INDEX
# ============================================

class MasterIndex(IndexStore):
    """Every agreement number ever created, in creation order."""

    lazy_init = False

    def __init__(self, store: StateStore):
        super().__init__(store, ALL_ELEMENTS_KEY)

    def initialize(self) -> bool:
        """One-time bootstrap. Returns False when an index already exists."""
        if self.store.get(self.key) is not None:
            # Validate what is there instead of wiping it
            self.read_all()
            logger.info(f"[INDEX] {self.key} already initialized")
            return False

        if self.store.supports_conditional_put:
            if not self.store.put_if_unchanged(self.key, None, b"[]"):
                raise ConcurrentModification(f"{self.key} was initialized concurrently")
        else:
            self.store.put(self.key, b"[]")
        logger.info(f"[INDEX] {self.key} initialized")
        return True

# ============================================
# AUDIT LEDGER
# ============================================

class AuditLedger(IndexStore):
    """Raw create/update payloads of one agreement, oldest first."""

    def __init__(self, store: StateStore, number: str):
        super().__init__(store, UFA_TRXN_PREFIX + number)
        self.number = number

    def append(self, payload: str):
        if self.store.get(self.key) is None:
            logger.info(f"[INDEX] Starting transaction history for {self.number}")
        super().append(payload)

    def entries(self) -> List[str]:
        return self.read_all()

# ============================================
# INVOICE INDEX
# ============================================

class InvoiceIndex(IndexStore):
    """Invoice identifiers recorded against one agreement."""

    def __init__(self, store: StateStore, number: str):
        super().__init__(store, UFA_INVOICE_PREFIX + number)
        self.number = number

    def invoices(self) -> List[Invoice]:
        """Resolve every identifier. Missing or corrupt invoices come back empty."""
        invoices = []
        for invoice_number in self.read_all():
            raw = self.store.get(invoice_number)
            try:
                fields = decode_mapping(raw, DecodeFailure, f"Invoice {invoice_number}") if raw is not None else {}
            except DecodeFailure as e:
                logger.warning(f"[INDEX] {e}; treating as empty")
                fields = {}
            invoices.append(Invoice(fields))
        return invoices

    def has_billing_period(self, billing_period: str) -> bool:
        for invoice in self.invoices():
            logger.info(f"[INDEX] Checking invoice {invoice.invoice_number} of {self.number}")
            if invoice.billing_period == billing_period:
                return True
        return False
