"""
UFA Chaincode - Agreement Record Service
Version: 1.0.0

Creates, updates and reads agreements, and records invoice pairs against
them. This service is the only writer of agreement records, the master
index, the audit ledgers and the invoice indexes.
"""

from typing import Any, Dict, List, Optional
import uuid

from ufa_enforcement_v1 import (
    Criticality,
    DecisionLedger,
    DecodeFailure,
    Invariant,
    InvariantEnforcer,
    InvariantType,
    SerializationFailure,
    ValidationFailure,
    logger
)
from ufa_index_v1 import AuditLedger, InvoiceIndex, MasterIndex
from ufa_metrics import (
    agreement_created_counter,
    agreement_rejected_counter,
    agreement_updated_counter,
    invoice_amount_histogram,
    invoices_raised_counter,
    record_reconciliation
)
from ufa_reconciliation_v1 import InvoiceReconciler
from ufa_records_v1 import (
    RAISED_INV_TOTAL,
    AgreementRecord,
    Invoice,
    decode_invoices,
    decode_mapping,
    encode
)
from ufa_state_v1 import StateStore
from ufa_validation_v1 import AgreementValidator

# ============================================
# WRITE INVARIANTS
# ============================================

class UniqueAgreementNumber(Invariant):
    """UFA-004: An agreement number is created once and indexed once."""

    def __init__(self):
        super().__init__(
            id="ufa_004_unique_agreement_number",
            statement="The system MUST always ensure every UFA number has one record and one master index entry",
            message="UFA already exists",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="agreement_service"
        )

    def pre_check(self, number: str, store: StateStore, **kwargs) -> bool:
        return store.get(number) is None

    def post_check(self, result: Any, number: str, store: StateStore, **kwargs) -> bool:
        AgreementRecord.from_bytes(store.get(number), number)
        return MasterIndex(store).read_all().count(number) == 1

    def violation_message(self, number: str, **kwargs) -> str:
        return f"UFA {number} already exists"


class PositiveInvoiceAmount(Invariant):
    """UFA-107: Only a positive, parseable amount is added to the raised total."""

    def __init__(self):
        super().__init__(
            id="ufa_107_positive_invoice_amount",
            statement="It is FORBIDDEN to record an invoice pair whose amount is not a number > 0",
            message="Invalid invoice amount",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=["ufa_104_paired_amounts_equal"],
            owner="agreement_service"
        )

    def pre_check(self, invoices: List[Invoice], **kwargs) -> bool:
        # Unparseable amounts read as -1, so this also rejects them
        return invoices[0].amount > 0


class UniqueInvoiceNumbers(Invariant):
    """UFA-106: Recorded invoices never overwrite one another."""

    def __init__(self):
        super().__init__(
            id="ufa_106_unique_invoice_numbers",
            statement="The system MUST always ensure every recorded invoice has a unique number",
            message="Invoice number already exists",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=["ufa_105_cumulative_cap"],
            owner="agreement_service"
        )

    def pre_check(self, invoices: List[Invoice], store: StateStore, **kwargs) -> bool:
        numbers = [invoice.invoice_number for invoice in invoices[:2]]
        if len(set(numbers)) != len(numbers):
            return False
        return all(store.get(number) is None for number in numbers)

    def post_check(self, result: Any, invoice_index: InvoiceIndex, **kwargs) -> bool:
        recorded = invoice_index.read_all()
        return all(number in recorded for number in result)

# ============================================
# AGREEMENT SERVICE
# ============================================

class AgreementService:
    """Agreement lifecycle over a key-value state store."""

    def __init__(self, store: StateStore, ledger: Optional[DecisionLedger] = None):
        self.store = store
        self.ledger = ledger if ledger is not None else DecisionLedger()
        self.master_index = MasterIndex(store)

        self.validator = AgreementValidator(self.ledger)
        self.reconciler = InvoiceReconciler(store, self.ledger)

        self.create_enforcer = InvariantEnforcer(
            self.validator.invariants + [UniqueAgreementNumber()],
            self.ledger
        )
        self.invoice_enforcer = InvariantEnforcer(
            self.reconciler.invariants + [PositiveInvoiceAmount(), UniqueInvoiceNumbers()],
            self.ledger,
            short_circuit=True
        )

        logger.info("[UFA_SERVICE] Initialized")

    # ----- helpers -----

    @staticmethod
    def _text(payload: Any) -> str:
        if isinstance(payload, (bytes, bytearray)):
            try:
                return bytes(payload).decode("utf-8")
            except UnicodeDecodeError as e:
                raise SerializationFailure("Payload is not valid UTF-8") from e
        return payload

    @staticmethod
    def _require_number(number: str):
        if not isinstance(number, str) or not number:
            raise SerializationFailure("UFA number is required")

    def _load(self, number: str) -> AgreementRecord:
        return AgreementRecord.from_bytes(self.store.get(number), number)

    # ----- validation (no writes) -----

    def validate_new(self, role: str, payload: Any) -> str:
        return self.validator.validate(role, payload)

    def validate_invoices(self, payload: Any) -> str:
        return self.reconciler.validate(payload)

    # ----- writes -----

    def create(self, number: str, role: str, payload: Any) -> AgreementRecord:
        """Validate and store a new agreement, index it and start its history."""
        logger.info(f"[UFA_SERVICE] createUFA called for {number} by {role}")
        self._require_number(number)
        payload = self._text(payload)
        agreement = AgreementRecord.from_payload(payload)

        def _create_action() -> Dict[str, Any]:
            # Fail before the first write if bootstrap never ran
            self.master_index.read_all()

            self.store.put(number, payload.encode("utf-8"))
            self.master_index.append(number)
            AuditLedger(self.store, number).append(payload)
            return {"number": number}

        try:
            self.create_enforcer.enforce_action(
                _create_action,
                number=number,
                role=role,
                agreement=agreement,
                store=self.store
            )
        except ValidationFailure as e:
            agreement_rejected_counter.inc()
            logger.error(f"[UFA_SERVICE] UFA {number} rejected: {e.message!r}")
            raise

        agreement_created_counter.labels(role=role).inc()
        logger.info(f"[UFA_SERVICE] Created the UFA after successful validation: {payload}")
        return agreement

    def update(self, number: str, role: str, payload: Any) -> AgreementRecord:
        """Merge changed fields into an existing agreement.

        The merged record is not re-validated. The audit ledger receives the
        update payload, not the merged record.
        """
        logger.info(f"[UFA_SERVICE] updateUFA called for {number} by {role}")
        self._require_number(number)
        payload = self._text(payload)
        changes = decode_mapping(payload, SerializationFailure, "UFA update payload")

        existing = self._load(number)
        updated = existing.merged(changes)

        self.store.put(number, updated.to_bytes())
        AuditLedger(self.store, number).append(payload)

        agreement_updated_counter.inc()
        logger.info(f"[UFA_SERVICE] updateRecord: final record after update {updated.to_dict()}")
        return updated

    def raise_invoices(self, role: str, payload: Any) -> List[str]:
        """Reconcile an invoice pair and, if valid, record it against its agreement.

        Returns the invoice numbers stored. Invoices without an
        ``invoiceNumber`` get a generated one.
        """
        logger.info(f"[UFA_SERVICE] raiseInvoices called by {role}")
        invoices = [
            invoice if invoice.invoice_number else invoice.with_number(f"INV-{uuid.uuid4().hex[:8].upper()}")
            for invoice in decode_invoices(payload)
        ]
        context = self.reconciler.context(invoices)
        pair = invoices[:2]

        def _raise_action() -> List[str]:
            invoice_index = context["invoice_index"]
            for invoice in pair:
                self.store.put(invoice.invoice_number, invoice.to_bytes())
                invoice_index.append(invoice.invoice_number)

            # Both sides carry the same amount, so the pair counts once
            total = context["agreement"].raised_inv_total + pair[0].amount
            self.update(
                context["ufa_number"],
                role,
                encode({RAISED_INV_TOTAL: format(total, "f")}).decode("utf-8")
            )
            return [invoice.invoice_number for invoice in pair]

        try:
            numbers = self.invoice_enforcer.enforce_action(_raise_action, store=self.store, **context)
        except ValidationFailure as e:
            logger.error(f"[UFA_SERVICE] Invoices rejected: {e.message!r}")
            record_reconciliation(False)
            raise

        record_reconciliation(True)
        invoices_raised_counter.inc(len(numbers))
        invoice_amount_histogram.observe(float(pair[0].amount))
        logger.info(f"[UFA_SERVICE] Recorded invoices {numbers} against {context['ufa_number']}")
        return numbers

    # ----- reads -----

    def get_one(self, number: str) -> Dict[str, str]:
        """The stored agreement, or {} when the number is unknown."""
        raw = self.store.get(number)
        if raw is None:
            return {}
        return AgreementRecord.from_bytes(raw, number).to_dict()

    def get_all(self) -> List[Dict[str, str]]:
        """Every indexed agreement in creation order.

        Best effort: a listed number whose record is missing or corrupt comes
        back as {} instead of failing the whole enumeration.
        """
        records = []
        for number in self.master_index.read_all():
            logger.info(f"[UFA_SERVICE] getAllUFA: processing record {number}")
            try:
                records.append(self._load(number).to_dict())
            except DecodeFailure as e:
                logger.warning(f"[UFA_SERVICE] {e}; returning empty record")
                records.append({})
        return records

    def history(self, number: str) -> List[str]:
        return AuditLedger(self.store, number).entries()

    def invoices_for(self, number: str) -> List[Dict[str, str]]:
        return [invoice.to_dict() for invoice in InvoiceIndex(self.store, number).invoices()]

    def initialize(self) -> bool:
        return self.master_index.initialize()
