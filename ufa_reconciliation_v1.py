"""
UFA Chaincode - Invoice Reconciliation
Version: 1.0.0

Cross-checks a customer/vendor invoice pair against the agreement's terms
and its invoice history. Rules run in a fixed order and the first one that
fails is the only one reported:

1. both invoices present
2. the agreement exists
3. the billing period has not been invoiced yet
4. the two amounts match
5. the cumulative total stays within netCharge plus tolerance

Only the first two invoices are looked at. The first one names the
agreement and the billing period.
"""

from typing import Any, List, Optional

from ufa_enforcement_v1 import (
    Criticality,
    DecisionLedger,
    DecodeFailure,
    Invariant,
    InvariantEnforcer,
    InvariantType,
    logger
)
from ufa_index_v1 import InvoiceIndex
from ufa_metrics import record_reconciliation
from ufa_records_v1 import AgreementRecord, Invoice, decode_invoices
from ufa_state_v1 import StateStore

# ============================================
# RECONCILIATION INVARIANTS
# ============================================

class InvoicePairPresent(Invariant):
    """UFA-101: A customer and a vendor invoice are both supplied."""

    def __init__(self):
        super().__init__(
            id="ufa_101_invoice_pair_present",
            statement="The system MUST always receive one invoice per counterparty",
            message="Invoice is missing for Customer or Vendor",
            type=InvariantType.DATA_INTEGRITY,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="reconciliation_service"
        )

    def pre_check(self, invoices: List[Invoice], **kwargs) -> bool:
        return len(invoices) >= 2


class AgreementExists(Invariant):
    """UFA-102: Invoices reference a stored, readable agreement."""

    def __init__(self):
        super().__init__(
            id="ufa_102_agreement_exists",
            statement="It is FORBIDDEN to invoice against an unknown or unreadable UFA",
            message="Invalid UFA provided",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=["ufa_101_invoice_pair_present"],
            owner="reconciliation_service"
        )

    def pre_check(self, agreement: Optional[AgreementRecord], **kwargs) -> bool:
        return agreement is not None


class BillingPeriodNotRaised(Invariant):
    """UFA-103: At most one invoice pair per billing period per agreement."""

    def __init__(self):
        super().__init__(
            id="ufa_103_billing_period_not_raised",
            statement="It is FORBIDDEN to raise a second invoice pair for the same billing period",
            message="Invoice all already raised for {period}",
            type=InvariantType.TEMPORAL,
            criticality=Criticality.CRITICAL,
            dependencies=["ufa_102_agreement_exists"],
            owner="reconciliation_service"
        )

    def pre_check(self, invoices: List[Invoice], invoice_index: InvoiceIndex, **kwargs) -> bool:
        return not invoice_index.has_billing_period(invoices[0].billing_period)

    def violation_message(self, invoices: List[Invoice], **kwargs) -> str:
        return self.message.format(period=invoices[0].billing_period)


class PairedAmountsEqual(Invariant):
    """UFA-104: Customer and vendor invoice the same amount."""

    def __init__(self):
        super().__init__(
            id="ufa_104_paired_amounts_equal",
            statement="The system MUST always ensure both sides of an invoice pair carry the same amount",
            message="Customer and Vendor Invoice Amounts are not same",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=["ufa_103_billing_period_not_raised"],
            owner="reconciliation_service"
        )

    def pre_check(self, invoices: List[Invoice], **kwargs) -> bool:
        return invoices[0].amount == invoices[1].amount


class CumulativeCapRespected(Invariant):
    """UFA-105: Invoiced total never exceeds netCharge * (1 + tolerance/100)."""

    def __init__(self):
        super().__init__(
            id="ufa_105_cumulative_cap",
            statement="It is FORBIDDEN for the cumulative invoiced amount to exceed the tolerance-bounded net charge",
            message="Total invoice amount exceded",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=["ufa_104_paired_amounts_equal"],
            owner="reconciliation_service"
        )

    def pre_check(self, invoices: List[Invoice], agreement: AgreementRecord, **kwargs) -> bool:
        max_charge = agreement.max_charge
        total = invoices[0].amount + agreement.raised_inv_total
        logger.info(f"PRE-CHECK {self.id}: max_charge={max_charge}, total={total}")
        return not max_charge < total

# ============================================
# RECONCILER
# ============================================

class InvoiceReconciler:
    """Validates invoice pairs. Reads state, never writes it."""

    def __init__(self, store: StateStore, ledger: DecisionLedger):
        self.store = store
        self.ledger = ledger
        self.invariants = [
            InvoicePairPresent(),
            AgreementExists(),
            BillingPeriodNotRaised(),
            PairedAmountsEqual(),
            CumulativeCapRespected()
        ]
        self.enforcer = InvariantEnforcer(self.invariants, ledger, short_circuit=True)

    def _load_agreement(self, number: str, invoice_index: InvoiceIndex) -> Optional[AgreementRecord]:
        """The agreement, or None when it or its invoice history cannot be read."""
        if not number:
            logger.warning("[RECONCILIATION] Invoice names no UFA")
            return None
        try:
            agreement = AgreementRecord.from_bytes(self.store.get(number), number)
            invoice_index.invoices()
        except DecodeFailure as e:
            logger.warning(f"[RECONCILIATION] {e}")
            return None
        return agreement

    def context(self, invoices: List[Invoice]) -> dict:
        """Everything the rules need, looked up from the first invoice."""
        number = invoices[0].ufa_number if invoices else ""
        invoice_index = InvoiceIndex(self.store, number)
        return {
            "invoices": invoices,
            "ufa_number": number,
            "agreement": self._load_agreement(number, invoice_index) if len(invoices) >= 2 else None,
            "invoice_index": invoice_index
        }

    def validate(self, payload: Any) -> str:
        """Validate a serialized invoice pair. Returns "" when it is valid."""
        logger.info("[RECONCILIATION] validateInvoice called")
        invoices = decode_invoices(payload)
        message = self.enforcer.validation_message(**self.context(invoices))
        record_reconciliation(message == "")
        logger.info(f"[RECONCILIATION] Validation message generated: {message!r}")
        return message


def validate_invoice_pair(store: StateStore, payload: Any, ledger: Optional[DecisionLedger] = None) -> str:
    """Validate an invoice pair against stored state. Returns "" when it is valid."""
    return InvoiceReconciler(store, ledger if ledger is not None else DecisionLedger()).validate(payload)
