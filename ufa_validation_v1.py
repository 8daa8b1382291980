"""
UFA Chaincode - New Agreement Validation
Version: 1.0.0

Pure validation of a proposed agreement and the caller's role. No state is
read or written. Every violated rule contributes one line to the message;
an empty message means the agreement is valid.
"""

from decimal import Decimal
from typing import Any, Optional

from ufa_enforcement_v1 import (
    AUTHORIZED_ROLES,
    MAX_TOLERANCE_PERCENT,
    Criticality,
    DecisionLedger,
    Invariant,
    InvariantEnforcer,
    InvariantType,
    logger
)
from ufa_records_v1 import AgreementRecord

# ============================================
# AGREEMENT INVARIANTS
# ============================================

class AuthorizedRole(Invariant):
    """UFA-001: Only a seller or a buyer may create an agreement."""

    def __init__(self):
        super().__init__(
            id="ufa_001_authorized_role",
            statement="It is FORBIDDEN for any role other than SELLER or BUYER to create a UFA",
            message="User is not authorized to create a UFA",
            type=InvariantType.SECURITY,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="agreement_service"
        )

    def pre_check(self, role: str, **kwargs) -> bool:
        return role in AUTHORIZED_ROLES


class PositiveNetCharge(Invariant):
    """UFA-002: Net charge must be a positive number."""

    def __init__(self):
        super().__init__(
            id="ufa_002_positive_net_charge",
            statement="The system MUST always ensure netCharge parses to a number > 0",
            message="Invalid net charge",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=["ufa_001_authorized_role"],
            owner="agreement_service"
        )

    def pre_check(self, agreement: AgreementRecord, **kwargs) -> bool:
        return agreement.net_charge > 0


class ToleranceInRange(Invariant):
    """UFA-003: Charge tolerance must lie in (0, 10] percent."""

    def __init__(self):
        super().__init__(
            id="ufa_003_tolerance_in_range",
            statement="The system MUST always ensure 0 < chargeTolerance <= 10",
            message="Tolerence is out of range. Should be between 0 and 10",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=["ufa_001_authorized_role"],
            owner="agreement_service"
        )

    def pre_check(self, agreement: AgreementRecord, **kwargs) -> bool:
        tolerance = agreement.charge_tolerance
        return Decimal("0") < tolerance <= MAX_TOLERANCE_PERCENT

# ============================================
# VALIDATOR
# ============================================

class AgreementValidator:
    """Stateless apart from the ledger it records decisions to."""

    def __init__(self, ledger: DecisionLedger):
        self.ledger = ledger
        self.invariants = [
            AuthorizedRole(),
            PositiveNetCharge(),
            ToleranceInRange()
        ]
        self.enforcer = InvariantEnforcer(self.invariants, ledger)

    def validate(self, role: str, payload: Any) -> str:
        agreement = AgreementRecord.from_payload(payload)
        message = self.enforcer.validation_message(role=role, agreement=agreement)
        logger.info(f"[VALIDATION] New UFA validation message: {message!r}")
        return message


def validate_new_agreement(role: str, payload: Any, ledger: Optional[DecisionLedger] = None) -> str:
    """Validate a proposed agreement. Returns "" when it is valid."""
    return AgreementValidator(ledger if ledger is not None else DecisionLedger()).validate(role, payload)
