"""
Upfront Agreement (UFA) Chaincode - Enforcement Layer
Version: 1.0.0

Business rules for agreements and invoices are expressed as invariants and
evaluated by a single enforcer. Every evaluation is recorded as a signed
decision in an append-only ledger.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
from enum import Enum
import hmac
import logging
import os
from abc import ABC, abstractmethod

from ufa_metrics import record_rule_check

# ============================================
# SYSTEM CONFIGURATION
# ============================================

SYSTEM_SECRET = os.environ.get("UFA_DECISION_SECRET", "UFA_DECISION_SECRET_ROTATE_QUARTERLY").encode()

LOG_LEVEL = os.environ.get("UFA_LOG_LEVEL", "INFO").upper()

# State keys; existing ledgers already hold data under these names
ALL_ELEMENTS_KEY = "ALL_RECS"
UFA_TRXN_PREFIX = "UFA_TRXN_HISTORY_"
UFA_INVOICE_PREFIX = "UFA_INVOICE_PREFIX_"

AUTHORIZED_ROLES = ("SELLER", "BUYER")
MAX_TOLERANCE_PERCENT = Decimal("10")


class InvariantType(Enum):
    STATE = "state"
    TEMPORAL = "temporal"
    SECURITY = "security"
    FINANCIAL = "financial"
    DATA_INTEGRITY = "data_integrity"


class Criticality(Enum):
    CRITICAL = "critical"
    IMPORTANT = "important"
    OPTIONAL = "optional"


class EnforcementResult(Enum):
    PROCEED = "proceed"
    REJECT = "reject"

# ============================================
# LOGGING SETUP
# ============================================

logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("UFA.Enforcement")

# ============================================
# EXCEPTIONS
# ============================================

class UFAError(Exception):
    """Base class for every error raised by the UFA chaincode."""
    pass


class InvariantViolation(UFAError):
    """Raised when an invariant is violated."""
    pass


class ValidationFailure(InvariantViolation):
    """Caller input broke one or more business rules."""

    def __init__(self, message: str, invariant_ids: Optional[List[str]] = None):
        super().__init__(f"Validation failure: {message}")
        self.message = message
        self.invariant_ids = invariant_ids or []


class DecodeFailure(UFAError):
    """A stored key is absent or its bytes do not decode to the expected structure."""
    pass


class SerializationFailure(UFAError):
    """An input payload could not be decoded."""
    pass


class StoreReadFailed(UFAError):
    """The state store could not serve a read."""
    pass


class StoreWriteFailed(UFAError):
    """The state store rejected or lost a write."""
    pass


class ConcurrentModification(UFAError):
    """Another writer changed a key between our read and our write."""
    pass


class UnknownFunction(UFAError):
    """The dispatch layer asked for a command that does not exist."""
    pass


class SystemCompromised(UFAError):
    """Raised when the decision ledger fails signature verification."""
    pass

# ============================================
# ENFORCEMENT DECISION RECORD
# ============================================

def sign(invariant_id: str, result: bool, timestamp: datetime) -> str:
    data = f"{invariant_id}:{result}:{timestamp.isoformat()}"
    return hmac.new(SYSTEM_SECRET, data.encode(), 'sha256').hexdigest()


@dataclass
class EnforcementDecision:
    """Immutable record of enforcement decision."""
    invariant_id: str
    check_type: str  # "PRE" | "POST"
    result: bool
    action: EnforcementResult
    timestamp: datetime
    state_snapshot: Dict[str, Any] = field(default_factory=dict)
    signature: str = ""

    def verify_signature(self) -> bool:
        """Verify cryptographic signature."""
        return hmac.compare_digest(self.signature, sign(self.invariant_id, self.result, self.timestamp))

# ============================================
# DECISION LEDGER
# ============================================

class DecisionLedger:
    """Append-only ledger of all enforcement decisions."""

    def __init__(self):
        self.entries: List[EnforcementDecision] = []

    def record(self, decision: EnforcementDecision):
        """Append decision to ledger (write-only)."""
        if not decision.verify_signature():
            raise SystemCompromised("Invalid signature on enforcement decision")

        self.entries.append(decision)
        logger.debug(f"LEDGER: Recorded {decision.check_type} for {decision.invariant_id}: {decision.result}")

    def failures(self) -> List[EnforcementDecision]:
        return [entry for entry in self.entries if not entry.result]

    def verify_chain_integrity(self) -> bool:
        """Verify ledger has not been tampered with."""
        return all(entry.verify_signature() for entry in self.entries)

# ============================================
# BASE INVARIANT CLASS
# ============================================

class Invariant(ABC):
    """Base class for all invariants.

    ``message`` is the line reported to the caller when ``pre_check`` fails.
    An invariant whose dependency failed is not evaluated at all.
    """

    def __init__(
        self,
        id: str,
        statement: str,
        message: str,
        type: InvariantType,
        criticality: Criticality,
        dependencies: List[str],
        owner: str
    ):
        self.id = id
        self.statement = statement
        self.message = message
        self.type = type
        self.criticality = criticality
        self.dependencies = dependencies
        self.owner = owner

    @abstractmethod
    def pre_check(self, **kwargs) -> bool:
        """Execute before action. Returns True if action can proceed."""
        pass

    def post_check(self, result: Any, **kwargs) -> bool:
        """Execute after action. Returns True if invariant still holds."""
        return True

    def violation_message(self, **kwargs) -> str:
        return self.message

# ============================================
# INVARIANT ENFORCER
# ============================================

class InvariantEnforcer:
    """Evaluates a fixed, ordered set of invariants.

    With ``short_circuit`` the first failure ends evaluation, so at most one
    violation is reported. Otherwise every independent rule is evaluated and
    all violations are reported in order.
    """

    def __init__(self, invariants: List[Invariant], ledger: DecisionLedger, short_circuit: bool = False):
        self.invariants = invariants
        self.ledger = ledger
        self.short_circuit = short_circuit
        self.ordered = self._topological_sort(invariants)

    def _topological_sort(self, invariants: List[Invariant]) -> List[Invariant]:
        """Sort invariants by dependency order, keeping declaration order within a level."""
        sorted_invs = []
        remaining = set(inv.id for inv in invariants)

        while remaining:
            ready = [
                inv for inv in invariants
                if inv.id in remaining and all(dep not in remaining for dep in inv.dependencies)
            ]

            if not ready:
                raise InvariantViolation("Circular dependency detected in invariants")

            sorted_invs.extend(ready)
            for inv in ready:
                remaining.remove(inv.id)

        return sorted_invs

    def check(self, **context) -> List[Invariant]:
        """Run the pre-checks and return the invariants that failed."""
        failed: List[Invariant] = []
        blocked = set()

        for inv in self.ordered:
            if any(dep in blocked for dep in inv.dependencies):
                logger.info(f"SKIP {inv.id}: dependency failed")
                blocked.add(inv.id)
                continue

            decision = self._pre_check(inv, context)
            self.ledger.record(decision)

            if not decision.result:
                failed.append(inv)
                blocked.add(inv.id)
                if self.short_circuit:
                    break

        return failed

    def validation_message(self, **context) -> str:
        """Run the pre-checks and render the failures, one line each."""
        failed = self.check(**context)
        return "".join("\n" + inv.violation_message(**context) for inv in failed)

    def enforce_action(self, action: Callable[[], Any], **context) -> Any:
        """Execute action only if every pre-check passes, then verify post-checks."""
        failed = self.check(**context)
        if failed:
            message = "".join("\n" + inv.violation_message(**context) for inv in failed)
            logger.error(f"PRE-CHECK FAILED: {[inv.id for inv in failed]}")
            raise ValidationFailure(message, [inv.id for inv in failed])

        result = action()

        # The store offers no delete, so a failed post-check cannot be undone here.
        for inv in self.ordered:
            decision = self._post_check(inv, result, context)
            self.ledger.record(decision)

            if not decision.result:
                logger.critical(f"POST-CHECK FAILED: {inv.id}")
                raise InvariantViolation(f"Post-check failed: {inv.id}")

        logger.info("All invariant checks PASSED")
        return result

    def _pre_check(self, inv: Invariant, context: Dict[str, Any]) -> EnforcementDecision:
        """Execute pre-action check."""
        try:
            result = bool(inv.pre_check(**context))
        except UFAError:
            raise
        except Exception as e:
            logger.error(f"Pre-check exception: {inv.id}", exc_info=e)
            result = False

        logger.info(f"PRE-CHECK {inv.id}: valid={result}")
        record_rule_check(inv.id, "PRE", result)
        return self._decide(inv, "PRE", result, context)

    def _post_check(self, inv: Invariant, result: Any, context: Dict[str, Any]) -> EnforcementDecision:
        """Execute post-action check."""
        try:
            check_result = bool(inv.post_check(result, **context))
        except UFAError:
            raise
        except Exception as e:
            logger.error(f"Post-check exception: {inv.id}", exc_info=e)
            check_result = False

        record_rule_check(inv.id, "POST", check_result)
        return self._decide(inv, "POST", check_result, context)

    def _decide(self, inv: Invariant, check_type: str, result: bool, context: Dict[str, Any]) -> EnforcementDecision:
        timestamp = datetime.now()
        return EnforcementDecision(
            invariant_id=inv.id,
            check_type=check_type,
            result=result,
            action=EnforcementResult.PROCEED if result else EnforcementResult.REJECT,
            timestamp=timestamp,
            state_snapshot=self._capture_state(context),
            signature=sign(inv.id, result, timestamp)
        )

    def _capture_state(self, context: Dict[str, Any]) -> Dict[str, Any]:
        """Keep the plain values of the context; collaborators are not snapshotted."""
        return {
            key: value for key, value in context.items()
            if isinstance(value, (str, int, float, Decimal, type(None)))
        }
