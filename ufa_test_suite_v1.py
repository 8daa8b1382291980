"""
UFA Chaincode - Test Suite
Version: 1.0.0

Coverage for the agreement and invoice rules, the index/ledger keys and the
chaincode command surface:
- Unit tests (each rule in isolation)
- Engine tests (validation and reconciliation messages)
- Storage tests (master index, audit ledger, invoice index, conflicts)
- Lifecycle tests (create/update/read, invoice recording, failures)
"""

import json
import re
from decimal import Decimal
from typing import Dict, Optional

import pytest

from ufa_agreement_service_v1 import AgreementService
from ufa_chaincode_v1 import UFAChaincode, unix_date
from ufa_enforcement_v1 import (
    Criticality,
    DecisionLedger,
    DecodeFailure,
    Invariant,
    InvariantEnforcer,
    InvariantType,
    InvariantViolation,
    SerializationFailure,
    StoreReadFailed,
    StoreWriteFailed,
    SystemCompromised,
    UnknownFunction,
    ValidationFailure,
    ConcurrentModification
)
from ufa_index_v1 import AuditLedger, InvoiceIndex, MasterIndex
from ufa_metrics import metrics_registry
from ufa_reconciliation_v1 import validate_invoice_pair
from ufa_records_v1 import AgreementRecord, Invoice, parse_number
from ufa_state_v1 import InMemoryStateStore, StateStore
from ufa_validation_v1 import (
    AuthorizedRole,
    PositiveNetCharge,
    ToleranceInRange,
    validate_new_agreement
)

NOT_AUTHORIZED = "\nUser is not authorized to create a UFA"
INVALID_NET_CHARGE = "\nInvalid net charge"
TOLERANCE_OUT_OF_RANGE = "\nTolerence is out of range. Should be between 0 and 10"

# ============================================
# MOCK STORES
# ============================================

class PlainStore(StateStore):
    """Store without conditional writes, like a bare get/put host."""

    def __init__(self):
        self.state: Dict[str, bytes] = {}

    def get(self, key: str) -> Optional[bytes]:
        return self.state.get(key)

    def put(self, key: str, value: bytes):
        self.state[key] = value


class FailingStore(InMemoryStateStore):
    """Rejects every write to one key."""

    def __init__(self, failing_key: str):
        super().__init__()
        self.failing_key = failing_key

    def put(self, key: str, value: bytes):
        if key == self.failing_key:
            raise StoreWriteFailed(f"disk full writing {key}")
        super().put(key, value)

    def put_if_unchanged(self, key: str, expected: Optional[bytes], value: bytes) -> bool:
        if key == self.failing_key:
            raise StoreWriteFailed(f"disk full writing {key}")
        return super().put_if_unchanged(key, expected, value)


class InterleavingStore(InMemoryStateStore):
    """Lets a second writer change a key right after our read of it."""

    def __init__(self, key: str, intruder: bytes):
        super().__init__()
        self.key = key
        self.intruder = intruder
        self.armed = False

    def get(self, key: str) -> Optional[bytes]:
        value = super().get(key)
        if self.armed and key == self.key:
            self.armed = False
            self.state[key] = self.intruder
        return value

# ============================================
# HELPERS / FIXTURES
# ============================================

def ufa_payload(net_charge="1000", tolerance="5", **extra) -> str:
    fields = {"netCharge": net_charge, "chargeTolerance": tolerance}
    fields.update(extra)
    return json.dumps(fields)


def invoice_pair(number="UFA-1", amount1="1040", amount2="1040", period="2024-01", **extra) -> str:
    return json.dumps([
        {"ufanumber": number, "invoiceAmt": amount1, "billingPeriod": period, "role": "BUYER", **extra},
        {"ufanumber": number, "invoiceAmt": amount2, "billingPeriod": period, "role": "SELLER", **extra},
    ])


def sample(name: str, labels: Optional[Dict[str, str]] = None) -> float:
    return metrics_registry.get_sample_value(name, labels or {}) or 0.0


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def service(store):
    svc = AgreementService(store)
    svc.initialize()
    return svc


@pytest.fixture
def chaincode(store):
    cc = UFAChaincode(store)
    cc.init()
    return cc

# ============================================
# UNIT TESTS - NUMBERS AND RECORDS
# ============================================

class TestParseNumber:
    """Decimal parsing fails closed to -1."""

    @pytest.mark.parametrize("text,expected", [
        ("1000", Decimal("1000")),
        ("5.25", Decimal("5.25")),
        ("-3", Decimal("-3")),
        ("0", Decimal("0")),
    ])
    def test_parses_decimals(self, text, expected):
        assert parse_number(text) == expected

    @pytest.mark.parametrize("text", ["abc", "", None, "NaN", "Infinity", "1,000", "1_000", " 5", "5 ", "\t10\n"])
    def test_malformed_is_sentinel(self, text):
        assert parse_number(text) == Decimal("-1")


class TestAgreementRecord:
    """Typed access over the open field bag."""

    def test_max_charge(self):
        record = AgreementRecord({"netCharge": "1000", "chargeTolerance": "5"})
        assert record.max_charge == Decimal("1050")

    def test_legacy_tolerance_field(self):
        record = AgreementRecord({"netCharge": "1000", "chargTolrence": "7"})
        assert record.charge_tolerance == Decimal("7")

    def test_current_tolerance_field_wins(self):
        record = AgreementRecord({"chargeTolerance": "2", "chargTolrence": "7"})
        assert record.charge_tolerance == Decimal("2")

    def test_absent_raised_total_is_zero(self):
        assert AgreementRecord({}).raised_inv_total == Decimal("0")

    def test_merge_preserves_unknown_fields(self):
        record = AgreementRecord({"netCharge": "1000", "buyer": "ACME", "notes": "x"})
        merged = record.merged({"buyer": "Globex", "region": "EU"})

        assert merged.to_dict() == {"netCharge": "1000", "buyer": "Globex", "notes": "x", "region": "EU"}
        assert record.to_dict()["buyer"] == "ACME"

    def test_from_bytes_missing(self):
        with pytest.raises(DecodeFailure):
            AgreementRecord.from_bytes(None, "UFA-404")

    def test_from_bytes_corrupt(self):
        with pytest.raises(DecodeFailure):
            AgreementRecord.from_bytes(b"{not json", "UFA-1")

    def test_from_payload_rejects_non_string_values(self):
        with pytest.raises(SerializationFailure):
            AgreementRecord.from_payload('{"netCharge": 1000}')


class TestInvoice:

    def test_fields(self):
        invoice = Invoice({"ufanumber": "UFA-1", "invoiceAmt": "10.50", "billingPeriod": "2024-01"})
        assert invoice.ufa_number == "UFA-1"
        assert invoice.amount == Decimal("10.5")
        assert invoice.billing_period == "2024-01"
        assert invoice.invoice_number == ""

    def test_with_number_keeps_fields(self):
        invoice = Invoice({"ufanumber": "UFA-1", "po": "PO-9"}).with_number("INV-1")
        assert invoice.to_dict() == {"ufanumber": "UFA-1", "po": "PO-9", "invoiceNumber": "INV-1"}

# ============================================
# UNIT TESTS - AGREEMENT RULES
# ============================================

class TestAuthorizedRole:
    """UFA-001: Only SELLER or BUYER."""

    @pytest.mark.parametrize("role", ["SELLER", "BUYER"])
    def test_pre_check_authorized(self, role):
        assert AuthorizedRole().pre_check(role=role) is True

    @pytest.mark.parametrize("role", ["ADMIN", "seller", "", "BROKER"])
    def test_pre_check_unauthorized(self, role):
        assert AuthorizedRole().pre_check(role=role) is False


class TestPositiveNetCharge:
    """UFA-002: netCharge > 0."""

    def test_pre_check_positive(self):
        assert PositiveNetCharge().pre_check(agreement=AgreementRecord({"netCharge": "0.01"}))

    @pytest.mark.parametrize("value", ["0", "-100", "abc"])
    def test_pre_check_not_positive(self, value):
        assert not PositiveNetCharge().pre_check(agreement=AgreementRecord({"netCharge": value}))

    def test_pre_check_missing(self):
        assert not PositiveNetCharge().pre_check(agreement=AgreementRecord({}))


class TestToleranceInRange:
    """UFA-003: 0 < chargeTolerance <= 10."""

    @pytest.mark.parametrize("value", ["0.01", "5", "10", "10.0"])
    def test_pre_check_in_range(self, value):
        assert ToleranceInRange().pre_check(agreement=AgreementRecord({"chargeTolerance": value}))

    @pytest.mark.parametrize("value", ["0", "10.5", "10.0001", "-1", "abc", ""])
    def test_pre_check_out_of_range(self, value):
        assert not ToleranceInRange().pre_check(agreement=AgreementRecord({"chargeTolerance": value}))

# ============================================
# VALIDATION ENGINE
# ============================================

class TestValidateNewAgreement:

    @pytest.mark.parametrize("role", ["SELLER", "BUYER"])
    @pytest.mark.parametrize("net_charge,tolerance", [("1000", "5"), ("0.5", "10"), ("250000", "0.1")])
    def test_valid(self, role, net_charge, tolerance):
        assert validate_new_agreement(role, ufa_payload(net_charge, tolerance)) == ""

    @pytest.mark.parametrize("role", ["ADMIN", "", "AUDITOR"])
    def test_unauthorized_role(self, role):
        msg = validate_new_agreement(role, ufa_payload())
        assert "not authorized" in msg

    def test_unauthorized_role_skips_field_checks(self):
        assert validate_new_agreement("ADMIN", ufa_payload("-1", "50")) == NOT_AUTHORIZED

    @pytest.mark.parametrize("tolerance", ["0", "10.5", "abc"])
    def test_tolerance_out_of_range(self, tolerance):
        msg = validate_new_agreement("SELLER", ufa_payload(tolerance=tolerance))
        assert "Tolerence is out of range" in msg

    def test_invalid_net_charge(self):
        assert validate_new_agreement("BUYER", ufa_payload(net_charge="0")) == INVALID_NET_CHARGE

    def test_all_violations_reported_one_per_line(self):
        msg = validate_new_agreement("SELLER", ufa_payload("abc", "11"))
        assert msg == INVALID_NET_CHARGE + TOLERANCE_OUT_OF_RANGE

    def test_missing_fields_rejected(self):
        msg = validate_new_agreement("SELLER", "{}")
        assert msg == INVALID_NET_CHARGE + TOLERANCE_OUT_OF_RANGE

    def test_legacy_tolerance_field_accepted(self):
        payload = json.dumps({"netCharge": "1000", "chargTolrence": "5"})
        assert validate_new_agreement("SELLER", payload) == ""

    @pytest.mark.parametrize("payload", ["not json", "[1, 2]", '{"netCharge": 5}'])
    def test_malformed_payload_raises(self, payload):
        with pytest.raises(SerializationFailure):
            validate_new_agreement("SELLER", payload)

    def test_decisions_are_recorded(self):
        ledger = DecisionLedger()
        validate_new_agreement("SELLER", ufa_payload(), ledger)

        assert [e.invariant_id for e in ledger.entries] == [
            "ufa_001_authorized_role",
            "ufa_002_positive_net_charge",
            "ufa_003_tolerance_in_range",
        ]
        assert ledger.verify_chain_integrity()

# ============================================
# ENFORCER / DECISION LEDGER
# ============================================

class AlwaysFails(Invariant):
    def __init__(self, id, dependencies=None, message="failed"):
        super().__init__(
            id=id,
            statement="test rule",
            message=message,
            type=InvariantType.STATE,
            criticality=Criticality.OPTIONAL,
            dependencies=dependencies or [],
            owner="tests"
        )

    def pre_check(self, **kwargs) -> bool:
        return False


class AlwaysPasses(AlwaysFails):
    def pre_check(self, **kwargs) -> bool:
        return True


class Explodes(AlwaysFails):
    def pre_check(self, **kwargs) -> bool:
        raise RuntimeError("boom")


class TestInvariantEnforcer:

    def test_dependency_order(self):
        b = AlwaysPasses("b", dependencies=["a"])
        a = AlwaysPasses("a")
        enforcer = InvariantEnforcer([b, a], DecisionLedger())
        assert [inv.id for inv in enforcer.ordered] == ["a", "b"]

    def test_circular_dependency(self):
        with pytest.raises(InvariantViolation):
            InvariantEnforcer([AlwaysPasses("a", ["b"]), AlwaysPasses("b", ["a"])], DecisionLedger())

    def test_dependent_of_failed_rule_is_skipped(self):
        ledger = DecisionLedger()
        enforcer = InvariantEnforcer([AlwaysFails("a"), AlwaysFails("b", ["a"]), AlwaysFails("c")], ledger)

        failed = enforcer.check()

        assert [inv.id for inv in failed] == ["a", "c"]
        assert [e.invariant_id for e in ledger.entries] == ["a", "c"]

    def test_short_circuit_reports_first_failure_only(self):
        enforcer = InvariantEnforcer(
            [AlwaysFails("a", message="first"), AlwaysFails("c", message="second")],
            DecisionLedger(),
            short_circuit=True
        )
        assert enforcer.validation_message() == "\nfirst"

    def test_rule_exception_fails_closed(self):
        enforcer = InvariantEnforcer([Explodes("x", message="exploded")], DecisionLedger())
        assert enforcer.validation_message() == "\nexploded"

    def test_enforce_action_skips_action_on_failure(self):
        calls = []
        enforcer = InvariantEnforcer([AlwaysFails("a", message="nope")], DecisionLedger())

        with pytest.raises(ValidationFailure) as exc:
            enforcer.enforce_action(lambda: calls.append(1))

        assert calls == []
        assert exc.value.message == "\nnope"
        assert exc.value.invariant_ids == ["a"]

    def test_enforce_action_runs_action(self):
        enforcer = InvariantEnforcer([AlwaysPasses("a")], DecisionLedger())
        assert enforcer.enforce_action(lambda: "done") == "done"


class TestDecisionLedger:

    def test_tampered_entry_detected(self):
        ledger = DecisionLedger()
        validate_new_agreement("SELLER", ufa_payload(), ledger)

        ledger.entries[0].result = False

        assert not ledger.verify_chain_integrity()

    def test_record_rejects_bad_signature(self):
        ledger = DecisionLedger()
        validate_new_agreement("SELLER", ufa_payload(), ledger)
        forged = ledger.entries[0]
        forged.signature = "0" * 64

        with pytest.raises(SystemCompromised):
            ledger.record(forged)

    def test_failures(self):
        ledger = DecisionLedger()
        validate_new_agreement("SELLER", ufa_payload(tolerance="0"), ledger)
        assert [e.invariant_id for e in ledger.failures()] == ["ufa_003_tolerance_in_range"]

# ============================================
# STATE STORE
# ============================================

class TestInMemoryStateStore:

    def test_unset_key_is_none(self, store):
        assert store.get("UFA-404") is None

    @pytest.mark.parametrize("key", ["", None, 42])
    def test_invalid_key_read(self, store, key):
        before = sample("ufa_store_failures_total", {"operation": "get"})

        with pytest.raises(StoreReadFailed):
            store.get(key)

        assert sample("ufa_store_failures_total", {"operation": "get"}) == before + 1

    @pytest.mark.parametrize("key", ["", None])
    def test_invalid_key_write(self, store, key):
        with pytest.raises(StoreWriteFailed):
            store.put(key, b"[]")
        with pytest.raises(StoreWriteFailed):
            store.put_if_unchanged(key, None, b"[]")
        assert store.state == {}

    def test_non_bytes_value(self, store):
        with pytest.raises(StoreWriteFailed):
            store.put("UFA-1", "not bytes")

    def test_read_failure_reaches_caller(self, chaincode):
        with pytest.raises(StoreReadFailed):
            chaincode.query("getUFADetails", [""])

# ============================================
# INDEX / LEDGER MAINTENANCE
# ============================================

class TestMasterIndex:

    def test_uninitialized_read_fails(self, store):
        with pytest.raises(DecodeFailure):
            MasterIndex(store).read_all()

    def test_uninitialized_append_fails(self, store):
        with pytest.raises(DecodeFailure):
            MasterIndex(store).append("UFA-1")
        assert store.get("ALL_RECS") is None

    def test_initialize(self, store):
        assert MasterIndex(store).initialize() is True
        assert store.get("ALL_RECS") == b"[]"

    def test_initialize_keeps_existing_entries(self, store):
        index = MasterIndex(store)
        index.initialize()
        index.append("UFA-1")

        assert index.initialize() is False
        assert index.read_all() == ["UFA-1"]

    def test_append_preserves_order(self, store):
        index = MasterIndex(store)
        index.initialize()
        for number in ["UFA-3", "UFA-1", "UFA-2"]:
            index.append(number)

        assert index.read_all() == ["UFA-3", "UFA-1", "UFA-2"]
        assert json.loads(store.get("ALL_RECS")) == ["UFA-3", "UFA-1", "UFA-2"]

    def test_corrupt_index(self, store):
        store.put("ALL_RECS", b'{"a": 1}')
        with pytest.raises(DecodeFailure):
            MasterIndex(store).read_all()

    def test_concurrent_append_detected(self):
        store = InterleavingStore("ALL_RECS", b'["UFA-OTHER"]')
        index = MasterIndex(store)
        index.initialize()

        store.armed = True
        with pytest.raises(ConcurrentModification):
            index.append("UFA-1")

        # The other writer's entry survives
        assert index.read_all() == ["UFA-OTHER"]

    def test_plain_store_falls_back_to_put(self):
        store = PlainStore()
        index = MasterIndex(store)
        index.initialize()
        index.append("UFA-1")
        assert index.read_all() == ["UFA-1"]


class TestAuditLedger:

    def test_key(self, store):
        assert AuditLedger(store, "UFA-1").key == "UFA_TRXN_HISTORY_UFA-1"

    def test_lazy_initialization(self, store):
        ledger = AuditLedger(store, "UFA-1")
        assert ledger.entries() == []

        ledger.append('{"a":"1"}')
        ledger.append('{"b":"2"}')

        assert ledger.entries() == ['{"a":"1"}', '{"b":"2"}']


class TestInvoiceIndex:

    def test_key(self, store):
        assert InvoiceIndex(store, "UFA-1").key == "UFA_INVOICE_PREFIX_UFA-1"

    def test_absent_is_empty(self, store):
        index = InvoiceIndex(store, "UFA-1")
        assert index.read_all() == []
        assert index.has_billing_period("2024-01") is False

    def test_resolves_invoices(self, store):
        store.put("INV-1", b'{"invoiceNumber":"INV-1","billingPeriod":"2024-01"}')
        store.put("UFA_INVOICE_PREFIX_UFA-1", b'["INV-1"]')

        index = InvoiceIndex(store, "UFA-1")

        assert index.has_billing_period("2024-01") is True
        assert index.has_billing_period("2024-02") is False

    def test_missing_and_corrupt_invoices_are_empty(self, store):
        store.put("INV-2", b"garbage")
        store.put("UFA_INVOICE_PREFIX_UFA-1", b'["INV-1", "INV-2"]')

        invoices = InvoiceIndex(store, "UFA-1").invoices()

        assert [invoice.to_dict() for invoice in invoices] == [{}, {}]

# ============================================
# AGREEMENT SERVICE
# ============================================

class TestCreate:

    def test_round_trip(self, service, store):
        payload = ufa_payload(ufanumber="UFA-1", buyer="ACME")
        service.create("UFA-1", "SELLER", payload)

        assert service.get_one("UFA-1") == json.loads(payload)
        assert store.get("UFA-1") == payload.encode()
        assert service.master_index.read_all() == ["UFA-1"]
        assert service.history("UFA-1") == [payload]

    def test_appears_once_in_enumeration(self, service):
        service.create("UFA-1", "SELLER", ufa_payload(ufanumber="UFA-1"))
        service.create("UFA-2", "BUYER", ufa_payload(ufanumber="UFA-2"))

        records = service.get_all()

        assert [r["ufanumber"] for r in records].count("UFA-1") == 1
        assert [r["ufanumber"] for r in records] == ["UFA-1", "UFA-2"]

    def test_validation_failure_writes_nothing(self, service, store):
        with pytest.raises(ValidationFailure) as exc:
            service.create("UFA-1", "ADMIN", ufa_payload())

        assert exc.value.message == NOT_AUTHORIZED
        assert store.get("UFA-1") is None
        assert store.get("UFA_TRXN_HISTORY_UFA-1") is None
        assert service.master_index.read_all() == []

    def test_duplicate_number_rejected(self, service):
        service.create("UFA-1", "SELLER", ufa_payload())

        with pytest.raises(ValidationFailure) as exc:
            service.create("UFA-1", "SELLER", ufa_payload(net_charge="2000"))

        assert "UFA UFA-1 already exists" in exc.value.message
        assert service.master_index.read_all() == ["UFA-1"]
        assert service.get_one("UFA-1")["netCharge"] == "1000"

    def test_malformed_payload(self, service, store):
        with pytest.raises(SerializationFailure):
            service.create("UFA-1", "SELLER", "{oops")
        assert store.get("UFA-1") is None

    def test_empty_number(self, service):
        with pytest.raises(SerializationFailure):
            service.create("", "SELLER", ufa_payload())

    def test_bytes_payload(self, service):
        service.create("UFA-1", "SELLER", ufa_payload().encode())
        assert service.history("UFA-1") == [ufa_payload()]

    def test_uninitialized_master_index_writes_nothing(self, store):
        service = AgreementService(store)

        with pytest.raises(DecodeFailure):
            service.create("UFA-1", "SELLER", ufa_payload())

        assert store.get("UFA-1") is None

    def test_store_failure_propagates(self):
        store = FailingStore("UFA_TRXN_HISTORY_UFA-1")
        service = AgreementService(store)
        service.initialize()

        with pytest.raises(StoreWriteFailed):
            service.create("UFA-1", "SELLER", ufa_payload())

    def test_created_metric(self, service):
        before = sample("ufa_agreements_created_total", {"role": "BUYER"})
        service.create("UFA-1", "BUYER", ufa_payload())
        assert sample("ufa_agreements_created_total", {"role": "BUYER"}) == before + 1


class TestUpdate:

    def test_merge_law(self, service):
        service.create("UFA-1", "SELLER", ufa_payload(buyer="ACME", notes="n"))

        service.update("UFA-1", "SELLER", '{"buyer":"Globex"}')

        assert service.get_one("UFA-1") == {
            "netCharge": "1000",
            "chargeTolerance": "5",
            "buyer": "Globex",
            "notes": "n",
        }

    def test_new_keys_added(self, service):
        service.create("UFA-1", "SELLER", ufa_payload())
        service.update("UFA-1", "BUYER", '{"region":"EU"}')
        assert service.get_one("UFA-1")["region"] == "EU"

    def test_history_holds_update_payload(self, service):
        create_payload = ufa_payload()
        service.create("UFA-1", "SELLER", create_payload)

        service.update("UFA-1", "SELLER", '{"buyer":"Globex"}')

        assert service.history("UFA-1") == [create_payload, '{"buyer":"Globex"}']

    def test_update_is_not_revalidated(self, service):
        service.create("UFA-1", "SELLER", ufa_payload())
        service.update("UFA-1", "ANYONE", '{"netCharge":"-5"}')
        assert service.get_one("UFA-1")["netCharge"] == "-5"

    def test_unknown_agreement(self, service, store):
        with pytest.raises(DecodeFailure):
            service.update("UFA-404", "SELLER", '{"a":"b"}')
        assert store.get("UFA_TRXN_HISTORY_UFA-404") is None

    def test_master_index_untouched(self, service):
        service.create("UFA-1", "SELLER", ufa_payload())
        service.update("UFA-1", "SELLER", '{"a":"b"}')
        assert service.master_index.read_all() == ["UFA-1"]


class TestReads:

    def test_get_one_unknown_is_empty(self, service):
        assert service.get_one("UFA-404") == {}

    def test_get_all_empty(self, service):
        assert service.get_all() == []

    def test_get_all_best_effort(self, service, store):
        service.create("UFA-1", "SELLER", ufa_payload(ufanumber="UFA-1"))
        service.create("UFA-2", "SELLER", ufa_payload(ufanumber="UFA-2"))
        store.put("UFA-2", b"corrupt")
        store.put("ALL_RECS", b'["UFA-1", "UFA-2", "UFA-GHOST"]')

        records = service.get_all()

        assert records[0]["ufanumber"] == "UFA-1"
        assert records[1:] == [{}, {}]

    def test_get_all_uninitialized(self, store):
        with pytest.raises(DecodeFailure):
            AgreementService(store).get_all()

# ============================================
# RECONCILIATION ENGINE
# ============================================

class TestReconciliation:

    @pytest.fixture
    def ufa(self, service):
        service.create("UFA-1", "SELLER", ufa_payload("1000", "5"))
        return service

    def test_valid_pair(self, ufa, store):
        assert validate_invoice_pair(store, invoice_pair()) == ""

    @pytest.mark.parametrize("payload", ["[]", json.dumps([{"ufanumber": "UFA-1", "invoiceAmt": "10"}])])
    def test_missing_counterparty(self, ufa, store, payload):
        msg = validate_invoice_pair(store, payload)
        assert msg == "\nInvoice is missing for Customer or Vendor"

    def test_unknown_agreement(self, ufa, store):
        assert validate_invoice_pair(store, invoice_pair(number="UFA-404")) == "\nInvalid UFA provided"

    def test_corrupt_agreement(self, ufa, store):
        store.put("UFA-1", b"\x00\x01")
        assert validate_invoice_pair(store, invoice_pair()) == "\nInvalid UFA provided"

    @pytest.mark.parametrize("raw", [b"{not json", b'{"INV-1": "x"}', b"[1, 2]"])
    def test_corrupt_invoice_history(self, ufa, store, raw):
        store.put("UFA_INVOICE_PREFIX_UFA-1", raw)
        assert validate_invoice_pair(store, invoice_pair()) == "\nInvalid UFA provided"

    def test_pair_without_agreement_number(self, ufa, store):
        invoices = [{"invoiceAmt": "10", "billingPeriod": "2024-01"}] * 2
        assert validate_invoice_pair(store, json.dumps(invoices)) == "\nInvalid UFA provided"

    def test_unparseable_amounts_compare_equal(self, ufa, store):
        # The dry run keeps the lenient comparison; recording rejects these
        assert validate_invoice_pair(store, invoice_pair(amount1="abc", amount2="xyz")) == ""

    @pytest.mark.parametrize("amount1,amount2", [("1000", "900"), ("900", "1000")])
    def test_amounts_not_same(self, ufa, store, amount1, amount2):
        msg = validate_invoice_pair(store, invoice_pair(amount1=amount1, amount2=amount2))
        assert msg == "\nCustomer and Vendor Invoice Amounts are not same"

    def test_equal_amounts_in_different_notation(self, ufa, store):
        assert validate_invoice_pair(store, invoice_pair(amount1="1040", amount2="1040.00")) == ""

    def test_total_exceeded(self, ufa, store):
        msg = validate_invoice_pair(store, invoice_pair(amount1="1050.01", amount2="1050.01"))
        assert msg == "\nTotal invoice amount exceded"

    def test_cap_is_inclusive(self, ufa, store):
        assert validate_invoice_pair(store, invoice_pair(amount1="1050", amount2="1050")) == ""

    def test_raised_total_counts_towards_cap(self, ufa, store):
        ufa.update("UFA-1", "SELLER", '{"raisedInvTotal":"1000"}')
        assert validate_invoice_pair(store, invoice_pair(amount1="60", amount2="60")) == "\nTotal invoice amount exceded"
        assert validate_invoice_pair(store, invoice_pair(amount1="50", amount2="50")) == ""

    def test_only_first_two_invoices_compared(self, ufa, store):
        invoices = json.loads(invoice_pair())
        invoices.append({"ufanumber": "UFA-1", "invoiceAmt": "5", "billingPeriod": "2024-09"})
        assert validate_invoice_pair(store, json.dumps(invoices)) == ""

    def test_duplicate_period_reported_first(self, ufa, store):
        ufa.raise_invoices("SELLER", invoice_pair(period="2024-01"))

        # Unequal and over the cap too, but the period is what gets reported
        msg = validate_invoice_pair(store, invoice_pair(amount1="9999", amount2="1", period="2024-01"))

        assert msg == "\nInvoice all already raised for 2024-01"

    def test_malformed_payload(self, ufa, store):
        with pytest.raises(SerializationFailure):
            validate_invoice_pair(store, '{"ufanumber": "UFA-1"}')

    def test_dry_run_writes_nothing(self, ufa, store):
        before = dict(store.state)
        validate_invoice_pair(store, invoice_pair())
        assert store.state == before

    def test_result_metric(self, ufa, store):
        before = sample("ufa_invoice_reconciliations_total", {"result": "rejected"})
        validate_invoice_pair(store, "[]")
        assert sample("ufa_invoice_reconciliations_total", {"result": "rejected"}) == before + 1

# ============================================
# INVOICE RECORDING
# ============================================

class TestRaiseInvoices:

    @pytest.fixture
    def ufa(self, service):
        service.create("UFA-1", "SELLER", ufa_payload("1000", "5"))
        return service

    def test_records_pair(self, ufa, store):
        numbers = ufa.raise_invoices("SELLER", invoice_pair())

        assert len(numbers) == 2
        assert all(re.match(r"^INV-[0-9A-F]{8}$", n) for n in numbers)
        assert json.loads(store.get("UFA_INVOICE_PREFIX_UFA-1")) == numbers
        assert [inv["invoiceNumber"] for inv in ufa.invoices_for("UFA-1")] == numbers

    def test_given_numbers_kept(self, ufa, store):
        invoices = json.loads(invoice_pair())
        invoices[0]["invoiceNumber"] = "INV-C-1"
        invoices[1]["invoiceNumber"] = "INV-V-1"

        assert ufa.raise_invoices("SELLER", json.dumps(invoices)) == ["INV-C-1", "INV-V-1"]
        assert json.loads(store.get("INV-C-1"))["role"] == "BUYER"

    def test_raised_total_tracked_in_history(self, ufa):
        ufa.raise_invoices("SELLER", invoice_pair(amount1="400", amount2="400"))

        assert ufa.get_one("UFA-1")["raisedInvTotal"] == "400"
        assert ufa.history("UFA-1")[-1] == '{"raisedInvTotal":"400"}'

        ufa.raise_invoices("SELLER", invoice_pair(amount1="250.50", amount2="250.50", period="2024-02"))
        assert ufa.get_one("UFA-1")["raisedInvTotal"] == "650.50"

    def test_rejected_pair_writes_nothing(self, ufa, store):
        before = dict(store.state)

        with pytest.raises(ValidationFailure) as exc:
            ufa.raise_invoices("SELLER", invoice_pair(amount1="1", amount2="2"))

        assert exc.value.message == "\nCustomer and Vendor Invoice Amounts are not same"
        assert store.state == before

    def test_existing_invoice_number_rejected(self, ufa):
        first = json.loads(invoice_pair(period="2024-01"))
        first[0]["invoiceNumber"], first[1]["invoiceNumber"] = "INV-1", "INV-2"
        ufa.raise_invoices("SELLER", json.dumps(first))

        second = json.loads(invoice_pair(amount1="5", amount2="5", period="2024-02"))
        second[0]["invoiceNumber"], second[1]["invoiceNumber"] = "INV-1", "INV-3"

        with pytest.raises(ValidationFailure) as exc:
            ufa.raise_invoices("SELLER", json.dumps(second))

        assert exc.value.message == "\nInvoice number already exists"

    def test_same_number_on_both_sides_rejected(self, ufa):
        invoices = json.loads(invoice_pair())
        invoices[0]["invoiceNumber"] = invoices[1]["invoiceNumber"] = "INV-1"

        with pytest.raises(ValidationFailure):
            ufa.raise_invoices("SELLER", json.dumps(invoices))

    @pytest.mark.parametrize("amount", ["abc", "0", "-5", "NaN", "1_000"])
    def test_non_positive_amount_rejected(self, ufa, store, amount):
        before = dict(store.state)

        with pytest.raises(ValidationFailure) as exc:
            ufa.raise_invoices("SELLER", invoice_pair(amount1=amount, amount2=amount))

        assert exc.value.message == "\nInvalid invoice amount"
        assert store.state == before

    def test_junk_pairs_cannot_lower_raised_total(self, ufa):
        for period in ["2024-01", "2024-02", "2024-03"]:
            with pytest.raises(ValidationFailure):
                ufa.raise_invoices("SELLER", invoice_pair(amount1="abc", amount2="abc", period=period))

        assert "raisedInvTotal" not in ufa.get_one("UFA-1")

        with pytest.raises(ValidationFailure) as exc:
            ufa.raise_invoices("SELLER", invoice_pair(amount1="1053", amount2="1053", period="2024-04"))

        assert exc.value.message == "\nTotal invoice amount exceded"
        assert ufa.invoices_for("UFA-1") == []

    def test_corrupt_invoice_history_rejected(self, ufa, store):
        store.put("UFA_INVOICE_PREFIX_UFA-1", b"{not json")

        with pytest.raises(ValidationFailure) as exc:
            ufa.raise_invoices("SELLER", invoice_pair())

        assert exc.value.message == "\nInvalid UFA provided"
        assert store.get("UFA_INVOICE_PREFIX_UFA-1") == b"{not json"

    def test_reconciliation_metric(self, ufa):
        accepted = sample("ufa_invoice_reconciliations_total", {"result": "valid"})
        rejected = sample("ufa_invoice_reconciliations_total", {"result": "rejected"})

        ufa.raise_invoices("SELLER", invoice_pair())
        with pytest.raises(ValidationFailure):
            ufa.raise_invoices("SELLER", invoice_pair())

        assert sample("ufa_invoice_reconciliations_total", {"result": "valid"}) == accepted + 1
        assert sample("ufa_invoice_reconciliations_total", {"result": "rejected"}) == rejected + 1


class TestConcreteScenario:
    """UFA-1: netCharge 1000, tolerance 5%, two pairs for the same month."""

    def test_second_pair_for_same_period_rejected(self, service, store):
        assert service.validate_new("SELLER", ufa_payload("1000", "5")) == ""
        service.create("UFA-1", "SELLER", ufa_payload("1000", "5"))

        assert service.validate_invoices(invoice_pair(amount1="1040", amount2="1040", period="2024-01")) == ""
        service.raise_invoices("SELLER", invoice_pair(amount1="1040", amount2="1040", period="2024-01"))

        for amount in ["1040", "1", "5000"]:
            msg = service.validate_invoices(invoice_pair(amount1=amount, amount2=amount, period="2024-01"))
            assert msg == "\nInvoice all already raised for 2024-01"

# ============================================
# CHAINCODE COMMAND SURFACE
# ============================================

class TestChaincode:

    def test_init_creates_master_index(self, chaincode, store):
        assert store.get("ALL_RECS") == b"[]"

    def test_create_and_query(self, chaincode):
        payload = ufa_payload(ufanumber="UFA-1")
        assert chaincode.invoke("createUFA", ["UFA-1", "SELLER", payload]) is None

        assert json.loads(chaincode.query("getUFADetails", ["UFA-1"])) == json.loads(payload)
        assert json.loads(chaincode.query("getAllUFA", ["SELLER"])) == [json.loads(payload)]

    def test_details_are_idempotent(self, chaincode):
        chaincode.invoke("createUFA", ["UFA-1", "SELLER", ufa_payload()])
        first = chaincode.query("getUFADetails", ["UFA-1"])
        assert chaincode.query("getUFADetails", ["UFA-1"]) == first

    def test_create_failure_raises(self, chaincode, store):
        with pytest.raises(ValidationFailure) as exc:
            chaincode.invoke("createUFA", ["UFA-1", "SELLER", ufa_payload(tolerance="0")])

        assert str(exc.value).startswith("Validation failure: ")
        assert store.get("UFA-1") is None

    def test_update(self, chaincode):
        chaincode.invoke("createUFA", ["UFA-1", "SELLER", ufa_payload()])
        chaincode.invoke("updateUFA", ["UFA-1", "BUYER", '{"netCharge":"1200"}'])

        assert json.loads(chaincode.query("getUFADetails", ["UFA-1"]))["netCharge"] == "1200"
        assert len(json.loads(chaincode.query("getUFAHistory", ["UFA-1"]))) == 2

    def test_probe(self, chaincode):
        output = json.loads(chaincode.query("probe", []))
        assert output["status"] == "Success"
        assert re.match(r"^\w{3} \w{3} [ \d]\d \d{2}:\d{2}:\d{2} .+ \d{4}$", output["ts"])

    def test_validate_new_ufa(self, chaincode, store):
        ok = json.loads(chaincode.query("validateNewUFA", ["SELLER", ufa_payload()]))
        bad = json.loads(chaincode.query("validateNewUFA", ["ADMIN", ufa_payload()]))

        assert ok == {"validation": "Success", "msg": ""}
        assert bad == {"validation": "Failure", "msg": NOT_AUTHORIZED}
        assert store.get("UFA-1") is None

    def test_validate_invoice_details(self, chaincode):
        chaincode.invoke("createUFA", ["UFA-1", "SELLER", ufa_payload()])
        assert chaincode.query("validateInvoiceDetails", ["SELLER", invoice_pair()]) == b""
        assert chaincode.query("validateInvoiceDetails", ["SELLER", "[]"]) == b"\nInvoice is missing for Customer or Vendor"

    def test_raise_invoices(self, chaincode):
        chaincode.invoke("createUFA", ["UFA-1", "SELLER", ufa_payload()])

        numbers = json.loads(chaincode.invoke("raiseInvoices", ["SELLER", invoice_pair()]))

        invoices = json.loads(chaincode.query("getUFAInvoices", ["UFA-1"]))
        assert [inv["invoiceNumber"] for inv in invoices] == numbers

    @pytest.mark.parametrize("function", ["deleteUFA", "getAllUFA"])
    def test_unknown_invoke(self, chaincode, function):
        with pytest.raises(UnknownFunction):
            chaincode.invoke(function, [])

    def test_unknown_query(self, chaincode):
        with pytest.raises(UnknownFunction):
            chaincode.query("createUFA", ["UFA-1", "SELLER", ufa_payload()])

    def test_missing_arguments(self, chaincode):
        with pytest.raises(SerializationFailure):
            chaincode.invoke("createUFA", ["UFA-1"])

    def test_unix_date(self):
        from datetime import datetime, timezone
        moment = datetime(2024, 1, 2, 15, 4, 5, tzinfo=timezone.utc)
        assert unix_date(moment).startswith("Tue Jan  2 ")
