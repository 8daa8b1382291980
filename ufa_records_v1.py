"""
UFA Chaincode - Data Models
Version: 1.0.0

Agreements and invoices are schema-less string mappings on the wire and in
state. The models below give typed access to the fields the business rules
need while carrying every other field through unchanged.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Type
import json

from ufa_enforcement_v1 import DecodeFailure, SerializationFailure, UFAError

NUMBER_SENTINEL = Decimal("-1")

NET_CHARGE = "netCharge"
CHARGE_TOLERANCE = "chargeTolerance"
LEGACY_CHARGE_TOLERANCE = "chargTolrence"
RAISED_INV_TOTAL = "raisedInvTotal"

# ============================================
# CODEC
# ============================================

def parse_number(text: Optional[str]) -> Decimal:
    """Parse a decimal field. Anything that is not a finite number is -1."""
    if text is None:
        return NUMBER_SENTINEL
    # Decimal() would accept digit separators and padding
    if not isinstance(text, str) or "_" in text or text != text.strip():
        return NUMBER_SENTINEL
    try:
        value = Decimal(text)
    except (InvalidOperation, TypeError, ValueError):
        return NUMBER_SENTINEL
    if not value.is_finite():
        return NUMBER_SENTINEL
    return value


def load_json(payload: Any, error: Type[UFAError], what: str) -> Any:
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise error(f"{what} is not valid UTF-8") from e
    if not isinstance(payload, str):
        raise error(f"{what} must be JSON text, got {type(payload).__name__}")
    try:
        return json.loads(payload)
    except json.JSONDecodeError as e:
        raise error(f"{what} is not valid JSON: {e.msg}") from e


def _as_mapping(value: Any, error: Type[UFAError], what: str) -> Dict[str, str]:
    if not isinstance(value, dict):
        raise error(f"{what} must be a JSON object")
    for key, item in value.items():
        if not isinstance(item, str):
            raise error(f"{what} field '{key}' must be a string")
    return value


def decode_mapping(payload: Any, error: Type[UFAError] = SerializationFailure, what: str = "Payload") -> Dict[str, str]:
    """Decode a JSON object of string fields."""
    return _as_mapping(load_json(payload, error, what), error, what)


def decode_mapping_list(payload: Any, error: Type[UFAError] = SerializationFailure, what: str = "Payload") -> List[Dict[str, str]]:
    """Decode a JSON array of string-field objects."""
    value = load_json(payload, error, what)
    if not isinstance(value, list):
        raise error(f"{what} must be a JSON array")
    return [_as_mapping(item, error, f"{what}[{i}]") for i, item in enumerate(value)]


def encode(value: Any) -> bytes:
    return json.dumps(value, separators=(",", ":")).encode("utf-8")

# ============================================
# AGREEMENT
# ============================================

@dataclass
class AgreementRecord:
    """Stored agreement. ``fields`` holds every key, known or not."""
    fields: Dict[str, str] = field(default_factory=dict)

    @property
    def net_charge(self) -> Decimal:
        return parse_number(self.fields.get(NET_CHARGE))

    @property
    def charge_tolerance(self) -> Decimal:
        if CHARGE_TOLERANCE in self.fields:
            return parse_number(self.fields[CHARGE_TOLERANCE])
        return parse_number(self.fields.get(LEGACY_CHARGE_TOLERANCE))

    @property
    def raised_inv_total(self) -> Decimal:
        text = self.fields.get(RAISED_INV_TOTAL)
        if text is None or text == "":
            return Decimal("0")
        return parse_number(text)

    @property
    def max_charge(self) -> Decimal:
        """Largest cumulative amount that may be invoiced."""
        net_charge = self.net_charge
        return net_charge + net_charge * self.charge_tolerance / Decimal("100")

    def merged(self, changes: Dict[str, str]) -> "AgreementRecord":
        fields = dict(self.fields)
        fields.update(changes)
        return AgreementRecord(fields)

    def to_dict(self) -> Dict[str, str]:
        return dict(self.fields)

    def to_bytes(self) -> bytes:
        return encode(self.fields)

    @classmethod
    def from_payload(cls, payload: Any) -> "AgreementRecord":
        return cls(decode_mapping(payload, SerializationFailure, "UFA payload"))

    @classmethod
    def from_bytes(cls, raw: Optional[bytes], number: str = "") -> "AgreementRecord":
        if raw is None:
            raise DecodeFailure(f"UFA {number} not found")
        return cls(decode_mapping(raw, DecodeFailure, f"UFA {number}"))

# ============================================
# INVOICE
# ============================================

@dataclass
class Invoice:
    """One side of an invoice pair."""
    fields: Dict[str, str] = field(default_factory=dict)

    @property
    def ufa_number(self) -> str:
        return self.fields.get("ufanumber", "")

    @property
    def invoice_number(self) -> str:
        return self.fields.get("invoiceNumber", "")

    @property
    def billing_period(self) -> str:
        return self.fields.get("billingPeriod", "")

    @property
    def role(self) -> str:
        return self.fields.get("role", "")

    @property
    def amount(self) -> Decimal:
        return parse_number(self.fields.get("invoiceAmt"))

    def with_number(self, invoice_number: str) -> "Invoice":
        fields = dict(self.fields)
        fields["invoiceNumber"] = invoice_number
        return Invoice(fields)

    def to_dict(self) -> Dict[str, str]:
        return dict(self.fields)

    def to_bytes(self) -> bytes:
        return encode(self.fields)


def decode_invoices(payload: Any) -> List[Invoice]:
    return [Invoice(item) for item in decode_mapping_list(payload, SerializationFailure, "Invoice payload")]
