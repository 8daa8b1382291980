"""
UFA Chaincode - Command Surface
Version: 1.0.0

Entry points called by the hosting ledger's dispatch layer. The host decodes
an incoming call into a function name and string arguments; Init runs once
at deployment, Invoke carries the mutating commands and Query the read-only
ones. Responses are serialized bytes.
"""

from datetime import datetime
from typing import Callable, Dict, List, Optional
import json

from ufa_agreement_service_v1 import AgreementService
from ufa_enforcement_v1 import DecisionLedger, SerializationFailure, UnknownFunction, logger
from ufa_records_v1 import encode
from ufa_state_v1 import StateStore


def unix_date(moment: Optional[datetime] = None) -> str:
    """Format like `date(1)`: 'Mon Jan  2 15:04:05 UTC 2006'."""
    moment = (moment or datetime.now()).astimezone()
    return f"{moment:%a %b} {moment.day:2d} {moment:%H:%M:%S %Z %Y}"


def _require(args: List[str], count: int, function: str) -> List[str]:
    if len(args) < count:
        raise SerializationFailure(f"{function} expects {count} argument(s), got {len(args)}")
    for arg in args[:count]:
        if not isinstance(arg, str):
            raise SerializationFailure(f"{function} arguments must be strings")
    return args[:count]


class UFAChaincode:
    """Routes dispatched commands to the agreement service."""

    def __init__(self, store: StateStore, ledger: Optional[DecisionLedger] = None):
        self.service = AgreementService(store, ledger)

        self.invoke_handlers: Dict[str, Callable[[List[str]], Optional[bytes]]] = {
            "createUFA": self.create_ufa,
            "updateUFA": self.update_ufa,
            "raiseInvoices": self.raise_invoices,
        }
        self.query_handlers: Dict[str, Callable[[List[str]], bytes]] = {
            "getAllUFA": self.get_all_ufa,
            "getUFADetails": self.get_ufa_details,
            "getUFAHistory": self.get_ufa_history,
            "getUFAInvoices": self.get_ufa_invoices,
            "probe": self.probe,
            "validateNewUFA": self.validate_new_ufa,
            "validateInvoiceDetails": self.validate_invoice_details,
        }

    # ============================================
    # HOST ENTRY POINTS
    # ============================================

    def init(self, function: str = "init", args: Optional[List[str]] = None) -> None:
        logger.info("[CHAINCODE] Init called")
        self.service.initialize()

    def invoke(self, function: str, args: List[str]) -> Optional[bytes]:
        logger.info(f"[CHAINCODE] Invoke called: {function}")
        handler = self.invoke_handlers.get(function)
        if handler is None:
            raise UnknownFunction(f"Unknown invoke function: {function}")
        return handler(list(args))

    def query(self, function: str, args: List[str]) -> bytes:
        logger.info(f"[CHAINCODE] Query called: {function}")
        handler = self.query_handlers.get(function)
        if handler is None:
            raise UnknownFunction(f"Unknown query function: {function}")
        return handler(list(args))

    # ============================================
    # MUTATING COMMANDS
    # ============================================

    def create_ufa(self, args: List[str]) -> None:
        number, role, payload = _require(args, 3, "createUFA")
        self.service.create(number, role, payload)

    def update_ufa(self, args: List[str]) -> None:
        # The role is accepted but not checked on update
        number, role, payload = _require(args, 3, "updateUFA")
        self.service.update(number, role, payload)

    def raise_invoices(self, args: List[str]) -> bytes:
        role, payload = _require(args, 2, "raiseInvoices")
        return encode(self.service.raise_invoices(role, payload))

    # ============================================
    # READ-ONLY COMMANDS
    # ============================================

    def get_all_ufa(self, args: List[str]) -> bytes:
        _require(args, 1, "getAllUFA")
        records = self.service.get_all()
        logger.info(f"[CHAINCODE] Returning {len(records)} records from getAllUFA")
        return encode(records)

    def get_ufa_details(self, args: List[str]) -> bytes:
        number, = _require(args, 1, "getUFADetails")
        return encode(self.service.get_one(number))

    def get_ufa_history(self, args: List[str]) -> bytes:
        number, = _require(args, 1, "getUFAHistory")
        return encode(self.service.history(number))

    def get_ufa_invoices(self, args: List[str]) -> bytes:
        number, = _require(args, 1, "getUFAInvoices")
        return encode(self.service.invoices_for(number))

    def probe(self, args: List[str]) -> bytes:
        return json.dumps({"status": "Success", "ts": unix_date()}).encode("utf-8")

    def validate_new_ufa(self, args: List[str]) -> bytes:
        role, payload = _require(args, 2, "validateNewUFA")
        msg = self.service.validate_new(role, payload)
        return json.dumps({
            "validation": "Success" if msg == "" else "Failure",
            "msg": msg
        }).encode("utf-8")

    def validate_invoice_details(self, args: List[str]) -> bytes:
        # The role is accepted but not checked for dry-run reconciliation
        role, payload = _require(args, 2, "validateInvoiceDetails")
        return self.service.validate_invoices(payload).encode("utf-8")
