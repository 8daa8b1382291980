"""
UFA Chaincode - FastAPI Application
HTTP dispatch layer for standalone deployments: each request is decoded into
a chaincode function name plus string arguments, exactly as the ledger host
would do it.
"""

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from typing import Dict, List
import json
import logging
import os
from contextlib import asynccontextmanager

from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from ufa_chaincode_v1 import UFAChaincode
from ufa_enforcement_v1 import (
    ConcurrentModification,
    DecisionLedger,
    DecodeFailure,
    InvariantViolation,
    SerializationFailure,
    StoreReadFailed,
    StoreWriteFailed,
    SystemCompromised,
    UFAError,
    UnknownFunction,
    ValidationFailure
)
from ufa_metrics import metrics_registry, update_ledger_integrity
from ufa_records_v1 import encode
from ufa_state_v1 import InMemoryStateStore

logger = logging.getLogger("ufa.api")

API_VERSION = "1.0.0"

CORS_ORIGINS = [origin.strip() for origin in os.environ.get("UFA_CORS_ORIGINS", "*").split(",") if origin.strip()]

# ============================================
# PYDANTIC MODELS (API DTOs)
# ============================================

class CreateUFARequest(BaseModel):
    number: str = Field(..., min_length=1, max_length=128)
    role: str = Field(..., min_length=1)
    fields: Dict[str, str]

    class Config:
        json_schema_extra = {
            "example": {
                "number": "UFA-1",
                "role": "SELLER",
                "fields": {"netCharge": "1000", "chargeTolerance": "5", "buyer": "ACME"}
            }
        }


class UpdateUFARequest(BaseModel):
    role: str = Field(..., min_length=1)
    fields: Dict[str, str]


class ValidateUFARequest(BaseModel):
    role: str
    fields: Dict[str, str]


class InvoicePairRequest(BaseModel):
    role: str
    invoices: List[Dict[str, str]]

    class Config:
        json_schema_extra = {
            "example": {
                "role": "SELLER",
                "invoices": [
                    {"ufanumber": "UFA-1", "invoiceAmt": "1040", "billingPeriod": "2024-01", "role": "BUYER"},
                    {"ufanumber": "UFA-1", "invoiceAmt": "1040", "billingPeriod": "2024-01", "role": "SELLER"}
                ]
            }
        }


class ValidationResponse(BaseModel):
    validation: str
    msg: str


class RaisedInvoicesResponse(BaseModel):
    ufa_number: str
    invoice_numbers: List[str]


class HealthResponse(BaseModel):
    status: str
    version: str
    total_agreements: int
    decisions_recorded: int
    ledger_integrity: bool

# ============================================
# APPLICATION LIFECYCLE
# ============================================

class AppState:
    """Global application state."""
    def __init__(self):
        self.store = InMemoryStateStore()
        self.decision_ledger = DecisionLedger()
        self.chaincode = UFAChaincode(self.store, self.decision_ledger)
        self.chaincode.init()

    def query_json(self, function: str, *args: str):
        return json.loads(self.chaincode.query(function, list(args)))


app_state = AppState()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logger.info("UFA chaincode API starting...")
    yield
    logger.info("UFA chaincode API shutting down...")

# ============================================
# FASTAPI APPLICATION
# ============================================

app = FastAPI(
    title="UFA Chaincode",
    description="Upfront agreements and invoice reconciliation over a key-value ledger",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    openapi_url="/api/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================
# API ENDPOINTS
# ============================================

@app.get("/", tags=["Health"])
async def root():
    """Root endpoint."""
    return {
        "service": "UFA Chaincode",
        "version": API_VERSION,
        "status": "operational"
    }


@app.get("/probe", tags=["Health"])
async def probe():
    """Liveness check."""
    return app_state.query_json("probe")


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """System health check."""
    integrity = app_state.decision_ledger.verify_chain_integrity()
    update_ledger_integrity(integrity)

    return HealthResponse(
        status="healthy" if integrity else "compromised",
        version=API_VERSION,
        total_agreements=len(app_state.chaincode.service.master_index.read_all()),
        decisions_recorded=len(app_state.decision_ledger.entries),
        ledger_integrity=integrity
    )


@app.post("/api/v1/ufas", status_code=status.HTTP_201_CREATED, tags=["Agreements"])
async def create_ufa(request: CreateUFARequest):
    """
    Create a new upfront agreement.

    Rejected with 400 when the role is not SELLER/BUYER, netCharge is not
    positive, chargeTolerance is outside (0, 10], or the number exists.
    """
    payload = encode(request.fields).decode("utf-8")
    app_state.chaincode.invoke("createUFA", [request.number, request.role, payload])
    return app_state.query_json("getUFADetails", request.number)


@app.patch("/api/v1/ufas/{number}", tags=["Agreements"])
async def update_ufa(number: str, request: UpdateUFARequest):
    """Merge changed fields into an agreement. Fields are not re-validated."""
    payload = encode(request.fields).decode("utf-8")
    app_state.chaincode.invoke("updateUFA", [number, request.role, payload])
    return app_state.query_json("getUFADetails", number)


@app.get("/api/v1/ufas", tags=["Agreements"])
async def list_ufas(role: str = ""):
    """All agreements in creation order."""
    return app_state.query_json("getAllUFA", role)


@app.get("/api/v1/ufas/{number}", tags=["Agreements"])
async def get_ufa(number: str):
    """Get agreement by number."""
    record = app_state.query_json("getUFADetails", number)
    if not record:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"UFA {number} not found"
        )
    return record


@app.get("/api/v1/ufas/{number}/history", tags=["Agreements"])
async def get_ufa_history(number: str):
    """Raw create/update payloads, oldest first."""
    return app_state.query_json("getUFAHistory", number)


@app.get("/api/v1/ufas/{number}/invoices", tags=["Invoices"])
async def get_ufa_invoices(number: str):
    """Invoices recorded against an agreement."""
    return app_state.query_json("getUFAInvoices", number)


@app.post("/api/v1/ufas/validate", response_model=ValidationResponse, tags=["Agreements"])
async def validate_ufa(request: ValidateUFARequest):
    """Dry-run validation of a new agreement. Nothing is written."""
    payload = encode(request.fields).decode("utf-8")
    return app_state.query_json("validateNewUFA", request.role, payload)


@app.post("/api/v1/invoices/validate", response_model=ValidationResponse, tags=["Invoices"])
async def validate_invoices(request: InvoicePairRequest):
    """Dry-run reconciliation of an invoice pair. Nothing is written."""
    payload = encode(request.invoices).decode("utf-8")
    msg = app_state.chaincode.query("validateInvoiceDetails", [request.role, payload]).decode("utf-8")
    return ValidationResponse(validation="Success" if msg == "" else "Failure", msg=msg)


@app.post("/api/v1/invoices", response_model=RaisedInvoicesResponse, status_code=status.HTTP_201_CREATED, tags=["Invoices"])
async def raise_invoices(request: InvoicePairRequest):
    """Reconcile an invoice pair and record it against its agreement."""
    payload = encode(request.invoices).decode("utf-8")
    numbers = json.loads(app_state.chaincode.invoke("raiseInvoices", [request.role, payload]))
    return RaisedInvoicesResponse(
        ufa_number=request.invoices[0].get("ufanumber", ""),
        invoice_numbers=numbers
    )


@app.get("/metrics", tags=["Observability"])
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(metrics_registry),
        media_type=CONTENT_TYPE_LATEST
    )

# ============================================
# ERROR HANDLERS
# ============================================

ERROR_STATUS = [
    (ValidationFailure, status.HTTP_400_BAD_REQUEST),
    (DecodeFailure, status.HTTP_404_NOT_FOUND),
    (UnknownFunction, status.HTTP_404_NOT_FOUND),
    (SerializationFailure, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ConcurrentModification, status.HTTP_409_CONFLICT),
    (StoreReadFailed, status.HTTP_503_SERVICE_UNAVAILABLE),
    (StoreWriteFailed, status.HTTP_503_SERVICE_UNAVAILABLE),
    (SystemCompromised, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (InvariantViolation, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


@app.exception_handler(UFAError)
async def ufa_error_handler(request: Request, exc: UFAError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break

    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    content = {"detail": str(exc)}
    if isinstance(exc, ValidationFailure):
        content["msg"] = exc.message
    return JSONResponse(status_code=status_code, content=content)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "ufa_main_api:app",
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
