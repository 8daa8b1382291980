"""
UFA Chaincode - API Test Suite
Version: 1.0.0

HTTP-level tests: status codes, error mapping and the request/response
shapes of the FastAPI dispatch layer.
"""

import pytest
from fastapi.testclient import TestClient

import ufa_main_api

AGREEMENT = {"netCharge": "1000", "chargeTolerance": "5", "buyer": "ACME"}


def invoice_pair(number="UFA-1", amount="1040", period="2024-01"):
    return [
        {"ufanumber": number, "invoiceAmt": amount, "billingPeriod": period, "role": "BUYER"},
        {"ufanumber": number, "invoiceAmt": amount, "billingPeriod": period, "role": "SELLER"},
    ]


@pytest.fixture
def client():
    ufa_main_api.app_state = ufa_main_api.AppState()
    with TestClient(ufa_main_api.app) as test_client:
        yield test_client


@pytest.fixture
def created(client):
    response = client.post("/api/v1/ufas", json={"number": "UFA-1", "role": "SELLER", "fields": AGREEMENT})
    assert response.status_code == 201
    return client

# ============================================
# HEALTH
# ============================================

class TestHealth:

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "operational"

    def test_probe(self, client):
        response = client.get("/probe")
        assert response.status_code == 200
        assert response.json()["status"] == "Success"
        assert response.json()["ts"]

    def test_health(self, created):
        data = created.get("/health").json()

        assert data["status"] == "healthy"
        assert data["total_agreements"] == 1
        assert data["decisions_recorded"] > 0
        assert data["ledger_integrity"] is True

    def test_metrics(self, created):
        response = created.get("/metrics")
        assert response.status_code == 200
        assert "ufa_rule_checks_total" in response.text
        assert "ufa_agreements_created_total" in response.text

# ============================================
# AGREEMENTS
# ============================================

class TestAgreementEndpoints:

    def test_create(self, client):
        response = client.post("/api/v1/ufas", json={"number": "UFA-1", "role": "BUYER", "fields": AGREEMENT})

        assert response.status_code == 201
        assert response.json() == AGREEMENT

    def test_create_unauthorized(self, client):
        response = client.post("/api/v1/ufas", json={"number": "UFA-1", "role": "ADMIN", "fields": AGREEMENT})

        assert response.status_code == 400
        assert response.json()["msg"] == "\nUser is not authorized to create a UFA"
        assert client.get("/api/v1/ufas/UFA-1").status_code == 404

    def test_create_reports_every_violation(self, client):
        fields = {"netCharge": "0", "chargeTolerance": "12"}
        response = client.post("/api/v1/ufas", json={"number": "UFA-1", "role": "SELLER", "fields": fields})

        assert response.status_code == 400
        assert response.json()["msg"] == (
            "\nInvalid net charge"
            "\nTolerence is out of range. Should be between 0 and 10"
        )

    def test_create_duplicate(self, created):
        response = created.post("/api/v1/ufas", json={"number": "UFA-1", "role": "SELLER", "fields": AGREEMENT})
        assert response.status_code == 400
        assert "already exists" in response.json()["msg"]

    def test_create_non_string_field(self, client):
        response = client.post(
            "/api/v1/ufas",
            json={"number": "UFA-1", "role": "SELLER", "fields": {"netCharge": [1000]}}
        )
        assert response.status_code == 422

    def test_get_unknown(self, client):
        assert client.get("/api/v1/ufas/UFA-404").status_code == 404

    def test_list(self, created):
        created.post("/api/v1/ufas", json={"number": "UFA-2", "role": "BUYER", "fields": AGREEMENT})

        response = created.get("/api/v1/ufas", params={"role": "SELLER"})

        assert response.status_code == 200
        assert response.json() == [AGREEMENT, AGREEMENT]

    def test_update(self, created):
        response = created.patch("/api/v1/ufas/UFA-1", json={"role": "BUYER", "fields": {"buyer": "Globex"}})

        assert response.status_code == 200
        assert response.json() == {**AGREEMENT, "buyer": "Globex"}

    def test_update_unknown(self, client):
        response = client.patch("/api/v1/ufas/UFA-404", json={"role": "SELLER", "fields": {"a": "b"}})
        assert response.status_code == 404

    def test_history(self, created):
        created.patch("/api/v1/ufas/UFA-1", json={"role": "SELLER", "fields": {"buyer": "Globex"}})

        history = created.get("/api/v1/ufas/UFA-1/history").json()

        assert len(history) == 2
        assert history[1] == '{"buyer":"Globex"}'

    def test_validate(self, client):
        ok = client.post("/api/v1/ufas/validate", json={"role": "SELLER", "fields": AGREEMENT})
        bad = client.post("/api/v1/ufas/validate", json={"role": "SELLER", "fields": {"netCharge": "1"}})

        assert ok.json() == {"validation": "Success", "msg": ""}
        assert bad.json()["validation"] == "Failure"
        assert "Tolerence is out of range" in bad.json()["msg"]
        assert client.get("/api/v1/ufas").json() == []

# ============================================
# INVOICES
# ============================================

class TestInvoiceEndpoints:

    def test_validate_pair(self, created):
        response = created.post("/api/v1/invoices/validate", json={"role": "SELLER", "invoices": invoice_pair()})
        assert response.json() == {"validation": "Success", "msg": ""}

    def test_validate_unknown_agreement(self, created):
        response = created.post(
            "/api/v1/invoices/validate",
            json={"role": "SELLER", "invoices": invoice_pair(number="UFA-404")}
        )
        assert response.json() == {"validation": "Failure", "msg": "\nInvalid UFA provided"}

    def test_raise(self, created):
        response = created.post("/api/v1/invoices", json={"role": "SELLER", "invoices": invoice_pair()})

        assert response.status_code == 201
        data = response.json()
        assert data["ufa_number"] == "UFA-1"
        assert len(data["invoice_numbers"]) == 2

        invoices = created.get("/api/v1/ufas/UFA-1/invoices").json()
        assert [inv["invoiceNumber"] for inv in invoices] == data["invoice_numbers"]
        assert created.get("/api/v1/ufas/UFA-1").json()["raisedInvTotal"] == "1040"

    def test_raise_same_period_twice(self, created):
        created.post("/api/v1/invoices", json={"role": "SELLER", "invoices": invoice_pair()})

        response = created.post("/api/v1/invoices", json={"role": "SELLER", "invoices": invoice_pair(amount="1")})

        assert response.status_code == 400
        assert response.json()["msg"] == "\nInvoice all already raised for 2024-01"

    def test_raise_over_cap(self, created):
        response = created.post("/api/v1/invoices", json={"role": "SELLER", "invoices": invoice_pair(amount="2000")})

        assert response.status_code == 400
        assert response.json()["msg"] == "\nTotal invoice amount exceded"
        assert created.get("/api/v1/ufas/UFA-1/invoices").json() == []
