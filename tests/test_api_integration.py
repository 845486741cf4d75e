"""
Integration tests for the Microlend API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from microlend.api import create_app
from microlend.api.deps import LendingSystem, set_system
from microlend.config import MicrolendConfig
from microlend.storage import InMemoryStorage

from helpers import NEXT_OF_KIN


@pytest.fixture
def client():
    """Test client backed by a fresh in-memory system"""
    set_system(LendingSystem(storage=InMemoryStorage(), config=MicrolendConfig()))
    yield TestClient(create_app())
    set_system(None)


@pytest.fixture
def admin_headers(client):
    r = client.post("/staff", json={
        "first_name": "Ada", "last_name": "Mwale", "email": "ada@microlend.test", "role": "Admin"
    })
    assert r.status_code == 201
    return {"X-Staff-Id": r.json()["staff"]["staff_id"]}


@pytest.fixture
def officer_headers(client, admin_headers):
    r = client.post("/staff", json={
        "first_name": "Oscar", "last_name": "Banda", "email": "oscar@microlend.test"
    }, headers=admin_headers)
    assert r.status_code == 201
    assert r.json()["staff"]["role"] == "Loan Officer"
    return {"X-Staff-Id": r.json()["staff"]["staff_id"]}


@pytest.fixture
def customer_id(client, admin_headers, officer_headers):
    r = client.post("/customers", json={
        "first_name": "Alice",
        "last_name": "Phiri",
        "phone_number": "0888123456",
        "address": "Area 25, Lilongwe",
        "preferred_loan_product": "Monthly",
        "id_type": "National ID",
        "id_number": "NID-0001",
        "next_of_kin": NEXT_OF_KIN,
    }, headers=officer_headers)
    assert r.status_code == 201
    customer_id = r.json()["customer_id"]

    r = client.put(f"/customers/{customer_id}/approve", headers=admin_headers)
    assert r.status_code == 200
    return customer_id


@pytest.fixture
def loan_id(client, admin_headers, officer_headers, customer_id):
    """A disbursed 10000 Monthly loan over 3 months"""
    r = client.post("/loans", json={
        "customer_id": customer_id, "loan_product": "Monthly", "principal_amount": "10000", "tenure": 3
    }, headers=officer_headers)
    assert r.status_code == 201
    loan_id = r.json()["loan"]["loan_id"]

    assert client.put(f"/loans/{loan_id}/approve", headers=admin_headers).status_code == 200
    assert client.put(f"/loans/{loan_id}/disburse", headers=admin_headers).status_code == 200
    return loan_id


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        data = r.json()
        assert data["name"] == "Microlend API"
        assert "loans" in data["endpoints"]


class TestAuthentication:

    def test_header_required(self, client, admin_headers):
        r = client.get("/loans")
        assert r.status_code == 401

    def test_unknown_staff(self, client, admin_headers):
        r = client.get("/loans", headers={"X-Staff-Id": "STAFF9999"})
        assert r.status_code == 401

    def test_second_staff_needs_admin(self, client, admin_headers):
        r = client.post("/staff", json={"first_name": "Eve", "last_name": "Tembo", "email": "eve@microlend.test"})
        assert r.status_code == 403
        assert r.json()["error"] == "PermissionDenied"

    def test_me(self, client, officer_headers):
        r = client.get("/staff/me", headers=officer_headers)
        assert r.status_code == 200
        assert r.json()["full_name"] == "Oscar Banda"


class TestCustomerFlow:

    def test_register_and_approve(self, client, admin_headers, customer_id):
        assert customer_id == "CUST00001"
        r = client.get(f"/customers/{customer_id}", headers=admin_headers)
        assert r.status_code == 200
        assert r.json()["status"] == "Approved"

    def test_invalid_registration(self, client, officer_headers):
        r = client.post("/customers", json={
            "first_name": "Bob", "last_name": "Moyo", "phone_number": "0888",
            "address": "Blantyre", "preferred_loan_product": "Hourly",
            "id_type": "National ID", "id_number": "NID-9", "next_of_kin": NEXT_OF_KIN,
        }, headers=officer_headers)
        assert r.status_code == 400
        assert r.json()["field"] == "loan_product"

    def test_officer_cannot_approve(self, client, officer_headers, customer_id):
        r = client.put(f"/customers/{customer_id}/approve", headers=officer_headers)
        assert r.status_code == 403


class TestLoanFlow:

    def test_lifecycle_to_completion(self, client, officer_headers, loan_id):
        r = client.get(f"/loans/{loan_id}", headers=officer_headers)
        loan = r.json()
        assert loan["status"] == "Active"
        assert loan["total_payable"] == "12500.00"
        assert loan["installment_amount"] == "4166.67"

        r = client.post("/repayments", json={
            "loan_id": loan_id, "payment_amount": "5000", "transaction_reference": "MPESA-1"
        }, headers=officer_headers)
        assert r.status_code == 201
        body = r.json()
        assert body["repayment"]["interest_paid"] == "2500.00"
        assert body["loan"]["remaining_balance"] == "7500.00"
        assert body["message"] == "Repayment recorded successfully"

        r = client.post("/repayments", json={"loan_id": loan_id, "payment_amount": "7500"},
                        headers=officer_headers)
        assert r.status_code == 201
        assert r.json()["loan"]["status"] == "Completed"
        assert r.json()["message"] == "Loan fully repaid"

        r = client.get(f"/loans/{loan_id}/repayments", headers=officer_headers)
        assert r.json()["count"] == 2

        r = client.get(f"/loans/{loan_id}/reconciliation", headers=officer_headers)
        assert r.json()["is_consistent"]

    def test_overpayment(self, client, officer_headers, loan_id):
        r = client.post("/repayments", json={"loan_id": loan_id, "payment_amount": "20000"},
                        headers=officer_headers)
        assert r.status_code == 422
        assert r.json()["error"] == "OverpaymentError"
        assert client.get(f"/loans/{loan_id}", headers=officer_headers).json()["remaining_balance"] == "12500.00"

    def test_duplicate_reference(self, client, officer_headers, loan_id):
        payment = {"loan_id": loan_id, "payment_amount": "100", "transaction_reference": "MPESA-7"}
        assert client.post("/repayments", json=payment, headers=officer_headers).status_code == 201
        r = client.post("/repayments", json=payment, headers=officer_headers)
        assert r.status_code == 409
        assert r.json()["error"] == "DuplicatePaymentError"

    def test_approve_twice(self, client, admin_headers, loan_id):
        r = client.put(f"/loans/{loan_id}/approve", headers=admin_headers)
        assert r.status_code == 409
        assert r.json()["error"] == "InvalidStateTransition"

    def test_payment_on_pending_loan(self, client, officer_headers, customer_id):
        r = client.post("/loans", json={
            "customer_id": customer_id, "loan_product": "Daily", "principal_amount": "1000", "tenure": 5
        }, headers=officer_headers)
        loan_id = r.json()["loan"]["loan_id"]
        r = client.post("/repayments", json={"loan_id": loan_id, "payment_amount": "100"},
                        headers=officer_headers)
        assert r.status_code == 409
        assert r.json()["error"] == "LoanNotPayable"

    def test_unknown_loan(self, client, admin_headers):
        r = client.get("/loans/LOAN999999", headers=admin_headers)
        assert r.status_code == 404

    def test_quoted_figures_ignored(self, client, officer_headers, customer_id):
        r = client.post("/loans", json={
            "customer_id": customer_id, "loan_product": "Weekly", "principal_amount": "5000",
            "tenure": 10, "interest_rate": "1", "total_payable": "5050"
        }, headers=officer_headers)
        assert r.status_code == 201
        assert r.json()["loan"]["interest_amount"] == "1350.00"

    def test_sweep_and_summary(self, client, admin_headers, loan_id):
        r = client.post("/loans/sweep-overdue", params={"as_of": "2099-01-01T00:00:00+00:00"},
                        headers=admin_headers)
        assert r.json() == {"count": 1, "loan_ids": [loan_id]}

        r = client.get("/loans/stats/summary", headers=admin_headers)
        assert r.status_code == 200


class TestReports:

    def test_officer_forbidden(self, client, officer_headers):
        r = client.get("/reports/dashboard", headers=officer_headers)
        assert r.status_code == 403

    def test_dashboard(self, client, admin_headers, loan_id):
        r = client.get("/reports/dashboard", headers=admin_headers)
        assert r.status_code == 200
        assert r.json()["totals"]["loans"]["active"] == 1

    def test_csv_export(self, client, admin_headers, loan_id):
        r = client.get("/reports/loan-status", params={"format": "csv"}, headers=admin_headers)
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/csv")
        assert r.text.splitlines()[0] == "status,count,total_amount,percentage"

    def test_date_range_validation(self, client, admin_headers):
        r = client.get("/reports/date-range", params={"start_date": "2024-02-01", "end_date": "2024-01-01"},
                       headers=admin_headers)
        assert r.status_code == 400


class TestAdministration:

    def test_customer_summary(self, client, admin_headers, officer_headers, customer_id):
        r = client.get("/customers/stats/summary", headers=admin_headers)
        assert r.status_code == 200
        assert r.json()["approved_customers"] == 1
        assert r.json()["individual_customers"] == 1
        assert client.get("/customers/stats/summary", headers=officer_headers).status_code == 403

    def test_staff_reactivation(self, client, admin_headers, officer_headers):
        officer_id = officer_headers["X-Staff-Id"]
        r = client.put(f"/staff/{officer_id}/deactivate", headers=admin_headers)
        assert r.status_code == 200
        assert client.get("/loans", headers=officer_headers).status_code == 403

        r = client.put(f"/staff/{officer_id}/reactivate", headers=admin_headers)
        assert r.status_code == 200
        assert r.json()["staff"]["is_active"]
        assert client.get("/loans", headers=officer_headers).status_code == 200

    def test_admin_cannot_deactivate_self(self, client, admin_headers):
        r = client.put(f"/staff/{admin_headers['X-Staff-Id']}/deactivate", headers=admin_headers)
        assert r.status_code == 400
