"""Integration tests for API endpoints"""

import pytest
from decimal import Decimal
from unittest.mock import patch
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError


@pytest.fixture
def resident(make_category, make_resident):
    return make_resident(category=make_category(rent="1000", external="200"))


@pytest.fixture
def rent_record(resident, make_rent_record):
    return make_rent_record(resident, rent="1000", external="200")


@pytest.fixture
def admin_headers(headers):
    return headers(900, role="admin")


@pytest.fixture
def submit(client, headers, resident, rent_record):
    def _submit(**overrides):
        body = {"rent_record_id": rent_record.id, "payment_method": "on_hand", "rent_amount": "600"}
        body.update(overrides)
        return client.post("/v1/payment-requests", json=body, headers=headers(resident.id))

    return _submit


def test_health_endpoint(client: TestClient):
    """Test health check endpoint"""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_metrics_endpoint(client: TestClient):
    """Test Prometheus metrics endpoint"""
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "hostel_rent_generation_total" in response.text


def test_request_id_is_echoed(client: TestClient):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_missing_identity_is_401(client: TestClient):
    response = client.get("/v1/payment-requests")
    assert response.status_code == 401


def test_malformed_identity_is_401(client: TestClient):
    response = client.get(
        "/v1/payment-requests", headers={"X-Caller-Id": "abc", "X-Caller-Role": "resident", "X-Tenant-Id": "1"}
    )
    assert response.status_code == 401


def test_resident_cannot_approve(client, headers, resident, submit):
    request_id = submit().json()["id"]

    response = client.post(f"/v1/payment-requests/{request_id}/approve", headers=headers(resident.id))

    assert response.status_code == 403


def test_admin_cannot_submit(client, admin_headers, rent_record):
    response = client.post(
        "/v1/payment-requests",
        json={"rent_record_id": rent_record.id, "payment_method": "on_hand", "rent_amount": "100"},
        headers=admin_headers,
    )
    assert response.status_code == 403


def test_rent_generation_endpoint(client, notifier, make_category, make_resident):
    """Test POST /v1/jobs/rent-generation creates records and sends reminders"""
    category = make_category(rent="1000", external="200")
    make_resident(category=category, booking="500", phone="01755555555")

    response = client.post("/v1/jobs/rent-generation", json={"run_date": "2024-06-01"})

    assert response.status_code == 200
    data = response.json()
    assert data["period"] == "2024-06"
    assert data["created"] == 1
    assert data["outcomes"][0]["outcome"] == "created"
    assert data["notifications"]["delivered"] == 1
    assert notifier.sent[0][0] == "01755555555"
    assert notifier.sent[0][1].template == "rent_reminder"

    # Re-triggering the same period is safe
    again = client.post("/v1/jobs/rent-generation", json={"run_date": "2024-06-15"})
    assert again.json()["created"] == 0
    assert again.json()["skipped"] == 1


def test_rent_generation_reports_notification_failure_without_failing(client, notifier, make_category, make_resident):
    make_resident(category=make_category())
    notifier.delivered = False
    notifier.reason = "provider down"

    response = client.post("/v1/jobs/rent-generation", json={"run_date": "2024-06-01"})

    assert response.status_code == 200
    assert response.json()["created"] == 1
    assert response.json()["notifications"]["failed"] == 1


def test_rent_generation_store_unavailable_is_503(client):
    with patch(
        "hostel_billing.services.rent_generation.RentGenerator.run",
        side_effect=OperationalError("SELECT 1", {}, Exception("connection refused")),
    ):
        response = client.post("/v1/jobs/rent-generation")

    assert response.status_code == 503


def test_submit_payment_request(client, notifier, policy, submit):
    """Test POST /v1/payment-requests"""
    response = submit(advance_amount="100")

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "pending"
    assert Decimal(data["total_amount"]) == Decimal("700")
    # Owner notice goes out after the response
    assert [recipient for recipient, _ in notifier.sent] == [policy.owner_phone]


def test_second_pending_request_is_409(submit):
    assert submit().status_code == 201

    response = submit(rent_amount="100")

    assert response.status_code == 409


@pytest.mark.parametrize(
    "overrides",
    [
        {"rent_amount": "-5"},
        {"rent_amount": "0"},
        {"payment_method": "online"},
        {"payment_method": "cheque"},
    ],
)
def test_invalid_submission_is_422(submit, overrides):
    response = submit(**overrides)
    assert response.status_code == 422


def test_submit_for_unknown_record_is_404(client, headers, resident):
    response = client.post(
        "/v1/payment-requests",
        json={"rent_record_id": 9999, "payment_method": "on_hand", "rent_amount": "100"},
        headers=headers(resident.id),
    )
    assert response.status_code == 404


def test_approve_endpoint(client, admin_headers, submit, rent_record):
    request_id = submit().json()["id"]

    response = client.post(f"/v1/payment-requests/{request_id}/approve", headers=admin_headers)

    assert response.status_code == 200
    entry = response.json()
    assert entry["payment_request_id"] == request_id
    assert entry["source"] == "manual_approval"
    assert Decimal(entry["paid_rent"]) == Decimal("600")

    rents = client.get("/v1/rents", headers=admin_headers).json()
    assert rents["items"][0]["status"] == "partial"

    # Approving twice is a conflict
    again = client.post(f"/v1/payment-requests/{request_id}/approve", headers=admin_headers)
    assert again.status_code == 409


def test_admin_of_other_tenant_gets_404(client, headers, submit):
    request_id = submit().json()["id"]

    response = client.post(f"/v1/payment-requests/{request_id}/approve", headers=headers(901, role="admin", tenant_id=2))

    assert response.status_code == 404


def test_reject_endpoint(client, admin_headers, notifier, submit, resident):
    request_id = submit().json()["id"]

    response = client.post(
        f"/v1/payment-requests/{request_id}/reject", json={"reason": "cash not received"}, headers=admin_headers
    )

    assert response.status_code == 200
    assert response.json()["status"] == "rejected"
    assert response.json()["rejection_reason"] == "cash not received"
    assert notifier.sent[-1][0] == resident.phone
    assert notifier.sent[-1][1].params["status"] == "rejected"


def test_reject_requires_reason(client, admin_headers, submit):
    request_id = submit().json()["id"]

    response = client.post(f"/v1/payment-requests/{request_id}/reject", json={"reason": ""}, headers=admin_headers)

    assert response.status_code == 422


def test_cancel_endpoint(client, headers, resident, submit):
    request_id = submit().json()["id"]

    response = client.delete(f"/v1/payment-requests/{request_id}", headers=headers(resident.id))

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"


def test_list_payment_requests_scoped_to_resident(client, headers, admin_headers, submit, make_resident):
    submit()
    other = make_resident(name="Karim", phone="01722222222")

    own = client.get("/v1/payment-requests", headers=headers(other.id)).json()
    everything = client.get("/v1/payment-requests?status=pending", headers=admin_headers).json()

    assert own["total"] == 0
    assert everything["total"] == 1


def test_list_rents_rejects_bad_period(client, admin_headers):
    response = client.get("/v1/rents?period=2024-13", headers=admin_headers)
    assert response.status_code == 422


def test_full_pay_endpoint(client, admin_headers, notifier, rent_record, resident):
    response = client.post(f"/v1/rents/{rent_record.id}/full-pay", json={"paid_method": "bank"}, headers=admin_headers)

    assert response.status_code == 200
    entry = response.json()
    assert entry["source"] == "full_pay"
    assert entry["payment_method"] == "bank"
    assert Decimal(entry["paid_rent"]) == Decimal("1000")
    assert Decimal(entry["paid_external"]) == Decimal("200")
    assert notifier.sent[-1][1].template == "rent_payment_confirmation"

    settlements = client.get(f"/v1/settlements?resident_id={resident.id}", headers=admin_headers).json()
    assert settlements["total"] == 1


def test_full_pay_without_body_defaults_to_on_hand(client, admin_headers, rent_record):
    response = client.post(f"/v1/rents/{rent_record.id}/full-pay", headers=admin_headers)

    assert response.status_code == 200
    assert response.json()["payment_method"] == "on_hand"


def test_full_pay_on_settled_record_is_409(client, admin_headers, rent_record):
    assert client.post(f"/v1/rents/{rent_record.id}/full-pay", headers=admin_headers).status_code == 200

    response = client.post(f"/v1/rents/{rent_record.id}/full-pay", headers=admin_headers)

    assert response.status_code == 409


def test_pay_endpoint_records_partial_payments(client, admin_headers, notifier, rent_record, resident):
    """Rent 1000 + external 200 paid as 400, 600, then 200"""
    url = f"/v1/rents/{rent_record.id}/pay"

    first = client.post(url, json={"rent_amount": "400"}, headers=admin_headers)
    assert first.status_code == 200
    assert first.json()["source"] == "admin_payment"
    assert first.json()["payment_method"] == "on_hand"
    assert client.get("/v1/rents", headers=admin_headers).json()["items"][0]["status"] == "partial"

    client.post(url, json={"rent_amount": "600", "paid_method": "bkash"}, headers=admin_headers)
    assert client.get("/v1/rents", headers=admin_headers).json()["items"][0]["status"] == "partial"

    last = client.post(url, json={"external_amount": "200"}, headers=admin_headers)
    assert last.status_code == 200
    assert Decimal(last.json()["paid_external"]) == Decimal("200")
    assert client.get("/v1/rents", headers=admin_headers).json()["items"][0]["status"] == "paid"

    assert [message.template for _, message in notifier.sent] == ["rent_payment_confirmation"] * 3
    settlements = client.get(f"/v1/settlements?resident_id={resident.id}", headers=admin_headers).json()
    assert settlements["total"] == 3


@pytest.mark.parametrize("body", [{}, {"rent_amount": "-1"}, {"rent_amount": "100", "paid_method": ""}])
def test_pay_endpoint_rejects_bad_body(client, admin_headers, rent_record, body):
    response = client.post(f"/v1/rents/{rent_record.id}/pay", json=body, headers=admin_headers)
    assert response.status_code == 422


def test_resident_cannot_record_payment(client, headers, resident, rent_record):
    response = client.post(f"/v1/rents/{rent_record.id}/pay", json={"rent_amount": "100"}, headers=headers(resident.id))
    assert response.status_code == 403


def test_reconciliation_endpoint(client, notifier, submit, make_raw_payment):
    """Test POST /v1/jobs/reconciliation approves a matched online payment"""
    request_id = submit(payment_method="online", sender_number="01711111111", trx_id="TXAPI").json()["id"]
    make_raw_payment("TXAPI", "600")
    notifier.sent.clear()

    response = client.post("/v1/jobs/reconciliation")

    assert response.status_code == 200
    data = response.json()
    assert data["processed"] == 1
    assert data["approved"] == 1
    assert data["results"][0]["request_id"] == request_id
    assert data["notifications"]["batched"] is True
    assert len(notifier.batches) == 1
    assert notifier.sent == []

    status = client.get("/v1/jobs/reconciliation/status").json()
    assert status["approved_requests"] == 1
    assert status["recent_auto_approvals"][0]["trx_id"] == "TXAPI"


def test_notification_retry_endpoint(client, notifier, make_category, make_resident):
    make_resident(category=make_category())
    notifier.delivered = False
    client.post("/v1/jobs/rent-generation", json={"run_date": "2024-06-01"})

    notifier.delivered = True
    response = client.post("/v1/jobs/notifications")

    assert response.status_code == 200
    assert response.json()["attempted"] == 1
    assert response.json()["delivered"] == 1
