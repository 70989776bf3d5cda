"""
E2E test for two billing months of one resident, driven through the API.

Month 1 (2024-06):
- Booking 500 is drawn against the onboarding rent
- Resident pays rent 700 + advance 600 online; reconciliation approves it
Month 2 (2024-07):
- Unpaid external and advance carry forward
- Admin settles the month by hand
"""

import pytest
from decimal import Decimal
from fastapi.testclient import TestClient

SENDER = "01711111111"


def _money(value) -> Decimal:
    return Decimal(str(value))


@pytest.mark.integration
def test_two_month_billing_cycle(client: TestClient, notifier, headers, make_category, make_resident, make_raw_payment):
    category = make_category(rent="1000", external="200")
    resident = make_resident(category=category, booking="500", phone=SENDER)
    resident_headers = headers(resident.id)
    admin_headers = headers(900, role="admin")

    # Month 1: generation
    response = client.post("/v1/jobs/rent-generation", json={"run_date": "2024-06-01"})
    assert response.status_code == 200
    assert response.json()["created"] == 1

    june = client.get("/v1/rents?period=2024-06", headers=resident_headers).json()["items"][0]
    assert _money(june["rent_amount"]) == Decimal("700")
    assert _money(june["external_amount"]) == Decimal("200")
    assert _money(june["advance_amount"]) == Decimal("1200")
    assert june["status"] == "unpaid"

    # Month 1: online payment, matched by reconciliation
    response = client.post(
        "/v1/payment-requests",
        json={
            "rent_record_id": june["id"],
            "payment_method": "online",
            "rent_amount": "700",
            "advance_amount": "600",
            "sender_number": SENDER,
            "trx_id": "TXJUNE",
        },
        headers=resident_headers,
    )
    assert response.status_code == 201
    make_raw_payment("TXJUNE", "1300", sender=SENDER)

    report = client.post("/v1/jobs/reconciliation").json()
    assert report["approved"] == 1
    assert len(notifier.batches) == 1
    assert notifier.batches[0][0][0] == SENDER

    june = client.get("/v1/rents?period=2024-06", headers=resident_headers).json()["items"][0]
    assert june["status"] == "partial"
    assert _money(june["rent_paid"]) == Decimal("700")
    assert _money(june["advance_paid"]) == Decimal("600")

    # Month 2: carry forward
    response = client.post("/v1/jobs/rent-generation", json={"run_date": "2024-07-01"})
    assert response.json()["created"] == 1

    july = client.get("/v1/rents?period=2024-07", headers=resident_headers).json()["items"][0]
    assert _money(july["rent_amount"]) == Decimal("1000")
    assert _money(july["external_amount"]) == Decimal("200")
    assert _money(july["previous_due"]) == Decimal("200")
    assert _money(july["advance_amount"]) == Decimal("600")

    # Month 2: admin settles by hand
    response = client.post(f"/v1/rents/{july['id']}/full-pay", json={"paid_method": "on_hand"}, headers=admin_headers)
    assert response.status_code == 200
    entry = response.json()
    assert _money(entry["paid_rent"]) + _money(entry["paid_external"]) + _money(entry["paid_advance"]) + _money(
        entry["paid_previous"]
    ) == Decimal("2000")

    july = client.get("/v1/rents?period=2024-07", headers=resident_headers).json()["items"][0]
    assert july["status"] == "paid"

    settlements = client.get("/v1/settlements", headers=resident_headers).json()
    assert settlements["total"] == 2
    assert sorted(item["source"] for item in settlements["items"]) == ["auto_reconciliation", "full_pay"]
