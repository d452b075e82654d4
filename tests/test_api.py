import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from main import app, get_db

ORG = "/organizations/org-1"
ACTOR = {"X-Actor-Id": "treasurer"}


@pytest.fixture
def client():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def create_account(client, code, name, account_type):
    response = client.post(
        f"{ORG}/accounts",
        json={"code": code, "name": name, "type": account_type},
        headers=ACTOR,
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_transaction_lifecycle_over_http(client) -> None:
    cash = create_account(client, "1000", "Cash", "ASSET")
    rent = create_account(client, "5000", "Rent", "EXPENSE")
    loan = create_account(client, "2000", "Loan", "LIABILITY")
    client.post(
        f"{ORG}/transactions",
        json={
            "transaction_date": "2025-03-01",
            "amount_cents": 5_000,
            "type": "INCOME",
            "debit_account_id": cash["id"],
            "credit_account_id": loan["id"],
            "description": "Bridge loan",
        },
    )

    created = client.post(
        f"{ORG}/transactions",
        json={
            "transaction_date": "2025-03-02",
            "amount_cents": 1_000,
            "type": "EXPENSE",
            "debit_account_id": rent["id"],
            "credit_account_id": cash["id"],
            "description": "March rent",
        },
        headers=ACTOR,
    )
    assert created.status_code == 201, created.text
    txn = created.json()
    assert txn["changed_by"] == "treasurer"

    edited = client.patch(
        f"{ORG}/transactions/{txn['id']}",
        json={"amount_cents": 1_200, "change_reason": "Invoice corrected"},
    )
    assert edited.status_code == 200, edited.text
    assert edited.json()["previous_version_id"] == txn["version_id"]

    voided = client.post(
        f"{ORG}/transactions/{txn['id']}/void", json={"void_reason": "Paid twice"}
    )
    assert voided.status_code == 200
    assert voided.json()["is_voided"] is True

    again = client.patch(f"{ORG}/transactions/{txn['id']}", json={"amount_cents": 1})
    assert again.status_code == 409
    assert again.json()["detail"]["kind"] == "already_voided"

    history = client.get(f"{ORG}/transactions/{txn['id']}/history").json()
    assert [row["amount_cents"] for row in history] == [1_200, 1_200, 1_000]

    verify = client.get(f"{ORG}/accounts/{cash['id']}/verify").json()
    assert verify["is_valid"] is True
    assert verify["stored_balance_cents"] == 5_000

    listed = client.get(f"{ORG}/transactions", params={"include_voided": True}).json()
    assert len(listed) == 2


def test_validation_and_not_found_errors(client) -> None:
    cash = create_account(client, "1000", "Cash", "ASSET")

    same_side = client.post(
        f"{ORG}/transactions",
        json={
            "transaction_date": "2025-03-02",
            "amount_cents": 100,
            "type": "EXPENSE",
            "debit_account_id": cash["id"],
            "credit_account_id": cash["id"],
            "description": "Nope",
        },
    )
    assert same_side.status_code == 422

    missing = client.get(f"{ORG}/transactions/does-not-exist")
    assert missing.status_code == 404
    assert missing.json()["detail"]["kind"] == "not_found"

    foreign = client.get(f"/organizations/org-2/accounts/{cash['id']}")
    assert foreign.status_code == 404

    nulls = client.patch(f"{ORG}/accounts/{cash['id']}", json={"name": None})
    assert nulls.status_code == 422


def test_bill_flow_over_http(client) -> None:
    cash = create_account(client, "1000", "Cash", "ASSET")
    payable = create_account(client, "2000", "Payable", "LIABILITY")
    expense = create_account(client, "5000", "Printing", "EXPENSE")
    vendor = client.post(f"{ORG}/contacts", json={"name": "Print Shop"}).json()

    bill = client.post(
        f"{ORG}/bills",
        json={
            "contact_id": vendor["id"],
            "direction": "PAYABLE",
            "amount_cents": 500,
            "description": "Flyers",
            "issue_date": "2025-03-01",
            "due_date": "2025-03-31",
            "liability_or_asset_account_id": payable["id"],
            "expense_or_revenue_account_id": expense["id"],
        },
    )
    assert bill.status_code == 201, bill.text
    bill_id = bill.json()["id"]
    assert bill.json()["status"] == "PENDING"

    payment = client.post(
        f"{ORG}/bills/{bill_id}/payments",
        json={"amount_cents": 500, "transaction_date": "2025-03-10", "cash_account_id": cash["id"]},
    )
    assert payment.status_code == 201, payment.text

    detail = client.get(f"{ORG}/bills/{bill_id}").json()
    assert detail["bill"]["status"] == "PAID"
    assert len(detail["payments"]) == 1
    assert detail["accrual_transaction"]["amount_cents"] == 500

    cancel = client.post(f"{ORG}/bills/{bill_id}/cancel")
    assert cancel.status_code == 409
    assert cancel.json()["detail"]["kind"] == "cannot_cancel_paid_bill"

    page = client.get(f"{ORG}/bills", params={"status": "PAID"}).json()
    assert page["total_count"] == 1

    assert client.get(f"{ORG}/bills/missing").status_code == 404


def test_closed_period_over_http(client) -> None:
    cash = create_account(client, "1000", "Cash", "ASSET")
    revenue = create_account(client, "4000", "Donations", "REVENUE")
    period = client.post(
        f"{ORG}/fiscal-periods",
        json={"name": "FY2024", "start_date": "2024-01-01", "end_date": "2024-12-31"},
    ).json()
    closed = client.post(f"{ORG}/fiscal-periods/{period['id']}/close", headers=ACTOR)
    assert closed.json()["status"] == "CLOSED"

    blocked = client.post(
        f"{ORG}/transactions",
        json={
            "transaction_date": "2024-06-01",
            "amount_cents": 100,
            "type": "INCOME",
            "debit_account_id": cash["id"],
            "credit_account_id": revenue["id"],
            "description": "Late gift",
        },
    )
    assert blocked.status_code == 409
    assert blocked.json()["detail"]["kind"] == "period_closed"


def test_statement_upload_and_match(client) -> None:
    bank = create_account(client, "1000", "Bank", "ASSET")
    revenue = create_account(client, "4000", "Donations", "REVENUE")
    gift = client.post(
        f"{ORG}/transactions",
        json={
            "transaction_date": "2025-03-01",
            "amount_cents": 25_000,
            "type": "INCOME",
            "debit_account_id": bank["id"],
            "credit_account_id": revenue["id"],
            "description": "Donation from Smith",
            "reference_number": "1001",
        },
    ).json()

    csv_body = "Date,Description,Amount,Reference\n03/01/2025,Deposit Smith,250.00,1001\n"
    parsed = client.post(
        "/statements/parse",
        files={"file": ("march.csv", csv_body.encode("utf-8"), "text/csv")},
    )
    assert parsed.status_code == 200, parsed.text
    lines = parsed.json()["lines"]
    assert lines[0]["amount_cents"] == 25_000

    matched = client.post(
        f"{ORG}/reconciliation/match", json={"account_id": bank["id"], "lines": lines}
    ).json()
    assert matched[0]["transaction_id"] == gift["id"]
    assert matched[0]["exact"] is True

    reconciled = client.post(
        f"{ORG}/transactions/reconcile", json={"transaction_ids": [gift["id"]]}
    )
    assert reconciled.status_code == 200
    assert reconciled.json()[0]["reconciled"] is True


def test_statement_upload_with_explicit_mapping(client) -> None:
    mapping = json.dumps({"date": 0, "description": 1, "amount": 2, "has_header": False})
    parsed = client.post(
        "/statements/parse",
        files={"file": ("export.txt", b"2025-03-01,Coffee,-3.50\n", "text/plain")},
        data={"mapping": mapping},
    )
    assert parsed.status_code == 200, parsed.text
    assert parsed.json()["lines"][0]["amount_cents"] == -350

    bad = client.post(
        "/statements/parse",
        files={"file": ("export.csv", b"x", "text/csv")},
        data={"mapping": json.dumps({"date": 0})},
    )
    assert bad.status_code == 422


def test_close_preview_and_integrity(client) -> None:
    cash = create_account(client, "1000", "Cash", "ASSET")
    fund = create_account(client, "3000", "Net assets", "EQUITY")
    revenue = create_account(client, "4000", "Donations", "REVENUE")
    client.post(
        f"{ORG}/transactions",
        json={
            "transaction_date": "2024-05-01",
            "amount_cents": 900,
            "type": "INCOME",
            "debit_account_id": cash["id"],
            "credit_account_id": revenue["id"],
            "description": "Gift",
        },
    )
    period = client.post(
        f"{ORG}/fiscal-periods",
        json={"name": "FY2024", "start_date": "2024-01-01", "end_date": "2024-12-31"},
    ).json()

    preview = client.get(
        f"{ORG}/fiscal-periods/{period['id']}/preview",
        params={"fund_balance_account_id": fund["id"]},
    )
    assert preview.status_code == 200, preview.text
    body = preview.json()
    assert body["net_surplus_cents"] == 900
    assert body["entries"][0]["credit_account_id"] == fund["id"]

    wrong_fund = client.get(
        f"{ORG}/fiscal-periods/{period['id']}/preview",
        params={"fund_balance_account_id": cash["id"]},
    )
    assert wrong_fund.status_code == 422

    integrity = client.get(f"{ORG}/integrity").json()
    assert integrity["is_valid"] is True
    assert integrity["total_debits_cents"] == 900
