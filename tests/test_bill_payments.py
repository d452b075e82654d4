from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import InvalidStatusTransition, NotFound, NotFoundOrVoided, ValidationError
from models import AccountType, BillDirection, BillStatus, TransactionType
from schemas import (
    AccountIn,
    BillIn,
    ContactIn,
    PaymentIn,
    PaymentLinkIn,
    TransactionIn,
    VoidIn,
)
from services import (
    AccountService,
    BillPaymentService,
    BillService,
    ContactService,
    TransactionService,
)

ORG = "org-1"


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def setup_pledge(session, amount=1_000):
    accounts = AccountService(session)
    cash = accounts.create(ORG, AccountIn(code="1000", name="Cash", type=AccountType.asset))
    receivable = accounts.create(
        ORG, AccountIn(code="1200", name="Pledges receivable", type=AccountType.asset)
    )
    revenue = accounts.create(
        ORG, AccountIn(code="4000", name="Donations", type=AccountType.revenue)
    )
    donor = ContactService(session).create(ORG, ContactIn(name="A. Donor"))
    bill = BillService(session).create(
        ORG,
        BillIn(
            contact_id=donor.id,
            direction=BillDirection.receivable,
            amount_cents=amount,
            description="Annual pledge",
            issue_date=date(2025, 1, 1),
            due_date=date(2025, 12, 31),
            liability_or_asset_account_id=receivable.id,
            expense_or_revenue_account_id=revenue.id,
        ),
    )
    return bill, cash, receivable, revenue


def balance(session, account) -> int:
    return AccountService(session).get(account.id, ORG).balance_cents


def test_receivable_payment_moves_receivable_into_cash() -> None:
    session = make_session()
    bill, cash, receivable, revenue = setup_pledge(session)

    payment = BillPaymentService(session).record_payment(
        bill.id,
        ORG,
        PaymentIn(
            amount_cents=400,
            transaction_date=date(2025, 2, 1),
            cash_account_id=cash.id,
            reference_number="CHK-12",
        ),
        actor="bob",
    )

    txn = TransactionService(session).get(payment.transaction_id, ORG)
    assert txn.type == TransactionType.transfer
    assert txn.debit_account_id == cash.id
    assert txn.credit_account_id == receivable.id
    assert txn.description == "Payment: Annual pledge"
    assert txn.reference_number == "CHK-12"
    assert balance(session, cash) == 400
    assert balance(session, receivable) == 600
    assert balance(session, revenue) == 1_000
    assert BillService(session).get(bill.id, ORG).bill.status == BillStatus.partial


def test_payment_rejected_when_accrual_voided() -> None:
    session = make_session()
    bill, cash, _, _ = setup_pledge(session)
    TransactionService(session).void(
        bill.accrual_transaction_id, ORG, VoidIn(void_reason="Pledge withdrawn")
    )

    with pytest.raises(InvalidStatusTransition):
        BillPaymentService(session).record_payment(
            bill.id,
            ORG,
            PaymentIn(amount_cents=10, transaction_date=date(2025, 2, 1), cash_account_id=cash.id),
        )


def test_link_existing_transaction_and_unlink() -> None:
    session = make_session()
    bill, cash, receivable, _ = setup_pledge(session)
    deposit = TransactionService(session).create(
        ORG,
        TransactionIn(
            transaction_date=date(2025, 3, 1),
            amount_cents=1_000,
            type=TransactionType.transfer,
            debit_account_id=cash.id,
            credit_account_id=receivable.id,
            description="Donor cheque",
        ),
    )
    payments = BillPaymentService(session)

    link = payments.link_payment(bill.id, ORG, PaymentLinkIn(transaction_id=deposit.id))
    assert link.transaction_id == deposit.id
    assert BillService(session).get(bill.id, ORG).bill.status == BillStatus.paid

    with pytest.raises(ValidationError):
        payments.link_payment(bill.id, ORG, PaymentLinkIn(transaction_id=deposit.id))

    reopened = payments.unlink_payment(link.id, ORG)
    assert reopened.amount_paid_cents == 0
    # Due date has passed, so an unpaid bill falls back to OVERDUE.
    assert reopened.status == BillStatus.overdue
    assert reopened.paid_in_full_date is None
    assert BillService(session).get(bill.id, ORG).payments == []
    with pytest.raises(NotFound):
        payments.unlink_payment(link.id, ORG)


def test_link_rejects_duplicates_missing_and_oversized() -> None:
    session = make_session()
    bill, cash, receivable, _ = setup_pledge(session)
    ledger = TransactionService(session)

    def deposit(amount):
        return ledger.create(
            ORG,
            TransactionIn(
                transaction_date=date(2025, 3, 1),
                amount_cents=amount,
                type=TransactionType.transfer,
                debit_account_id=cash.id,
                credit_account_id=receivable.id,
                description="Donor cheque",
            ),
        )

    small = deposit(100)
    payments = BillPaymentService(session)
    payments.link_payment(bill.id, ORG, PaymentLinkIn(transaction_id=small.id))

    with pytest.raises(ValidationError):
        payments.link_payment(bill.id, ORG, PaymentLinkIn(transaction_id=small.id))
    with pytest.raises(ValidationError):
        payments.link_payment(bill.id, ORG, PaymentLinkIn(transaction_id=deposit(901).id))
    with pytest.raises(NotFoundOrVoided):
        payments.link_payment(bill.id, ORG, PaymentLinkIn(transaction_id="missing"))

    voided = deposit(50)
    ledger.void(voided.id, ORG, VoidIn(void_reason="Bounced"))
    with pytest.raises(NotFoundOrVoided):
        payments.link_payment(bill.id, ORG, PaymentLinkIn(transaction_id=voided.id))


def test_payment_on_cancelled_bill_is_rejected() -> None:
    session = make_session()
    bill, cash, _, _ = setup_pledge(session)
    BillService(session).cancel(bill.id, ORG)

    with pytest.raises(InvalidStatusTransition):
        BillPaymentService(session).record_payment(
            bill.id,
            ORG,
            PaymentIn(amount_cents=10, transaction_date=date(2025, 2, 1), cash_account_id=cash.id),
        )
    assert balance(session, cash) == 0


def test_bill_from_other_organization_is_not_found() -> None:
    session = make_session()
    bill, cash, _, _ = setup_pledge(session)

    with pytest.raises(NotFound):
        BillPaymentService(session).record_payment(
            bill.id,
            "org-2",
            PaymentIn(amount_cents=10, transaction_date=date(2025, 2, 1), cash_account_id=cash.id),
        )
