from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from config import Settings
from database import Base
from errors import NotFound
from models import AccountType, TransactionType
from schemas import AccountIn, StatementLine, TransactionIn, VoidIn
from services import (
    AccountService,
    ReconciliationService,
    TransactionService,
    description_similarity,
    normalize_description,
)

ORG = "org-1"


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_settings(tolerance=3, min_score=0.3) -> Settings:
    return Settings(
        database_url="sqlite+pysqlite:///:memory:",
        timezone="UTC",
        log_level="INFO",
        overdue_sweep_hour=2,
        match_date_tolerance_days=tolerance,
        match_min_score=min_score,
    )


def setup_bank(session):
    accounts = AccountService(session)
    bank = accounts.create(ORG, AccountIn(code="1000", name="Bank", type=AccountType.asset))
    donations = accounts.create(
        ORG, AccountIn(code="4000", name="Donations", type=AccountType.revenue)
    )
    utilities = accounts.create(
        ORG, AccountIn(code="5100", name="Utilities", type=AccountType.expense)
    )
    return bank, donations, utilities


def book(session, debit, credit, amount, on, description, reference=None):
    return TransactionService(session).create(
        ORG,
        TransactionIn(
            transaction_date=on,
            amount_cents=amount,
            type=TransactionType.transfer,
            debit_account_id=debit.id,
            credit_account_id=credit.id,
            description=description,
            reference_number=reference,
        ),
    )


def line(row, on, amount, description, reference=None) -> StatementLine:
    return StatementLine(
        row_number=row, date=on, amount_cents=amount, description=description, reference=reference
    )


def test_normalize_and_similarity() -> None:
    assert normalize_description("ACH  Deposit - Smith!") == "achdepositsmith"
    assert description_similarity("Electric Co", "ELECTRIC CO.") == 1.0
    assert description_similarity("Smith", "Donation from Smith") >= 0.8
    assert description_similarity("", "anything") == 0.0
    assert description_similarity("abc", "xyz") < 0.3


def test_exact_match_on_date_amount_and_reference() -> None:
    session = make_session()
    bank, donations, _ = setup_bank(session)
    gift = book(session, bank, donations, 25_000, date(2025, 3, 1), "Gift", reference="1001")

    matches = ReconciliationService(session, make_settings()).match_lines(
        ORG, bank.id, [line(2, date(2025, 3, 1), 25_000, "DEPOSIT 1001", reference="1001")]
    )

    assert len(matches) == 1
    assert matches[0].transaction_id == gift.id
    assert matches[0].exact
    assert matches[0].score == 1.0


def test_fuzzy_match_prefers_closer_date_and_description() -> None:
    session = make_session()
    bank, _, utilities = setup_bank(session)
    near = book(session, utilities, bank, 7_510, date(2025, 3, 4), "City Electric")
    book(session, utilities, bank, 7_510, date(2025, 3, 6), "Hardware store")

    matches = ReconciliationService(session, make_settings()).match_lines(
        ORG, bank.id, [line(5, date(2025, 3, 3), -7_510, "CITY ELECTRIC")]
    )

    assert [m.transaction_id for m in matches] == [near.id]
    assert not matches[0].exact
    assert 0.3 < matches[0].score < 1.0
    assert "within 3 days" in matches[0].reason


def test_direction_must_agree_with_sign() -> None:
    session = make_session()
    bank, donations, utilities = setup_bank(session)
    book(session, utilities, bank, 5_000, date(2025, 3, 1), "Refund")

    matches = ReconciliationService(session, make_settings()).match_lines(
        ORG, bank.id, [line(2, date(2025, 3, 1), 5_000, "Refund")]
    )

    assert matches == []


def test_each_transaction_matches_one_line() -> None:
    session = make_session()
    bank, donations, _ = setup_bank(session)
    only = book(session, bank, donations, 1_000, date(2025, 3, 1), "Gift")

    matches = ReconciliationService(session, make_settings()).match_lines(
        ORG,
        bank.id,
        [
            line(2, date(2025, 3, 1), 1_000, "Gift"),
            line(3, date(2025, 3, 2), 1_000, "Gift"),
        ],
    )

    assert [(m.row_number, m.transaction_id) for m in matches] == [(2, only.id)]


def test_outside_tolerance_voided_and_reconciled_are_skipped() -> None:
    session = make_session()
    bank, donations, _ = setup_bank(session)
    ledger = TransactionService(session)
    book(session, bank, donations, 1_000, date(2025, 2, 1), "Old gift")
    voided = book(session, bank, donations, 2_000, date(2025, 3, 1), "Gift")
    ledger.void(voided.id, ORG, VoidIn(void_reason="dup"))
    done = book(session, bank, donations, 3_000, date(2025, 3, 1), "Gift")
    ledger.reconcile([done.id], ORG)

    matches = ReconciliationService(session, make_settings()).match_lines(
        ORG,
        bank.id,
        [
            line(2, date(2025, 3, 1), 1_000, "Old gift"),
            line(3, date(2025, 3, 1), 2_000, "Gift"),
            line(4, date(2025, 3, 1), 3_000, "Gift"),
            line(5, date(2025, 3, 1), 0, "Zero"),
        ],
    )

    assert matches == []


def test_unknown_account_is_not_found() -> None:
    session = make_session()
    with pytest.raises(NotFound):
        ReconciliationService(session, make_settings()).match_lines(
            ORG, "missing", [line(1, date(2025, 3, 1), 100, "x")]
        )
