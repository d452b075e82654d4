from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import ConcurrentModificationConflict, ImmutableVersion
from models import Account, AccountType
from temporal import (
    MAX_DATE,
    as_of_filter,
    close_version,
    current_version_filter,
    is_current_version,
    open_initial_version,
    order_version_chain,
    resolve_current,
    soft_delete,
    supersede,
    was_valid_at,
)

ORG = "org-1"


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_account(session, at: datetime, code: str = "1000") -> Account:
    account = open_initial_version(
        Account,
        at,
        "alice",
        organization_id=ORG,
        code=code,
        name="Checking",
        type=AccountType.asset,
        balance_cents=0,
    )
    session.add(account)
    session.commit()
    return account


def test_initial_version_is_open_and_unlinked() -> None:
    session = make_session()
    at = datetime(2025, 1, 1, 9, 0)
    account = make_account(session, at)

    assert account.id != account.version_id
    assert account.previous_version_id is None
    assert account.valid_from == at
    assert account.valid_to == MAX_DATE
    assert account.system_to == MAX_DATE
    assert account.changed_by == "alice"
    assert is_current_version(account)


def test_supersede_closes_old_version_and_links_successor() -> None:
    session = make_session()
    t0 = datetime(2025, 1, 1, 9, 0)
    t1 = t0 + timedelta(hours=1)
    account = make_account(session, t0)

    successor = supersede(
        session, Account, account, {"name": "Operating", "change_reason": "rename"}, t1, "bob"
    )
    session.commit()

    assert successor.id == account.id
    assert successor.previous_version_id == account.version_id
    assert successor.name == "Operating"
    assert successor.code == "1000"
    assert successor.change_reason == "rename"
    assert successor.changed_by == "bob"
    assert account.valid_to == t1
    assert account.system_to == t1
    assert not is_current_version(account)

    current = session.scalars(
        select(Account).where(*current_version_filter(Account, id=account.id))
    ).all()
    assert [row.version_id for row in current] == [successor.version_id]


def test_change_reason_is_not_carried_forward() -> None:
    session = make_session()
    t0 = datetime(2025, 1, 1)
    account = make_account(session, t0)
    first = supersede(
        session, Account, account, {"change_reason": "typo"}, t0 + timedelta(hours=1)
    )
    second = supersede(
        session, Account, first, {"description": "Main"}, t0 + timedelta(hours=2)
    )
    session.commit()

    assert first.change_reason == "typo"
    assert second.change_reason is None


def test_closing_a_closed_version_raises_conflict() -> None:
    session = make_session()
    t0 = datetime(2025, 1, 1)
    account = make_account(session, t0)
    supersede(session, Account, account, {"name": "Operating"}, t0 + timedelta(hours=1))
    session.commit()

    with pytest.raises(ConcurrentModificationConflict) as excinfo:
        close_version(session, Account, account.version_id, t0 + timedelta(hours=2))
    assert excinfo.value.retryable
    assert excinfo.value.version_id == account.version_id


def test_stale_supersede_does_not_insert_successor() -> None:
    session = make_session()
    t0 = datetime(2025, 1, 1)
    account = make_account(session, t0)
    supersede(session, Account, account, {"name": "First"}, t0 + timedelta(hours=1))
    session.commit()

    with pytest.raises(ConcurrentModificationConflict):
        supersede(session, Account, account, {"name": "Second"}, t0 + timedelta(hours=2))
    session.rollback()

    names = session.scalars(select(Account.name).where(Account.id == account.id)).all()
    assert sorted(names) == ["Checking", "First"]


def test_as_of_returns_version_valid_at_instant() -> None:
    session = make_session()
    t0 = datetime(2025, 1, 1)
    t1 = t0 + timedelta(days=1)
    account = make_account(session, t0)
    supersede(session, Account, account, {"name": "Operating"}, t1)
    session.commit()

    before = session.scalar(
        select(Account).where(*as_of_filter(Account, t0 + timedelta(hours=1), id=account.id))
    )
    after = session.scalar(
        select(Account).where(*as_of_filter(Account, t1 + timedelta(hours=1), id=account.id))
    )
    assert before.name == "Checking"
    assert after.name == "Operating"
    assert was_valid_at(before, t0)
    assert not was_valid_at(before, t1)


def test_soft_delete_leaves_no_current_version() -> None:
    session = make_session()
    t0 = datetime(2025, 1, 1)
    account = make_account(session, t0)
    tombstone = soft_delete(session, Account, account, t0 + timedelta(hours=1), "carol")
    session.commit()

    assert tombstone.is_deleted
    assert tombstone.deleted_by == "carol"
    assert tombstone.previous_version_id == account.version_id
    assert resolve_current(session, Account, [account.id]) == {}


def test_resolve_current_scopes_by_organization() -> None:
    session = make_session()
    account = make_account(session, datetime(2025, 1, 1))

    assert account.id in resolve_current(session, Account, [account.id], organization_id=ORG)
    assert resolve_current(session, Account, [account.id], organization_id="other") == {}


def test_order_version_chain_follows_links_newest_first() -> None:
    session = make_session()
    t0 = datetime(2025, 1, 1)
    v1 = make_account(session, t0)
    v2 = supersede(session, Account, v1, {"name": "A"}, t0 + timedelta(hours=1))
    v3 = supersede(session, Account, v2, {"name": "B"}, t0 + timedelta(hours=2))
    session.commit()

    ordered = order_version_chain([v2, v1, v3])
    assert [row.version_id for row in ordered] == [v3.version_id, v2.version_id, v1.version_id]
    assert order_version_chain([]) == []


def test_stored_versions_cannot_be_edited_in_place() -> None:
    session = make_session()
    t0 = datetime(2025, 1, 1)
    account = make_account(session, t0)

    account.name = "Renamed"
    with pytest.raises(ImmutableVersion):
        session.flush()
    session.rollback()

    successor = supersede(session, Account, account, {"name": "Operating"}, t0 + timedelta(hours=1))
    session.commit()

    account.balance_cents = 500
    with pytest.raises(ImmutableVersion):
        session.flush()
    session.rollback()

    successor.balance_cents = 500
    session.commit()
    assert resolve_current(session, Account, [account.id])[account.id].balance_cents == 500

    session.delete(successor)
    with pytest.raises(ImmutableVersion):
        session.flush()
    session.rollback()


def test_database_allows_one_open_version_per_id() -> None:
    session = make_session()
    account = make_account(session, datetime(2025, 1, 1))

    twin = open_initial_version(
        Account,
        datetime(2025, 1, 2),
        organization_id=ORG,
        code="1001",
        name="Twin",
        type=AccountType.asset,
        balance_cents=0,
    )
    twin.id = account.id
    session.add(twin)
    with pytest.raises(IntegrityError):
        session.flush()
    session.rollback()


def test_database_rejects_duplicate_live_account_code() -> None:
    session = make_session()
    make_account(session, datetime(2025, 1, 1))

    session.add(
        open_initial_version(
            Account,
            datetime(2025, 1, 2),
            organization_id=ORG,
            code="1000",
            name="Duplicate",
            type=AccountType.asset,
            balance_cents=0,
        )
    )
    with pytest.raises(IntegrityError):
        session.flush()
    session.rollback()
