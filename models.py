from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from database import Base
from temporal import (
    LIVE_VERSION_SQL,
    MAX_DATE,
    OPEN_VERSION_SQL,
    new_id,
    reject_in_place_edits,
    utcnow,
)


class AccountType(str, Enum):
    asset = "ASSET"
    liability = "LIABILITY"
    equity = "EQUITY"
    revenue = "REVENUE"
    expense = "EXPENSE"


class TransactionType(str, Enum):
    income = "INCOME"
    expense = "EXPENSE"
    transfer = "TRANSFER"
    closing = "CLOSING"


class ContactType(str, Enum):
    individual = "INDIVIDUAL"
    organization = "ORGANIZATION"


class BillDirection(str, Enum):
    payable = "PAYABLE"
    receivable = "RECEIVABLE"


class BillStatus(str, Enum):
    draft = "DRAFT"
    pending = "PENDING"
    partial = "PARTIAL"
    paid = "PAID"
    overdue = "OVERDUE"
    cancelled = "CANCELLED"


class FiscalPeriodStatus(str, Enum):
    open = "OPEN"
    closed = "CLOSED"


def _value_enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


ACCOUNT_TYPE_ENUM = _value_enum(AccountType, "accounttype")
TRANSACTION_TYPE_ENUM = _value_enum(TransactionType, "transactiontype")
CONTACT_TYPE_ENUM = _value_enum(ContactType, "contacttype")
BILL_DIRECTION_ENUM = _value_enum(BillDirection, "billdirection")
BILL_STATUS_ENUM = _value_enum(BillStatus, "billstatus")
FISCAL_PERIOD_STATUS_ENUM = _value_enum(FiscalPeriodStatus, "fiscalperiodstatus")


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


def unique_open_index(name: str, *columns: str, where: str = OPEN_VERSION_SQL) -> Index:
    return Index(
        name,
        *columns,
        unique=True,
        sqlite_where=text(where),
        postgresql_where=text(where),
    )


class TemporalMixin:
    __versioned__ = True

    id: Mapped[str] = mapped_column(String(36), nullable=False)
    version_id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=new_id
    )
    previous_version_id: Mapped[Optional[str]] = mapped_column(String(36))
    valid_from: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    valid_to: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=MAX_DATE
    )
    system_from: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    system_to: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=MAX_DATE
    )
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    deleted_by: Mapped[Optional[str]] = mapped_column(String(64))
    changed_by: Mapped[Optional[str]] = mapped_column(String(64))
    change_reason: Mapped[Optional[str]] = mapped_column(Text)


class Account(Base, TemporalMixin, TimestampMixin):
    __tablename__ = "accounts"

    organization_id: Mapped[str] = mapped_column(String(36), nullable=False)
    code: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[AccountType] = mapped_column(ACCOUNT_TYPE_ENUM, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    parent_account_id: Mapped[Optional[str]] = mapped_column(String(36))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    balance_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Posting shifts the stored balance of the open version.
    __mutable_columns__ = ("balance_cents",)

    __table_args__ = (
        Index("ix_accounts_current", "id", "valid_to"),
        Index("ix_accounts_org_current", "organization_id", "valid_to"),
        Index("ix_accounts_org_code", "organization_id", "code"),
        unique_open_index("uq_accounts_open_version", "id"),
        unique_open_index(
            "uq_accounts_org_code_current",
            "organization_id",
            "code",
            where=LIVE_VERSION_SQL,
        ),
    )


class Contact(Base, TemporalMixin, TimestampMixin):
    __tablename__ = "contacts"

    organization_id: Mapped[str] = mapped_column(String(36), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    contact_type: Mapped[ContactType] = mapped_column(
        CONTACT_TYPE_ENUM, default=ContactType.individual, nullable=False
    )
    email: Mapped[Optional[str]] = mapped_column(String(200))
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    address: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index("ix_contacts_current", "id", "valid_to"),
        Index("ix_contacts_org_current", "organization_id", "valid_to"),
        unique_open_index("uq_contacts_open_version", "id"),
    )


class Transaction(Base, TemporalMixin, TimestampMixin):
    __tablename__ = "transactions"

    organization_id: Mapped[str] = mapped_column(String(36), nullable=False)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        TRANSACTION_TYPE_ENUM, nullable=False
    )
    debit_account_id: Mapped[str] = mapped_column(String(36), nullable=False)
    credit_account_id: Mapped[str] = mapped_column(String(36), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    contact_id: Mapped[Optional[str]] = mapped_column(String(36))
    reference_number: Mapped[Optional[str]] = mapped_column(String(100))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    is_voided: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    voided_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    voided_by: Mapped[Optional[str]] = mapped_column(String(64))
    void_reason: Mapped[Optional[str]] = mapped_column(Text)
    reconciled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reconciled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_transactions_current", "id", "valid_to"),
        Index("ix_transactions_org_current", "organization_id", "valid_to"),
        Index("ix_transactions_org_date", "organization_id", "transaction_date"),
        unique_open_index("uq_transactions_open_version", "id"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "debit_account_id <> credit_account_id",
            name="ck_transactions_distinct_accounts",
        ),
    )


class Bill(Base, TimestampMixin):
    __tablename__ = "bills"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False)
    contact_id: Mapped[str] = mapped_column(String(36), nullable=False)
    direction: Mapped[BillDirection] = mapped_column(
        BILL_DIRECTION_ENUM, nullable=False
    )
    status: Mapped[BillStatus] = mapped_column(
        BILL_STATUS_ENUM, default=BillStatus.draft, nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_paid_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    paid_in_full_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    accrual_transaction_id: Mapped[Optional[str]] = mapped_column(String(36))
    created_by: Mapped[Optional[str]] = mapped_column(String(64))

    payments: Mapped[list["BillPayment"]] = relationship(
        "BillPayment",
        back_populates="bill",
        cascade="all, delete-orphan",
        order_by="BillPayment.created_at",
    )

    __table_args__ = (
        Index("ix_bills_org_status", "organization_id", "status"),
        Index("ix_bills_org_direction", "organization_id", "direction"),
        Index("ix_bills_contact", "contact_id"),
        Index("ix_bills_due_date", "due_date"),
        CheckConstraint("amount_cents > 0", name="ck_bills_amount_positive"),
    )


class BillPayment(Base):
    __tablename__ = "bill_payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    bill_id: Mapped[str] = mapped_column(ForeignKey("bills.id"), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(36), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    bill: Mapped["Bill"] = relationship("Bill", back_populates="payments")

    __table_args__ = (
        UniqueConstraint("bill_id", "transaction_id", name="uq_bill_payment_txn"),
        Index("ix_bill_payments_transaction", "transaction_id"),
    )


class FiscalPeriod(Base, TimestampMixin):
    __tablename__ = "fiscal_periods"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[FiscalPeriodStatus] = mapped_column(
        FISCAL_PERIOD_STATUS_ENUM, default=FiscalPeriodStatus.open, nullable=False
    )
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    closed_by: Mapped[Optional[str]] = mapped_column(String(64))
    reopened_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    reopened_by: Mapped[Optional[str]] = mapped_column(String(64))
    closing_transaction_ids: Mapped[list[str]] = mapped_column(
        JSON, default=list, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "start_date", name="uq_fiscal_period_org_start"
        ),
        Index("ix_fiscal_periods_org_status", "organization_id", "status"),
        CheckConstraint("start_date <= end_date", name="ck_fiscal_period_range"),
    )


event.listen(Session, "before_flush", reject_in_place_edits)
