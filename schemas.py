from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import (
    AccountType,
    BillDirection,
    BillStatus,
    ContactType,
    FiscalPeriodStatus,
    TransactionType,
)


def _reject_nulls(values: dict, fields: tuple[str, ...]) -> dict:
    for name in fields:
        if name in values and values[name] is None:
            raise ValueError(f"{name} cannot be null")
    return values


class AccountIn(BaseModel):
    code: str = Field(..., min_length=1, max_length=20)
    name: str = Field(..., min_length=1, max_length=120)
    type: AccountType
    description: Optional[str] = None
    parent_account_id: Optional[str] = None
    is_active: bool = True


class AccountUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: Optional[str] = Field(default=None, min_length=1, max_length=20)
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = None
    parent_account_id: Optional[str] = None
    is_active: Optional[bool] = None
    change_reason: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _required_stay_set(cls, values):
        if isinstance(values, dict):
            return _reject_nulls(values, ("code", "name", "is_active"))
        return values


class ContactIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    contact_type: ContactType = ContactType.individual
    email: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=50)
    address: Optional[str] = None
    notes: Optional[str] = None


class ContactUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    contact_type: Optional[ContactType] = None
    email: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=50)
    address: Optional[str] = None
    notes: Optional[str] = None
    is_active: Optional[bool] = None

    @model_validator(mode="before")
    @classmethod
    def _required_stay_set(cls, values):
        if isinstance(values, dict):
            return _reject_nulls(values, ("name", "contact_type", "is_active"))
        return values


class TransactionIn(BaseModel):
    transaction_date: date
    amount_cents: int = Field(..., gt=0)
    type: TransactionType
    debit_account_id: str
    credit_account_id: str
    description: str = Field(..., min_length=1, max_length=500)
    contact_id: Optional[str] = None
    reference_number: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _distinct_accounts(self):
        if self.debit_account_id == self.credit_account_id:
            raise ValueError("Debit and credit accounts must differ")
        return self


class TransactionUpdate(BaseModel):
    """Fields left unset are carried over from the current version."""

    model_config = ConfigDict(extra="forbid")

    transaction_date: Optional[date] = None
    amount_cents: Optional[int] = Field(default=None, gt=0)
    type: Optional[TransactionType] = None
    debit_account_id: Optional[str] = None
    credit_account_id: Optional[str] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=500)
    contact_id: Optional[str] = None
    reference_number: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = None
    change_reason: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _required_stay_set(cls, values):
        if isinstance(values, dict):
            return _reject_nulls(
                values,
                (
                    "transaction_date",
                    "amount_cents",
                    "type",
                    "debit_account_id",
                    "credit_account_id",
                    "description",
                ),
            )
        return values


class VoidIn(BaseModel):
    void_reason: str = Field(..., min_length=1, max_length=500)


class ReconcileIn(BaseModel):
    transaction_ids: list[str] = Field(..., min_length=1)


class BillIn(BaseModel):
    contact_id: str
    direction: BillDirection
    amount_cents: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=500)
    issue_date: date
    due_date: Optional[date] = None
    notes: Optional[str] = None
    # PAYABLE: the payable (credit) and expense/asset (debit) accounts.
    # RECEIVABLE: the receivable (debit) and revenue (credit) accounts.
    liability_or_asset_account_id: str
    expense_or_revenue_account_id: str

    @model_validator(mode="after")
    def _check_dates(self):
        if self.due_date is not None and self.due_date < self.issue_date:
            raise ValueError("Due date cannot be before issue date")
        return self


class BillUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: Optional[str] = Field(default=None, min_length=1, max_length=500)
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None
    status: Optional[BillStatus] = None

    @model_validator(mode="before")
    @classmethod
    def _required_stay_set(cls, values):
        if isinstance(values, dict):
            return _reject_nulls(values, ("description", "issue_date", "status"))
        return values


class PaymentIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    transaction_date: date
    cash_account_id: str
    description: Optional[str] = Field(default=None, max_length=500)
    reference_number: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = None


class PaymentLinkIn(BaseModel):
    transaction_id: str
    notes: Optional[str] = None


class FiscalPeriodIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def _check_range(self):
        if self.end_date < self.start_date:
            raise ValueError("End date cannot be before start date")
        return self


class ColumnMapping(BaseModel):
    """Zero-based column positions within a CSV statement row."""

    date: int = Field(..., ge=0)
    description: int = Field(..., ge=0)
    amount: Optional[int] = Field(default=None, ge=0)
    debit: Optional[int] = Field(default=None, ge=0)
    credit: Optional[int] = Field(default=None, ge=0)
    reference: Optional[int] = Field(default=None, ge=0)
    category: Optional[int] = Field(default=None, ge=0)
    balance: Optional[int] = Field(default=None, ge=0)
    has_header: bool = True

    @model_validator(mode="after")
    def _needs_amount_source(self):
        if self.amount is None and (self.debit is None or self.credit is None):
            raise ValueError("Mapping needs an amount column or debit and credit columns")
        return self


class StatementLine(BaseModel):
    row_number: int
    date: date
    description: str
    amount_cents: int
    reference: Optional[str] = None
    category: Optional[str] = None
    # Running balance printed by the bank, informational only.
    balance_cents: Optional[int] = None


class ParsedStatement(BaseModel):
    lines: list[StatementLine] = Field(default_factory=list)
    detected_mapping: Optional[ColumnMapping] = None
    warnings: list[str] = Field(default_factory=list)


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    version_id: str
    previous_version_id: Optional[str]
    organization_id: str
    code: str
    name: str
    type: AccountType
    description: Optional[str]
    parent_account_id: Optional[str]
    is_active: bool
    balance_cents: int
    valid_from: datetime
    valid_to: datetime
    is_deleted: bool


class ContactOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    version_id: str
    organization_id: str
    name: str
    contact_type: ContactType
    email: Optional[str]
    phone: Optional[str]
    is_active: bool


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    version_id: str
    previous_version_id: Optional[str]
    organization_id: str
    transaction_date: date
    amount_cents: int
    type: TransactionType
    debit_account_id: str
    credit_account_id: str
    description: str
    contact_id: Optional[str]
    reference_number: Optional[str]
    notes: Optional[str]
    is_voided: bool
    voided_at: Optional[datetime]
    voided_by: Optional[str]
    void_reason: Optional[str]
    reconciled: bool
    changed_by: Optional[str]
    valid_from: datetime
    valid_to: datetime
    system_from: datetime
    system_to: datetime


class BillPaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    bill_id: str
    transaction_id: str
    notes: Optional[str]
    created_at: datetime


class BillOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    contact_id: str
    direction: BillDirection
    status: BillStatus
    amount_cents: int
    amount_paid_cents: int
    description: str
    issue_date: date
    due_date: Optional[date]
    paid_in_full_date: Optional[datetime]
    notes: Optional[str]
    accrual_transaction_id: Optional[str]
    created_by: Optional[str]


class PaymentWithTransactionOut(BaseModel):
    payment: BillPaymentOut
    transaction: Optional[TransactionOut]


class BillWithPaymentsOut(BaseModel):
    bill: BillOut
    contact: Optional[ContactOut]
    accrual_transaction: Optional[TransactionOut]
    payments: list[PaymentWithTransactionOut]


class BillPageOut(BaseModel):
    bills: list[BillOut]
    total_count: int


class FiscalPeriodOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    name: str
    start_date: date
    end_date: date
    status: FiscalPeriodStatus
    closed_at: Optional[datetime]
    closed_by: Optional[str]
    reopened_at: Optional[datetime]
    closing_transaction_ids: list[str]


class BalanceVerificationOut(BaseModel):
    account_id: str
    stored_balance_cents: int
    calculated_balance_cents: int
    is_valid: bool
    difference_cents: int


class MatchResultOut(BaseModel):
    row_number: int
    transaction_id: str
    score: float
    exact: bool
    reason: str


class MatchRequestIn(BaseModel):
    account_id: str
    lines: list[StatementLine]

    @field_validator("lines")
    @classmethod
    def _non_empty(cls, value: list[StatementLine]) -> list[StatementLine]:
        if not value:
            raise ValueError("At least one statement line is required")
        return value


class ClosingEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    account_id: str
    account_code: str
    account_name: str
    account_type: AccountType
    balance_cents: int
    debit_account_id: str
    credit_account_id: str
    amount_cents: int


class ClosePreviewOut(BaseModel):
    fund_balance_account_id: str
    entries: list[ClosingEntryOut]
    total_revenue_cents: int
    total_expenses_cents: int
    net_surplus_cents: int


class IntegrityOut(BaseModel):
    is_valid: bool
    total_debits_cents: int
    total_credits_cents: int
    difference_cents: int
