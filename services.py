from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rapidfuzz.distance import Levenshtein

from balances import (
    IntegrityCheck,
    calculate_hierarchical_balance,
    recalculate_account_balance,
    reverse_account_balances,
    update_account_balances,
    verify_double_entry_integrity,
)
from config import Settings, get_settings
from database import atomic
from errors import (
    AlreadyReconciled,
    AlreadyVoided,
    CannotCancelPaidBill,
    InvalidStatusTransition,
    NotFound,
    NotFoundOrVoided,
    PeriodClosed,
    ValidationError,
)
from models import (
    Account,
    AccountType,
    Bill,
    BillDirection,
    BillPayment,
    BillStatus,
    Contact,
    FiscalPeriod,
    FiscalPeriodStatus,
    Transaction,
    TransactionType,
)
from schemas import (
    AccountIn,
    AccountUpdate,
    BillIn,
    BillUpdate,
    ContactIn,
    ContactUpdate,
    FiscalPeriodIn,
    PaymentIn,
    PaymentLinkIn,
    StatementLine,
    TransactionIn,
    TransactionUpdate,
    VoidIn,
)
from temporal import (
    as_of_filter,
    collect_ids,
    current_version_filter,
    open_initial_version,
    order_version_chain,
    resolve_current,
    soft_delete,
    supersede,
    utcnow,
)

logger = logging.getLogger(__name__)

BILL_TRANSITIONS: dict[BillStatus, frozenset[BillStatus]] = {
    BillStatus.draft: frozenset({BillStatus.pending, BillStatus.cancelled}),
    BillStatus.pending: frozenset(
        {
            BillStatus.partial,
            BillStatus.paid,
            BillStatus.overdue,
            BillStatus.cancelled,
        }
    ),
    BillStatus.partial: frozenset(
        {BillStatus.paid, BillStatus.overdue, BillStatus.cancelled}
    ),
    BillStatus.overdue: frozenset(
        {BillStatus.partial, BillStatus.paid, BillStatus.cancelled}
    ),
    BillStatus.paid: frozenset(),
    BillStatus.cancelled: frozenset(),
}


def can_transition(current: BillStatus, target: BillStatus) -> bool:
    return BillStatus(target) in BILL_TRANSITIONS[BillStatus(current)]


@dataclass
class TransactionFilters:
    account_id: Optional[str] = None
    type: Optional[TransactionType] = None
    start: Optional[date] = None
    end: Optional[date] = None
    query: Optional[str] = None
    reconciled: Optional[bool] = None
    include_voided: bool = False


@dataclass
class BillFilters:
    direction: Optional[BillDirection] = None
    status: Optional[BillStatus] = None
    contact_id: Optional[str] = None
    search: Optional[str] = None
    page: int = 1
    limit: int = 50


@dataclass
class PaymentWithTransaction:
    payment: BillPayment
    transaction: Optional[Transaction]


@dataclass
class BillWithPayments:
    bill: Bill
    contact: Optional[Contact]
    accrual_transaction: Optional[Transaction]
    payments: list[PaymentWithTransaction] = field(default_factory=list)


@dataclass
class BillPage:
    bills: list[Bill]
    total_count: int
    contacts: dict[str, Contact] = field(default_factory=dict)


@dataclass(frozen=True)
class BalanceVerification:
    account_id: str
    stored_balance_cents: int
    calculated_balance_cents: int

    @property
    def is_valid(self) -> bool:
        return self.stored_balance_cents == self.calculated_balance_cents

    @property
    def difference_cents(self) -> int:
        return self.stored_balance_cents - self.calculated_balance_cents


@dataclass(frozen=True)
class ClosingEntry:
    account_id: str
    account_code: str
    account_name: str
    account_type: AccountType
    balance_cents: int
    debit_account_id: str
    credit_account_id: str
    amount_cents: int


@dataclass
class ClosePreview:
    fund_balance_account_id: str
    entries: list[ClosingEntry] = field(default_factory=list)
    total_revenue_cents: int = 0
    total_expenses_cents: int = 0

    @property
    def net_surplus_cents(self) -> int:
        return self.total_revenue_cents - self.total_expenses_cents


@dataclass(frozen=True)
class MatchResult:
    row_number: int
    transaction_id: str
    score: float
    exact: bool
    reason: str


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _code_taken(
        self, organization_id: str, code: str, exclude_id: Optional[str] = None
    ) -> bool:
        stmt = select(Account.id).where(
            *current_version_filter(Account, organization_id=organization_id, code=code)
        )
        if exclude_id:
            stmt = stmt.where(Account.id != exclude_id)
        return self.session.scalar(stmt.limit(1)) is not None

    def _check_parent(
        self,
        organization_id: str,
        parent_id: Optional[str],
        account_id: Optional[str] = None,
    ) -> None:
        if not parent_id:
            return
        accounts = {
            account.id: account for account in self.list(organization_id)
        }
        if parent_id not in accounts:
            raise ValidationError("Parent account not found")
        node: Optional[str] = parent_id
        while node is not None:
            if node == account_id:
                raise ValidationError("Account cannot be its own ancestor")
            parent = accounts.get(node)
            node = parent.parent_account_id if parent else None

    def create(
        self, organization_id: str, data: AccountIn, actor: Optional[str] = None
    ) -> Account:
        with atomic(self.session):
            if self._code_taken(organization_id, data.code):
                raise ValidationError(f"Account code {data.code} is already in use")
            self._check_parent(organization_id, data.parent_account_id)
            account = open_initial_version(
                Account,
                utcnow(),
                actor,
                organization_id=organization_id,
                balance_cents=0,
                **data.model_dump(),
            )
            self.session.add(account)
            try:
                self.session.flush()
            except IntegrityError as exc:
                # Lost a race with a concurrent create of the same code.
                raise ValidationError(
                    f"Account code {data.code} is already in use"
                ) from exc
        logger.info(
            f"account_create: id={account.id} org={organization_id} code={account.code}"
        )
        return account

    def get(self, account_id: str, organization_id: str) -> Account:
        account = resolve_current(
            self.session, Account, [account_id], organization_id=organization_id
        ).get(account_id)
        if account is None:
            raise NotFound("Account not found")
        return account

    def list(
        self, organization_id: str, *, include_inactive: bool = True
    ) -> list[Account]:
        stmt = (
            select(Account)
            .where(*current_version_filter(Account, organization_id=organization_id))
            .order_by(Account.code)
        )
        if not include_inactive:
            stmt = stmt.where(Account.is_active.is_(True))
        return list(self.session.scalars(stmt).all())

    def update(
        self,
        account_id: str,
        organization_id: str,
        updates: AccountUpdate,
        actor: Optional[str] = None,
    ) -> Account:
        changes = updates.model_dump(exclude_unset=True)
        with atomic(self.session):
            current = self._load_for_update(account_id, organization_id)
            code = changes.get("code")
            if code and code != current.code:
                if self._code_taken(organization_id, code, exclude_id=account_id):
                    raise ValidationError(f"Account code {code} is already in use")
            if "parent_account_id" in changes:
                self._check_parent(
                    organization_id, changes["parent_account_id"], account_id
                )
            successor = supersede(
                self.session, Account, current, changes, utcnow(), actor
            )
        logger.info(
            f"account_update: id={account_id} version={successor.version_id} "
            f"fields={sorted(changes)}"
        )
        return successor

    def delete(
        self, account_id: str, organization_id: str, actor: Optional[str] = None
    ) -> Account:
        with atomic(self.session):
            current = self._load_for_update(account_id, organization_id)
            if current.balance_cents != 0:
                raise ValidationError("Only accounts with a zero balance can be deleted")
            children = self.session.scalar(
                select(func.count())
                .select_from(Account)
                .where(
                    *current_version_filter(
                        Account,
                        organization_id=organization_id,
                        parent_account_id=account_id,
                    )
                )
            )
            if children:
                raise ValidationError("Account still has child accounts")
            tombstone = soft_delete(self.session, Account, current, utcnow(), actor)
        logger.info(f"account_delete: id={account_id} actor={actor}")
        return tombstone

    def _load_for_update(self, account_id: str, organization_id: str) -> Account:
        account = resolve_current(
            self.session,
            Account,
            [account_id],
            organization_id=organization_id,
            for_update=True,
        ).get(account_id)
        if account is None:
            raise NotFound("Account not found")
        return account

    def history(self, account_id: str, organization_id: str) -> list[Account]:
        rows = self.session.scalars(
            select(Account).where(
                Account.id == account_id, Account.organization_id == organization_id
            )
        ).all()
        return order_version_chain(rows)

    def as_of(
        self, account_id: str, organization_id: str, at: datetime
    ) -> Optional[Account]:
        stmt = select(Account).where(
            *as_of_filter(Account, at, id=account_id, organization_id=organization_id)
        )
        return self.session.scalar(stmt)

    def verify_balance(
        self, account_id: str, organization_id: str
    ) -> BalanceVerification:
        account = self.get(account_id, organization_id)
        postings = self.session.scalars(
            select(Transaction).where(
                *current_version_filter(Transaction, organization_id=organization_id),
                Transaction.is_voided.is_(False),
                or_(
                    Transaction.debit_account_id == account_id,
                    Transaction.credit_account_id == account_id,
                ),
            )
        ).all()
        calculated = recalculate_account_balance(postings, account_id, account.type)
        result = BalanceVerification(account_id, account.balance_cents, calculated)
        if not result.is_valid:
            logger.warning(
                f"balance_mismatch: account={account_id} stored={account.balance_cents} "
                f"calculated={calculated}"
            )
        return result

    def verify_integrity(self, organization_id: str) -> IntegrityCheck:
        return verify_double_entry_integrity(self.list(organization_id))

    def hierarchical_balance(self, account_id: str, organization_id: str) -> int:
        self.get(account_id, organization_id)
        return calculate_hierarchical_balance(account_id, self.list(organization_id))


class ContactService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(
        self, organization_id: str, data: ContactIn, actor: Optional[str] = None
    ) -> Contact:
        with atomic(self.session):
            contact = open_initial_version(
                Contact,
                utcnow(),
                actor,
                organization_id=organization_id,
                is_active=True,
                **data.model_dump(),
            )
            self.session.add(contact)
            self.session.flush()
        logger.info(f"contact_create: id={contact.id} org={organization_id}")
        return contact

    def get(self, contact_id: str, organization_id: str) -> Contact:
        contact = resolve_current(
            self.session, Contact, [contact_id], organization_id=organization_id
        ).get(contact_id)
        if contact is None:
            raise NotFound("Contact not found")
        return contact

    def list(self, organization_id: str, query: Optional[str] = None) -> list[Contact]:
        stmt = (
            select(Contact)
            .where(*current_version_filter(Contact, organization_id=organization_id))
            .order_by(Contact.name)
        )
        if query:
            stmt = stmt.where(func.lower(Contact.name).like(f"%{query.lower()}%"))
        return list(self.session.scalars(stmt).all())

    def update(
        self,
        contact_id: str,
        organization_id: str,
        updates: ContactUpdate,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Contact:
        changes = updates.model_dump(exclude_unset=True)
        with atomic(self.session):
            current = resolve_current(
                self.session,
                Contact,
                [contact_id],
                organization_id=organization_id,
                for_update=True,
            ).get(contact_id)
            if current is None:
                raise NotFound("Contact not found")
            changes["change_reason"] = reason
            successor = supersede(
                self.session, Contact, current, changes, utcnow(), actor
            )
        logger.info(f"contact_update: id={contact_id} version={successor.version_id}")
        return successor

    def delete(
        self, contact_id: str, organization_id: str, actor: Optional[str] = None
    ) -> Contact:
        with atomic(self.session):
            current = self.get(contact_id, organization_id)
            tombstone = soft_delete(self.session, Contact, current, utcnow(), actor)
        logger.info(f"contact_delete: id={contact_id} actor={actor}")
        return tombstone

    def history(self, contact_id: str, organization_id: str) -> list[Contact]:
        rows = self.session.scalars(
            select(Contact).where(
                Contact.id == contact_id, Contact.organization_id == organization_id
            )
        ).all()
        return order_version_chain(rows)


class FiscalPeriodService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, organization_id: str, data: FiscalPeriodIn) -> FiscalPeriod:
        with atomic(self.session):
            overlapping = self.session.scalar(
                select(FiscalPeriod).where(
                    FiscalPeriod.organization_id == organization_id,
                    FiscalPeriod.start_date <= data.end_date,
                    FiscalPeriod.end_date >= data.start_date,
                )
            )
            if overlapping:
                raise ValidationError(
                    f'Fiscal period overlaps with existing period "{overlapping.name}"'
                )
            period = FiscalPeriod(
                organization_id=organization_id,
                name=data.name,
                start_date=data.start_date,
                end_date=data.end_date,
                status=FiscalPeriodStatus.open,
                closing_transaction_ids=[],
            )
            self.session.add(period)
            self.session.flush()
        logger.info(
            f"fiscal_period_create: id={period.id} org={organization_id} "
            f"start={period.start_date} end={period.end_date}"
        )
        return period

    def get(self, period_id: str, organization_id: str) -> FiscalPeriod:
        period = self.session.scalar(
            select(FiscalPeriod).where(
                FiscalPeriod.id == period_id,
                FiscalPeriod.organization_id == organization_id,
            )
        )
        if period is None:
            raise NotFound("Fiscal period not found")
        return period

    def list(self, organization_id: str) -> list[FiscalPeriod]:
        stmt = (
            select(FiscalPeriod)
            .where(FiscalPeriod.organization_id == organization_id)
            .order_by(FiscalPeriod.start_date.desc())
        )
        return list(self.session.scalars(stmt).all())

    def closed_period_for(
        self, organization_id: str, on: date
    ) -> Optional[FiscalPeriod]:
        return self.session.scalar(
            select(FiscalPeriod).where(
                FiscalPeriod.organization_id == organization_id,
                FiscalPeriod.status == FiscalPeriodStatus.closed,
                FiscalPeriod.start_date <= on,
                FiscalPeriod.end_date >= on,
            )
        )

    def is_date_in_closed_period(self, organization_id: str, on: date) -> bool:
        return self.closed_period_for(organization_id, on) is not None

    def ensure_open(self, organization_id: str, on: date, action: str) -> None:
        period = self.closed_period_for(organization_id, on)
        if period is not None:
            raise PeriodClosed(
                f'Cannot {action} transaction in closed fiscal period "{period.name}"'
            )

    def preview_close(
        self, period_id: str, organization_id: str, fund_balance_account_id: str
    ) -> ClosePreview:
        period = self.get(period_id, organization_id)
        if period.status != FiscalPeriodStatus.open:
            raise InvalidStatusTransition(
                f"Cannot close a period with status {period.status.value}"
            )
        accounts = AccountService(self.session)
        fund = accounts.get(fund_balance_account_id, organization_id)
        if fund.type != AccountType.equity:
            raise ValidationError("Fund balance account must be an equity account")

        preview = ClosePreview(fund_balance_account_id=fund.id)
        for account in accounts.list(organization_id, include_inactive=False):
            if account.type not in (AccountType.revenue, AccountType.expense):
                continue
            balance = account.balance_cents
            if balance == 0:
                continue
            # Debiting revenue or crediting expense brings a positive balance to zero.
            if account.type == AccountType.revenue:
                preview.total_revenue_cents += balance
                debit, credit = account.id, fund.id
            else:
                preview.total_expenses_cents += balance
                debit, credit = fund.id, account.id
            if balance < 0:
                debit, credit = credit, debit
            preview.entries.append(
                ClosingEntry(
                    account_id=account.id,
                    account_code=account.code,
                    account_name=account.name,
                    account_type=account.type,
                    balance_cents=balance,
                    debit_account_id=debit,
                    credit_account_id=credit,
                    amount_cents=abs(balance),
                )
            )
        return preview

    def close(
        self,
        period_id: str,
        organization_id: str,
        actor: Optional[str] = None,
        fund_balance_account_id: Optional[str] = None,
    ) -> FiscalPeriod:
        """
        Lock a period against ledger changes.

        With a fund balance account, revenue and expense balances are first
        zeroed into it by CLOSING transactions dated on the period's last day.
        """
        with atomic(self.session):
            period = self.get(period_id, organization_id)
            if period.status != FiscalPeriodStatus.open:
                raise InvalidStatusTransition(
                    f"Cannot close a period with status {period.status.value}"
                )
            closing_ids: list[str] = []
            if fund_balance_account_id:
                preview = self.preview_close(
                    period_id, organization_id, fund_balance_account_id
                )
                ledger = TransactionService(self.session)
                for entry in preview.entries:
                    txn = ledger.create(
                        organization_id,
                        TransactionIn(
                            transaction_date=period.end_date,
                            amount_cents=entry.amount_cents,
                            type=TransactionType.closing,
                            debit_account_id=entry.debit_account_id,
                            credit_account_id=entry.credit_account_id,
                            description=f"Year-end closing entry: {period.name}",
                        ),
                        actor,
                    )
                    closing_ids.append(txn.id)
            now = utcnow()
            period.status = FiscalPeriodStatus.closed
            period.closed_at = now
            period.closed_by = actor
            period.closing_transaction_ids = closing_ids
            self.session.flush()
        logger.info(
            f"fiscal_period_close: id={period_id} org={organization_id} "
            f"closing_entries={len(closing_ids)}"
        )
        return period

    def reopen(
        self, period_id: str, organization_id: str, actor: Optional[str] = None
    ) -> FiscalPeriod:
        with atomic(self.session):
            period = self.get(period_id, organization_id)
            if period.status != FiscalPeriodStatus.closed:
                raise InvalidStatusTransition(
                    f"Cannot reopen a period with status {period.status.value}"
                )
            closing_ids = list(period.closing_transaction_ids or [])
            now = utcnow()
            period.status = FiscalPeriodStatus.open
            period.reopened_at = now
            period.reopened_by = actor
            period.closing_transaction_ids = []
            self.session.flush()

            ledger = TransactionService(self.session)
            current = resolve_current(
                self.session, Transaction, closing_ids, organization_id=organization_id
            )
            for txn_id in closing_ids:
                txn = current.get(txn_id)
                if txn is None or txn.is_voided:
                    continue
                ledger.void(
                    txn_id,
                    organization_id,
                    VoidIn(void_reason=f'Period "{period.name}" reopened'),
                    actor,
                )
        logger.info(
            f"fiscal_period_reopen: id={period_id} org={organization_id} "
            f"voided={len(closing_ids)}"
        )
        return period


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.periods = FiscalPeriodService(session)

    def _check_contact(self, organization_id: str, contact_id: Optional[str]) -> None:
        if not contact_id:
            return
        found = resolve_current(
            self.session, Contact, [contact_id], organization_id=organization_id
        )
        if contact_id not in found:
            raise ValidationError("Contact not found")

    def create(
        self, organization_id: str, data: TransactionIn, actor: Optional[str] = None
    ) -> Transaction:
        with atomic(self.session):
            self.periods.ensure_open(organization_id, data.transaction_date, "create")
            self._check_contact(organization_id, data.contact_id)
            txn = open_initial_version(
                Transaction,
                utcnow(),
                actor,
                organization_id=organization_id,
                is_voided=False,
                reconciled=False,
                **data.model_dump(),
            )
            self.session.add(txn)
            self.session.flush()
            update_account_balances(
                self.session,
                organization_id,
                txn.debit_account_id,
                txn.credit_account_id,
                txn.amount_cents,
            )
        logger.info(
            f"transaction_create: id={txn.id} org={organization_id} "
            f"amount_cents={txn.amount_cents} type={txn.type.value}"
        )
        return txn

    def _load_current(self, transaction_id: str, organization_id: str) -> Transaction:
        txn = self.session.scalar(
            select(Transaction)
            .where(
                *current_version_filter(
                    Transaction, id=transaction_id, organization_id=organization_id
                )
            )
            .with_for_update()
        )
        if txn is None:
            raise NotFoundOrVoided("Transaction not found or already voided")
        if txn.is_voided:
            raise AlreadyVoided("Transaction not found or already voided")
        if txn.reconciled:
            raise AlreadyReconciled("Reconciled transactions cannot be changed")
        return txn

    def edit(
        self,
        transaction_id: str,
        organization_id: str,
        updates: TransactionUpdate,
        actor: Optional[str] = None,
    ) -> Transaction:
        changes = updates.model_dump(exclude_unset=True)
        with atomic(self.session):
            current = self._load_current(transaction_id, organization_id)
            self.periods.ensure_open(organization_id, current.transaction_date, "edit")
            new_date = changes.get("transaction_date", current.transaction_date)
            if new_date != current.transaction_date:
                self.periods.ensure_open(organization_id, new_date, "edit")
            debit = changes.get("debit_account_id", current.debit_account_id)
            credit = changes.get("credit_account_id", current.credit_account_id)
            if debit == credit:
                raise ValidationError("Debit and credit accounts must differ")
            if changes.get("contact_id"):
                self._check_contact(organization_id, changes["contact_id"])

            old_amount = current.amount_cents
            reverse_account_balances(
                self.session,
                organization_id,
                current.debit_account_id,
                current.credit_account_id,
                old_amount,
            )
            changes.update(
                is_voided=False,
                voided_at=None,
                voided_by=None,
                void_reason=None,
            )
            successor = supersede(
                self.session, Transaction, current, changes, utcnow(), actor
            )
            update_account_balances(
                self.session,
                organization_id,
                successor.debit_account_id,
                successor.credit_account_id,
                successor.amount_cents,
            )
            if successor.amount_cents != old_amount:
                BillService(self.session).recalculate_for_transaction(successor.id)
        logger.info(
            f"transaction_edit: id={transaction_id} version={successor.version_id} "
            f"previous={successor.previous_version_id} actor={actor}"
        )
        return successor

    def void(
        self,
        transaction_id: str,
        organization_id: str,
        data: VoidIn,
        actor: Optional[str] = None,
    ) -> Transaction:
        with atomic(self.session):
            current = self._load_current(transaction_id, organization_id)
            self.periods.ensure_open(organization_id, current.transaction_date, "void")
            reverse_account_balances(
                self.session,
                organization_id,
                current.debit_account_id,
                current.credit_account_id,
                current.amount_cents,
            )
            now = utcnow()
            voided = supersede(
                self.session,
                Transaction,
                current,
                {
                    "is_voided": True,
                    "voided_at": now,
                    "voided_by": actor,
                    "void_reason": data.void_reason,
                },
                now,
                actor,
            )
            bills = BillService(self.session)
            bills.recalculate_for_transaction(voided.id)
            bills.cancel_for_voided_accrual(voided.id, organization_id)
        logger.info(
            f"transaction_void: id={transaction_id} version={voided.version_id} "
            f"actor={actor}"
        )
        return voided

    def get(self, transaction_id: str, organization_id: str) -> Transaction:
        txn = resolve_current(
            self.session, Transaction, [transaction_id], organization_id=organization_id
        ).get(transaction_id)
        if txn is None:
            raise NotFound("Transaction not found")
        return txn

    def get_history(
        self, transaction_id: str, organization_id: str
    ) -> list[Transaction]:
        rows = self.session.scalars(
            select(Transaction).where(
                Transaction.id == transaction_id,
                Transaction.organization_id == organization_id,
            )
        ).all()
        return order_version_chain(rows)

    def list(
        self,
        organization_id: str,
        filters: Optional[TransactionFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .where(*current_version_filter(Transaction, organization_id=organization_id))
            .order_by(Transaction.transaction_date.desc(), Transaction.system_from.desc())
            .offset(offset)
            .limit(limit)
        )
        if not filters.include_voided:
            stmt = stmt.where(Transaction.is_voided.is_(False))
        if filters.account_id:
            stmt = stmt.where(
                or_(
                    Transaction.debit_account_id == filters.account_id,
                    Transaction.credit_account_id == filters.account_id,
                )
            )
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.start:
            stmt = stmt.where(Transaction.transaction_date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.transaction_date <= filters.end)
        if filters.reconciled is not None:
            stmt = stmt.where(Transaction.reconciled.is_(filters.reconciled))
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(func.lower(Transaction.description).like(like))
        return list(self.session.scalars(stmt).all())

    def reconcile(
        self,
        transaction_ids: list[str],
        organization_id: str,
        actor: Optional[str] = None,
    ) -> list[Transaction]:
        """Mark transactions reconciled. Already reconciled ones are left alone."""
        reconciled: list[Transaction] = []
        with atomic(self.session):
            current = resolve_current(
                self.session,
                Transaction,
                transaction_ids,
                organization_id=organization_id,
                for_update=True,
            )
            now = utcnow()
            for txn_id in dict.fromkeys(transaction_ids):
                txn = current.get(txn_id)
                if txn is None:
                    raise NotFoundOrVoided("Transaction not found or already voided")
                if txn.is_voided:
                    raise AlreadyVoided("Voided transactions cannot be reconciled")
                if txn.reconciled:
                    continue
                reconciled.append(
                    supersede(
                        self.session,
                        Transaction,
                        txn,
                        {"reconciled": True, "reconciled_at": now},
                        now,
                        actor,
                    )
                )
        logger.info(
            f"transaction_reconcile: org={organization_id} requested={len(transaction_ids)} "
            f"reconciled={len(reconciled)}"
        )
        return reconciled


class BillService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _load(
        self, bill_id: str, organization_id: str, *, for_update: bool = False
    ) -> Bill:
        stmt = select(Bill).where(
            Bill.id == bill_id, Bill.organization_id == organization_id
        )
        if for_update:
            stmt = stmt.with_for_update()
        bill = self.session.scalar(stmt)
        if bill is None:
            raise NotFound("Bill not found")
        return bill

    def create(
        self, organization_id: str, data: BillIn, actor: Optional[str] = None
    ) -> Bill:
        if data.liability_or_asset_account_id == data.expense_or_revenue_account_id:
            raise ValidationError("Debit and credit accounts must differ")
        # PAYABLE: DR expense/asset, CR payable. RECEIVABLE: DR receivable, CR revenue.
        if data.direction == BillDirection.payable:
            debit = data.expense_or_revenue_account_id
            credit = data.liability_or_asset_account_id
            txn_type = TransactionType.expense
        else:
            debit = data.liability_or_asset_account_id
            credit = data.expense_or_revenue_account_id
            txn_type = TransactionType.income

        with atomic(self.session):
            ContactService(self.session).get(data.contact_id, organization_id)
            accrual = TransactionService(self.session).create(
                organization_id,
                TransactionIn(
                    transaction_date=data.issue_date,
                    amount_cents=data.amount_cents,
                    type=txn_type,
                    debit_account_id=debit,
                    credit_account_id=credit,
                    description=data.description,
                    contact_id=data.contact_id,
                ),
                actor,
            )
            bill = Bill(
                organization_id=organization_id,
                contact_id=data.contact_id,
                direction=data.direction,
                status=BillStatus.pending,
                amount_cents=data.amount_cents,
                amount_paid_cents=0,
                description=data.description,
                issue_date=data.issue_date,
                due_date=data.due_date,
                notes=data.notes,
                accrual_transaction_id=accrual.id,
                created_by=actor,
            )
            self.session.add(bill)
            self.session.flush()
        logger.info(
            f"bill_create: id={bill.id} org={organization_id} "
            f"direction={bill.direction.value} amount_cents={bill.amount_cents}"
        )
        return bill

    def update(self, bill_id: str, organization_id: str, updates: BillUpdate) -> Bill:
        changes = updates.model_dump(exclude_unset=True)
        with atomic(self.session):
            bill = self._load(bill_id, organization_id, for_update=True)
            status = changes.pop("status", None)
            if status is not None and status != bill.status:
                if not can_transition(bill.status, status):
                    raise InvalidStatusTransition(
                        f"Invalid status transition from {bill.status.value} "
                        f"to {status.value}"
                    )
                bill.status = status
            for key, value in changes.items():
                setattr(bill, key, value)
            if bill.due_date is not None and bill.due_date < bill.issue_date:
                raise ValidationError("Due date cannot be before issue date")
            self.session.flush()
        logger.info(f"bill_update: id={bill_id} status={bill.status.value}")
        return bill

    def cancel(self, bill_id: str, organization_id: str) -> Bill:
        """
        Cancel a bill. The accrual transaction stays posted; voiding it is a
        separate ledger action.
        """
        with atomic(self.session):
            bill = self._load(bill_id, organization_id, for_update=True)
            if bill.status == BillStatus.paid:
                raise CannotCancelPaidBill("Cannot cancel a bill that is already PAID")
            if bill.status == BillStatus.cancelled:
                raise InvalidStatusTransition("Bill is already cancelled")
            bill.status = BillStatus.cancelled
            self.session.flush()
        logger.info(f"bill_cancel: id={bill_id} org={organization_id}")
        return bill

    def recalculate_status(self, bill_id: str) -> Bill:
        with atomic(self.session):
            bill = self.session.get(Bill, bill_id)
            if bill is None:
                raise NotFound("Bill not found")
            links = self.session.scalars(
                select(BillPayment).where(BillPayment.bill_id == bill_id)
            ).all()
            payments = resolve_current(
                self.session,
                Transaction,
                [link.transaction_id for link in links],
                organization_id=bill.organization_id,
            )
            paid = sum(
                txn.amount_cents for txn in payments.values() if not txn.is_voided
            )
            bill.amount_paid_cents = paid

            if bill.status != BillStatus.cancelled:
                if paid >= bill.amount_cents:
                    bill.status = BillStatus.paid
                    if bill.paid_in_full_date is None:
                        bill.paid_in_full_date = utcnow()
                elif paid > 0:
                    bill.status = BillStatus.partial
                    bill.paid_in_full_date = None
                elif bill.status in (BillStatus.paid, BillStatus.partial):
                    # Every payment was voided or unlinked.
                    today = utcnow().date()
                    past_due = bill.due_date is not None and bill.due_date < today
                    bill.status = BillStatus.overdue if past_due else BillStatus.pending
                    bill.paid_in_full_date = None
            self.session.flush()
        logger.debug(
            f"bill_recalculate: id={bill_id} paid_cents={bill.amount_paid_cents} "
            f"status={bill.status.value}"
        )
        return bill

    def recalculate_for_transaction(self, transaction_id: str) -> list[Bill]:
        bill_ids = self.session.scalars(
            select(BillPayment.bill_id)
            .where(BillPayment.transaction_id == transaction_id)
            .distinct()
        ).all()
        return [self.recalculate_status(bill_id) for bill_id in bill_ids]

    def cancel_for_voided_accrual(
        self, transaction_id: str, organization_id: str
    ) -> list[Bill]:
        bills = self.session.scalars(
            select(Bill).where(
                Bill.organization_id == organization_id,
                Bill.accrual_transaction_id == transaction_id,
            )
        ).all()
        cancelled: list[Bill] = []
        for bill in bills:
            if can_transition(bill.status, BillStatus.cancelled):
                bill.status = BillStatus.cancelled
                cancelled.append(bill)
                logger.info(
                    f"bill_cancel: id={bill.id} reason=accrual_voided "
                    f"transaction={transaction_id}"
                )
        self.session.flush()
        return cancelled

    def get(self, bill_id: str, organization_id: str) -> Optional[BillWithPayments]:
        bill = self.session.scalar(
            select(Bill).where(
                Bill.id == bill_id, Bill.organization_id == organization_id
            )
        )
        if bill is None:
            return None
        contact = resolve_current(
            self.session, Contact, [bill.contact_id], organization_id=organization_id
        ).get(bill.contact_id)
        txn_ids = collect_ids(bill.payments, lambda p: p.transaction_id)
        if bill.accrual_transaction_id:
            txn_ids.append(bill.accrual_transaction_id)
        transactions = resolve_current(
            self.session, Transaction, txn_ids, organization_id=organization_id
        )
        return BillWithPayments(
            bill=bill,
            contact=contact,
            accrual_transaction=transactions.get(bill.accrual_transaction_id),
            payments=[
                PaymentWithTransaction(payment, transactions.get(payment.transaction_id))
                for payment in bill.payments
            ],
        )

    def list(
        self, organization_id: str, filters: Optional[BillFilters] = None
    ) -> BillPage:
        filters = filters or BillFilters()
        criteria = [Bill.organization_id == organization_id]
        if filters.direction:
            criteria.append(Bill.direction == filters.direction)
        if filters.status:
            criteria.append(Bill.status == filters.status)
        if filters.contact_id:
            criteria.append(Bill.contact_id == filters.contact_id)
        if filters.search:
            criteria.append(
                func.lower(Bill.description).like(f"%{filters.search.lower()}%")
            )

        page = max(filters.page, 1)
        limit = max(filters.limit, 1)
        total = self.session.scalar(
            select(func.count()).select_from(Bill).where(*criteria)
        )
        bills = self.session.scalars(
            select(Bill)
            .where(*criteria)
            .order_by(Bill.created_at.desc(), Bill.id)
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        contacts = resolve_current(
            self.session,
            Contact,
            collect_ids(bills, lambda b: b.contact_id),
            organization_id=organization_id,
        )
        return BillPage(bills=list(bills), total_count=int(total or 0), contacts=contacts)

    def mark_overdue(
        self, today: date, organization_id: Optional[str] = None
    ) -> int:
        with atomic(self.session):
            stmt = select(Bill).where(
                Bill.status.in_([BillStatus.pending, BillStatus.partial]),
                Bill.due_date.is_not(None),
                Bill.due_date < today,
            )
            if organization_id is not None:
                stmt = stmt.where(Bill.organization_id == organization_id)
            bills = self.session.scalars(stmt.with_for_update()).all()
            for bill in bills:
                bill.status = BillStatus.overdue
            self.session.flush()
        logger.info(f"bill_mark_overdue: today={today} count={len(bills)}")
        return len(bills)


class BillPaymentService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.bills = BillService(session)

    @staticmethod
    def _ensure_payable(bill: Bill, amount_cents: int) -> None:
        if bill.status in (BillStatus.paid, BillStatus.cancelled):
            raise InvalidStatusTransition(
                f"Cannot record payment on {bill.status.value.lower()} bill"
            )
        remaining = bill.amount_cents - bill.amount_paid_cents
        if amount_cents > remaining:
            raise ValidationError(
                f"Payment amount ({amount_cents}) exceeds remaining balance ({remaining})"
            )

    def record_payment(
        self,
        bill_id: str,
        organization_id: str,
        data: PaymentIn,
        actor: Optional[str] = None,
    ) -> BillPayment:
        with atomic(self.session):
            bill = self.bills._load(bill_id, organization_id, for_update=True)
            self._ensure_payable(bill, data.amount_cents)

            accrual = resolve_current(
                self.session,
                Transaction,
                [bill.accrual_transaction_id],
                organization_id=organization_id,
            ).get(bill.accrual_transaction_id)
            if accrual is None or accrual.is_voided:
                raise ValidationError(
                    "Bill has no active accrual transaction to settle against"
                )
            # Settle the payable or receivable side of the accrual against cash.
            if bill.direction == BillDirection.payable:
                debit, credit = accrual.credit_account_id, data.cash_account_id
            else:
                debit, credit = data.cash_account_id, accrual.debit_account_id
            if debit == credit:
                raise ValidationError("Cash account cannot be the accrual account")

            txn = TransactionService(self.session).create(
                organization_id,
                TransactionIn(
                    transaction_date=data.transaction_date,
                    amount_cents=data.amount_cents,
                    type=TransactionType.transfer,
                    debit_account_id=debit,
                    credit_account_id=credit,
                    description=data.description or f"Payment: {bill.description}",
                    contact_id=bill.contact_id,
                    reference_number=data.reference_number,
                ),
                actor,
            )
            payment = BillPayment(bill_id=bill.id, transaction_id=txn.id, notes=data.notes)
            self.session.add(payment)
            self.session.flush()
            self.session.expire(bill, ["payments"])
            self.bills.recalculate_status(bill.id)
        logger.info(
            f"bill_payment_record: bill={bill_id} transaction={txn.id} "
            f"amount_cents={data.amount_cents} status={bill.status.value}"
        )
        return payment

    def link_payment(
        self, bill_id: str, organization_id: str, data: PaymentLinkIn
    ) -> BillPayment:
        with atomic(self.session):
            bill = self.bills._load(bill_id, organization_id, for_update=True)
            txn = resolve_current(
                self.session,
                Transaction,
                [data.transaction_id],
                organization_id=organization_id,
            ).get(data.transaction_id)
            if txn is None or txn.is_voided:
                raise NotFoundOrVoided("Transaction not found or already voided")
            existing = self.session.scalar(
                select(BillPayment).where(
                    BillPayment.bill_id == bill.id,
                    BillPayment.transaction_id == txn.id,
                )
            )
            if existing is not None:
                raise ValidationError("Transaction is already linked to this bill")
            self._ensure_payable(bill, txn.amount_cents)

            payment = BillPayment(bill_id=bill.id, transaction_id=txn.id, notes=data.notes)
            self.session.add(payment)
            self.session.flush()
            self.session.expire(bill, ["payments"])
            self.bills.recalculate_status(bill.id)
        logger.info(f"bill_payment_link: bill={bill_id} transaction={txn.id}")
        return payment

    def unlink_payment(self, payment_id: str, organization_id: str) -> Bill:
        with atomic(self.session):
            payment = self.session.scalar(
                select(BillPayment)
                .join(Bill, Bill.id == BillPayment.bill_id)
                .where(
                    BillPayment.id == payment_id,
                    Bill.organization_id == organization_id,
                )
            )
            if payment is None:
                raise NotFound("Bill payment not found")
            bill_id = payment.bill_id
            self.session.delete(payment)
            self.session.flush()
            bill = self.bills.recalculate_status(bill_id)
            self.session.expire(bill, ["payments"])
        logger.info(f"bill_payment_unlink: bill={bill_id} payment={payment_id}")
        return bill


_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalize_description(value: str) -> str:
    return _NON_ALNUM.sub("", value.lower())


def description_similarity(a: str, b: str) -> float:
    left = normalize_description(a)
    right = normalize_description(b)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    score = float(Levenshtein.normalized_similarity(left, right))
    if left in right or right in left:
        score = max(score, 0.8)
    return score


class ReconciliationService:
    """Suggest ledger matches for bank statement lines without changing anything."""

    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    @staticmethod
    def _same_direction(line: StatementLine, txn: Transaction, account_id: str) -> bool:
        # A deposit debits the bank account, a withdrawal credits it.
        if line.amount_cents > 0:
            return txn.debit_account_id == account_id
        return txn.credit_account_id == account_id

    def _candidates(
        self, organization_id: str, account_id: str, lines: list[StatementLine]
    ) -> list[Transaction]:
        window = timedelta(days=self.settings.match_date_tolerance_days)
        start = min(line.date for line in lines) - window
        end = max(line.date for line in lines) + window
        return list(
            self.session.scalars(
                select(Transaction)
                .where(
                    *current_version_filter(Transaction, organization_id=organization_id),
                    Transaction.is_voided.is_(False),
                    Transaction.reconciled.is_(False),
                    Transaction.transaction_date.between(start, end),
                    or_(
                        Transaction.debit_account_id == account_id,
                        Transaction.credit_account_id == account_id,
                    ),
                )
                .order_by(Transaction.transaction_date, Transaction.id)
            ).all()
        )

    def match_lines(
        self, organization_id: str, account_id: str, lines: list[StatementLine]
    ) -> list[MatchResult]:
        AccountService(self.session).get(account_id, organization_id)
        lines = [line for line in lines if line.amount_cents != 0]
        if not lines:
            return []
        tolerance = self.settings.match_date_tolerance_days
        min_score = self.settings.match_min_score
        candidates = self._candidates(organization_id, account_id, lines)

        used: set[str] = set()
        matches: dict[int, MatchResult] = {}

        for line in lines:
            for txn in candidates:
                if txn.id in used or txn.amount_cents != abs(line.amount_cents):
                    continue
                if not self._same_direction(line, txn, account_id):
                    continue
                same_ref = (
                    line.reference
                    and txn.reference_number
                    and line.reference.strip() == txn.reference_number.strip()
                )
                if txn.transaction_date == line.date and same_ref:
                    matches[line.row_number] = MatchResult(
                        row_number=line.row_number,
                        transaction_id=txn.id,
                        score=1.0,
                        exact=True,
                        reason="Exact match: amount, date, and reference number",
                    )
                    used.add(txn.id)
                    break

        for line in lines:
            if line.row_number in matches:
                continue
            best: Optional[tuple[float, Transaction]] = None
            for txn in candidates:
                if txn.id in used or txn.amount_cents != abs(line.amount_cents):
                    continue
                if not self._same_direction(line, txn, account_id):
                    continue
                days = abs((txn.transaction_date - line.date).days)
                if days > tolerance:
                    continue
                date_score = 1.0 - days / tolerance if tolerance else 1.0
                score = date_score * 0.6 + (
                    description_similarity(line.description, txn.description) * 0.4
                )
                if best is None or score > best[0]:
                    best = (score, txn)
            if best is not None and best[0] > min_score:
                score, txn = best
                matches[line.row_number] = MatchResult(
                    row_number=line.row_number,
                    transaction_id=txn.id,
                    score=round(score, 4),
                    exact=False,
                    reason=(
                        f"Fuzzy match: amount matches, date within {tolerance} days "
                        f"(score: {score:.2f})"
                    ),
                )
                used.add(txn.id)

        results = sorted(matches.values(), key=lambda match: match.row_number)
        logger.info(
            f"statement_match: org={organization_id} account={account_id} "
            f"lines={len(lines)} matched={len(results)} "
            f"exact={sum(1 for m in results if m.exact)}"
        )
        return results
