"""
Double-entry balance maintenance.

ASSET and EXPENSE accounts increase on the debit side; LIABILITY, EQUITY and
REVENUE accounts increase on the credit side. ``update_account_balances`` and
``reverse_account_balances`` are the only writers of ``Account.balance_cents``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

from sqlalchemy import update
from sqlalchemy.orm import Session

from errors import ConcurrentModificationConflict, NotFound
from models import Account, AccountType
from temporal import MAX_DATE, resolve_current

logger = logging.getLogger(__name__)

DEBIT_NORMAL_TYPES = frozenset({AccountType.asset, AccountType.expense})


class _Posting(Protocol):
    debit_account_id: str
    credit_account_id: str
    amount_cents: int


def balance_sign(account_type: AccountType, is_debit: bool) -> int:
    debit_normal = AccountType(account_type) in DEBIT_NORMAL_TYPES
    return 1 if debit_normal == is_debit else -1


def balance_delta(account_type: AccountType, amount_cents: int, is_debit: bool) -> int:
    return amount_cents * balance_sign(account_type, is_debit)


def calculate_new_balance(
    balance_cents: int, amount_cents: int, account_type: AccountType, is_debit: bool
) -> int:
    return balance_cents + balance_delta(account_type, amount_cents, is_debit)


@dataclass(frozen=True)
class BalanceChange:
    debit_balance_cents: int
    credit_balance_cents: int


def _shift_balance(session: Session, account: Account, delta_cents: int) -> None:
    result = session.execute(
        update(Account)
        .where(
            Account.version_id == account.version_id,
            Account.valid_to == MAX_DATE,
        )
        .values(balance_cents=Account.balance_cents + delta_cents)
    )
    if result.rowcount != 1:
        raise ConcurrentModificationConflict("Account", account.version_id)


def _post(
    session: Session,
    organization_id: str,
    debit_account_id: str,
    credit_account_id: str,
    amount_cents: int,
    direction: int,
) -> BalanceChange:
    accounts = resolve_current(
        session,
        Account,
        [debit_account_id, credit_account_id],
        organization_id=organization_id,
        for_update=True,
    )
    debit = accounts.get(debit_account_id)
    credit = accounts.get(credit_account_id)
    if debit is None or credit is None:
        raise NotFound("One or both accounts not found")

    debit_delta = direction * balance_delta(debit.type, amount_cents, is_debit=True)
    credit_delta = direction * balance_delta(credit.type, amount_cents, is_debit=False)
    _shift_balance(session, debit, debit_delta)
    _shift_balance(session, credit, credit_delta)
    session.flush()
    session.refresh(debit)
    session.refresh(credit)
    logger.debug(
        f"balances_posted: debit={debit.id} delta={debit_delta} "
        f"credit={credit.id} delta={credit_delta}"
    )
    return BalanceChange(debit.balance_cents, credit.balance_cents)


def update_account_balances(
    session: Session,
    organization_id: str,
    debit_account_id: str,
    credit_account_id: str,
    amount_cents: int,
) -> BalanceChange:
    return _post(
        session, organization_id, debit_account_id, credit_account_id, amount_cents, 1
    )


def reverse_account_balances(
    session: Session,
    organization_id: str,
    debit_account_id: str,
    credit_account_id: str,
    amount_cents: int,
) -> BalanceChange:
    """
    Undo ``update_account_balances`` for the same arguments.

    Always pass the accounts and amount the transaction was originally posted
    with, not the ones it is being edited to.
    """
    return _post(
        session, organization_id, debit_account_id, credit_account_id, amount_cents, -1
    )


def recalculate_account_balance(
    transactions: Iterable[_Posting],
    account_id: str,
    account_type: AccountType,
    initial_balance_cents: int = 0,
) -> int:
    balance = initial_balance_cents
    for txn in transactions:
        if txn.debit_account_id == account_id:
            balance = calculate_new_balance(balance, txn.amount_cents, account_type, True)
        elif txn.credit_account_id == account_id:
            balance = calculate_new_balance(balance, txn.amount_cents, account_type, False)
    return balance


@dataclass(frozen=True)
class IntegrityCheck:
    is_valid: bool
    total_debits_cents: int
    total_credits_cents: int

    @property
    def difference_cents(self) -> int:
        return abs(self.total_debits_cents - self.total_credits_cents)


def verify_double_entry_integrity(
    accounts: Iterable[Account],
) -> IntegrityCheck:
    """Debit-normal balances must equal credit-normal balances across a ledger."""
    debits = 0
    credits = 0
    for account in accounts:
        if AccountType(account.type) in DEBIT_NORMAL_TYPES:
            debits += account.balance_cents
        else:
            credits += account.balance_cents
    return IntegrityCheck(debits == credits, debits, credits)


def calculate_hierarchical_balance(account_id: str, accounts: Iterable[Account]) -> int:
    """Balance of an account plus every account below it in the tree."""
    accounts = list(accounts)
    by_id = {account.id: account for account in accounts}
    if account_id not in by_id:
        return 0
    children: dict[Optional[str], list[Account]] = {}
    for account in accounts:
        children.setdefault(account.parent_account_id, []).append(account)

    total = 0
    seen: set[str] = set()
    stack = [by_id[account_id]]
    while stack:
        node = stack.pop()
        if node.id in seen:
            continue
        seen.add(node.id)
        total += node.balance_cents
        stack.extend(children.get(node.id, []))
    return total
