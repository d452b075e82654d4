import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, UploadFile
from pydantic import ValidationError as SchemaError
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from errors import LedgerError
from models import BillDirection, BillStatus, TransactionType
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    AccountUpdate,
    BalanceVerificationOut,
    BillIn,
    BillOut,
    BillPageOut,
    BillPaymentOut,
    BillUpdate,
    BillWithPaymentsOut,
    ClosePreviewOut,
    ClosingEntryOut,
    ColumnMapping,
    ContactIn,
    ContactOut,
    ContactUpdate,
    FiscalPeriodIn,
    FiscalPeriodOut,
    IntegrityOut,
    MatchRequestIn,
    MatchResultOut,
    ParsedStatement,
    PaymentIn,
    PaymentLinkIn,
    PaymentWithTransactionOut,
    ReconcileIn,
    TransactionIn,
    TransactionOut,
    TransactionUpdate,
    VoidIn,
)
from services import (
    AccountService,
    BillFilters,
    BillPaymentService,
    BillService,
    ContactService,
    FiscalPeriodService,
    ReconciliationService,
    TransactionFilters,
    TransactionService,
)
from statement_parser import parse_statement

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Nonprofit Ledger")

ORG = "/organizations/{organization_id}"


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_actor(x_actor_id: Optional[str] = Header(default=None)) -> Optional[str]:
    return x_actor_id


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def http_error(exc: LedgerError) -> HTTPException:
    logger.warning(f"request_failed: kind={exc.kind} message={exc.message}")
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post(ORG + "/accounts", response_model=AccountOut, status_code=201)
def create_account(
    organization_id: str,
    payload: AccountIn,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_actor),
):
    try:
        return AccountService(db).create(organization_id, payload, actor)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get(ORG + "/accounts", response_model=list[AccountOut])
def list_accounts(
    organization_id: str,
    include_inactive: bool = True,
    db: Session = Depends(get_db),
):
    return AccountService(db).list(organization_id, include_inactive=include_inactive)


@app.get(ORG + "/accounts/{account_id}", response_model=AccountOut)
def get_account(organization_id: str, account_id: str, db: Session = Depends(get_db)):
    try:
        return AccountService(db).get(account_id, organization_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.patch(ORG + "/accounts/{account_id}", response_model=AccountOut)
def update_account(
    organization_id: str,
    account_id: str,
    payload: AccountUpdate,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_actor),
):
    try:
        return AccountService(db).update(account_id, organization_id, payload, actor)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.delete(ORG + "/accounts/{account_id}", status_code=204)
def delete_account(
    organization_id: str,
    account_id: str,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_actor),
):
    try:
        AccountService(db).delete(account_id, organization_id, actor)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get(ORG + "/accounts/{account_id}/history", response_model=list[AccountOut])
def account_history(
    organization_id: str, account_id: str, db: Session = Depends(get_db)
):
    return AccountService(db).history(account_id, organization_id)


@app.get(ORG + "/accounts/{account_id}/verify", response_model=BalanceVerificationOut)
def verify_account(organization_id: str, account_id: str, db: Session = Depends(get_db)):
    try:
        result = AccountService(db).verify_balance(account_id, organization_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return BalanceVerificationOut(
        account_id=result.account_id,
        stored_balance_cents=result.stored_balance_cents,
        calculated_balance_cents=result.calculated_balance_cents,
        is_valid=result.is_valid,
        difference_cents=result.difference_cents,
    )


@app.get(ORG + "/integrity", response_model=IntegrityOut)
def verify_integrity(organization_id: str, db: Session = Depends(get_db)):
    check = AccountService(db).verify_integrity(organization_id)
    if not check.is_valid:
        logger.warning(
            f"integrity_failed: org={organization_id} "
            f"difference_cents={check.difference_cents}"
        )
    return IntegrityOut(
        is_valid=check.is_valid,
        total_debits_cents=check.total_debits_cents,
        total_credits_cents=check.total_credits_cents,
        difference_cents=check.difference_cents,
    )


@app.post(ORG + "/contacts", response_model=ContactOut, status_code=201)
def create_contact(
    organization_id: str,
    payload: ContactIn,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_actor),
):
    return ContactService(db).create(organization_id, payload, actor)


@app.get(ORG + "/contacts", response_model=list[ContactOut])
def list_contacts(
    organization_id: str, q: Optional[str] = None, db: Session = Depends(get_db)
):
    return ContactService(db).list(organization_id, q)


@app.patch(ORG + "/contacts/{contact_id}", response_model=ContactOut)
def update_contact(
    organization_id: str,
    contact_id: str,
    payload: ContactUpdate,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_actor),
):
    try:
        return ContactService(db).update(contact_id, organization_id, payload, actor)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post(ORG + "/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    organization_id: str,
    payload: TransactionIn,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_actor),
):
    try:
        return TransactionService(db).create(organization_id, payload, actor)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get(ORG + "/transactions", response_model=list[TransactionOut])
def list_transactions(
    organization_id: str,
    account_id: Optional[str] = None,
    type: Optional[TransactionType] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    q: Optional[str] = None,
    include_voided: bool = False,
    page: int = 1,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    page = max(page, 1)
    limit = min(max(limit, 1), 200)
    filters = TransactionFilters(
        account_id=account_id,
        type=type,
        start=start,
        end=end,
        query=q,
        include_voided=include_voided,
    )
    return TransactionService(db).list(
        organization_id, filters, limit=limit, offset=(page - 1) * limit
    )


@app.post(ORG + "/transactions/reconcile", response_model=list[TransactionOut])
def reconcile_transactions(
    organization_id: str,
    payload: ReconcileIn,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_actor),
):
    try:
        return TransactionService(db).reconcile(
            payload.transaction_ids, organization_id, actor
        )
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get(ORG + "/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    organization_id: str, transaction_id: str, db: Session = Depends(get_db)
):
    try:
        return TransactionService(db).get(transaction_id, organization_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.patch(ORG + "/transactions/{transaction_id}", response_model=TransactionOut)
def edit_transaction(
    organization_id: str,
    transaction_id: str,
    payload: TransactionUpdate,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_actor),
):
    try:
        return TransactionService(db).edit(
            transaction_id, organization_id, payload, actor
        )
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post(ORG + "/transactions/{transaction_id}/void", response_model=TransactionOut)
def void_transaction(
    organization_id: str,
    transaction_id: str,
    payload: VoidIn,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_actor),
):
    try:
        return TransactionService(db).void(
            transaction_id, organization_id, payload, actor
        )
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get(
    ORG + "/transactions/{transaction_id}/history",
    response_model=list[TransactionOut],
)
def transaction_history(
    organization_id: str, transaction_id: str, db: Session = Depends(get_db)
):
    return TransactionService(db).get_history(transaction_id, organization_id)


@app.post(ORG + "/bills", response_model=BillOut, status_code=201)
def create_bill(
    organization_id: str,
    payload: BillIn,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_actor),
):
    try:
        return BillService(db).create(organization_id, payload, actor)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get(ORG + "/bills", response_model=BillPageOut)
def list_bills(
    organization_id: str,
    direction: Optional[BillDirection] = None,
    status: Optional[BillStatus] = None,
    contact_id: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    filters = BillFilters(
        direction=direction,
        status=status,
        contact_id=contact_id,
        search=search,
        page=max(page, 1),
        limit=min(max(limit, 1), 200),
    )
    result = BillService(db).list(organization_id, filters)
    return BillPageOut(
        bills=[BillOut.model_validate(bill) for bill in result.bills],
        total_count=result.total_count,
    )


@app.get(ORG + "/bills/{bill_id}", response_model=BillWithPaymentsOut)
def get_bill(organization_id: str, bill_id: str, db: Session = Depends(get_db)):
    found = BillService(db).get(bill_id, organization_id)
    if found is None:
        raise HTTPException(
            status_code=404, detail={"kind": "not_found", "message": "Bill not found"}
        )
    return BillWithPaymentsOut(
        bill=BillOut.model_validate(found.bill),
        contact=ContactOut.model_validate(found.contact) if found.contact else None,
        accrual_transaction=(
            TransactionOut.model_validate(found.accrual_transaction)
            if found.accrual_transaction
            else None
        ),
        payments=[
            PaymentWithTransactionOut(
                payment=BillPaymentOut.model_validate(item.payment),
                transaction=(
                    TransactionOut.model_validate(item.transaction)
                    if item.transaction
                    else None
                ),
            )
            for item in found.payments
        ],
    )


@app.patch(ORG + "/bills/{bill_id}", response_model=BillOut)
def update_bill(
    organization_id: str,
    bill_id: str,
    payload: BillUpdate,
    db: Session = Depends(get_db),
):
    try:
        return BillService(db).update(bill_id, organization_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post(ORG + "/bills/{bill_id}/cancel", response_model=BillOut)
def cancel_bill(organization_id: str, bill_id: str, db: Session = Depends(get_db)):
    try:
        return BillService(db).cancel(bill_id, organization_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post(
    ORG + "/bills/{bill_id}/payments", response_model=BillPaymentOut, status_code=201
)
def record_bill_payment(
    organization_id: str,
    bill_id: str,
    payload: PaymentIn,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_actor),
):
    try:
        return BillPaymentService(db).record_payment(
            bill_id, organization_id, payload, actor
        )
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post(
    ORG + "/bills/{bill_id}/payments/link",
    response_model=BillPaymentOut,
    status_code=201,
)
def link_bill_payment(
    organization_id: str,
    bill_id: str,
    payload: PaymentLinkIn,
    db: Session = Depends(get_db),
):
    try:
        return BillPaymentService(db).link_payment(bill_id, organization_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.delete(ORG + "/bill-payments/{payment_id}", response_model=BillOut)
def unlink_bill_payment(
    organization_id: str, payment_id: str, db: Session = Depends(get_db)
):
    try:
        return BillPaymentService(db).unlink_payment(payment_id, organization_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post(ORG + "/fiscal-periods", response_model=FiscalPeriodOut, status_code=201)
def create_fiscal_period(
    organization_id: str, payload: FiscalPeriodIn, db: Session = Depends(get_db)
):
    try:
        return FiscalPeriodService(db).create(organization_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get(ORG + "/fiscal-periods", response_model=list[FiscalPeriodOut])
def list_fiscal_periods(organization_id: str, db: Session = Depends(get_db)):
    return FiscalPeriodService(db).list(organization_id)


@app.get(ORG + "/fiscal-periods/{period_id}/preview", response_model=ClosePreviewOut)
def preview_fiscal_period_close(
    organization_id: str,
    period_id: str,
    fund_balance_account_id: str,
    db: Session = Depends(get_db),
):
    try:
        preview = FiscalPeriodService(db).preview_close(
            period_id, organization_id, fund_balance_account_id
        )
    except LedgerError as exc:
        raise http_error(exc) from exc
    return ClosePreviewOut(
        fund_balance_account_id=preview.fund_balance_account_id,
        entries=[ClosingEntryOut.model_validate(entry) for entry in preview.entries],
        total_revenue_cents=preview.total_revenue_cents,
        total_expenses_cents=preview.total_expenses_cents,
        net_surplus_cents=preview.net_surplus_cents,
    )


@app.post(ORG + "/fiscal-periods/{period_id}/close", response_model=FiscalPeriodOut)
def close_fiscal_period(
    organization_id: str,
    period_id: str,
    fund_balance_account_id: Optional[str] = None,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_actor),
):
    try:
        return FiscalPeriodService(db).close(
            period_id, organization_id, actor, fund_balance_account_id
        )
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post(ORG + "/fiscal-periods/{period_id}/reopen", response_model=FiscalPeriodOut)
def reopen_fiscal_period(
    organization_id: str,
    period_id: str,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_actor),
):
    try:
        return FiscalPeriodService(db).reopen(period_id, organization_id, actor)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post(ORG + "/reconciliation/match", response_model=list[MatchResultOut])
def match_statement(
    organization_id: str, payload: MatchRequestIn, db: Session = Depends(get_db)
):
    try:
        matches = ReconciliationService(db).match_lines(
            organization_id, payload.account_id, payload.lines
        )
    except LedgerError as exc:
        raise http_error(exc) from exc
    return [
        MatchResultOut(
            row_number=match.row_number,
            transaction_id=match.transaction_id,
            score=match.score,
            exact=match.exact,
            reason=match.reason,
        )
        for match in matches
    ]


@app.post("/statements/parse", response_model=ParsedStatement)
async def parse_statement_upload(
    file: UploadFile = File(...),
    mapping: Optional[str] = Form(None),
):
    try:
        content = (await file.read()).decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="File must be UTF-8 text") from exc
    column_mapping = None
    if mapping:
        try:
            column_mapping = ColumnMapping.model_validate_json(mapping)
        except SchemaError as exc:
            raise HTTPException(
                status_code=422, detail=exc.errors(include_context=False)
            ) from exc
    return parse_statement(content, file.filename or "statement.csv", column_mapping)
