"""initial ledger schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None

MAX_DATE = "9999-12-31 23:59:59.999000"
OPEN_VERSION = f"valid_to = '{MAX_DATE}'"
LIVE_VERSION = f"{OPEN_VERSION} AND NOT is_deleted"


def _unique_open_index(name, table, columns, where=OPEN_VERSION):
    op.create_index(
        name,
        table,
        columns,
        unique=True,
        sqlite_where=sa.text(where),
        postgresql_where=sa.text(where),
    )


def _temporal_columns():
    return [
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("version_id", sa.String(length=36), primary_key=True),
        sa.Column("previous_version_id", sa.String(length=36)),
        sa.Column("valid_from", sa.DateTime(), nullable=False),
        sa.Column(
            "valid_to", sa.DateTime(), nullable=False, server_default=MAX_DATE
        ),
        sa.Column("system_from", sa.DateTime(), nullable=False),
        sa.Column(
            "system_to", sa.DateTime(), nullable=False, server_default=MAX_DATE
        ),
        sa.Column(
            "is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("deleted_at", sa.DateTime()),
        sa.Column("deleted_by", sa.String(length=64)),
        sa.Column("changed_by", sa.String(length=64)),
        sa.Column("change_reason", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "accounts",
        *_temporal_columns(),
        sa.Column("organization_id", sa.String(length=36), nullable=False),
        sa.Column("code", sa.String(length=20), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "ASSET",
                "LIABILITY",
                "EQUITY",
                "REVENUE",
                "EXPENSE",
                name="accounttype",
            ),
            nullable=False,
        ),
        sa.Column("description", sa.Text()),
        sa.Column("parent_account_id", sa.String(length=36)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_accounts_current", "accounts", ["id", "valid_to"])
    op.create_index(
        "ix_accounts_org_current", "accounts", ["organization_id", "valid_to"]
    )
    op.create_index("ix_accounts_org_code", "accounts", ["organization_id", "code"])
    _unique_open_index("uq_accounts_open_version", "accounts", ["id"])
    _unique_open_index(
        "uq_accounts_org_code_current",
        "accounts",
        ["organization_id", "code"],
        where=LIVE_VERSION,
    )

    op.create_table(
        "contacts",
        *_temporal_columns(),
        sa.Column("organization_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column(
            "contact_type",
            sa.Enum("INDIVIDUAL", "ORGANIZATION", name="contacttype"),
            nullable=False,
            server_default="INDIVIDUAL",
        ),
        sa.Column("email", sa.String(length=200)),
        sa.Column("phone", sa.String(length=50)),
        sa.Column("address", sa.Text()),
        sa.Column("notes", sa.Text()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_contacts_current", "contacts", ["id", "valid_to"])
    op.create_index(
        "ix_contacts_org_current", "contacts", ["organization_id", "valid_to"]
    )
    _unique_open_index("uq_contacts_open_version", "contacts", ["id"])

    op.create_table(
        "transactions",
        *_temporal_columns(),
        sa.Column("organization_id", sa.String(length=36), nullable=False),
        sa.Column("transaction_date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "INCOME", "EXPENSE", "TRANSFER", "CLOSING", name="transactiontype"
            ),
            nullable=False,
        ),
        sa.Column("debit_account_id", sa.String(length=36), nullable=False),
        sa.Column("credit_account_id", sa.String(length=36), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("contact_id", sa.String(length=36)),
        sa.Column("reference_number", sa.String(length=100)),
        sa.Column("notes", sa.Text()),
        sa.Column("is_voided", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("voided_at", sa.DateTime()),
        sa.Column("voided_by", sa.String(length=64)),
        sa.Column("void_reason", sa.Text()),
        sa.Column(
            "reconciled", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("reconciled_at", sa.DateTime()),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint(
            "debit_account_id <> credit_account_id",
            name="ck_transactions_distinct_accounts",
        ),
    )
    op.create_index("ix_transactions_current", "transactions", ["id", "valid_to"])
    op.create_index(
        "ix_transactions_org_current", "transactions", ["organization_id", "valid_to"]
    )
    op.create_index(
        "ix_transactions_org_date",
        "transactions",
        ["organization_id", "transaction_date"],
    )
    _unique_open_index("uq_transactions_open_version", "transactions", ["id"])

    op.create_table(
        "bills",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("organization_id", sa.String(length=36), nullable=False),
        sa.Column("contact_id", sa.String(length=36), nullable=False),
        sa.Column(
            "direction",
            sa.Enum("PAYABLE", "RECEIVABLE", name="billdirection"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum(
                "DRAFT",
                "PENDING",
                "PARTIAL",
                "PAID",
                "OVERDUE",
                "CANCELLED",
                name="billstatus",
            ),
            nullable=False,
            server_default="DRAFT",
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "amount_paid_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("issue_date", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date()),
        sa.Column("paid_in_full_date", sa.DateTime()),
        sa.Column("notes", sa.Text()),
        sa.Column("accrual_transaction_id", sa.String(length=36)),
        sa.Column("created_by", sa.String(length=64)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_bills_amount_positive"),
    )
    op.create_index("ix_bills_org_status", "bills", ["organization_id", "status"])
    op.create_index(
        "ix_bills_org_direction", "bills", ["organization_id", "direction"]
    )
    op.create_index("ix_bills_contact", "bills", ["contact_id"])
    op.create_index("ix_bills_due_date", "bills", ["due_date"])

    op.create_table(
        "bill_payments",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "bill_id", sa.String(length=36), sa.ForeignKey("bills.id"), nullable=False
        ),
        sa.Column("transaction_id", sa.String(length=36), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("bill_id", "transaction_id", name="uq_bill_payment_txn"),
    )
    op.create_index(
        "ix_bill_payments_transaction", "bill_payments", ["transaction_id"]
    )

    op.create_table(
        "fiscal_periods",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("organization_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("OPEN", "CLOSED", name="fiscalperiodstatus"),
            nullable=False,
            server_default="OPEN",
        ),
        sa.Column("closed_at", sa.DateTime()),
        sa.Column("closed_by", sa.String(length=64)),
        sa.Column("reopened_at", sa.DateTime()),
        sa.Column("reopened_by", sa.String(length=64)),
        sa.Column(
            "closing_transaction_ids", sa.JSON(), nullable=False, server_default="[]"
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "organization_id", "start_date", name="uq_fiscal_period_org_start"
        ),
        sa.CheckConstraint("start_date <= end_date", name="ck_fiscal_period_range"),
    )
    op.create_index(
        "ix_fiscal_periods_org_status", "fiscal_periods", ["organization_id", "status"]
    )


def downgrade():
    op.drop_index("ix_fiscal_periods_org_status", table_name="fiscal_periods")
    op.drop_table("fiscal_periods")
    op.drop_index("ix_bill_payments_transaction", table_name="bill_payments")
    op.drop_table("bill_payments")
    for name in (
        "ix_bills_due_date",
        "ix_bills_contact",
        "ix_bills_org_direction",
        "ix_bills_org_status",
    ):
        op.drop_index(name, table_name="bills")
    op.drop_table("bills")
    for name in (
        "uq_transactions_open_version",
        "ix_transactions_org_date",
        "ix_transactions_org_current",
        "ix_transactions_current",
    ):
        op.drop_index(name, table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("uq_contacts_open_version", table_name="contacts")
    op.drop_index("ix_contacts_org_current", table_name="contacts")
    op.drop_index("ix_contacts_current", table_name="contacts")
    op.drop_table("contacts")
    for name in (
        "uq_accounts_org_code_current",
        "uq_accounts_open_version",
        "ix_accounts_org_code",
        "ix_accounts_org_current",
        "ix_accounts_current",
    ):
        op.drop_index(name, table_name="accounts")
    op.drop_table("accounts")
    for enum_name in (
        "fiscalperiodstatus",
        "billstatus",
        "billdirection",
        "transactiontype",
        "contacttype",
        "accounttype",
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
