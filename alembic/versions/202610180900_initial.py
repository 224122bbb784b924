"""initial schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum("checking", "savings", "credit_card", "cash", name="accounttype"),
            nullable=False,
        ),
        sa.Column(
            "current_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("balance_updated_at", sa.DateTime()),
        sa.Column("closing_day", sa.Integer()),
        sa.Column("payment_due_day", sa.Integer()),
        sa.Column("credit_limit_cents", sa.Integer()),
        *_timestamps(),
        sa.CheckConstraint(
            "closing_day IS NULL OR (closing_day BETWEEN 1 AND 28)",
            name="ck_account_closing_day",
        ),
        sa.CheckConstraint(
            "payment_due_day IS NULL OR (payment_due_day BETWEEN 1 AND 28)",
            name="ck_account_payment_due_day",
        ),
    )
    op.create_index("ix_accounts_user_name", "accounts", ["user_id", "name"])

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type", sa.Enum("income", "expense", name="categorytype"), nullable=False
        ),
        sa.Column("color", sa.String(length=7)),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "type", "name", name="uq_category_user_type_name"
        ),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("description", sa.Text()),
        sa.Column("total_amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "total_installments", sa.Integer(), nullable=False, server_default="1"
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column(
            "refunded_amount_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("ignored", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint(
            "total_amount_cents > 0", name="ck_transactions_amount_positive"
        ),
        sa.CheckConstraint(
            "total_installments >= 1", name="ck_transactions_installments_positive"
        ),
        sa.CheckConstraint(
            "refunded_amount_cents >= 0 AND refunded_amount_cents <= total_amount_cents",
            name="ck_transactions_refunded_within_total",
        ),
    )
    op.create_index(
        "ix_transactions_user_category", "transactions", ["user_id", "category_id"]
    )

    op.create_table(
        "entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("purchase_date", sa.Date(), nullable=False),
        sa.Column("fatura_month", sa.String(length=7), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("paid_at", sa.DateTime()),
        sa.Column(
            "installment_number", sa.Integer(), nullable=False, server_default="1"
        ),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_entries_amount_positive"),
    )
    op.create_index("ix_entries_user_account", "entries", ["user_id", "account_id"])
    op.create_index(
        "ix_entries_user_account_fatura_month",
        "entries",
        ["user_id", "account_id", "fatura_month"],
    )
    op.create_index(
        "ix_entries_user_purchase_date", "entries", ["user_id", "purchase_date"]
    )

    op.create_table(
        "income",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("description", sa.Text()),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("received_date", sa.Date(), nullable=False),
        sa.Column("received_at", sa.DateTime()),
        sa.Column("ignored", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "replenish_category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "refund_of_transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        sa.Column("fatura_month", sa.String(length=7)),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_income_amount_positive"),
    )
    op.create_index("ix_income_user_account", "income", ["user_id", "account_id"])
    op.create_index(
        "ix_income_user_refund_of", "income", ["user_id", "refund_of_transaction_id"]
    )
    op.create_index(
        "ix_income_user_received_date", "income", ["user_id", "received_date"]
    )

    op.create_table(
        "faturas",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("year_month", sa.String(length=7), nullable=False),
        sa.Column("closing_date", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column(
            "total_amount_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("paid_at", sa.DateTime()),
        sa.Column(
            "paid_from_account_id", sa.Integer(), sa.ForeignKey("accounts.id")
        ),
        *_timestamps(),
        sa.UniqueConstraint("account_id", "year_month", name="uq_fatura_account_month"),
    )
    op.create_index("ix_faturas_user_year_month", "faturas", ["user_id", "year_month"])

    op.create_table(
        "transfers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("from_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("to_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "internal_transfer",
                "deposit",
                "withdrawal",
                "fatura_payment",
                name="transfertype",
            ),
            nullable=False,
        ),
        sa.Column(
            "fatura_id",
            sa.Integer(),
            sa.ForeignKey("faturas.id", ondelete="SET NULL"),
        ),
        sa.Column("description", sa.Text()),
        sa.Column("ignored", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_transfers_amount_positive"),
        sa.CheckConstraint(
            "from_account_id IS NULL OR to_account_id IS NULL "
            "OR from_account_id <> to_account_id",
            name="ck_transfers_distinct_accounts",
        ),
    )
    op.create_index("ix_transfers_user_from", "transfers", ["user_id", "from_account_id"])
    op.create_index("ix_transfers_user_to", "transfers", ["user_id", "to_account_id"])
    op.create_index("ix_transfers_user_fatura", "transfers", ["user_id", "fatura_id"])

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("year_month", sa.String(length=7), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        sa.UniqueConstraint(
            "user_id", "category_id", "year_month", name="uq_budget_user_category_month"
        ),
    )


def downgrade():
    op.drop_table("budgets")
    op.drop_index("ix_transfers_user_fatura", table_name="transfers")
    op.drop_index("ix_transfers_user_to", table_name="transfers")
    op.drop_index("ix_transfers_user_from", table_name="transfers")
    op.drop_table("transfers")
    op.drop_index("ix_faturas_user_year_month", table_name="faturas")
    op.drop_table("faturas")
    op.drop_index("ix_income_user_received_date", table_name="income")
    op.drop_index("ix_income_user_refund_of", table_name="income")
    op.drop_index("ix_income_user_account", table_name="income")
    op.drop_table("income")
    op.drop_index("ix_entries_user_purchase_date", table_name="entries")
    op.drop_index("ix_entries_user_account_fatura_month", table_name="entries")
    op.drop_index("ix_entries_user_account", table_name="entries")
    op.drop_table("entries")
    op.drop_index("ix_transactions_user_category", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
    op.drop_index("ix_accounts_user_name", table_name="accounts")
    op.drop_table("accounts")
    sa.Enum(name="transfertype").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="categorytype").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="accounttype").drop(op.get_bind(), checkfirst=True)
