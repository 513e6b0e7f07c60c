"""initial ledger schema

Revision ID: 202610010900
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610010900"
down_revision = None
branch_labels = None
depends_on = None


FREQUENCY = sa.Enum(
    "weekly",
    "biweekly",
    "semimonthly",
    "monthly",
    "quarterly",
    "semiannual",
    "annual",
    "every_n_months",
    name="frequency",
)
TRANSACTION_TYPE = sa.Enum("income", "expense", "transfer", name="transactiontype")
OCCURRENCE_STATUS = sa.Enum("SCHEDULED", "RECEIVED", name="occurrencestatus")
BILL_STATUS = sa.Enum("upcoming", "overdue", "paid", "skipped", name="billstatus")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "category_groups",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_category_group_user_name"),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("category_groups.id")),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rollover", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="3"),
        sa.Column(
            "monthly_budget_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("linked_bill_id", sa.Integer()),
        sa.Column("archived_at", sa.DateTime()),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_category_user_name"),
        sa.CheckConstraint("priority BETWEEN 1 AND 5", name="ck_category_priority"),
        sa.CheckConstraint(
            "monthly_budget_cents >= 0", name="ck_category_monthly_budget_positive"
        ),
    )

    op.create_table(
        "budget_months",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column(
            "expected_income_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "forecast_income_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "received_income_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "carried_overspend_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "allow_over_assign", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "month", name="uq_budget_month_user_month"),
        sa.CheckConstraint(
            "carried_overspend_cents >= 0", name="ck_budget_month_overspend_positive"
        ),
    )

    op.create_table(
        "budget_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("assigned_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("spent_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "leftover_from_prev_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "month", "category_id", name="uq_budget_item_month_category"
        ),
        sa.CheckConstraint("assigned_cents >= 0", name="ck_budget_item_assigned_positive"),
        sa.CheckConstraint(
            "leftover_from_prev_cents >= 0", name="ck_budget_item_leftover_positive"
        ),
    )
    op.create_index("ix_budget_items_user_month", "budget_items", ["user_id", "month"])

    op.create_table(
        "income_sources",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("frequency", FREQUENCY, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("anchor_date", sa.Date(), nullable=False),
        sa.Column("day_of_month", sa.Integer()),
        sa.Column("second_day", sa.Integer()),
        sa.Column("account_id", sa.String(length=64)),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_income_source_amount_positive"),
    )

    op.create_table(
        "bills",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("account_id", sa.String(length=64)),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("frequency", FREQUENCY, nullable=False),
        sa.Column("day_of_month", sa.Integer()),
        sa.Column("weekday", sa.Integer()),
        sa.Column("every_n", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("starts_on", sa.Date(), nullable=False),
        sa.Column("ends_on", sa.Date()),
        sa.Column(
            "skip_weekends", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "autopay_enabled", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("archived_at", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_bill_amount_positive"),
        sa.CheckConstraint("every_n > 0", name="ck_bill_every_n_positive"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("account_id", sa.String(length=64), nullable=False),
        sa.Column("budget_month", sa.String(length=7), nullable=False),
        sa.Column("bill_id", sa.Integer(), sa.ForeignKey("bills.id")),
        sa.Column("source_id", sa.Integer(), sa.ForeignKey("income_sources.id")),
        sa.Column("income_occurrence_id", sa.Integer()),
        sa.Column("note", sa.Text()),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint(
            "(type != 'expense') OR (amount_cents < 0)",
            name="ck_transactions_expense_negative",
        ),
        sa.CheckConstraint(
            "(type != 'income') OR (amount_cents > 0)",
            name="ck_transactions_income_positive",
        ),
    )
    op.create_index(
        "ix_transactions_user_month", "transactions", ["user_id", "budget_month"]
    )
    op.create_index(
        "ix_transactions_user_month_category",
        "transactions",
        ["user_id", "budget_month", "category_id"],
    )

    op.create_table(
        "income_occurrences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column(
            "source_id", sa.Integer(), sa.ForeignKey("income_sources.id"), nullable=False
        ),
        sa.Column("scheduled_at", sa.Date(), nullable=False),
        sa.Column("net", sa.Integer(), nullable=False),
        sa.Column("status", OCCURRENCE_STATUS, nullable=False),
        sa.Column("posted_at", sa.DateTime()),
        sa.Column("tx_id", sa.Integer(), sa.ForeignKey("transactions.id")),
        sa.Column("budget_month", sa.String(length=7)),
        *_timestamps(),
        sa.UniqueConstraint(
            "source_id", "scheduled_at", name="uq_income_occurrence_source_date"
        ),
    )
    op.create_index(
        "ix_income_occurrences_user_status",
        "income_occurrences",
        ["user_id", "status"],
    )

    op.create_table(
        "bill_occurrences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("bill_id", sa.Integer(), sa.ForeignKey("bills.id"), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("status", BILL_STATUS, nullable=False),
        sa.Column("paid_tx_id", sa.Integer(), sa.ForeignKey("transactions.id")),
        sa.Column("amount_override_cents", sa.Integer()),
        *_timestamps(),
        sa.UniqueConstraint("bill_id", "due_date", name="uq_bill_occurrence_bill_date"),
    )
    op.create_index(
        "ix_bill_occurrences_user_status", "bill_occurrences", ["user_id", "status"]
    )

    op.create_table(
        "bill_payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("bill_id", sa.Integer(), sa.ForeignKey("bills.id"), nullable=False),
        sa.Column(
            "tx_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("paid_at", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.String(length=64), nullable=False),
        sa.Column("note", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_bill_payment_amount_positive"),
    )

    op.create_table(
        "bill_category_links",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("bill_id", sa.Integer(), sa.ForeignKey("bills.id"), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column(
            "auto_suggest_amount", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        *_timestamps(),
        sa.UniqueConstraint("bill_id", "category_id", name="uq_bill_category_link"),
    )


def downgrade():
    op.drop_table("bill_category_links")
    op.drop_table("bill_payments")
    op.drop_index("ix_bill_occurrences_user_status", table_name="bill_occurrences")
    op.drop_table("bill_occurrences")
    op.drop_index("ix_income_occurrences_user_status", table_name="income_occurrences")
    op.drop_table("income_occurrences")
    op.drop_index("ix_transactions_user_month_category", table_name="transactions")
    op.drop_index("ix_transactions_user_month", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("bills")
    op.drop_table("income_sources")
    op.drop_index("ix_budget_items_user_month", table_name="budget_items")
    op.drop_table("budget_items")
    op.drop_table("budget_months")
    op.drop_table("categories")
    op.drop_table("category_groups")
