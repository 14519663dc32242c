"""initial schema

Revision ID: 202404010900
Revises:
Create Date: 2024-04-01 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202404010900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120)),
        sa.Column("timezone", sa.String(length=64)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "kind", sa.Enum("regular", "bill", name="transactionkind"), nullable=False
        ),
        sa.Column(
            "type", sa.Enum("income", "expense", name="transactiontype"), nullable=False
        ),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("is_recurring", sa.Boolean(), nullable=False),
        sa.Column("is_template", sa.Boolean(), nullable=False),
        sa.Column("recurring_active", sa.Boolean(), nullable=False),
        sa.Column(
            "frequency",
            sa.Enum(
                "daily", "weekly", "monthly", "quarterly", "yearly", name="frequency"
            ),
        ),
        sa.Column("start_date", sa.Date()),
        sa.Column("end_date", sa.Date()),
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        sa.Column("occurrence_date", sa.Date()),
        sa.Column("due_date", sa.Date()),
        sa.Column(
            "bill_status",
            sa.Enum("unpaid", "paid", "overdue", "pending", name="billstatus"),
        ),
        sa.Column(
            "bill_frequency",
            sa.Enum(
                "monthly", "quarterly", "yearly", "one-time", name="billfrequency"
            ),
        ),
        sa.Column("next_due_date", sa.Date()),
        sa.Column("last_paid_date", sa.DateTime()),
        sa.Column("bill_category", sa.String(length=100)),
        sa.Column("reminder_days", sa.Integer()),
        sa.Column(
            "payment_method",
            sa.Enum(
                "manual",
                "auto-pay",
                "bank-transfer",
                "credit-card",
                "debit-card",
                "cash",
                name="paymentmethod",
            ),
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "template_id", "occurrence_date", name="uq_txn_template_occurrence"
        ),
        sa.CheckConstraint(
            "amount_cents >= 0", name="ck_transactions_amount_positive"
        ),
        sa.CheckConstraint(
            "template_id IS NULL OR NOT is_template",
            name="ck_transactions_instance_not_template",
        ),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_template", "transactions", ["user_id", "is_template"]
    )
    op.create_index(
        "ix_transactions_template_occurred",
        "transactions",
        ["template_id", "occurred_at"],
    )
    op.create_index(
        "ix_transactions_user_kind_due",
        "transactions",
        ["user_id", "kind", "due_date"],
    )


def downgrade():
    op.drop_index("ix_transactions_user_kind_due", table_name="transactions")
    op.drop_index("ix_transactions_template_occurred", table_name="transactions")
    op.drop_index("ix_transactions_user_template", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("users")
