"""categories and expenses with recurrence columns

Revision ID: 202410190900
Revises:
Create Date: 2024-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202410190900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("name", name="uq_category_name"),
        sa.CheckConstraint("length(name) > 0", name="ck_category_name_not_empty"),
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column(
            "category_name",
            sa.String(length=100),
            nullable=False,
            server_default="Uncategorized",
        ),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("recurring_interval", sa.String(length=16)),
        sa.Column("next_recurrence_date", sa.DateTime()),
        sa.Column("is_original", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("anchor_date", sa.Date()),
        sa.Column(
            "origin_id",
            sa.Integer(),
            sa.ForeignKey("expenses.id", ondelete="SET NULL"),
        ),
        sa.Column("occurrence_date", sa.Date()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "origin_id", "occurrence_date", name="uq_expense_origin_occurrence"
        ),
        sa.CheckConstraint("amount_cents > 0", name="ck_expenses_amount_positive"),
    )
    op.create_index(
        "ix_expenses_recurring_due",
        "expenses",
        ["is_recurring", "is_original", "next_recurrence_date"],
    )
    op.create_index("ix_expenses_category_id", "expenses", ["category_id"])
    op.create_index("ix_expenses_created_at", "expenses", ["created_at"])


def downgrade():
    op.drop_index("ix_expenses_created_at", table_name="expenses")
    op.drop_index("ix_expenses_category_id", table_name="expenses")
    op.drop_index("ix_expenses_recurring_due", table_name="expenses")
    op.drop_table("expenses")
    op.drop_table("categories")
