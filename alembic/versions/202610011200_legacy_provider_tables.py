"""legacy provider tables

Revision ID: 202610011200
Revises:
Create Date: 2026-10-01 12:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202610011200"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "pluggy_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.String(length=120), nullable=False),
        sa.Column("pluggy_account_id", sa.String(length=120), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=True),
        sa.Column("type", sa.String(length=40), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("current_balance", sa.Numeric(14, 2), nullable=True),
        sa.Column("available_balance", sa.Numeric(14, 2), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("user_id", "pluggy_account_id", name="uq_pluggy_account"),
    )
    op.create_table(
        "pluggy_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.String(length=120), nullable=False),
        sa.Column("pluggy_transaction_id", sa.String(length=200), nullable=False),
        sa.Column("pluggy_account_id", sa.String(length=120), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column(
            "category_is_manual", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("merchant", sa.String(length=200), nullable=True),
        sa.Column("status", sa.String(length=40), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint(
            "user_id", "pluggy_transaction_id", name="uq_pluggy_transaction"
        ),
    )
    op.create_index(
        "ix_pluggy_transactions_user_date", "pluggy_transactions", ["user_id", "date"]
    )
    op.create_table(
        "pluggy_credit_cards",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.String(length=120), nullable=False),
        sa.Column("pluggy_card_id", sa.String(length=120), nullable=False),
        sa.Column("brand", sa.String(length=40), nullable=True),
        sa.Column("last4", sa.String(length=20), nullable=True),
        sa.Column("limit", sa.Numeric(14, 2), nullable=True),
        sa.Column("available_limit", sa.Numeric(14, 2), nullable=True),
        sa.Column("balance", sa.Numeric(14, 2), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("user_id", "pluggy_card_id", name="uq_pluggy_credit_card"),
    )
    op.create_table(
        "pluggy_card_invoices",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("pluggy_invoice_id", sa.String(length=120), nullable=False, unique=True),
        sa.Column("pluggy_card_id", sa.String(length=120), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.String(length=120), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("status", sa.String(length=40), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_table(
        "pluggy_investments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.String(length=120), nullable=False),
        sa.Column("pluggy_investment_id", sa.String(length=120), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=True),
        sa.Column("type", sa.String(length=40), nullable=True),
        sa.Column("quantity", sa.Numeric(24, 8), nullable=True),
        sa.Column("unit_price", sa.Numeric(14, 2), nullable=True),
        sa.Column("current_value", sa.Numeric(14, 2), nullable=True),
        sa.Column("profitability", sa.Numeric(10, 4), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint(
            "user_id", "pluggy_investment_id", name="uq_pluggy_investment"
        ),
    )


def downgrade() -> None:
    op.drop_table("pluggy_investments")
    op.drop_table("pluggy_card_invoices")
    op.drop_table("pluggy_credit_cards")
    op.drop_index("ix_pluggy_transactions_user_date", table_name="pluggy_transactions")
    op.drop_table("pluggy_transactions")
    op.drop_table("pluggy_accounts")
