"""unified ledger

Revision ID: 202610011300
Revises: 202610011200
Create Date: 2026-10-01 13:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202610011300"
down_revision = "202610011200"
branch_labels = None
depends_on = None


connection_status = sa.Enum(
    "pending", "connected", "needs_reauth", "failed", name="connectionstatus"
)
sync_status = sa.Enum("ok", "error", name="syncstatus")
account_type = sa.Enum("checking", "savings", name="accounttype")
asset_class = sa.Enum(
    "fixed_income", "equities", "funds", "etf", "reit", "cash", "other", name="assetclass"
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "institutions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("external_id", sa.String(length=120), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("logo_url", sa.String(length=500), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("provider", "external_id", name="uq_institution_provider_ext"),
    )
    op.create_table(
        "connections",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "provider", sa.String(length=40), nullable=False, server_default="open_finance"
        ),
        sa.Column(
            "institution_id",
            sa.Integer(),
            sa.ForeignKey("institutions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("external_item_id", sa.String(length=120), nullable=False),
        sa.Column("status", connection_status, nullable=False, server_default="pending"),
        sa.Column("last_sync_at", sa.DateTime(), nullable=True),
        sa.Column("last_sync_status", sync_status, nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "external_item_id", name="uq_connection_user_item"),
    )
    op.create_index("ix_connections_external_item", "connections", ["external_item_id"])
    op.create_table(
        "bank_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "connection_id",
            sa.Integer(),
            sa.ForeignKey("connections.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_id", sa.String(length=120), nullable=False),
        sa.Column("account_type", account_type, nullable=False),
        sa.Column("display_name", sa.String(length=200), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="BRL"),
        sa.Column("balance_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("available_balance_cents", sa.BigInteger(), nullable=True),
        sa.Column("last_refreshed_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "external_id", name="uq_bank_account_user_ext"),
    )
    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("bank_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_id", sa.String(length=200), nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("merchant", sa.String(length=200), nullable=True),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column(
            "category_is_manual", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="BRL"),
        sa.Column("status", sa.String(length=40), nullable=True),
        sa.Column("raw_json", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "external_id", name="uq_transaction_user_ext"),
    )
    op.create_index(
        "ix_transactions_user_occurred", "transactions", ["user_id", "occurred_at"]
    )
    op.create_table(
        "credit_cards",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "connection_id",
            sa.Integer(),
            sa.ForeignKey("connections.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_id", sa.String(length=120), nullable=False),
        sa.Column("display_name", sa.String(length=200), nullable=False),
        sa.Column("brand", sa.String(length=40), nullable=True),
        sa.Column("last4", sa.String(length=4), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="BRL"),
        sa.Column("limit_cents", sa.BigInteger(), nullable=True),
        sa.Column("available_limit_cents", sa.BigInteger(), nullable=True),
        sa.Column("balance_cents", sa.BigInteger(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "external_id", name="uq_credit_card_user_ext"),
    )
    op.create_table(
        "card_invoices",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "card_id",
            sa.Integer(),
            sa.ForeignKey("credit_cards.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_id", sa.String(length=120), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=True),
        sa.Column("period_end", sa.Date(), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("total_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("minimum_cents", sa.BigInteger(), nullable=True),
        sa.Column("status", sa.String(length=40), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "external_id", name="uq_card_invoice_user_ext"),
    )
    op.create_table(
        "invoice_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "invoice_id",
            sa.Integer(),
            sa.ForeignKey("card_invoices.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_id", sa.String(length=200), nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("merchant", sa.String(length=200), nullable=True),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("raw_json", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "external_id", name="uq_invoice_item_user_ext"),
    )
    op.create_table(
        "assets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("symbol", sa.String(length=40), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("class", asset_class, nullable=False, server_default="other"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="BRL"),
        *_timestamps(),
        sa.UniqueConstraint("symbol", "currency", name="uq_asset_symbol_currency"),
    )
    op.create_table(
        "holdings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "connection_id",
            sa.Integer(),
            sa.ForeignKey("connections.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("asset_id", sa.Integer(), sa.ForeignKey("assets.id"), nullable=True),
        sa.Column("asset_name_fallback", sa.String(length=200), nullable=True),
        sa.Column("identity_key", sa.String(length=240), nullable=False),
        sa.Column("external_id", sa.String(length=120), nullable=True),
        sa.Column("quantity", sa.Numeric(24, 8), nullable=True),
        sa.Column("current_price_cents", sa.BigInteger(), nullable=True),
        sa.Column("market_value_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("as_of_date", sa.Date(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id",
            "connection_id",
            "identity_key",
            "as_of_date",
            name="uq_holding_snapshot",
        ),
    )
    op.create_index("ix_holdings_user_date", "holdings", ["user_id", "as_of_date"])


def downgrade() -> None:
    op.drop_index("ix_holdings_user_date", table_name="holdings")
    op.drop_table("holdings")
    op.drop_table("assets")
    op.drop_table("invoice_items")
    op.drop_table("card_invoices")
    op.drop_table("credit_cards")
    op.drop_index("ix_transactions_user_occurred", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("bank_accounts")
    op.drop_index("ix_connections_external_item", table_name="connections")
    op.drop_table("connections")
    op.drop_table("institutions")
    bind = op.get_bind()
    for enum in (asset_class, account_type, sync_status, connection_status):
        enum.drop(bind, checkfirst=True)
