"""Tables of the previous, per-provider storage generation.

The sync engine no longer writes here; rows are read through
``resolver.LegacyReader`` while users are still being migrated. Money is
kept as decimal major units in these tables.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base
from models import utcnow


class LegacyAccount(Base):
    __tablename__ = "pluggy_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "pluggy_account_id", name="uq_pluggy_account"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    item_id: Mapped[str] = mapped_column(String(120), nullable=False)
    pluggy_account_id: Mapped[str] = mapped_column(String(120), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(200))
    type: Mapped[Optional[str]] = mapped_column(String(40))
    currency: Mapped[Optional[str]] = mapped_column(String(3))
    current_balance: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2))
    available_balance: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2))
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class LegacyTransaction(Base):
    __tablename__ = "pluggy_transactions"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "pluggy_transaction_id", name="uq_pluggy_transaction"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    item_id: Mapped[str] = mapped_column(String(120), nullable=False)
    pluggy_transaction_id: Mapped[str] = mapped_column(String(200), nullable=False)
    pluggy_account_id: Mapped[str] = mapped_column(String(120), nullable=False)
    occurred_on: Mapped[date] = mapped_column("date", Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    category: Mapped[Optional[str]] = mapped_column(String(100))
    category_is_manual: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    merchant: Mapped[Optional[str]] = mapped_column(String(200))
    status: Mapped[Optional[str]] = mapped_column(String(40))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


Index(
    "ix_pluggy_transactions_user_date",
    LegacyTransaction.user_id,
    LegacyTransaction.occurred_on,
)


class LegacyCreditCard(Base):
    __tablename__ = "pluggy_credit_cards"
    __table_args__ = (
        UniqueConstraint("user_id", "pluggy_card_id", name="uq_pluggy_credit_card"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    item_id: Mapped[str] = mapped_column(String(120), nullable=False)
    pluggy_card_id: Mapped[str] = mapped_column(String(120), nullable=False)
    brand: Mapped[Optional[str]] = mapped_column(String(40))
    last4: Mapped[Optional[str]] = mapped_column(String(20))
    limit: Mapped[Optional[Decimal]] = mapped_column("limit", Numeric(14, 2))
    available_limit: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2))
    balance: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2))
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class LegacyCardInvoice(Base):
    __tablename__ = "pluggy_card_invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    pluggy_invoice_id: Mapped[str] = mapped_column(
        String(120), nullable=False, unique=True
    )
    pluggy_card_id: Mapped[str] = mapped_column(String(120), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    item_id: Mapped[str] = mapped_column(String(120), nullable=False)
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2))
    status: Mapped[Optional[str]] = mapped_column(String(40))
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class LegacyInvestment(Base):
    __tablename__ = "pluggy_investments"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "pluggy_investment_id", name="uq_pluggy_investment"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    item_id: Mapped[str] = mapped_column(String(120), nullable=False)
    pluggy_investment_id: Mapped[str] = mapped_column(String(120), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(200))
    type: Mapped[Optional[str]] = mapped_column(String(40))
    quantity: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    unit_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2))
    current_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2))
    profitability: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 4))
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


LEGACY_TABLES = (
    LegacyAccount.__table__,
    LegacyTransaction.__table__,
    LegacyCreditCard.__table__,
    LegacyCardInvoice.__table__,
    LegacyInvestment.__table__,
)
