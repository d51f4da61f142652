from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ConnectionStatus(str, Enum):
    pending = "pending"
    connected = "connected"
    needs_reauth = "needs_reauth"
    failed = "failed"


class SyncStatus(str, Enum):
    ok = "ok"
    error = "error"


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"


class AssetClass(str, Enum):
    fixed_income = "fixed_income"
    equities = "equities"
    funds = "funds"
    etf = "etf"
    reit = "reit"
    cash = "cash"
    other = "other"


def _values(enum_cls):
    return [member.value for member in enum_cls]


CONNECTION_STATUS_ENUM = SAEnum(
    ConnectionStatus, name="connectionstatus", values_callable=_values
)
SYNC_STATUS_ENUM = SAEnum(SyncStatus, name="syncstatus", values_callable=_values)
ACCOUNT_TYPE_ENUM = SAEnum(AccountType, name="accounttype", values_callable=_values)
ASSET_CLASS_ENUM = SAEnum(AssetClass, name="assetclass", values_callable=_values)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Institution(Base, TimestampMixin):
    __tablename__ = "institutions"
    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_institution_provider_ext"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    external_id: Mapped[str] = mapped_column(String(120), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    logo_url: Mapped[Optional[str]] = mapped_column(String(500))
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Connection(Base, TimestampMixin):
    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint("user_id", "external_item_id", name="uq_connection_user_item"),
        Index("ix_connections_external_item", "external_item_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    provider: Mapped[str] = mapped_column(
        String(40), nullable=False, default="open_finance"
    )
    institution_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("institutions.id", ondelete="SET NULL")
    )
    external_item_id: Mapped[str] = mapped_column(String(120), nullable=False)
    status: Mapped[ConnectionStatus] = mapped_column(
        CONNECTION_STATUS_ENUM, nullable=False, default=ConnectionStatus.pending
    )
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_sync_status: Mapped[Optional[SyncStatus]] = mapped_column(SYNC_STATUS_ENUM)
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    institution: Mapped[Optional["Institution"]] = relationship("Institution")
    accounts: Mapped[list["BankAccount"]] = relationship(
        "BankAccount", back_populates="connection", cascade="all, delete-orphan"
    )
    cards: Mapped[list["CreditCard"]] = relationship(
        "CreditCard", back_populates="connection", cascade="all, delete-orphan"
    )
    holdings: Mapped[list["Holding"]] = relationship(
        "Holding", back_populates="connection", cascade="all, delete-orphan"
    )


class BankAccount(Base, TimestampMixin):
    __tablename__ = "bank_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "external_id", name="uq_bank_account_user_ext"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    connection_id: Mapped[int] = mapped_column(
        ForeignKey("connections.id", ondelete="CASCADE"), nullable=False
    )
    external_id: Mapped[str] = mapped_column(String(120), nullable=False)
    account_type: Mapped[AccountType] = mapped_column(ACCOUNT_TYPE_ENUM, nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BRL")
    balance_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    available_balance_cents: Mapped[Optional[int]] = mapped_column(BigInteger)
    last_refreshed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    connection: Mapped["Connection"] = relationship(
        "Connection", back_populates="accounts"
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account", cascade="all, delete-orphan"
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "external_id", name="uq_transaction_user_ext"),
        Index("ix_transactions_user_occurred", "user_id", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("bank_accounts.id", ondelete="CASCADE"), nullable=False
    )
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    merchant: Mapped[Optional[str]] = mapped_column(String(200))
    category: Mapped[Optional[str]] = mapped_column(String(100))
    category_is_manual: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BRL")
    status: Mapped[Optional[str]] = mapped_column(String(40))
    raw_json: Mapped[Optional[str]] = mapped_column(Text)

    account: Mapped["BankAccount"] = relationship(
        "BankAccount", back_populates="transactions"
    )


class CreditCard(Base, TimestampMixin):
    __tablename__ = "credit_cards"
    __table_args__ = (
        UniqueConstraint("user_id", "external_id", name="uq_credit_card_user_ext"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    connection_id: Mapped[int] = mapped_column(
        ForeignKey("connections.id", ondelete="CASCADE"), nullable=False
    )
    external_id: Mapped[str] = mapped_column(String(120), nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    brand: Mapped[Optional[str]] = mapped_column(String(40))
    last4: Mapped[Optional[str]] = mapped_column(String(4))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BRL")
    limit_cents: Mapped[Optional[int]] = mapped_column(BigInteger)
    available_limit_cents: Mapped[Optional[int]] = mapped_column(BigInteger)
    balance_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    connection: Mapped["Connection"] = relationship("Connection", back_populates="cards")
    invoices: Mapped[list["CardInvoice"]] = relationship(
        "CardInvoice", back_populates="card", cascade="all, delete-orphan"
    )


class CardInvoice(Base, TimestampMixin):
    __tablename__ = "card_invoices"
    __table_args__ = (
        UniqueConstraint("user_id", "external_id", name="uq_card_invoice_user_ext"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    card_id: Mapped[int] = mapped_column(
        ForeignKey("credit_cards.id", ondelete="CASCADE"), nullable=False
    )
    external_id: Mapped[str] = mapped_column(String(120), nullable=False)
    period_start: Mapped[Optional[date]] = mapped_column(Date)
    period_end: Mapped[Optional[date]] = mapped_column(Date)
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    minimum_cents: Mapped[Optional[int]] = mapped_column(BigInteger)
    status: Mapped[Optional[str]] = mapped_column(String(40))

    card: Mapped["CreditCard"] = relationship("CreditCard", back_populates="invoices")
    items: Mapped[list["InvoiceItem"]] = relationship(
        "InvoiceItem", back_populates="invoice", cascade="all, delete-orphan"
    )


class InvoiceItem(Base, TimestampMixin):
    __tablename__ = "invoice_items"
    __table_args__ = (
        UniqueConstraint("user_id", "external_id", name="uq_invoice_item_user_ext"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    invoice_id: Mapped[int] = mapped_column(
        ForeignKey("card_invoices.id", ondelete="CASCADE"), nullable=False
    )
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    merchant: Mapped[Optional[str]] = mapped_column(String(200))
    category: Mapped[Optional[str]] = mapped_column(String(100))
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    raw_json: Mapped[Optional[str]] = mapped_column(Text)

    invoice: Mapped["CardInvoice"] = relationship("CardInvoice", back_populates="items")


class Asset(Base, TimestampMixin):
    __tablename__ = "assets"
    __table_args__ = (
        UniqueConstraint("symbol", "currency", name="uq_asset_symbol_currency"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    symbol: Mapped[str] = mapped_column(String(40), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    asset_class: Mapped[AssetClass] = mapped_column(
        "class", ASSET_CLASS_ENUM, nullable=False, default=AssetClass.other
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BRL")


class Holding(Base, TimestampMixin):
    __tablename__ = "holdings"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "connection_id",
            "identity_key",
            "as_of_date",
            name="uq_holding_snapshot",
        ),
        Index("ix_holdings_user_date", "user_id", "as_of_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    connection_id: Mapped[int] = mapped_column(
        ForeignKey("connections.id", ondelete="CASCADE"), nullable=False
    )
    asset_id: Mapped[Optional[int]] = mapped_column(ForeignKey("assets.id"))
    asset_name_fallback: Mapped[Optional[str]] = mapped_column(String(200))
    identity_key: Mapped[str] = mapped_column(String(240), nullable=False)
    external_id: Mapped[Optional[str]] = mapped_column(String(120))
    quantity: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    current_price_cents: Mapped[Optional[int]] = mapped_column(BigInteger)
    market_value_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    as_of_date: Mapped[date] = mapped_column(Date, nullable=False)

    connection: Mapped["Connection"] = relationship(
        "Connection", back_populates="holdings"
    )
    asset: Mapped[Optional["Asset"]] = relationship("Asset")


LEDGER_TABLES = (
    Institution.__table__,
    Connection.__table__,
    BankAccount.__table__,
    Transaction.__table__,
    CreditCard.__table__,
    CardInvoice.__table__,
    InvoiceItem.__table__,
    Asset.__table__,
    Holding.__table__,
)
