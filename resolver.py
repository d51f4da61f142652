"""Chooses which storage generation answers a read.

Users whose data still lives in the legacy per-provider tables are served
entirely from there; everyone else reads the unified ledger. The decision
is taken once per request and never mixes sources inside one response.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from sqlalchemy import and_, distinct, func, inspect, select
from sqlalchemy.engine import Connection as DBConnection, Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, joinedload

from legacy_models import (
    LegacyAccount,
    LegacyCardInvoice,
    LegacyCreditCard,
    LegacyInvestment,
    LegacyTransaction,
)
from models import (
    AccountType,
    AssetClass,
    BankAccount,
    CardInvoice,
    Connection,
    CreditCard,
    Holding,
    Institution,
    InvoiceItem,
    Transaction,
)
from money import to_cents
from reconciler import classify_asset

logger = logging.getLogger(__name__)


class DataSource(str, Enum):
    ledger = "ledger"
    legacy = "legacy"


@dataclass(frozen=True)
class Capabilities:
    """Tables present in the database, probed once at startup."""

    tables: frozenset[str] = frozenset()

    def has(self, table_name: str) -> bool:
        return table_name in self.tables


def detect_capabilities(bind: Union[Engine, DBConnection]) -> Capabilities:
    tables = frozenset(inspect(bind).get_table_names())
    logger.info(f"capabilities: tables={len(tables)}")
    return Capabilities(tables=tables)


@dataclass
class AccountRow:
    id: int
    connection_id: Optional[int]
    institution_name: Optional[str]
    institution_logo: Optional[str]
    name: str
    account_type: AccountType
    currency: str
    balance_cents: int
    available_balance_cents: Optional[int] = None
    updated_at: Optional[datetime] = None


@dataclass
class TransactionRow:
    id: int
    account_id: Optional[int]
    occurred_at: datetime
    description: Optional[str]
    merchant: Optional[str]
    category: Optional[str]
    category_is_manual: bool
    amount_cents: int
    currency: str = "BRL"
    status: Optional[str] = None


@dataclass
class HoldingRow:
    id: int
    name: str
    symbol: Optional[str]
    asset_class: AssetClass
    quantity: Optional[Decimal]
    price_cents: Optional[int]
    market_value_cents: int
    as_of_date: Optional[date]
    currency: str = "BRL"


@dataclass
class CardRow:
    id: int
    name: str
    brand: Optional[str]
    last4: Optional[str]
    currency: str
    limit_cents: Optional[int]
    available_limit_cents: Optional[int]
    balance_cents: int


@dataclass
class InvoiceItemRow:
    id: int
    occurred_at: datetime
    description: Optional[str]
    merchant: Optional[str]
    category: Optional[str]
    amount_cents: int


@dataclass
class InvoiceRow:
    id: int
    card_id: int
    period_start: Optional[date]
    period_end: Optional[date]
    due_date: Optional[date]
    total_cents: int
    minimum_cents: Optional[int]
    status: Optional[str]
    items: list[InvoiceItemRow] = field(default_factory=list)


class LedgerReader:
    source = DataSource.ledger

    def __init__(self, session: Session, capabilities: Capabilities, user_id: int) -> None:
        self.session = session
        self.capabilities = capabilities
        self.user_id = user_id

    def _present(self, *tables: str) -> bool:
        return all(self.capabilities.has(t) for t in tables)

    def accounts(self) -> list[AccountRow]:
        if not self._present(BankAccount.__tablename__, Connection.__tablename__):
            return []
        stmt = (
            select(BankAccount)
            .options(joinedload(BankAccount.connection).joinedload(Connection.institution))
            .where(BankAccount.user_id == self.user_id)
            .order_by(BankAccount.display_name, BankAccount.id)
        )
        rows = []
        for account in self.session.scalars(stmt).all():
            institution = account.connection.institution if account.connection else None
            rows.append(
                AccountRow(
                    id=account.id,
                    connection_id=account.connection_id,
                    institution_name=institution.name if institution else None,
                    institution_logo=institution.logo_url if institution else None,
                    name=account.display_name,
                    account_type=account.account_type,
                    currency=account.currency,
                    balance_cents=account.balance_cents,
                    available_balance_cents=account.available_balance_cents,
                    updated_at=account.last_refreshed_at,
                )
            )
        return rows

    def transactions(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        account_id: Optional[int] = None,
    ) -> list[TransactionRow]:
        if not self._present(Transaction.__tablename__):
            return []
        stmt = select(Transaction).where(Transaction.user_id == self.user_id)
        if start is not None:
            stmt = stmt.where(Transaction.occurred_at >= start)
        if end is not None:
            stmt = stmt.where(Transaction.occurred_at < end)
        if account_id is not None:
            stmt = stmt.where(Transaction.account_id == account_id)
        stmt = stmt.order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
        return [
            TransactionRow(
                id=tx.id,
                account_id=tx.account_id,
                occurred_at=tx.occurred_at,
                description=tx.description,
                merchant=tx.merchant,
                category=tx.category,
                category_is_manual=tx.category_is_manual,
                amount_cents=tx.amount_cents,
                currency=tx.currency,
                status=tx.status,
            )
            for tx in self.session.scalars(stmt).all()
        ]

    def holdings(self) -> list[HoldingRow]:
        """Positions in each connection's newest snapshot. A position missing
        from that snapshot was sold and no longer counts."""
        if not self._present(Holding.__tablename__):
            return []
        latest = (
            select(
                Holding.connection_id,
                func.max(Holding.as_of_date).label("as_of"),
            )
            .where(Holding.user_id == self.user_id)
            .group_by(Holding.connection_id)
            .subquery()
        )
        stmt = (
            select(Holding)
            .options(joinedload(Holding.asset))
            .join(
                latest,
                and_(
                    Holding.connection_id == latest.c.connection_id,
                    Holding.as_of_date == latest.c.as_of,
                ),
            )
            .where(Holding.user_id == self.user_id)
            .order_by(Holding.market_value_cents.desc(), Holding.id)
        )
        rows = []
        for holding in self.session.scalars(stmt).all():
            asset = holding.asset
            rows.append(
                HoldingRow(
                    id=holding.id,
                    name=asset.name if asset else (holding.asset_name_fallback or ""),
                    symbol=asset.symbol if asset else None,
                    asset_class=asset.asset_class if asset else AssetClass.other,
                    quantity=holding.quantity,
                    price_cents=holding.current_price_cents,
                    market_value_cents=holding.market_value_cents,
                    as_of_date=holding.as_of_date,
                    currency=asset.currency if asset else "BRL",
                )
            )
        return rows

    def cards(self) -> list[CardRow]:
        if not self._present(CreditCard.__tablename__):
            return []
        stmt = (
            select(CreditCard)
            .where(CreditCard.user_id == self.user_id)
            .order_by(CreditCard.display_name, CreditCard.id)
        )
        return [
            CardRow(
                id=card.id,
                name=card.display_name,
                brand=card.brand,
                last4=card.last4,
                currency=card.currency,
                limit_cents=card.limit_cents,
                available_limit_cents=card.available_limit_cents,
                balance_cents=card.balance_cents,
            )
            for card in self.session.scalars(stmt).all()
        ]

    def invoices(self, card_id: int) -> Optional[list[InvoiceRow]]:
        """None when the card does not belong to the user."""
        if not self._present(CreditCard.__tablename__, CardInvoice.__tablename__):
            return None
        card = self.session.get(CreditCard, card_id)
        if not card or card.user_id != self.user_id:
            return None
        stmt = (
            select(CardInvoice)
            .options(joinedload(CardInvoice.items))
            .where(CardInvoice.user_id == self.user_id, CardInvoice.card_id == card_id)
            .order_by(CardInvoice.due_date.desc(), CardInvoice.id.desc())
        )
        invoices = self.session.scalars(stmt).unique().all()
        return [
            InvoiceRow(
                id=invoice.id,
                card_id=invoice.card_id,
                period_start=invoice.period_start,
                period_end=invoice.period_end,
                due_date=invoice.due_date,
                total_cents=invoice.total_cents,
                minimum_cents=invoice.minimum_cents,
                status=invoice.status,
                items=[_item_row(item) for item in sorted(invoice.items, key=_item_order)],
            )
            for invoice in invoices
        ]

    def categories(self) -> list[str]:
        """Distinct category names already stored for this user."""
        if not self._present(Transaction.__tablename__):
            return []
        stmt = select(distinct(Transaction.category)).where(
            Transaction.user_id == self.user_id, Transaction.category.is_not(None)
        )
        return list(self.session.scalars(stmt).all())

    def set_category(self, transaction_id: int, category: str) -> bool:
        if not self._present(Transaction.__tablename__):
            return False
        tx = self.session.get(Transaction, transaction_id)
        if not tx or tx.user_id != self.user_id:
            return False
        tx.category = category
        tx.category_is_manual = True
        self.session.commit()
        return True


def _item_order(item: InvoiceItem):
    return (item.occurred_at, item.id)


def _item_row(item: InvoiceItem) -> InvoiceItemRow:
    return InvoiceItemRow(
        id=item.id,
        occurred_at=item.occurred_at,
        description=item.description,
        merchant=item.merchant,
        category=item.category,
        amount_cents=item.amount_cents,
    )


def _legacy_account_type(value: Optional[str]) -> AccountType:
    if (value or "").upper() in ("SAVINGS", "SAVINGS_ACCOUNT"):
        return AccountType.savings
    return AccountType.checking


class LegacyReader:
    """Same rows as ``LedgerReader``, read from the previous generation's
    tables. Amounts there are decimal major units."""

    source = DataSource.legacy

    def __init__(self, session: Session, capabilities: Capabilities, user_id: int) -> None:
        self.session = session
        self.capabilities = capabilities
        self.user_id = user_id

    def _present(self, *tables: str) -> bool:
        return all(self.capabilities.has(t) for t in tables)

    def _institutions_by_item(self) -> dict[str, Institution]:
        if not self._present(Connection.__tablename__, Institution.__tablename__):
            return {}
        stmt = (
            select(Connection.external_item_id, Institution)
            .join(Institution, Connection.institution_id == Institution.id)
            .where(Connection.user_id == self.user_id)
        )
        return {item_id: institution for item_id, institution in self.session.execute(stmt).all()}

    def _connection_ids_by_item(self) -> dict[str, int]:
        if not self._present(Connection.__tablename__):
            return {}
        stmt = select(Connection.external_item_id, Connection.id).where(
            Connection.user_id == self.user_id
        )
        return {item_id: conn_id for item_id, conn_id in self.session.execute(stmt).all()}

    def accounts(self) -> list[AccountRow]:
        if not self._present(LegacyAccount.__tablename__):
            return []
        institutions = self._institutions_by_item()
        connection_ids = self._connection_ids_by_item()
        stmt = (
            select(LegacyAccount)
            .where(LegacyAccount.user_id == self.user_id)
            .order_by(LegacyAccount.name, LegacyAccount.id)
        )
        rows = []
        for account in self.session.scalars(stmt).all():
            if (account.type or "").upper() == "CREDIT":
                continue
            institution = institutions.get(account.item_id)
            rows.append(
                AccountRow(
                    id=account.id,
                    connection_id=connection_ids.get(account.item_id),
                    institution_name=institution.name if institution else None,
                    institution_logo=institution.logo_url if institution else None,
                    name=account.name or account.pluggy_account_id,
                    account_type=_legacy_account_type(account.type),
                    currency=(account.currency or "BRL").upper(),
                    balance_cents=to_cents(account.current_balance) or 0,
                    available_balance_cents=to_cents(account.available_balance),
                    updated_at=account.updated_at,
                )
            )
        return rows

    def transactions(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        account_id: Optional[int] = None,
    ) -> list[TransactionRow]:
        if not self._present(LegacyTransaction.__tablename__):
            return []
        stmt = select(LegacyTransaction).where(LegacyTransaction.user_id == self.user_id)
        if start is not None:
            stmt = stmt.where(LegacyTransaction.occurred_on >= _ceil_date(start))
        if end is not None:
            stmt = stmt.where(LegacyTransaction.occurred_on < _ceil_date(end))
        account_ids: dict[str, int] = {}
        if self._present(LegacyAccount.__tablename__):
            account_ids = {
                ext: pk
                for ext, pk in self.session.execute(
                    select(LegacyAccount.pluggy_account_id, LegacyAccount.id).where(
                        LegacyAccount.user_id == self.user_id
                    )
                ).all()
            }
        if account_id is not None:
            external = next((ext for ext, pk in account_ids.items() if pk == account_id), None)
            if external is None:
                return []
            stmt = stmt.where(LegacyTransaction.pluggy_account_id == external)
        stmt = stmt.order_by(LegacyTransaction.occurred_on.desc(), LegacyTransaction.id.desc())
        return [
            TransactionRow(
                id=tx.id,
                account_id=account_ids.get(tx.pluggy_account_id),
                occurred_at=datetime.combine(tx.occurred_on, time.min),
                description=tx.description,
                merchant=tx.merchant,
                category=tx.category,
                category_is_manual=bool(tx.category_is_manual),
                amount_cents=to_cents(tx.amount) or 0,
                status=tx.status,
            )
            for tx in self.session.scalars(stmt).all()
        ]

    def holdings(self) -> list[HoldingRow]:
        if not self._present(LegacyInvestment.__tablename__):
            return []
        stmt = (
            select(LegacyInvestment)
            .where(LegacyInvestment.user_id == self.user_id)
            .order_by(LegacyInvestment.current_value.desc(), LegacyInvestment.id)
        )
        return [
            HoldingRow(
                id=inv.id,
                name=inv.name or "",
                symbol=None,
                asset_class=classify_asset(inv.type, None),
                quantity=inv.quantity,
                price_cents=to_cents(inv.unit_price),
                market_value_cents=to_cents(inv.current_value) or 0,
                as_of_date=inv.updated_at.date() if inv.updated_at else None,
            )
            for inv in self.session.scalars(stmt).all()
        ]

    def cards(self) -> list[CardRow]:
        if not self._present(LegacyCreditCard.__tablename__):
            return []
        stmt = (
            select(LegacyCreditCard)
            .where(LegacyCreditCard.user_id == self.user_id)
            .order_by(LegacyCreditCard.id)
        )
        return [
            CardRow(
                id=card.id,
                name=" ".join(p for p in (card.brand, card.last4) if p) or card.pluggy_card_id,
                brand=card.brand,
                last4=card.last4,
                currency="BRL",
                limit_cents=to_cents(card.limit),
                available_limit_cents=to_cents(card.available_limit),
                balance_cents=to_cents(card.balance) or 0,
            )
            for card in self.session.scalars(stmt).all()
        ]

    def invoices(self, card_id: int) -> Optional[list[InvoiceRow]]:
        if not self._present(LegacyCreditCard.__tablename__, LegacyCardInvoice.__tablename__):
            return None
        card = self.session.get(LegacyCreditCard, card_id)
        if not card or card.user_id != self.user_id:
            return None
        stmt = (
            select(LegacyCardInvoice)
            .where(
                LegacyCardInvoice.user_id == self.user_id,
                LegacyCardInvoice.pluggy_card_id == card.pluggy_card_id,
            )
            .order_by(LegacyCardInvoice.due_date.desc(), LegacyCardInvoice.id.desc())
        )
        return [
            InvoiceRow(
                id=invoice.id,
                card_id=card.id,
                period_start=None,
                period_end=None,
                due_date=invoice.due_date,
                total_cents=to_cents(invoice.amount) or 0,
                minimum_cents=None,
                status=invoice.status,
            )
            for invoice in self.session.scalars(stmt).all()
        ]

    def categories(self) -> list[str]:
        if not self._present(LegacyTransaction.__tablename__):
            return []
        stmt = select(distinct(LegacyTransaction.category)).where(
            LegacyTransaction.user_id == self.user_id, LegacyTransaction.category.is_not(None)
        )
        return list(self.session.scalars(stmt).all())

    def set_category(self, transaction_id: int, category: str) -> bool:
        if not self._present(LegacyTransaction.__tablename__):
            return False
        tx = self.session.get(LegacyTransaction, transaction_id)
        if not tx or tx.user_id != self.user_id:
            return False
        tx.category = category
        tx.category_is_manual = True
        self.session.commit()
        return True


def _ceil_date(value: datetime) -> date:
    """First calendar date whose midnight is at or after ``value``."""
    if isinstance(value, datetime):
        if value.time() == time.min:
            return value.date()
        return date.fromordinal(value.date().toordinal() + 1)
    return value


Reader = Union[LedgerReader, LegacyReader]

LEGACY_PROBE = (
    LegacyAccount,
    LegacyTransaction,
    LegacyCreditCard,
    LegacyInvestment,
)


class SourceResolver:
    def __init__(self, session: Session, capabilities: Capabilities, user_id: int) -> None:
        self.session = session
        self.capabilities = capabilities
        self.user_id = user_id
        self._source: Optional[DataSource] = None

    def source(self) -> DataSource:
        if self._source is None:
            self._source = DataSource.legacy if self._has_legacy_rows() else DataSource.ledger
        return self._source

    def reader(self) -> Reader:
        if self.source() == DataSource.legacy:
            return LegacyReader(self.session, self.capabilities, self.user_id)
        return LedgerReader(self.session, self.capabilities, self.user_id)

    def _has_legacy_rows(self) -> bool:
        for model in LEGACY_PROBE:
            if not self.capabilities.has(model.__tablename__):
                continue
            try:
                found = self.session.scalar(
                    select(model.id).where(model.user_id == self.user_id).limit(1)
                )
            except DBAPIError:
                self.session.rollback()
                logger.warning(
                    f"legacy_probe: table={model.__tablename__} user_id={self.user_id} status=failed",
                    exc_info=True,
                )
                continue
            if found is not None:
                return True
        return False
