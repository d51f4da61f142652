"""Maps aggregator payloads onto the unified ledger.

Every write is a select-then-update upsert on the row's natural key, so
re-running a sync with the same payload converges on one row per key.
Parents are committed before their children are written; a failing leaf
(one account's transactions, one card's invoices, one invoice's items) is
rolled back and logged without touching its parent or siblings.
"""

import json
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_current_user_id
from models import (
    AccountType,
    Asset,
    AssetClass,
    BankAccount,
    CardInvoice,
    Connection,
    CreditCard,
    Holding,
    Institution,
    InvoiceItem,
    Transaction,
    utcnow,
)
from money import div_cents, mul_cents, to_cents
from periods import local_today
from providers import ProviderClient, ProviderUnavailable
from schemas import (
    ProviderAccount,
    ProviderInstitution,
    ProviderInvestment,
    ProviderInvoice,
    ProviderTransaction,
)

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "BRL"
DEFAULT_INVESTMENT_NAME = "Investimento"

# Leaf failures that are logged and skipped instead of aborting the sync.
LEAF_ERRORS = (ProviderUnavailable, SQLAlchemyError, ValueError)

ASSET_CLASS_BY_SUBTYPE: dict[str, AssetClass] = {
    "REAL_ESTATE_FUND": AssetClass.reit,
    "ETF": AssetClass.etf,
    "STOCK": AssetClass.equities,
    "BDR": AssetClass.equities,
    "INVESTMENT_FUND": AssetClass.funds,
    "TREASURY": AssetClass.fixed_income,
    "CDB": AssetClass.fixed_income,
    "LCI": AssetClass.fixed_income,
    "LCA": AssetClass.fixed_income,
}

ASSET_CLASS_BY_TYPE: dict[str, AssetClass] = {
    "FIXED_INCOME": AssetClass.fixed_income,
    "EQUITY": AssetClass.equities,
    "MUTUAL_FUND": AssetClass.funds,
    "ETF": AssetClass.etf,
    "COE": AssetClass.fixed_income,
    "CASH": AssetClass.cash,
}


def normalize_account_type(subtype: Optional[str]) -> AccountType:
    if (subtype or "").upper() == "SAVINGS_ACCOUNT":
        return AccountType.savings
    return AccountType.checking


def classify_asset(type_code: Optional[str], subtype: Optional[str]) -> AssetClass:
    if subtype and subtype.upper() in ASSET_CLASS_BY_SUBTYPE:
        return ASSET_CLASS_BY_SUBTYPE[subtype.upper()]
    if type_code and type_code.upper() in ASSET_CLASS_BY_TYPE:
        return ASSET_CLASS_BY_TYPE[type_code.upper()]
    return AssetClass.other


def signed_amount_cents(amount: Decimal, tx_type: Optional[str]) -> int:
    """DEBIT is always an outflow, CREDIT always an inflow; anything else
    keeps the provider's sign."""
    cents = to_cents(amount) or 0
    kind = (tx_type or "").upper()
    if kind == "DEBIT":
        return -abs(cents)
    if kind == "CREDIT":
        return abs(cents)
    return cents


def synthesized_key(parent_external_id: str, occurred_at: datetime, amount_cents: int) -> str:
    return f"syn:{parent_external_id}:{occurred_at.date().isoformat()}:{amount_cents}"


def holding_identity(asset_id: Optional[int], name: str) -> str:
    if asset_id is not None:
        return f"asset:{asset_id}"
    return f"name:{name.strip().lower()}"


def derive_holding_values(
    quantity: Optional[Decimal],
    price_cents: Optional[int],
    value_cents: Optional[int],
) -> tuple[Optional[Decimal], Optional[int], int]:
    """Fill whichever of quantity / unit price / market value is missing
    from the other two. Market value falls back to 0."""
    if value_cents is None and price_cents is not None and quantity is not None:
        value_cents = mul_cents(price_cents, quantity)
    if price_cents is None and value_cents is not None and quantity is not None and quantity > 0:
        price_cents = div_cents(value_cents, quantity)
    if quantity is None and value_cents is not None and price_cents is not None and price_cents > 0:
        quantity = Decimal(value_cents) / Decimal(price_cents)
    return quantity, price_cents, value_cents if value_cents is not None else 0


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _raw_json(payload) -> str:
    return json.dumps(payload.raw(), ensure_ascii=False, sort_keys=True)


def _last4(number: Optional[str]) -> Optional[str]:
    if not number:
        return None
    digits = "".join(ch for ch in number if ch.isdigit())
    return (digits or number)[-4:]


class Reconciler:
    def __init__(
        self,
        session: Session,
        client: ProviderClient,
        user_id: Optional[int] = None,
        today: Optional[date] = None,
    ) -> None:
        self.session = session
        self.client = client
        self.user_id = user_id or get_current_user_id()
        self.today = today or local_today()

    # -- institutions -----------------------------------------------------

    def upsert_institution(
        self, provider: str, payload: ProviderInstitution
    ) -> Institution:
        existing = self.session.scalar(
            select(Institution).where(
                Institution.provider == provider,
                Institution.external_id == payload.id,
            )
        )
        if existing:
            existing.name = payload.name
            existing.logo_url = payload.image_url
            existing.enabled = payload.enabled
            self.session.flush()
            return existing

        institution = Institution(
            provider=provider,
            external_id=payload.id,
            name=payload.name,
            logo_url=payload.image_url,
            enabled=payload.enabled,
        )
        self.session.add(institution)
        self.session.flush()
        return institution

    def sync_institutions(self, provider: str = "open_finance") -> int:
        payloads = self.client.list_institutions()
        for payload in payloads:
            self.upsert_institution(provider, payload)
        self.session.commit()
        logger.info(f"sync_institutions: provider={provider} count={len(payloads)}")
        return len(payloads)

    # -- bank accounts ----------------------------------------------------

    def sync_accounts(self, connection: Connection) -> int:
        accounts = self.client.get_accounts(connection.external_item_id)
        synced = 0
        for payload in accounts:
            if payload.is_credit_card or (payload.type or "").upper() == "CREDIT":
                continue
            self.sync_account(connection, payload)
            synced += 1
        logger.info(
            f"sync_accounts: connection_id={connection.id} accounts={synced}"
        )
        return synced

    def sync_account(self, connection: Connection, payload: ProviderAccount) -> BankAccount:
        account = self.upsert_account(connection, payload)
        self.session.commit()
        try:
            self.sync_transactions(account)
            self.session.commit()
        except LEAF_ERRORS as exc:
            self.session.rollback()
            logger.warning(
                f"sync_transactions: connection_id={connection.id} "
                f"account={payload.id} status=failed error={exc}"
            )
        return account

    def upsert_account(self, connection: Connection, payload: ProviderAccount) -> BankAccount:
        balance_cents = to_cents(payload.balance) or 0
        available_cents = to_cents(payload.available_balance)
        display_name = payload.marketing_name or payload.name or payload.id
        currency = (payload.currency_code or DEFAULT_CURRENCY).upper()
        account_type = normalize_account_type(payload.subtype)

        existing = self.session.scalar(
            select(BankAccount).where(
                BankAccount.user_id == self.user_id,
                BankAccount.external_id == payload.id,
            )
        )
        if existing:
            existing.connection_id = connection.id
            existing.account_type = account_type
            existing.display_name = display_name
            existing.currency = currency
            existing.balance_cents = balance_cents
            existing.available_balance_cents = available_cents
            existing.last_refreshed_at = utcnow()
            self.session.flush()
            return existing

        account = BankAccount(
            user_id=self.user_id,
            connection_id=connection.id,
            external_id=payload.id,
            account_type=account_type,
            display_name=display_name,
            currency=currency,
            balance_cents=balance_cents,
            available_balance_cents=available_cents,
            last_refreshed_at=utcnow(),
        )
        self.session.add(account)
        self.session.flush()
        return account

    def sync_transactions(self, account: BankAccount) -> int:
        payloads = self.client.get_transactions(account.external_id)
        for payload in payloads:
            self.upsert_transaction(account, payload)
        return len(payloads)

    def upsert_transaction(
        self, account: BankAccount, payload: ProviderTransaction
    ) -> Transaction:
        amount_cents = signed_amount_cents(payload.amount, payload.type)
        external_id = payload.id or synthesized_key(
            account.external_id, payload.occurred_at, amount_cents
        )
        occurred_at = _naive_utc(payload.occurred_at)
        currency = (payload.currency_code or account.currency or DEFAULT_CURRENCY).upper()

        existing = self.session.scalar(
            select(Transaction).where(
                Transaction.user_id == self.user_id,
                Transaction.external_id == external_id,
            )
        )
        if existing:
            existing.account_id = account.id
            existing.occurred_at = occurred_at
            existing.description = payload.description
            existing.merchant = payload.merchant
            existing.amount_cents = amount_cents
            existing.currency = currency
            existing.status = payload.status
            existing.raw_json = _raw_json(payload)
            if not existing.category_is_manual:
                existing.category = payload.category
            self.session.flush()
            return existing

        tx = Transaction(
            user_id=self.user_id,
            account_id=account.id,
            external_id=external_id,
            occurred_at=occurred_at,
            description=payload.description,
            merchant=payload.merchant,
            category=payload.category,
            category_is_manual=False,
            amount_cents=amount_cents,
            currency=currency,
            status=payload.status,
            raw_json=_raw_json(payload),
        )
        self.session.add(tx)
        self.session.flush()
        return tx

    # -- credit cards -----------------------------------------------------

    def sync_credit_cards(self, connection: Connection) -> int:
        cards = self.client.get_credit_cards(connection.external_item_id)
        for payload in cards:
            self.sync_credit_card(connection, payload)
        logger.info(f"sync_credit_cards: connection_id={connection.id} cards={len(cards)}")
        return len(cards)

    def sync_credit_card(self, connection: Connection, payload: ProviderAccount) -> CreditCard:
        card = self.upsert_card(connection, payload)
        self.session.commit()
        try:
            invoices = self.client.get_card_invoices(card.external_id)
        except ProviderUnavailable as exc:
            logger.warning(
                f"sync_card_invoices: connection_id={connection.id} "
                f"card={card.external_id} status=failed error={exc}"
            )
            return card

        for invoice_payload in invoices:
            try:
                invoice = self.upsert_invoice(card, invoice_payload)
                self.session.commit()
            except LEAF_ERRORS as exc:
                self.session.rollback()
                logger.warning(
                    f"sync_card_invoice: connection_id={connection.id} "
                    f"invoice={invoice_payload.id} status=failed error={exc}"
                )
                continue
            try:
                for item in invoice_payload.items:
                    self.upsert_invoice_item(invoice.id, invoice.external_id, item)
                self.session.commit()
            except LEAF_ERRORS as exc:
                self.session.rollback()
                logger.warning(
                    f"sync_invoice_items: connection_id={connection.id} "
                    f"invoice={invoice_payload.id} status=failed error={exc}"
                )
        return card

    def upsert_card(self, connection: Connection, payload: ProviderAccount) -> CreditCard:
        credit = payload.credit_data
        display_name = payload.marketing_name or payload.name or payload.id
        currency = (payload.currency_code or DEFAULT_CURRENCY).upper()
        values = dict(
            connection_id=connection.id,
            display_name=display_name,
            brand=credit.brand if credit else None,
            last4=_last4(payload.number),
            currency=currency,
            limit_cents=to_cents(credit.credit_limit) if credit else None,
            available_limit_cents=(
                to_cents(credit.available_credit_limit) if credit else None
            ),
            balance_cents=to_cents(payload.balance) or 0,
        )

        existing = self.session.scalar(
            select(CreditCard).where(
                CreditCard.user_id == self.user_id,
                CreditCard.external_id == payload.id,
            )
        )
        if existing:
            for key, value in values.items():
                setattr(existing, key, value)
            self.session.flush()
            return existing

        card = CreditCard(user_id=self.user_id, external_id=payload.id, **values)
        self.session.add(card)
        self.session.flush()
        return card

    def upsert_invoice(self, card: CreditCard, payload: ProviderInvoice) -> CardInvoice:
        values = dict(
            card_id=card.id,
            period_start=payload.period_start,
            period_end=payload.period_end,
            due_date=payload.due_date,
            total_cents=to_cents(payload.total_amount) or 0,
            minimum_cents=to_cents(payload.minimum_payment_amount),
            status=payload.status,
        )
        existing = self.session.scalar(
            select(CardInvoice).where(
                CardInvoice.user_id == self.user_id,
                CardInvoice.external_id == payload.id,
            )
        )
        if existing:
            for key, value in values.items():
                setattr(existing, key, value)
            self.session.flush()
            return existing

        invoice = CardInvoice(user_id=self.user_id, external_id=payload.id, **values)
        self.session.add(invoice)
        self.session.flush()
        return invoice

    def upsert_invoice_item(
        self, invoice_id: int, invoice_external_id: str, payload: ProviderTransaction
    ) -> InvoiceItem:
        amount_cents = signed_amount_cents(payload.amount, payload.type)
        external_id = payload.id or synthesized_key(
            invoice_external_id, payload.occurred_at, amount_cents
        )
        values = dict(
            invoice_id=invoice_id,
            occurred_at=_naive_utc(payload.occurred_at),
            description=payload.description,
            merchant=payload.merchant,
            category=payload.category,
            amount_cents=amount_cents,
            raw_json=_raw_json(payload),
        )
        existing = self.session.scalar(
            select(InvoiceItem).where(
                InvoiceItem.user_id == self.user_id,
                InvoiceItem.external_id == external_id,
            )
        )
        if existing:
            for key, value in values.items():
                setattr(existing, key, value)
            self.session.flush()
            return existing

        item = InvoiceItem(user_id=self.user_id, external_id=external_id, **values)
        self.session.add(item)
        self.session.flush()
        return item

    # -- investments ------------------------------------------------------

    def sync_investments(self, connection: Connection) -> int:
        payloads = self.client.get_investments(connection.external_item_id)
        for payload in payloads:
            self.sync_investment(connection, payload)
        logger.info(
            f"sync_investments: connection_id={connection.id} holdings={len(payloads)}"
        )
        return len(payloads)

    def sync_investment(self, connection: Connection, payload: ProviderInvestment) -> Holding:
        currency = (payload.currency_code or DEFAULT_CURRENCY).upper()
        name = payload.name or payload.description or payload.code or DEFAULT_INVESTMENT_NAME
        asset = None
        if payload.code:
            asset = self.resolve_asset(
                payload.code, name, classify_asset(payload.type, payload.subtype), currency
            )
        quantity, price_cents, value_cents = derive_holding_values(
            payload.quantity, to_cents(payload.price), to_cents(payload.value)
        )
        identity = holding_identity(asset.id if asset else None, name)

        existing = self.session.scalar(
            select(Holding).where(
                Holding.user_id == self.user_id,
                Holding.connection_id == connection.id,
                Holding.identity_key == identity,
                Holding.as_of_date == self.today,
            )
        )
        if existing:
            holding = existing
        else:
            holding = Holding(
                user_id=self.user_id,
                connection_id=connection.id,
                identity_key=identity,
                as_of_date=self.today,
            )
            self.session.add(holding)
        holding.asset_id = asset.id if asset else None
        holding.asset_name_fallback = None if asset else name
        holding.external_id = payload.id
        holding.quantity = quantity
        holding.current_price_cents = price_cents
        holding.market_value_cents = value_cents
        self.session.commit()
        return holding

    def resolve_asset(
        self, symbol: str, name: str, asset_class: AssetClass, currency: str
    ) -> Asset:
        symbol = symbol.strip().upper()
        existing = self.session.scalar(
            select(Asset).where(Asset.symbol == symbol, Asset.currency == currency)
        )
        if existing:
            return existing
        asset = Asset(symbol=symbol, name=name, asset_class=asset_class, currency=currency)
        self.session.add(asset)
        self.session.flush()
        return asset
