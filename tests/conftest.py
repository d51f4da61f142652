from datetime import date, datetime
from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from legacy_models import LegacyAccount, LegacyInvestment, LegacyTransaction
from models import Connection, ConnectionStatus
from providers import ProviderUnavailable
from schemas import (
    ProviderAccount,
    ProviderInstitution,
    ProviderInvestment,
    ProviderInvoice,
    ProviderItem,
    ProviderTransaction,
)


class FakeProvider:
    """In-memory stand-in for ProviderClient fed with raw API payloads."""

    def __init__(self) -> None:
        self.institutions: list[dict] = []
        self.items: dict[str, dict] = {}
        self.accounts: dict[str, list[dict]] = {}
        self.transactions: dict[str, list[dict]] = {}
        self.invoices: dict[str, list[dict]] = {}
        self.investments: dict[str, list[dict]] = {}
        self.failing: set[str] = set()
        self.failing_accounts: set[str] = set()
        self.calls: list[tuple] = []

    def _call(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        if name in self.failing:
            raise ProviderUnavailable(f"{name} failed")

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def list_institutions(self):
        self._call("list_institutions")
        return [ProviderInstitution.model_validate(row) for row in self.institutions]

    def get_item(self, item_id: str):
        self._call("get_item", item_id)
        return ProviderItem.model_validate(self.items[item_id])

    def get_accounts(self, item_id: str):
        self._call("get_accounts", item_id)
        return [ProviderAccount.model_validate(row) for row in self.accounts.get(item_id, [])]

    def get_transactions(self, account_id: str, page_size: Optional[int] = None):
        self._call("get_transactions", account_id)
        if account_id in self.failing_accounts:
            raise ProviderUnavailable(f"transactions for {account_id} failed")
        return [
            ProviderTransaction.model_validate(row)
            for row in self.transactions.get(account_id, [])
        ]

    def get_credit_cards(self, item_id: str):
        self._call("get_credit_cards", item_id)
        accounts = [ProviderAccount.model_validate(row) for row in self.accounts.get(item_id, [])]
        return [account for account in accounts if account.is_credit_card]

    def get_card_invoices(self, card_id: str):
        self._call("get_card_invoices", card_id)
        return [ProviderInvoice.model_validate(row) for row in self.invoices.get(card_id, [])]

    def get_investments(self, item_id: str):
        self._call("get_investments", item_id)
        return [
            ProviderInvestment.model_validate(row) for row in self.investments.get(item_id, [])
        ]

    def update_item(self, item_id: str):
        self._call("update_item", item_id)
        return None

    def delete_item(self, item_id: str) -> None:
        self._call("delete_item", item_id)


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


def make_connection(
    session,
    item_id: str = "item-1",
    user_id: int = 1,
    status: ConnectionStatus = ConnectionStatus.connected,
    last_sync_at: Optional[datetime] = None,
) -> Connection:
    connection = Connection(
        user_id=user_id,
        external_item_id=item_id,
        status=status,
        last_sync_at=last_sync_at,
    )
    session.add(connection)
    session.commit()
    return connection


def checking_account(account_id: str = "acc-1", balance: float = 1000.0, **extra) -> dict:
    payload = {
        "id": account_id,
        "type": "BANK",
        "subtype": "CHECKING_ACCOUNT",
        "name": "Conta Corrente",
        "balance": balance,
        "currencyCode": "BRL",
    }
    payload.update(extra)
    return payload


def credit_card_account(card_id: str = "card-1", balance: float = 350.0) -> dict:
    return {
        "id": card_id,
        "type": "CREDIT",
        "subtype": "CREDIT_CARD",
        "name": "Cartao Gold",
        "number": "5555 4444 3333 1234",
        "balance": balance,
        "currencyCode": "BRL",
        "creditData": {
            "brand": "MASTERCARD",
            "creditLimit": 5000,
            "availableCreditLimit": 4650,
        },
    }


def seed_legacy_rows(session, user_id: int = 1) -> None:
    session.add_all(
        [
            LegacyAccount(
                user_id=user_id,
                item_id="item-1",
                pluggy_account_id="pa-1",
                name="Conta antiga",
                type="BANK",
                currency="brl",
                current_balance=Decimal("1234.56"),
            ),
            LegacyAccount(
                user_id=user_id,
                item_id="item-1",
                pluggy_account_id="pa-card",
                name="Cartao",
                type="CREDIT",
                current_balance=Decimal("10.00"),
            ),
            LegacyTransaction(
                user_id=user_id,
                item_id="item-1",
                pluggy_transaction_id="pt-1",
                pluggy_account_id="pa-1",
                occurred_on=date(2026, 10, 2),
                amount=Decimal("-45.10"),
                description="IFOOD",
            ),
            LegacyInvestment(
                user_id=user_id,
                item_id="item-1",
                pluggy_investment_id="pi-1",
                name="CDB Legado",
                type="FIXED_INCOME",
                current_value=Decimal("800.00"),
            ),
        ]
    )
    session.commit()
