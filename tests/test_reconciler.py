from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import checking_account, credit_card_account, make_connection
from models import (
    AccountType,
    Asset,
    AssetClass,
    BankAccount,
    CardInvoice,
    CreditCard,
    Holding,
    Institution,
    InvoiceItem,
    Transaction,
)
from providers import ProviderUnavailable
from reconciler import (
    Reconciler,
    classify_asset,
    derive_holding_values,
    holding_identity,
    normalize_account_type,
    signed_amount_cents,
)

TODAY = date(2026, 10, 15)


def _count(session, model) -> int:
    return session.scalar(select(func.count()).select_from(model))


def test_normalize_account_type() -> None:
    assert normalize_account_type("SAVINGS_ACCOUNT") == AccountType.savings
    assert normalize_account_type("CHECKING_ACCOUNT") == AccountType.checking
    assert normalize_account_type(None) == AccountType.checking


def test_classify_asset_checks_subtype_before_type() -> None:
    assert classify_asset("EQUITY", "REAL_ESTATE_FUND") == AssetClass.reit
    assert classify_asset("FIXED_INCOME", "CDB") == AssetClass.fixed_income
    assert classify_asset("MUTUAL_FUND", None) == AssetClass.funds
    assert classify_asset("COE", "UNKNOWN") == AssetClass.fixed_income
    assert classify_asset("SOMETHING", None) == AssetClass.other


def test_signed_amount_cents_normalizes_debit_and_credit() -> None:
    assert signed_amount_cents(Decimal("45.90"), "DEBIT") == -4590
    assert signed_amount_cents(Decimal("-45.90"), "DEBIT") == -4590
    assert signed_amount_cents(Decimal("-120"), "CREDIT") == 12000
    assert signed_amount_cents(Decimal("-3.335"), None) == -334


def test_derive_holding_values_fills_missing_field() -> None:
    assert derive_holding_values(Decimal("10"), 2550, None) == (Decimal("10"), 2550, 25500)
    assert derive_holding_values(Decimal("4"), None, 1000) == (Decimal("4"), 250, 1000)
    quantity, price, value = derive_holding_values(None, 500, 2000)
    assert quantity == Decimal("4")
    assert (price, value) == (500, 2000)
    assert derive_holding_values(Decimal("0"), None, 1000) == (Decimal("0"), None, 1000)
    assert derive_holding_values(None, None, None) == (None, None, 0)


def test_holding_identity_prefers_asset() -> None:
    assert holding_identity(7, "PETR4") == "asset:7"
    assert holding_identity(None, "  Tesouro Selic 2029 ") == "name:tesouro selic 2029"


def test_sync_accounts_is_idempotent_and_skips_credit(session, provider) -> None:
    connection = make_connection(session)
    provider.accounts["item-1"] = [
        checking_account("acc-1", balance=1000.0),
        checking_account("acc-2", balance=250.5, subtype="SAVINGS_ACCOUNT", name="Poupanca"),
        credit_card_account("card-1"),
    ]
    provider.transactions["acc-1"] = [
        {"id": "tx-1", "date": "2026-10-10T12:00:00.000Z", "description": "UBER", "amount": 23.5, "type": "DEBIT"},
        {"id": "tx-2", "date": "2026-10-11T12:00:00.000Z", "description": "Salario", "amount": 5000, "type": "CREDIT"},
    ]

    reconciler = Reconciler(session, provider, user_id=1, today=TODAY)
    assert reconciler.sync_accounts(connection) == 2

    provider.accounts["item-1"][0]["balance"] = 900.0
    reconciler.sync_accounts(connection)

    accounts = session.scalars(select(BankAccount).order_by(BankAccount.external_id)).all()
    assert [a.external_id for a in accounts] == ["acc-1", "acc-2"]
    assert accounts[0].balance_cents == 90000
    assert accounts[0].account_type == AccountType.checking
    assert accounts[1].account_type == AccountType.savings
    assert accounts[1].balance_cents == 25050
    assert _count(session, Transaction) == 2

    amounts = dict(session.execute(select(Transaction.external_id, Transaction.amount_cents)).all())
    assert amounts == {"tx-1": -2350, "tx-2": 500000}


def test_transactions_without_id_get_synthesized_key(session, provider) -> None:
    connection = make_connection(session)
    provider.accounts["item-1"] = [checking_account("acc-1")]
    provider.transactions["acc-1"] = [
        {"date": "2026-10-10T12:00:00Z", "description": "Padaria", "amount": -12.4},
    ]
    reconciler = Reconciler(session, provider, user_id=1, today=TODAY)
    reconciler.sync_accounts(connection)
    reconciler.sync_accounts(connection)

    tx = session.scalars(select(Transaction)).one()
    assert tx.external_id == "syn:acc-1:2026-10-10:-1240"


def test_sync_keeps_manual_category(session, provider) -> None:
    connection = make_connection(session)
    provider.accounts["item-1"] = [checking_account("acc-1")]
    provider.transactions["acc-1"] = [
        {"id": "tx-1", "date": "2026-10-10", "description": "Loja", "amount": -80, "category": "Shopping"},
        {"id": "tx-2", "date": "2026-10-10", "description": "Loja 2", "amount": -20, "category": "Shopping"},
    ]
    reconciler = Reconciler(session, provider, user_id=1, today=TODAY)
    reconciler.sync_accounts(connection)

    tx = session.scalar(select(Transaction).where(Transaction.external_id == "tx-1"))
    tx.category = "Gifts"
    tx.category_is_manual = True
    session.commit()

    provider.transactions["acc-1"][0]["category"] = "Retail"
    provider.transactions["acc-1"][1]["category"] = "Retail"
    reconciler.sync_accounts(connection)

    categories = dict(session.execute(select(Transaction.external_id, Transaction.category)).all())
    assert categories == {"tx-1": "Gifts", "tx-2": "Retail"}


def test_transaction_fetch_failure_does_not_fail_account_sync(session, provider) -> None:
    connection = make_connection(session)
    provider.accounts["item-1"] = [checking_account("acc-1"), checking_account("acc-2")]
    provider.transactions["acc-2"] = [
        {"id": "tx-9", "date": "2026-10-01", "description": "Pix", "amount": -10},
    ]
    provider.failing_accounts.add("acc-1")

    reconciler = Reconciler(session, provider, user_id=1, today=TODAY)
    assert reconciler.sync_accounts(connection) == 2

    assert _count(session, BankAccount) == 2
    assert session.scalars(select(Transaction.external_id)).all() == ["tx-9"]


def test_primary_fetch_failure_raises(session, provider) -> None:
    connection = make_connection(session)
    provider.failing.add("get_accounts")
    with pytest.raises(ProviderUnavailable):
        Reconciler(session, provider, user_id=1, today=TODAY).sync_accounts(connection)


def test_sync_credit_cards_links_invoice_items(session, provider) -> None:
    connection = make_connection(session)
    provider.accounts["item-1"] = [checking_account("acc-1"), credit_card_account("card-1")]
    provider.invoices["card-1"] = [
        {
            "id": "inv-1",
            "dueDate": "2026-10-20T00:00:00.000Z",
            "openingDate": "2026-09-10",
            "closingDate": "2026-10-10",
            "totalAmount": 350,
            "minimumPaymentAmount": 52.5,
            "status": "OPEN",
            "items": [
                {"id": "it-1", "date": "2026-09-15", "description": "Netflix", "amount": 55.9, "type": "DEBIT"},
                {"date": "2026-09-20", "description": "Estorno", "amount": 10, "type": "CREDIT"},
            ],
        }
    ]

    reconciler = Reconciler(session, provider, user_id=1, today=TODAY)
    assert reconciler.sync_credit_cards(connection) == 1
    reconciler.sync_credit_cards(connection)

    card = session.scalars(select(CreditCard)).one()
    assert card.last4 == "1234"
    assert card.brand == "MASTERCARD"
    assert card.limit_cents == 500000
    assert card.balance_cents == 35000

    invoice = session.scalars(select(CardInvoice)).one()
    assert invoice.card_id == card.id
    assert invoice.due_date == date(2026, 10, 20)
    assert invoice.period_start == date(2026, 9, 10)
    assert invoice.total_cents == 35000
    assert invoice.minimum_cents == 5250

    items = session.scalars(select(InvoiceItem).order_by(InvoiceItem.occurred_at)).all()
    assert [item.invoice_id for item in items] == [invoice.id, invoice.id]
    assert [item.amount_cents for item in items] == [-5590, 1000]
    assert items[1].external_id == "syn:inv-1:2026-09-20:1000"
    assert _count(session, BankAccount) == 0


def test_invoice_fetch_failure_keeps_card(session, provider) -> None:
    connection = make_connection(session)
    provider.accounts["item-1"] = [credit_card_account("card-1")]
    provider.failing.add("get_card_invoices")

    Reconciler(session, provider, user_id=1, today=TODAY).sync_credit_cards(connection)

    assert _count(session, CreditCard) == 1
    assert _count(session, CardInvoice) == 0


def test_sync_investments_snapshots_per_day(session, provider) -> None:
    connection = make_connection(session)
    provider.investments["item-1"] = [
        {"id": "inv-a", "code": "bova11", "name": "iShares Bovespa", "type": "ETF", "quantity": 10, "price": 120.5},
        {"id": "inv-b", "name": "Tesouro Selic 2029", "type": "FIXED_INCOME", "subtype": "TREASURY", "balance": 1500},
    ]

    day_one = Reconciler(session, provider, user_id=1, today=TODAY)
    assert day_one.sync_investments(connection) == 2

    provider.investments["item-1"][0]["price"] = 125
    day_one.sync_investments(connection)
    assert _count(session, Holding) == 2

    asset = session.scalars(select(Asset)).one()
    assert asset.symbol == "BOVA11"
    assert asset.asset_class == AssetClass.etf

    etf = session.scalar(select(Holding).where(Holding.asset_id == asset.id))
    assert etf.identity_key == f"asset:{asset.id}"
    assert etf.current_price_cents == 12500
    assert etf.market_value_cents == 125000

    treasury = session.scalar(select(Holding).where(Holding.asset_id.is_(None)))
    assert treasury.identity_key == "name:tesouro selic 2029"
    assert treasury.asset_name_fallback == "Tesouro Selic 2029"
    assert treasury.market_value_cents == 150000

    Reconciler(session, provider, user_id=1, today=date(2026, 10, 16)).sync_investments(connection)
    assert _count(session, Holding) == 4


def test_sync_institutions_upserts_by_external_id(session, provider) -> None:
    provider.institutions = [
        {"id": 201, "name": "Banco Exemplo", "imageUrl": "https://cdn.example/201.png"},
        {"id": 202, "name": "Corretora Teste"},
    ]
    reconciler = Reconciler(session, provider, user_id=1, today=TODAY)
    assert reconciler.sync_institutions() == 2

    provider.institutions[0]["name"] = "Banco Exemplo S.A."
    reconciler.sync_institutions()

    names = dict(session.execute(select(Institution.external_id, Institution.name)).all())
    assert names == {"201": "Banco Exemplo S.A.", "202": "Corretora Teste"}
