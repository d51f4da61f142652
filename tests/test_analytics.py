from datetime import date, datetime

import pytest
from sqlalchemy import func, select

from analytics import (
    AnalyticsService,
    net_worth_series,
    revenue_vs_expenses,
    spending_totals,
    top_categories,
    weekly_activity,
)
from conftest import make_connection, seed_legacy_rows
from finance import FinanceService
from models import AccountType, BankAccount, Holding, Transaction
from periods import Granularity, bucket_starts
from reconciler import Reconciler
from resolver import TransactionRow, detect_capabilities

TODAY = date(2026, 10, 15)


def _row(occurred_at: datetime, amount_cents: int, merchant=None, category=None) -> TransactionRow:
    return TransactionRow(
        id=0,
        account_id=1,
        occurred_at=occurred_at,
        description=None,
        merchant=merchant,
        category=category,
        category_is_manual=False,
        amount_cents=amount_cents,
    )


def test_net_worth_walks_back_from_current_total() -> None:
    starts = bucket_starts(TODAY, Granularity.monthly, 3)
    deltas = [(date(2026, 9, 10), 20_000), (date(2026, 10, 5), -5_000)]

    points = net_worth_series(100_000, deltas, starts, Granularity.monthly)

    assert [p.start for p in points] == [date(2026, 8, 1), date(2026, 9, 1), date(2026, 10, 1)]
    assert [p.value_cents for p in points] == [85_000, 105_000, 100_000]
    assert not any(p.floored for p in points)


def test_net_worth_is_floored_at_zero_and_flagged() -> None:
    starts = bucket_starts(TODAY, Granularity.monthly, 2)
    points = net_worth_series(1_000, [(date(2026, 10, 3), 5_000)], starts, Granularity.monthly)

    assert [p.value_cents for p in points] == [0, 1_000]
    assert [p.floored for p in points] == [True, False]


def test_top_categories_groups_the_tail_into_others() -> None:
    totals = {
        "Food": 500, "Transport": 300, "Shopping": 200, "Health": 150,
        "Bills": 100, "Travel": 80, "Gifts": 70, "Refunds": 0,
    }

    slices = top_categories(totals)

    assert [s.category for s in slices] == ["Food", "Transport", "Shopping", "Health", "Bills", "Others"]
    assert slices[-1].total_cents == 150
    assert sum(s.percentage for s in slices) == pytest.approx(100.0)
    assert slices[0].percentage == pytest.approx(500 / 1400 * 100)


def test_top_categories_merges_tail_into_existing_others() -> None:
    totals = {
        "Food": 500, "Others": 300, "Shopping": 200, "Health": 150,
        "Bills": 100, "Travel": 80, "Gifts": 70,
    }

    slices = top_categories(totals)

    assert [s.category for s in slices] == ["Food", "Others", "Shopping", "Health", "Bills"]
    assert slices[1].total_cents == 450


def test_spending_totals_only_counts_outflows() -> None:
    rows = [
        _row(datetime(2026, 10, 1), -3_000, merchant="Uber"),
        _row(datetime(2026, 10, 2), -1_000, merchant="99 Taxi"),
        _row(datetime(2026, 10, 3), -2_000, category="Groceries"),
        _row(datetime(2026, 10, 4), 9_000, merchant="Uber"),
        _row(datetime(2026, 10, 5), -500, merchant="Zzz"),
    ]
    assert spending_totals(rows) == {"Transport": 4_000, "Groceries": 2_000, "Others": 500}


def test_revenue_vs_expenses_fills_empty_buckets() -> None:
    starts = bucket_starts(TODAY, Granularity.monthly, 3)
    rows = [
        _row(datetime(2026, 9, 5), 10_000),
        _row(datetime(2026, 9, 6), -2_500),
        _row(datetime(2026, 10, 1), -1_000),
        _row(datetime(2025, 1, 1), -99_999),
    ]

    points = revenue_vs_expenses(rows, starts, Granularity.monthly)

    assert [(p.income_cents, p.expenses_cents) for p in points] == [(0, 0), (10_000, 2_500), (0, 1_000)]


def test_weekly_activity_compares_with_previous_week() -> None:
    rows = [
        _row(datetime(2026, 10, 15, 9, 0), -1_000),
        _row(datetime(2026, 10, 12, 18, 30), -500),
        _row(datetime(2026, 10, 13, 8, 0), 5_000),
        _row(datetime(2026, 10, 5, 12, 0), -1_000),
        _row(datetime(2026, 9, 1, 12, 0), -7_000),
    ]

    result = weekly_activity(rows, TODAY)

    assert result["total_transactions"] == 2
    assert result["total_spent"] == 15.0
    assert result["daily_avg"] == 2.14
    by_day = {entry["day"]: entry for entry in result["by_day"]}
    assert [entry["day"] for entry in result["by_day"]][0] == "SUN"
    assert by_day["THU"] == {"day": "THU", "count": 1, "amount": 10.0}
    assert by_day["MON"]["count"] == 1
    assert by_day["TUE"]["count"] == 0
    assert result["activity_trend"] == 100.0
    assert result["spending_trend"] == 50.0


def test_weekly_activity_trend_is_zero_without_previous_week() -> None:
    result = weekly_activity([_row(datetime(2026, 10, 14), -100)], TODAY)
    assert result["activity_trend"] == 0.0
    assert result["spending_trend"] == 0.0


def _seed_ledger(session) -> None:
    connection = make_connection(session)
    account = BankAccount(
        user_id=1,
        connection_id=connection.id,
        external_id="acc-1",
        account_type=AccountType.checking,
        display_name="Conta",
        balance_cents=100_000,
    )
    session.add(account)
    session.flush()
    session.add_all(
        [
            Transaction(
                user_id=1, account_id=account.id, external_id="tx-1",
                occurred_at=datetime(2026, 9, 10, 10, 0), description="Salario", amount_cents=20_000,
            ),
            Transaction(
                user_id=1, account_id=account.id, external_id="tx-2",
                occurred_at=datetime(2026, 10, 5, 20, 0), merchant="Uber", amount_cents=-5_000,
            ),
            Holding(
                user_id=1, connection_id=connection.id, identity_key="name:cdb",
                asset_name_fallback="CDB", market_value_cents=30_000, as_of_date=date(2026, 10, 14),
            ),
            Holding(
                user_id=1, connection_id=connection.id, identity_key="name:cdb",
                asset_name_fallback="CDB", market_value_cents=50_000, as_of_date=date(2026, 10, 15),
            ),
        ]
    )
    session.commit()


def test_analytics_service_reads_ledger(engine, session) -> None:
    _seed_ledger(session)
    service = AnalyticsService(session, detect_capabilities(engine), user_id=1, today=TODAY)

    summary = service.get_summary()
    assert summary == {
        "net_worth": 1500.0,
        "cash": 1000.0,
        "investments": 500.0,
        "transactions_last_30_days": 1,
        "source": "ledger",
    }

    net_worth = service.get_net_worth_evolution(Granularity.monthly, periods=3)
    assert [p["period"] for p in net_worth] == ["2026-08", "2026-09", "2026-10"]
    assert [p["value"] for p in net_worth] == [1350.0, 1550.0, 1500.0]

    assert service.get_spending_by_category(days=30) == [
        {"category": "Transport", "total": 50.0, "percentage": 100.0}
    ]

    revenue = service.get_revenue_vs_expenses(Granularity.monthly)
    assert len(revenue) == 12
    assert revenue[-2] == {"period": "2026-09", "income": 200.0, "expenses": 0.0}
    assert revenue[-1] == {"period": "2026-10", "income": 0.0, "expenses": 50.0}


def test_analytics_reads_are_deterministic_and_write_nothing(engine, session) -> None:
    _seed_ledger(session)
    service = AnalyticsService(session, detect_capabilities(engine), user_id=1, today=TODAY)
    before = session.scalar(select(func.count()).select_from(Transaction))

    first = (service.get_net_worth_evolution(), service.get_weekly_activity())
    second = (service.get_net_worth_evolution(), service.get_weekly_activity())

    assert first == second
    assert session.scalar(select(func.count()).select_from(Transaction)) == before
    assert not session.dirty and not session.new


def test_analytics_for_user_without_data_is_empty(engine, session) -> None:
    _seed_ledger(session)
    service = AnalyticsService(session, detect_capabilities(engine), user_id=5, today=TODAY)

    assert service.get_summary()["net_worth"] == 0.0
    assert service.get_spending_by_category() == []
    assert all(p["value"] == 0.0 for p in service.get_net_worth_evolution())


def test_sold_position_drops_out_of_investments(engine, session, provider) -> None:
    connection = make_connection(session)
    provider.investments["item-1"] = [
        {"id": "inv-a", "name": "Fund A", "type": "FIXED_INCOME", "balance": 1000},
        {"id": "inv-b", "name": "Fund B", "type": "FIXED_INCOME", "balance": 500},
    ]
    Reconciler(session, provider, user_id=1, today=date(2026, 10, 14)).sync_investments(connection)
    provider.investments["item-1"] = [
        {"id": "inv-b", "name": "Fund B", "type": "FIXED_INCOME", "balance": 500},
    ]
    Reconciler(session, provider, user_id=1, today=TODAY).sync_investments(connection)
    session.commit()
    capabilities = detect_capabilities(engine)

    summary = AnalyticsService(session, capabilities, user_id=1, today=TODAY).get_summary()
    investments = FinanceService(session, capabilities, user_id=1).list_investments()

    assert summary["investments"] == 500.0
    assert investments["total"] == 500.0
    assert [row["name"] for row in investments["holdings"]] == ["Fund B"]
    assert session.scalar(select(func.count()).select_from(Holding)) == 3


def test_user_with_legacy_rows_reads_only_legacy(engine, session) -> None:
    _seed_ledger(session)
    seed_legacy_rows(session)
    capabilities = detect_capabilities(engine)

    summary = AnalyticsService(session, capabilities, user_id=1, today=TODAY).get_summary()
    accounts = FinanceService(session, capabilities, user_id=1).list_accounts()

    assert summary["source"] == "legacy"
    assert summary["cash"] == 1234.56
    assert summary["investments"] == 800.0
    assert summary["net_worth"] == 2034.56
    assert accounts["source"] == "legacy"
    assert accounts["total"] == 1234.56
    names = [a["name"] for group in accounts["institutions"] for a in group["accounts"]]
    assert names == ["Conta antiga"]
