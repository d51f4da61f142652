from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from categorizer import OTHERS, resolve_category
from config import get_current_user_id
from money import cents_to_units
from periods import (
    REVENUE_LOOKBACK,
    Granularity,
    bucket_starts,
    label_for,
    local_today,
    period_start,
)
from resolver import Capabilities, SourceResolver, TransactionRow

TOP_CATEGORY_COUNT = 5
DEFAULT_NET_WORTH_PERIODS = 7
DEFAULT_SPENDING_DAYS = 30
DAY_NAMES = ("SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT")


@dataclass
class NetWorthPoint:
    start: date
    value_cents: int
    floored: bool = False


@dataclass
class CategorySlice:
    category: str
    total_cents: int
    percentage: float


@dataclass
class RevenuePoint:
    start: date
    income_cents: int
    expenses_cents: int


def net_worth_series(
    total_cents: int,
    deltas: Iterable[tuple[date, int]],
    starts: list[date],
    granularity: Granularity,
) -> list[NetWorthPoint]:
    """Walk net worth backwards from today's total.

    The value at bucket ``b`` is the current total minus every delta that
    falls in a later bucket. Values are floored at zero and the point is
    marked ``floored`` when that happens.
    """
    if not starts:
        return []
    by_period: dict[date, int] = defaultdict(int)
    for occurred_on, cents in deltas:
        by_period[period_start(occurred_on, granularity)] += cents

    newest = starts[-1]
    running = sum(cents for p, cents in by_period.items() if p > newest)
    points: list[NetWorthPoint] = []
    for start in reversed(starts):
        value = total_cents - running
        points.append(NetWorthPoint(start=start, value_cents=max(0, value), floored=value < 0))
        running += by_period.get(start, 0)
    points.reverse()
    return points


def top_categories(totals: dict[str, int], limit: int = TOP_CATEGORY_COUNT) -> list[CategorySlice]:
    ordered = sorted(
        ((name, cents) for name, cents in totals.items() if cents > 0),
        key=lambda item: (-item[1], item[0]),
    )
    buckets = [[name, cents] for name, cents in ordered[:limit]]
    remainder = sum(cents for _, cents in ordered[limit:])
    if remainder:
        for bucket in buckets:
            if bucket[0] == OTHERS:
                bucket[1] += remainder
                break
        else:
            buckets.append([OTHERS, remainder])

    grand_total = sum(cents for _, cents in buckets)
    return [
        CategorySlice(
            category=name,
            total_cents=cents,
            percentage=(cents / grand_total * 100) if grand_total else 0.0,
        )
        for name, cents in buckets
    ]


def spending_totals(rows: Iterable[TransactionRow]) -> dict[str, int]:
    totals: dict[str, int] = defaultdict(int)
    for row in rows:
        if row.amount_cents >= 0:
            continue
        category = resolve_category(row.category, row.merchant, row.description)
        totals[category] += abs(row.amount_cents)
    return dict(totals)


def revenue_vs_expenses(
    rows: Iterable[TransactionRow], starts: list[date], granularity: Granularity
) -> list[RevenuePoint]:
    buckets = {start: [0, 0] for start in starts}
    for row in rows:
        key = period_start(row.occurred_at.date(), granularity)
        bucket = buckets.get(key)
        if bucket is None:
            continue
        if row.amount_cents > 0:
            bucket[0] += row.amount_cents
        elif row.amount_cents < 0:
            bucket[1] += abs(row.amount_cents)
    return [
        RevenuePoint(start=start, income_cents=buckets[start][0], expenses_cents=buckets[start][1])
        for start in starts
    ]


def _trend(current: float, previous: float) -> float:
    if previous <= 0:
        return 0.0
    return round((current - previous) / previous * 100, 1)


def _day_name(d: date) -> str:
    # date.weekday() is Monday=0; the labels start on Sunday.
    return DAY_NAMES[(d.weekday() + 1) % 7]


def weekly_activity(rows: Iterable[TransactionRow], today: date) -> dict:
    current_start = today - timedelta(days=6)
    previous_start = today - timedelta(days=13)
    counts = {name: 0 for name in DAY_NAMES}
    spent = {name: 0 for name in DAY_NAMES}
    prev_count = 0
    prev_spent = 0
    for row in rows:
        if row.amount_cents >= 0:
            continue
        day = row.occurred_at.date()
        if current_start <= day <= today:
            name = _day_name(day)
            counts[name] += 1
            spent[name] += abs(row.amount_cents)
        elif previous_start <= day < current_start:
            prev_count += 1
            prev_spent += abs(row.amount_cents)

    total_count = sum(counts.values())
    total_spent = sum(spent.values())
    return {
        "total_transactions": total_count,
        "total_spent": cents_to_units(total_spent),
        "daily_avg": round(total_spent / 7 / 100, 2),
        "by_day": [
            {"day": name, "count": counts[name], "amount": cents_to_units(spent[name])}
            for name in DAY_NAMES
        ],
        "activity_trend": _trend(total_count, prev_count),
        "spending_trend": _trend(total_spent, prev_spent),
    }


def _midnight(d: date) -> datetime:
    return datetime.combine(d, time.min)


class AnalyticsService:
    def __init__(
        self,
        session: Session,
        capabilities: Capabilities,
        user_id: Optional[int] = None,
        today: Optional[date] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.today = today or local_today()
        self.reader = SourceResolver(session, capabilities, self.user_id).reader()

    @property
    def source(self) -> str:
        return self.reader.source.value

    def _cash_cents(self) -> int:
        return sum(row.balance_cents for row in self.reader.accounts())

    def _investments_cents(self) -> int:
        return sum(row.market_value_cents for row in self.reader.holdings())

    def get_net_worth_evolution(
        self,
        granularity: Granularity = Granularity.monthly,
        periods: int = DEFAULT_NET_WORTH_PERIODS,
    ) -> list[dict]:
        starts = bucket_starts(self.today, granularity, periods)
        if not starts:
            return []
        total = self._cash_cents() + self._investments_cents()
        rows = self.reader.transactions(start=_midnight(starts[0]))
        deltas = ((row.occurred_at.date(), row.amount_cents) for row in rows)
        return [
            {
                "period": label_for(point.start, granularity),
                "start": point.start.isoformat(),
                "value": cents_to_units(point.value_cents),
                "floored": point.floored,
            }
            for point in net_worth_series(total, deltas, starts, granularity)
        ]

    def get_spending_by_category(self, days: int = DEFAULT_SPENDING_DAYS) -> list[dict]:
        start = _midnight(self.today - timedelta(days=days))
        totals = spending_totals(self.reader.transactions(start=start))
        return [
            {
                "category": item.category,
                "total": cents_to_units(item.total_cents),
                "percentage": item.percentage,
            }
            for item in top_categories(totals)
        ]

    def get_revenue_vs_expenses(self, granularity: Granularity = Granularity.monthly) -> list[dict]:
        starts = bucket_starts(self.today, granularity, REVENUE_LOOKBACK[granularity])
        rows = self.reader.transactions(start=_midnight(starts[0]))
        return [
            {
                "period": label_for(point.start, granularity),
                "income": cents_to_units(point.income_cents),
                "expenses": cents_to_units(point.expenses_cents),
            }
            for point in revenue_vs_expenses(rows, starts, granularity)
        ]

    def get_weekly_activity(self) -> dict:
        rows = self.reader.transactions(start=_midnight(self.today - timedelta(days=13)))
        return weekly_activity(rows, self.today)

    def get_summary(self) -> dict:
        cash = self._cash_cents()
        investments = self._investments_cents()
        recent = self.reader.transactions(start=_midnight(self.today - timedelta(days=30)))
        return {
            "net_worth": cents_to_units(cash + investments),
            "cash": cents_to_units(cash),
            "investments": cents_to_units(investments),
            "transactions_last_30_days": len(recent),
            "source": self.source,
        }
