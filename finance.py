from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from categorizer import KNOWN_CATEGORIES, canonical_category_name, resolve_category
from config import get_current_user_id
from money import cents_to_units
from resolver import (
    AccountRow,
    Capabilities,
    HoldingRow,
    InvoiceRow,
    SourceResolver,
    TransactionRow,
)

UNKNOWN_INSTITUTION = "Other"


@dataclass
class TransactionFilters:
    start: Optional[date] = None
    end: Optional[date] = None
    account_id: Optional[int] = None
    category: Optional[str] = None
    query: Optional[str] = None


def _account_out(row: AccountRow) -> dict:
    return {
        "id": row.id,
        "connection_id": row.connection_id,
        "name": row.name,
        "type": row.account_type.value,
        "currency": row.currency,
        "balance": cents_to_units(row.balance_cents),
        "available_balance": cents_to_units(row.available_balance_cents),
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


def _transaction_out(row: TransactionRow) -> dict:
    return {
        "id": row.id,
        "account_id": row.account_id,
        "date": row.occurred_at.isoformat(),
        "description": row.description,
        "merchant": row.merchant or row.description,
        "category": resolve_category(row.category, row.merchant, row.description),
        "category_is_manual": row.category_is_manual,
        "amount": cents_to_units(row.amount_cents),
        "currency": row.currency,
        "status": row.status or "completed",
    }


def _holding_out(row: HoldingRow) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "symbol": row.symbol,
        "class": row.asset_class.value,
        "quantity": float(row.quantity) if row.quantity is not None else None,
        "price": cents_to_units(row.price_cents),
        "market_value": cents_to_units(row.market_value_cents),
        "as_of_date": row.as_of_date.isoformat() if row.as_of_date else None,
        "currency": row.currency,
    }


def _invoice_out(row: InvoiceRow) -> dict:
    return {
        "id": row.id,
        "card_id": row.card_id,
        "period_start": row.period_start.isoformat() if row.period_start else None,
        "period_end": row.period_end.isoformat() if row.period_end else None,
        "due_date": row.due_date.isoformat() if row.due_date else None,
        "total": cents_to_units(row.total_cents),
        "minimum": cents_to_units(row.minimum_cents),
        "status": row.status,
        "items": [
            {
                "id": item.id,
                "date": item.occurred_at.isoformat(),
                "description": item.description,
                "merchant": item.merchant,
                "category": resolve_category(item.category, item.merchant, item.description),
                "amount": cents_to_units(item.amount_cents),
            }
            for item in row.items
        ],
    }


class FinanceService:
    def __init__(
        self,
        session: Session,
        capabilities: Capabilities,
        user_id: Optional[int] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.reader = SourceResolver(session, capabilities, self.user_id).reader()

    @property
    def source(self) -> str:
        return self.reader.source.value

    def list_accounts(self) -> dict:
        """Accounts grouped by institution, each group with its balance total."""
        groups: dict[str, dict] = {}
        total = 0
        for row in self.reader.accounts():
            name = row.institution_name or UNKNOWN_INSTITUTION
            group = groups.setdefault(
                name,
                {"institution": name, "logo_url": row.institution_logo, "total_cents": 0, "accounts": []},
            )
            group["accounts"].append(_account_out(row))
            group["total_cents"] += row.balance_cents
            total += row.balance_cents

        institutions = []
        for group in sorted(groups.values(), key=lambda g: g["institution"].lower()):
            group["total"] = cents_to_units(group.pop("total_cents"))
            institutions.append(group)
        return {"total": cents_to_units(total), "institutions": institutions, "source": self.source}

    def list_transactions(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict:
        filters = filters or TransactionFilters()
        start = datetime.combine(filters.start, time.min) if filters.start else None
        end = (
            datetime.combine(filters.end + timedelta(days=1), time.min) if filters.end else None
        )
        rows = [
            _transaction_out(row)
            for row in self.reader.transactions(start=start, end=end, account_id=filters.account_id)
        ]
        if filters.category:
            wanted = filters.category.strip().lower()
            rows = [row for row in rows if row["category"].lower() == wanted]
        if filters.query:
            needle = filters.query.strip().lower()
            rows = [
                row
                for row in rows
                if needle in (row["description"] or "").lower()
                or needle in (row["merchant"] or "").lower()
            ]
        return {
            "items": rows[offset : offset + limit],
            "total": len(rows),
            "limit": limit,
            "offset": offset,
            "source": self.source,
        }

    def list_investments(self) -> dict:
        holdings = self.reader.holdings()
        by_class: dict[str, int] = defaultdict(int)
        for row in holdings:
            by_class[row.asset_class.value] += row.market_value_cents
        total = sum(by_class.values())
        return {
            "total": cents_to_units(total),
            "holdings": [_holding_out(row) for row in holdings],
            "breakdown": [
                {
                    "class": name,
                    "value": cents_to_units(cents),
                    "percentage": (cents / total * 100) if total else 0.0,
                }
                for name, cents in sorted(by_class.items(), key=lambda kv: (-kv[1], kv[0]))
            ],
            "source": self.source,
        }

    def list_cards(self) -> list[dict]:
        return [
            {
                "id": card.id,
                "name": card.name,
                "brand": card.brand,
                "last4": card.last4,
                "currency": card.currency,
                "limit": cents_to_units(card.limit_cents),
                "available_limit": cents_to_units(card.available_limit_cents),
                "balance": cents_to_units(card.balance_cents),
            }
            for card in self.reader.cards()
        ]

    def list_card_invoices(self, card_id: int) -> list[dict]:
        invoices = self.reader.invoices(card_id)
        if invoices is None:
            raise ValueError("Card not found")
        return [_invoice_out(row) for row in invoices]

    def update_transaction_category(self, transaction_id: int, category: str) -> dict:
        known = set(KNOWN_CATEGORIES)
        known.update(self.reader.categories())
        name = canonical_category_name(category, known)
        if not self.reader.set_category(transaction_id, name):
            raise ValueError("Transaction not found")
        return {"id": transaction_id, "category": name, "category_is_manual": True}
