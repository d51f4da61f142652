from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


def _id_as_str(value: Any) -> Any:
    if value is None or isinstance(value, str):
        return value
    return str(value)


def _date_only(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str) and len(value) > 10:
        return value[:10]
    return value


ExternalId = Annotated[str, BeforeValidator(_id_as_str)]
OptionalExternalId = Annotated[Optional[str], BeforeValidator(_id_as_str)]
LooseDate = Annotated[Optional[date], BeforeValidator(_date_only)]


class ProviderModel(BaseModel):
    """Base for aggregator payloads: camelCase on the wire, unknown fields
    kept so the raw payload can be stored verbatim."""

    model_config = ConfigDict(
        extra="allow", populate_by_name=True, alias_generator=to_camel
    )

    def raw(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ProviderInstitution(ProviderModel):
    id: ExternalId
    name: str
    image_url: Optional[str] = None
    enabled: bool = True


class ProviderItem(ProviderModel):
    id: ExternalId
    status: Optional[str] = None
    execution_status: Optional[str] = None
    connector: Optional[ProviderInstitution] = None
    error: Optional[dict[str, Any]] = None


class ProviderCreditData(ProviderModel):
    brand: Optional[str] = None
    level: Optional[str] = None
    credit_limit: Optional[Decimal] = None
    available_credit_limit: Optional[Decimal] = None


class ProviderAccount(ProviderModel):
    id: ExternalId
    type: Optional[str] = None
    subtype: Optional[str] = None
    name: Optional[str] = None
    marketing_name: Optional[str] = None
    number: Optional[str] = None
    balance: Optional[Decimal] = None
    available_balance: Optional[Decimal] = None
    currency_code: Optional[str] = None
    credit_data: Optional[ProviderCreditData] = None

    @model_validator(mode="before")
    @classmethod
    def _unpack_balance(cls, data: Any) -> Any:
        # Some connectors send {"current": .., "available": ..} instead of a number.
        if isinstance(data, dict) and isinstance(data.get("balance"), dict):
            data = dict(data)
            balance = data.pop("balance")
            data["balance"] = balance.get("current")
            if data.get("availableBalance") is None:
                data["availableBalance"] = balance.get("available")
        return data

    @property
    def is_credit_card(self) -> bool:
        return self.type == "CREDIT" and self.subtype == "CREDIT_CARD"


class ProviderTransaction(ProviderModel):
    id: OptionalExternalId = None
    occurred_at: datetime = Field(validation_alias=AliasChoices("date", "occurredAt"))
    description: Optional[str] = None
    amount: Decimal = Decimal("0")
    currency_code: Optional[str] = None
    category: Optional[str] = None
    merchant: Optional[str] = None
    type: Optional[str] = None
    status: Optional[str] = None

    @field_validator("merchant", mode="before")
    @classmethod
    def _merchant_name(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return value.get("name") or value.get("businessName")
        return value


class ProviderInvoice(ProviderModel):
    id: ExternalId
    due_date: LooseDate = Field(
        default=None, validation_alias=AliasChoices("dueDate", "balanceDueDate")
    )
    period_start: LooseDate = Field(
        default=None, validation_alias=AliasChoices("periodStart", "openingDate")
    )
    period_end: LooseDate = Field(
        default=None, validation_alias=AliasChoices("periodEnd", "closingDate")
    )
    total_amount: Optional[Decimal] = Field(
        default=None, validation_alias=AliasChoices("totalAmount", "amount")
    )
    minimum_payment_amount: Optional[Decimal] = None
    status: Optional[str] = None
    items: list[ProviderTransaction] = Field(
        default_factory=list, validation_alias=AliasChoices("items", "transactions")
    )


class ProviderInvestment(ProviderModel):
    id: ExternalId
    code: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    type: Optional[str] = None
    subtype: Optional[str] = None
    quantity: Optional[Decimal] = None
    price: Optional[Decimal] = Field(
        default=None, validation_alias=AliasChoices("price", "unitPrice")
    )
    value: Optional[Decimal] = Field(
        default=None, validation_alias=AliasChoices("value", "balance")
    )
    currency_code: Optional[str] = None


class WebhookEventIn(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    event: str
    item_id: OptionalExternalId = Field(default=None, alias="itemId")


class ConnectionIn(BaseModel):
    item_id: str = Field(..., max_length=120)
    provider: Literal["open_finance", "b3"] = "open_finance"


class CategoryUpdateIn(BaseModel):
    category: str = Field(..., min_length=1, max_length=100)
