from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, TypeAdapter
from pydantic.alias_generators import to_camel

from feebook.models import (
    FeePlanStatus,
    OrderStatus,
    QueryStatus,
    TransactionSource,
    TransactionStatus,
)
from feebook.status import derive_fee_plan_status


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


Money = Annotated[Decimal, Field(gt=0, max_digits=12, decimal_places=2)]
RequiredId = Annotated[str, Field(min_length=1)]


# --- requests ---------------------------------------------------------------

class CreateOrderRequest(CamelModel):
    fee_plan_id: RequiredId
    member_id: RequiredId
    provider_id: RequiredId
    consumer_id: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "feePlanId": "6f1c0d6b2e6a4c2f9a0e1b7d3c5a8e90",
                    "memberId": "0b4f7e2a9c1d4e6f8a3b5c7d9e1f2a4b",
                    "providerId": "a1b2c3d4e5f60718293a4b5c6d7e8f90",
                }
            ]
        }
    }


class MarkPaidRequest(CamelModel):
    fee_plan_id: RequiredId
    provider_id: RequiredId
    is_offline_paid: StrictBool


class FeePlanCreateRequest(CamelModel):
    provider_id: RequiredId
    member_id: RequiredId
    name: str = Field(min_length=1)
    description: Optional[str] = None
    amount: Money
    due_date: date


class FeePlanUpdateRequest(CamelModel):
    id: RequiredId
    provider_id: RequiredId
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    amount: Optional[Money] = None
    due_date: Optional[date] = None


class FeePlanDeleteRequest(CamelModel):
    fee_plan_id: RequiredId
    provider_id: RequiredId


class ClaimPaidRequest(CamelModel):
    consumer_id: RequiredId
    claimed: StrictBool = True


class QueryCreateRequest(CamelModel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    phone: Optional[str] = None
    subject: str = Field(min_length=1)
    message: str = Field(min_length=1)


class QueryUpdateRequest(CamelModel):
    id: RequiredId
    status: QueryStatus


# --- responses --------------------------------------------------------------

class ProviderBrief(CamelModel):
    id: str
    name: str


class MemberOut(CamelModel):
    id: str
    provider_id: str
    consumer_id: Optional[str] = None
    unique_id: str
    first_name: str
    middle_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    category: Optional[str] = None


class MemberBrief(CamelModel):
    id: str
    unique_id: str
    first_name: str
    middle_name: Optional[str] = None
    last_name: Optional[str] = None
    provider: ProviderBrief


class FeePlanOut(CamelModel):
    id: str
    member_id: str
    provider_id: str
    name: str
    description: Optional[str] = None
    amount: Decimal
    due_date: date
    status: FeePlanStatus
    is_offline_paid: bool
    consumer_claims_paid: bool
    paid_order_id: Optional[str] = None
    receipt: Optional[str] = None


class FeePlanBrief(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    member: MemberBrief


class OrderOut(CamelModel):
    id: str
    external_order_id: Optional[str] = None
    fee_plan_id: str
    member_id: str
    provider_id: str
    consumer_id: Optional[str] = None
    amount: Decimal
    currency: str
    status: OrderStatus
    payment_session_id: Optional[str] = None
    checkout_url: Optional[str] = None
    order_tags: dict = {}
    expires_at: Optional[datetime] = None
    requires_review: bool = False
    settled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class OrderBrief(CamelModel):
    id: str
    external_order_id: Optional[str] = None
    order_tags: dict = {}


class CreateOrderOut(CamelModel):
    order_id: str
    external_order_id: str
    payment_session_id: Optional[str] = None
    checkout_url: Optional[str] = None
    amount: Decimal
    currency: str
    status: OrderStatus
    expires_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order):
        return cls(
            order_id=order.id,
            external_order_id=order.external_order_id,
            payment_session_id=order.payment_session_id,
            checkout_url=order.checkout_url,
            amount=order.amount,
            currency=order.currency,
            status=order.status,
            expires_at=order.expires_at,
        )


class TransactionOut(CamelModel):
    id: str
    order_id: str
    fee_plan_id: str
    consumer_id: Optional[str] = None
    external_payment_id: Optional[str] = None
    amount: Decimal
    status: TransactionStatus
    payment_time: Optional[datetime] = None
    payment_currency: Optional[str] = None
    payment_method: Optional[dict] = None
    bank_reference: Optional[str] = None
    payment_gateway: Optional[str] = None
    payment_message: Optional[str] = None
    receipt_url: Optional[str] = None
    source: Optional[TransactionSource] = None
    created_at: Optional[datetime] = None


class PaymentHistoryEntry(TransactionOut):
    fee_plan: FeePlanBrief
    order: OrderBrief


class VerifyOrderOut(CamelModel):
    order: OrderOut
    transactions: List[TransactionOut]
    latest_transaction: Optional[TransactionOut] = None
    receipt: Optional[str] = None
    transitioned: bool


class QueryOut(CamelModel):
    id: str
    name: str
    email: str
    phone: Optional[str] = None
    subject: str
    message: str
    status: QueryStatus
    created_at: Optional[datetime] = None


def fee_plan_out(fee_plan, now=None):
    out = FeePlanOut.model_validate(fee_plan)
    out.status = derive_fee_plan_status(fee_plan, now)
    return out


# --- envelope ---------------------------------------------------------------

_json = TypeAdapter(Any)


def _camelize(value):
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, dict):
        return {to_camel(k) if isinstance(k, str) else k: _camelize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_camelize(v) for v in value]
    return value


def ok(data=None, **extra):
    """Success envelope. Decimals serialize as strings, keys as camelCase."""
    body = {"success": True, "data": _json.dump_python(_camelize(data), mode="json")}
    body.update(extra)
    return body


def fail(message, code):
    return {"success": False, "error": message, "code": code}
