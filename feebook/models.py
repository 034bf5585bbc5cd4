import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from feebook.database import Base


def utcnow():
    """Naive UTC timestamp; SQLite drops tzinfo so everything is stored naive."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id():
    return uuid.uuid4().hex


def new_order_id():
    return f"order_{uuid.uuid4().hex[:20]}"


def money():
    return Numeric(12, 2, asdecimal=True)


class FeePlanStatus(str, enum.Enum):
    DUE = "DUE"
    OVERDUE = "OVERDUE"
    PAID = "PAID"


class OrderStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAID = "PAID"
    EXPIRED = "EXPIRED"
    TERMINATED = "TERMINATED"
    TERMINATION_REQUESTED = "TERMINATION_REQUESTED"


class TransactionStatus(str, enum.Enum):
    NOT_ATTEMPTED = "NOT_ATTEMPTED"
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    USER_DROPPED = "USER_DROPPED"
    VOID = "VOID"


class TransactionSource(str, enum.Enum):
    WEBHOOK = "WEBHOOK"
    POLL = "POLL"
    RETRY = "RETRY"
    SWEEP = "SWEEP"


class QueryStatus(str, enum.Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


def _enum(cls):
    return Enum(cls, native_enum=False, length=32, validate_strings=True)


class Provider(Base):
    __tablename__ = "providers"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    code = Column(String, unique=True, index=True)
    email = Column(String)
    phone = Column(String)
    # Only ever incremented by the reconciliation engine's first-PAID transition
    wallet_balance = Column(money(), nullable=False, default=Decimal("0.00"))
    created_at = Column(DateTime, default=utcnow)

    members = relationship("Member", back_populates="provider")


class Consumer(Base):
    __tablename__ = "consumers"

    id = Column(String, primary_key=True, default=new_id)
    first_name = Column(String, nullable=False)
    last_name = Column(String)
    phone = Column(String, unique=True)
    email = Column(String)
    created_at = Column(DateTime, default=utcnow)

    memberships = relationship("Member", back_populates="consumer")


class Member(Base):
    __tablename__ = "members"

    id = Column(String, primary_key=True, default=new_id)
    provider_id = Column(String, ForeignKey("providers.id"), nullable=False, index=True)
    consumer_id = Column(String, ForeignKey("consumers.id"), index=True)
    unique_id = Column(String, nullable=False, index=True)
    first_name = Column(String, nullable=False)
    middle_name = Column(String)
    last_name = Column(String)
    phone = Column(String)
    email = Column(String)
    category = Column(String)
    claimed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    provider = relationship("Provider", back_populates="members")
    consumer = relationship("Consumer", back_populates="memberships")
    fee_plans = relationship("FeePlan", back_populates="member")

    @property
    def full_name(self):
        parts = [self.first_name, self.middle_name, self.last_name]
        return " ".join(p for p in parts if p)


class FeePlan(Base):
    __tablename__ = "fee_plans"

    id = Column(String, primary_key=True, default=new_id)
    member_id = Column(String, ForeignKey("members.id"), nullable=False, index=True)
    provider_id = Column(String, ForeignKey("providers.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    amount = Column(money(), nullable=False)
    due_date = Column(Date, nullable=False)
    # Snapshot of derive_fee_plan_status(); readers re-derive
    status = Column(_enum(FeePlanStatus), nullable=False, default=FeePlanStatus.DUE)
    is_offline_paid = Column(Boolean, nullable=False, default=False)
    consumer_claims_paid = Column(Boolean, nullable=False, default=False)
    # Order whose successful transaction first paid this plan
    paid_order_id = Column(String, index=True)
    receipt = Column(String)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    member = relationship("Member", back_populates="fee_plans")
    provider = relationship("Provider")
    orders = relationship("Order", back_populates="fee_plan")


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=new_order_id)
    external_order_id = Column(String, unique=True, index=True)      # Checkout Session ID
    fee_plan_id = Column(String, ForeignKey("fee_plans.id"), nullable=False, index=True)
    member_id = Column(String, ForeignKey("members.id"), nullable=False)
    provider_id = Column(String, ForeignKey("providers.id"), nullable=False, index=True)
    consumer_id = Column(String, ForeignKey("consumers.id"))
    amount = Column(money(), nullable=False)
    currency = Column(String, nullable=False)
    status = Column(_enum(OrderStatus), nullable=False, default=OrderStatus.ACTIVE)
    payment_session_id = Column(String)
    checkout_url = Column(String)
    order_tags = Column(JSON, default=dict)
    expires_at = Column(DateTime)
    requires_review = Column(Boolean, nullable=False, default=False)
    settled_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    fee_plan = relationship("FeePlan", back_populates="orders")
    transactions = relationship(
        "Transaction", back_populates="order", order_by="Transaction.created_at"
    )


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    fee_plan_id = Column(String, ForeignKey("fee_plans.id"), nullable=False, index=True)
    consumer_id = Column(String, ForeignKey("consumers.id"), index=True)
    external_payment_id = Column(String, unique=True, index=True)
    # Holds the order id while this row is the order's pre-settlement placeholder
    placeholder_for = Column(String, unique=True)
    amount = Column(money(), nullable=False)
    status = Column(_enum(TransactionStatus), nullable=False)
    payment_time = Column(DateTime)
    payment_currency = Column(String)
    payment_method = Column(JSON)
    bank_reference = Column(String)
    payment_gateway = Column(String)
    payment_message = Column(String)
    receipt_url = Column(String)
    source = Column(_enum(TransactionSource))
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="transactions")
    fee_plan = relationship("FeePlan")


class Query(Base):
    __tablename__ = "queries"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    phone = Column(String)
    subject = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    status = Column(_enum(QueryStatus), nullable=False, default=QueryStatus.OPEN)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
