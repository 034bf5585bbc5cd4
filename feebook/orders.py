import logging

from sqlalchemy import update

from feebook import config
from feebook.errors import (
    AlreadyPaidError,
    ConflictError,
    InconsistentStateError,
    NotFoundError,
    OrderNotFoundError,
)
from feebook.models import Consumer, FeePlan, Order, OrderStatus, new_order_id
from feebook.status import is_paid

logger = logging.getLogger(__name__)


def create_order(db, gateway, fee_plan_id, member_id, provider_id, consumer_id=None):
    """Mint a gateway checkout for a fee plan and persist it as an ACTIVE order.

    The amount always comes from the stored fee plan. Nothing is written when
    the gateway call fails.
    """
    fee_plan = (
        db.query(FeePlan)
        .filter_by(id=fee_plan_id, member_id=member_id, provider_id=provider_id)
        .first()
    )
    if fee_plan is None:
        raise NotFoundError("Fee plan not found")
    if is_paid(fee_plan):
        raise AlreadyPaidError("Fee plan is already paid", fee_plan_id=fee_plan_id)
    if consumer_id and db.get(Consumer, consumer_id) is None:
        raise NotFoundError("Consumer not found")

    member = fee_plan.member
    order_id = new_order_id()
    tags = {
        "order_id": order_id,
        "fee_plan_id": fee_plan.id,
        "member_id": member_id,
        "provider_id": provider_id,
        "consumer_id": consumer_id or "",
    }

    gateway_order = gateway.create_order(
        order_id=order_id,
        amount=fee_plan.amount,
        currency=config.ORDER_CURRENCY,
        description=fee_plan.name,
        customer={
            "id": member.id,
            "name": member.full_name,
            "phone": member.phone,
            "email": member.email,
        },
        tags=tags,
    )
    if gateway_order.amount != fee_plan.amount:
        logger.error(
            "Gateway minted order %s for %s but fee plan %s is %s",
            gateway_order.external_order_id, gateway_order.amount, fee_plan.id, fee_plan.amount,
        )
        raise InconsistentStateError(
            "Gateway order amount does not match the fee plan", order_id=order_id
        )

    order = Order(
        id=order_id,
        external_order_id=gateway_order.external_order_id,
        fee_plan_id=fee_plan.id,
        member_id=member_id,
        provider_id=provider_id,
        consumer_id=consumer_id or None,
        amount=fee_plan.amount,
        currency=gateway_order.currency,
        status=OrderStatus.ACTIVE,
        payment_session_id=gateway_order.payment_session_id,
        checkout_url=gateway_order.checkout_url,
        order_tags=tags,
        expires_at=gateway_order.expires_at,
    )
    db.add(order)
    db.commit()
    db.refresh(order)

    logger.info(
        "Order %s (%s) created for fee plan %s, amount %s %s",
        order.id, order.external_order_id, fee_plan.id, order.amount, order.currency,
    )
    return order


def find_order_by_external_id(db, external_order_id):
    order = db.query(Order).filter_by(external_order_id=external_order_id).first()
    if order is None:
        raise OrderNotFoundError(external_order_id=external_order_id)
    return order


def resolve_order(db, order_ref):
    """Look an order up by internal id, falling back to the gateway's id."""
    if not order_ref:
        raise OrderNotFoundError()
    order = db.get(Order, order_ref)
    if order is not None:
        return order
    return find_order_by_external_id(db, order_ref)


def request_termination(db, gateway, order_ref):
    order = resolve_order(db, order_ref)
    if order.status != OrderStatus.ACTIVE:
        raise ConflictError(
            f"Order is {order.status.value} and cannot be terminated", order_id=order.id
        )

    gateway.terminate_order(order.external_order_id)

    result = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == OrderStatus.ACTIVE)
        .values(status=OrderStatus.TERMINATION_REQUESTED)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.info("Termination requested for order %s", order.id)
    db.refresh(order)
    return order
