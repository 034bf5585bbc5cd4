"""Reconciliation of gateway state into orders, transactions and fee plans.

``verify_order`` is the only path by which gateway payments reach FeeBook's
books. The webhook, the client poll after checkout, the manual retry and the
stale-order sweep all call it with nothing but an order reference, so it has
to be safe to run repeatedly and concurrently for the same order.

The gateway is queried before anything is written and no database lock is
held across that call. The one-time side effects of an order's first PAID
transition are guarded by compare-and-swap updates inside a single database
transaction:

* ``orders.status`` flips to PAID only ``WHERE status != 'PAID'``. The caller
  whose update matched a row owns the transition.
* ``fee_plans.paid_order_id`` is claimed only ``WHERE paid_order_id IS NULL``,
  so two orders can never both pay the same plan.
* the provider wallet is incremented only by the owner of both claims.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from feebook import config
from feebook.errors import (
    ConflictError,
    GatewayUnavailableError,
    InconsistentStateError,
    NotFoundError,
    VerificationPendingError,
)
from feebook.ledger import record_attempt
from feebook.models import (
    FeePlan,
    FeePlanStatus,
    Order,
    OrderStatus,
    Provider,
    Transaction,
    TransactionSource,
    TransactionStatus,
    utcnow,
)
from feebook.orders import resolve_order
from feebook.status import derive_fee_plan_status, derive_order_status

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationResult:
    order: Order
    transactions: List[Transaction]
    latest_transaction: Optional[Transaction]
    receipt: Optional[str]
    transitioned: bool


def _latest(transactions):
    if not transactions:
        return None
    return max(transactions, key=lambda t: (t.payment_time or t.created_at, t.created_at))


def _first_success(transactions):
    successes = [t for t in transactions if t.status == TransactionStatus.SUCCESS]
    if not successes:
        return None
    return min(successes, key=lambda t: (t.payment_time or t.created_at, t.created_at))


def _receipt_reference(order, txn):
    if txn.receipt_url:
        return txn.receipt_url
    return f"{config.RECEIPT_BASE_URL.rstrip('/')}/{order.external_order_id}-{txn.external_payment_id}"


def verify_order(db, gateway, order_ref, source=TransactionSource.POLL):
    """Fetch the gateway's view of an order and apply it exactly once.

    Raises ``OrderNotFoundError`` for unknown orders, ``VerificationPendingError``
    when the gateway cannot be reached (nothing is written) and
    ``InconsistentStateError`` when gateway data contradicts FeeBook's records
    or the order is flagged for manual review.
    """
    order = resolve_order(db, order_ref)
    order_id = order.id

    try:
        snapshot = gateway.fetch_order(order.external_order_id)
    except GatewayUnavailableError as e:
        logger.warning("Gateway unavailable while verifying order %s", order_id)
        raise VerificationPendingError(order_id=order_id) from e
    except InconsistentStateError:
        _flag(db, order_id, "gateway has no order %s" % order.external_order_id)
        db.commit()
        raise

    if snapshot.order_reference and snapshot.order_reference != order_id:
        _flag(
            db, order_id,
            "gateway order %s references order %s" % (snapshot.external_order_id, snapshot.order_reference),
        )
        db.commit()
        raise InconsistentStateError(
            "Gateway order references a different FeeBook order", order_id=order_id
        )

    try:
        for payment in snapshot.payments:
            record_attempt(
                db,
                order,
                payment.external_payment_id,
                payment.status,
                payment.amount,
                payment.metadata(),
                source=source,
            )
    except IntegrityError as e:
        db.rollback()
        logger.warning("Concurrent ledger write for order %s, verification must be retried", order_id)
        raise VerificationPendingError(order_id=order_id) from e
    except InconsistentStateError as e:
        db.rollback()
        _flag(db, order_id, e.message)
        db.commit()
        raise

    transactions = db.query(Transaction).filter_by(order_id=order_id).all()
    previous = order.status
    new_status = derive_order_status(
        previous, snapshot.state, [t.status for t in transactions]
    )

    transitioned = False
    if new_status == OrderStatus.PAID:
        transitioned = _settle(db, order, transactions)
    elif new_status != previous:
        result = db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == previous)
            .values(status=new_status)
            .execution_options(synchronize_session=False)
        )
        transitioned = result.rowcount == 1
        if transitioned:
            logger.info("Order %s moved %s -> %s", order_id, previous.value, new_status.value)
    db.commit()

    db.refresh(order)
    transactions = db.query(Transaction).filter_by(order_id=order_id).all()
    fee_plan = db.get(FeePlan, order.fee_plan_id, populate_existing=True)

    if order.requires_review:
        raise InconsistentStateError(
            "Payment for this order needs manual review", order_id=order_id
        )

    return ReconciliationResult(
        order=order,
        transactions=transactions,
        latest_transaction=_latest(transactions),
        receipt=fee_plan.receipt if order.status == OrderStatus.PAID else None,
        transitioned=transitioned,
    )


def _settle(db, order, transactions):
    """Apply the one-time effects of ``order`` reaching PAID.

    Returns True only for the caller that performed the transition.
    """
    success = _first_success(transactions)
    now = utcnow()

    claimed = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status != OrderStatus.PAID)
        .values(status=OrderStatus.PAID, settled_at=now)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount == 0:
        return False

    receipt = _receipt_reference(order, success)
    plan_claim = db.execute(
        update(FeePlan)
        .where(FeePlan.id == order.fee_plan_id, FeePlan.paid_order_id.is_(None))
        .values(
            paid_order_id=order.id,
            status=FeePlanStatus.PAID,
            receipt=func.coalesce(FeePlan.receipt, receipt),
        )
        .execution_options(synchronize_session=False)
    )
    fee_plan = db.get(FeePlan, order.fee_plan_id, populate_existing=True)

    if plan_claim.rowcount == 0:
        _flag(db, order.id, "fee plan %s was already paid by order %s" % (fee_plan.id, fee_plan.paid_order_id))
        return True

    if fee_plan.is_offline_paid:
        _flag(db, order.id, "fee plan %s was already marked paid offline" % fee_plan.id)
        return True

    if success.amount != order.amount:
        logger.warning(
            "Order %s settled %s via payment %s, order amount was %s",
            order.id, success.amount, success.external_payment_id, order.amount,
        )
    db.execute(
        update(Provider)
        .where(Provider.id == order.provider_id)
        .values(wallet_balance=Provider.wallet_balance + success.amount)
        .execution_options(synchronize_session=False)
    )
    logger.info(
        "Order %s paid by payment %s: fee plan %s settled, provider %s credited %s",
        order.id, success.external_payment_id, fee_plan.id, order.provider_id, success.amount,
    )
    return True


def _flag(db, order_id, reason):
    db.execute(
        update(Order)
        .where(Order.id == order_id)
        .values(requires_review=True)
        .execution_options(synchronize_session=False)
    )
    logger.error("Order %s needs manual review: %s", order_id, reason)


def mark_offline_paid(db, fee_plan_id, provider_id, paid, now=None):
    """Provider toggle for fees settled outside the gateway.

    Never touches orders, transactions or the wallet.
    """
    fee_plan = db.query(FeePlan).filter_by(id=fee_plan_id, provider_id=provider_id).first()
    if fee_plan is None:
        raise NotFoundError("Fee plan not found or you don't have permission to modify it")

    result = db.execute(
        update(FeePlan)
        .where(FeePlan.id == fee_plan_id, FeePlan.paid_order_id.is_(None))
        .values(is_offline_paid=paid)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        raise ConflictError(
            "This fee has already been paid online and cannot be modified",
            fee_plan_id=fee_plan_id,
        )

    db.refresh(fee_plan)
    fee_plan.status = derive_fee_plan_status(fee_plan, now)
    db.commit()
    db.refresh(fee_plan)
    logger.info(
        "Fee plan %s marked %s offline by provider %s",
        fee_plan_id, "paid" if paid else "unpaid", provider_id,
    )
    return fee_plan


def refresh_fee_plan_statuses(db, now=None):
    """Bring stored DUE snapshots that have passed their due date to OVERDUE."""
    today = (now or utcnow()).date()
    result = db.execute(
        update(FeePlan)
        .where(
            FeePlan.paid_order_id.is_(None),
            FeePlan.is_offline_paid.is_(False),
            FeePlan.status == FeePlanStatus.DUE,
            FeePlan.due_date < today,
        )
        .values(status=FeePlanStatus.OVERDUE)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount


def sweep_stale_orders(db, gateway, now=None):
    """Re-verify orders left open past ``STALE_ORDER_MINUTES``."""
    now = now or utcnow()
    cutoff = now - timedelta(minutes=config.STALE_ORDER_MINUTES)
    order_ids = [
        row.id
        for row in db.query(Order.id).filter(
            Order.status.in_([OrderStatus.ACTIVE, OrderStatus.TERMINATION_REQUESTED]),
            Order.created_at < cutoff,
        )
    ]

    summary = {"checked": 0, "transitioned": 0, "pending": 0, "flagged": 0}
    for order_id in order_ids:
        summary["checked"] += 1
        try:
            result = verify_order(db, gateway, order_id, source=TransactionSource.SWEEP)
        except VerificationPendingError:
            summary["pending"] += 1
            continue
        except InconsistentStateError:
            summary["flagged"] += 1
            logger.error("Sweep could not reconcile order %s", order_id)
            continue
        if result.transitioned:
            summary["transitioned"] += 1

    summary["overdue_marked"] = refresh_fee_plan_statuses(db, now)
    logger.info("Stale order sweep finished: %s", summary)
    return summary
