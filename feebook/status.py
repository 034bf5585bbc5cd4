"""Status derivation shared by every reader and writer.

Nothing in here touches the database: each function maps already-loaded
state onto a status so the rules live in exactly one place.
"""

from datetime import date, datetime

from feebook.models import FeePlanStatus, OrderStatus, TransactionStatus, utcnow

TERMINAL_TRANSACTION_STATUSES = frozenset({
    TransactionStatus.SUCCESS,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED,
    TransactionStatus.USER_DROPPED,
    TransactionStatus.VOID,
})

TERMINAL_ORDER_STATUSES = frozenset({
    OrderStatus.PAID,
    OrderStatus.EXPIRED,
    OrderStatus.TERMINATED,
})

_PROGRESS = {
    TransactionStatus.NOT_ATTEMPTED: 0,
    TransactionStatus.PENDING: 1,
}


def _as_date(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raise TypeError(f"expected date or datetime, got {type(value).__name__}")


def is_paid(fee_plan):
    """A plan is paid by a successful gateway transaction or by the provider offline."""
    return fee_plan.paid_order_id is not None or bool(fee_plan.is_offline_paid)


def derive_fee_plan_status(fee_plan, now=None):
    """Return DUE, OVERDUE or PAID for ``fee_plan`` as of ``now`` (UTC)."""
    if is_paid(fee_plan):
        return FeePlanStatus.PAID
    today = _as_date(now or utcnow())
    if fee_plan.due_date < today:
        return FeePlanStatus.OVERDUE
    return FeePlanStatus.DUE


def merge_transaction_status(current, incoming):
    """Apply ``incoming`` on top of ``current``.

    Returns ``(status, conflict)``. Statuses only move forward
    (NOT_ATTEMPTED -> PENDING -> terminal). Once terminal, the first observed
    terminal status is kept, except that SUCCESS replaces any other terminal
    status. ``conflict`` is True when two different terminal statuses were
    claimed for the same payment.
    """
    if current is None or current == incoming:
        return incoming, False

    if current not in TERMINAL_TRANSACTION_STATUSES:
        if incoming in TERMINAL_TRANSACTION_STATUSES:
            return incoming, False
        if _PROGRESS[incoming] > _PROGRESS[current]:
            return incoming, False
        return current, False

    if incoming not in TERMINAL_TRANSACTION_STATUSES:
        # stale notification
        return current, False

    if incoming == TransactionStatus.SUCCESS:
        return TransactionStatus.SUCCESS, True
    return current, True


def derive_order_status(previous, gateway_state, transaction_statuses):
    """Project an order's status from its transactions and the gateway's view.

    ``gateway_state`` is the gateway's order state (an ``OrderStatus``).
    A gateway that reports PAID before any successful transaction is visible
    leaves the order ACTIVE until the transaction shows up.
    """
    if TransactionStatus.SUCCESS in set(transaction_statuses):
        return OrderStatus.PAID
    if previous == OrderStatus.PAID:
        return OrderStatus.PAID

    if gateway_state == OrderStatus.TERMINATED:
        return OrderStatus.TERMINATED
    if gateway_state == OrderStatus.EXPIRED:
        if previous in (OrderStatus.TERMINATION_REQUESTED, OrderStatus.TERMINATED):
            return OrderStatus.TERMINATED
        return OrderStatus.EXPIRED
    if gateway_state == OrderStatus.TERMINATION_REQUESTED:
        return OrderStatus.TERMINATION_REQUESTED

    # gateway says ACTIVE (or PAID without a visible payment yet)
    if previous in TERMINAL_ORDER_STATUSES or previous == OrderStatus.TERMINATION_REQUESTED:
        return previous
    return OrderStatus.ACTIVE
