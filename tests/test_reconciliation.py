from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from conftest import TestingSessionLocal, fresh
from feebook.errors import (
    ConflictError,
    InconsistentStateError,
    NotFoundError,
    OrderNotFoundError,
    VerificationPendingError,
)
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
from feebook.orders import create_order, request_termination
from feebook.reconciliation import (
    mark_offline_paid,
    refresh_fee_plan_statuses,
    sweep_stale_orders,
    verify_order,
)
from feebook.status import derive_fee_plan_status

AMOUNT = Decimal("500.00")


@pytest.fixture
def order(db, gateway, seed):
    return create_order(
        db, gateway, seed.fee_plan_id, seed.member_id, seed.provider_id, seed.consumer_id
    )


def wallet(db, seed):
    return fresh(db, Provider, seed.provider_id).wallet_balance


def test_successful_payment_settles_once(db, gateway, seed, order):
    gateway.report_payment(
        order.external_order_id, "pay_123", TransactionStatus.SUCCESS,
        payment_time=utcnow(), receipt_url="https://pay.test/receipts/pay_123",
    )

    results = [verify_order(db, gateway, order.id) for _ in range(3)]

    assert [r.transitioned for r in results] == [True, False, False]
    assert all(r.order.status == OrderStatus.PAID for r in results)
    assert results[0].receipt == "https://pay.test/receipts/pay_123"
    assert results[0].latest_transaction.external_payment_id == "pay_123"
    assert wallet(db, seed) == AMOUNT

    fee_plan = fresh(db, FeePlan, seed.fee_plan_id)
    assert fee_plan.paid_order_id == order.id
    assert fee_plan.status == FeePlanStatus.PAID
    assert derive_fee_plan_status(fee_plan) == FeePlanStatus.PAID
    assert db.query(Transaction).filter_by(order_id=order.id).count() == 1

    settled = fresh(db, Order, order.id)
    assert settled.settled_at is not None
    assert settled.requires_review is False


def test_verify_by_gateway_order_id(db, gateway, seed, order):
    gateway.report_payment(order.external_order_id, "pay_123", TransactionStatus.SUCCESS)

    result = verify_order(db, gateway, order.external_order_id, source=TransactionSource.WEBHOOK)

    assert result.order.id == order.id
    assert result.transactions[0].source == TransactionSource.WEBHOOK


def test_receipt_falls_back_to_a_generated_reference(db, gateway, seed, order):
    gateway.report_payment(order.external_order_id, "pay_123", TransactionStatus.SUCCESS)

    result = verify_order(db, gateway, order.id)

    assert result.receipt.endswith(f"/{order.external_order_id}-pay_123")


def test_expired_order_without_payment(db, gateway, seed, order):
    gateway.set_state(order.external_order_id, OrderStatus.EXPIRED)
    gateway.report_payment(order.external_order_id, None, TransactionStatus.USER_DROPPED)

    result = verify_order(db, gateway, order.id)
    verify_order(db, gateway, order.id)

    assert result.order.status == OrderStatus.EXPIRED
    assert result.transitioned is True
    assert result.receipt is None
    assert result.transactions[0].status == TransactionStatus.USER_DROPPED
    assert db.query(Transaction).filter_by(order_id=order.id).count() == 1
    assert wallet(db, seed) == Decimal("0.00")
    assert derive_fee_plan_status(fresh(db, FeePlan, seed.fee_plan_id)) == FeePlanStatus.OVERDUE


def test_pending_payment_keeps_order_active(db, gateway, seed, order):
    gateway.report_payment(order.external_order_id, "pay_1", TransactionStatus.PENDING)

    result = verify_order(db, gateway, order.id)

    assert result.order.status == OrderStatus.ACTIVE
    assert result.transitioned is False
    assert result.receipt is None


def test_failure_then_retry_success(db, gateway, seed, order):
    gateway.report_payment(order.external_order_id, "pay_1", TransactionStatus.FAILED)
    assert verify_order(db, gateway, order.id).order.status == OrderStatus.ACTIVE

    gateway.report_payment(order.external_order_id, "pay_2", TransactionStatus.SUCCESS)
    result = verify_order(db, gateway, order.id, source=TransactionSource.RETRY)

    assert result.order.status == OrderStatus.PAID
    assert len(result.transactions) == 2
    assert wallet(db, seed) == AMOUNT


def test_late_failure_for_a_settled_payment_changes_nothing(db, gateway, seed, order):
    gateway.report_payment(order.external_order_id, "pay_1", TransactionStatus.SUCCESS)
    verify_order(db, gateway, order.id)

    gateway.report_payment(order.external_order_id, "pay_1", TransactionStatus.FAILED)
    result = verify_order(db, gateway, order.id, source=TransactionSource.WEBHOOK)

    assert result.order.status == OrderStatus.PAID
    assert result.transactions[0].status == TransactionStatus.SUCCESS
    assert wallet(db, seed) == AMOUNT


def test_gateway_outage_writes_nothing(db, gateway, seed, order):
    gateway.report_payment(order.external_order_id, "pay_1", TransactionStatus.SUCCESS)
    gateway.unavailable = True

    with pytest.raises(VerificationPendingError):
        verify_order(db, gateway, order.id)

    assert db.query(Transaction).count() == 0
    assert fresh(db, Order, order.id).status == OrderStatus.ACTIVE
    assert wallet(db, seed) == Decimal("0.00")


def test_unknown_order(db, gateway, seed):
    with pytest.raises(OrderNotFoundError):
        verify_order(db, gateway, "order_missing")
    assert gateway.fetch_calls == 0


def test_gateway_order_pointing_elsewhere_is_inconsistent(db, gateway, seed, order):
    gateway.orders[order.external_order_id].order_reference = "order_someone_else"
    gateway.report_payment(order.external_order_id, "pay_1", TransactionStatus.SUCCESS)

    with pytest.raises(InconsistentStateError):
        verify_order(db, gateway, order.id)
    assert db.query(Transaction).count() == 0
    assert fresh(db, Order, order.id).requires_review is True


def test_order_unknown_to_the_gateway_is_flagged(db, gateway, seed, order):
    del gateway.orders[order.external_order_id]

    with pytest.raises(InconsistentStateError):
        verify_order(db, gateway, order.id)

    flagged = fresh(db, Order, order.id)
    assert flagged.requires_review is True
    assert flagged.status == OrderStatus.ACTIVE


def test_payment_belonging_to_another_order_is_flagged(db, gateway, seed, make_fee_plan, order):
    other_plan_id = make_fee_plan()
    other = create_order(db, gateway, other_plan_id, seed.member_id, seed.provider_id)
    gateway.report_payment(order.external_order_id, "pay_1", TransactionStatus.SUCCESS)
    gateway.report_payment(other.external_order_id, "pay_1", TransactionStatus.SUCCESS, Decimal("750.00"))
    verify_order(db, gateway, order.id)

    with pytest.raises(InconsistentStateError):
        verify_order(db, gateway, other.id)

    assert fresh(db, Order, other.id).requires_review is True
    assert fresh(db, Order, other.id).status == OrderStatus.ACTIVE
    assert fresh(db, Order, order.id).requires_review is False
    assert db.query(Transaction).filter_by(order_id=other.id).count() == 0
    assert wallet(db, seed) == AMOUNT


def test_concurrent_insert_of_the_same_payment_is_retried(db, gateway, seed, order, mocker):
    gateway.report_payment(order.external_order_id, "pay_123", TransactionStatus.SUCCESS)
    real_flush = db.flush
    raced = []

    def flush_after_competing_insert(*args, **kwargs):
        # another worker commits the same payment between our lookup and our insert
        if not raced:
            raced.append(True)
            other = TestingSessionLocal()
            try:
                other.add(Transaction(
                    order_id=order.id,
                    fee_plan_id=order.fee_plan_id,
                    consumer_id=order.consumer_id,
                    external_payment_id="pay_123",
                    amount=AMOUNT,
                    status=TransactionStatus.SUCCESS,
                    source=TransactionSource.WEBHOOK,
                ))
                other.commit()
            finally:
                other.close()
        return real_flush(*args, **kwargs)

    mocker.patch.object(db, "flush", side_effect=flush_after_competing_insert)

    with pytest.raises(VerificationPendingError):
        verify_order(db, gateway, order.id)

    assert raced == [True]
    txn = db.query(Transaction).one()
    assert txn.source == TransactionSource.WEBHOOK
    assert fresh(db, Order, order.id).status == OrderStatus.ACTIVE
    assert fresh(db, FeePlan, seed.fee_plan_id).paid_order_id is None
    assert wallet(db, seed) == Decimal("0.00")

    result = verify_order(db, gateway, order.id)

    assert result.transitioned is True
    assert result.order.status == OrderStatus.PAID
    assert db.query(Transaction).count() == 1
    assert wallet(db, seed) == AMOUNT


def test_second_order_on_a_paid_plan_is_flagged_not_credited(db, gateway, seed):
    first = create_order(db, gateway, seed.fee_plan_id, seed.member_id, seed.provider_id)
    second = create_order(db, gateway, seed.fee_plan_id, seed.member_id, seed.provider_id)
    gateway.report_payment(first.external_order_id, "pay_a", TransactionStatus.SUCCESS)
    gateway.report_payment(second.external_order_id, "pay_b", TransactionStatus.SUCCESS)

    verify_order(db, gateway, first.id)
    with pytest.raises(InconsistentStateError):
        verify_order(db, gateway, second.id)
    with pytest.raises(InconsistentStateError):
        verify_order(db, gateway, second.id)

    flagged = fresh(db, Order, second.id)
    assert flagged.status == OrderStatus.PAID
    assert flagged.requires_review is True
    assert fresh(db, FeePlan, seed.fee_plan_id).paid_order_id == first.id
    assert db.query(Transaction).filter_by(external_payment_id="pay_b").one().status == TransactionStatus.SUCCESS
    assert wallet(db, seed) == AMOUNT


def test_concurrent_verifications_credit_once(db, gateway, seed, order):
    gateway.report_payment(order.external_order_id, "pay_123", TransactionStatus.SUCCESS)

    # the second worker loaded the order before the first one settled it
    other = TestingSessionLocal()
    try:
        stale = other.get(Order, order.id)
        assert stale.status == OrderStatus.ACTIVE

        first = verify_order(db, gateway, order.id)
        second = verify_order(other, gateway, order.id)
    finally:
        other.close()

    assert first.transitioned is True
    assert second.transitioned is False
    assert second.order.status == OrderStatus.PAID
    assert db.query(Transaction).count() == 1
    assert wallet(db, seed) == AMOUNT


def test_offline_paid_plan_then_gateway_success_is_flagged(db, gateway, seed, order):
    mark_offline_paid(db, seed.fee_plan_id, seed.provider_id, True)
    gateway.report_payment(order.external_order_id, "pay_1", TransactionStatus.SUCCESS)

    with pytest.raises(InconsistentStateError):
        verify_order(db, gateway, order.id)

    assert fresh(db, Order, order.id).requires_review is True
    assert wallet(db, seed) == Decimal("0.00")


def test_mark_offline_paid_toggles_status(db, seed):
    paid = mark_offline_paid(db, seed.fee_plan_id, seed.provider_id, True)
    assert paid.is_offline_paid is True
    assert paid.status == FeePlanStatus.PAID

    unpaid = mark_offline_paid(db, seed.fee_plan_id, seed.provider_id, False)
    assert unpaid.is_offline_paid is False
    assert unpaid.status == FeePlanStatus.OVERDUE
    assert wallet(db, seed) == Decimal("0.00")
    assert db.query(Order).count() == 0


def test_mark_offline_paid_is_refused_once_paid_online(db, gateway, seed, order):
    gateway.report_payment(order.external_order_id, "pay_1", TransactionStatus.SUCCESS)
    verify_order(db, gateway, order.id)

    with pytest.raises(ConflictError):
        mark_offline_paid(db, seed.fee_plan_id, seed.provider_id, False)
    with pytest.raises(ConflictError):
        mark_offline_paid(db, seed.fee_plan_id, seed.provider_id, True)

    fee_plan = fresh(db, FeePlan, seed.fee_plan_id)
    assert fee_plan.is_offline_paid is False
    assert fee_plan.status == FeePlanStatus.PAID


def test_mark_offline_paid_for_another_provider(db, seed):
    with pytest.raises(NotFoundError):
        mark_offline_paid(db, seed.fee_plan_id, "someone-else", True)


def test_termination_completes_when_gateway_expires(db, gateway, seed, order):
    request_termination(db, gateway, order.id)

    result = verify_order(db, gateway, order.id)

    assert result.order.status == OrderStatus.TERMINATED
    assert result.transitioned is True


def test_payment_completing_during_termination_still_counts(db, gateway, seed, order):
    request_termination(db, gateway, order.id)
    gateway.report_payment(order.external_order_id, "pay_1", TransactionStatus.SUCCESS)

    result = verify_order(db, gateway, order.id)

    assert result.order.status == OrderStatus.PAID
    assert wallet(db, seed) == AMOUNT


def test_refresh_fee_plan_statuses_marks_overdue(db, seed, make_fee_plan):
    stale_id = make_fee_plan(due_date=utcnow().date() - timedelta(days=3))
    upcoming_id = make_fee_plan()

    assert refresh_fee_plan_statuses(db) == 1
    assert fresh(db, FeePlan, stale_id).status == FeePlanStatus.OVERDUE
    assert fresh(db, FeePlan, upcoming_id).status == FeePlanStatus.DUE


def test_sweep_reverifies_stale_orders(db, gateway, seed, make_fee_plan, order):
    recent_plan = make_fee_plan()
    recent = create_order(db, gateway, recent_plan, seed.member_id, seed.provider_id)
    db.execute(
        update(Order)
        .where(Order.id == order.id)
        .values(created_at=utcnow() - timedelta(hours=3))
    )
    db.commit()
    gateway.report_payment(order.external_order_id, "pay_1", TransactionStatus.SUCCESS)
    gateway.report_payment(recent.external_order_id, "pay_2", TransactionStatus.SUCCESS, Decimal("750.00"))

    summary = sweep_stale_orders(db, gateway)

    assert summary["checked"] == 1
    assert summary["transitioned"] == 1
    assert summary["pending"] == 0
    assert fresh(db, Order, order.id).status == OrderStatus.PAID
    assert fresh(db, Order, recent.id).status == OrderStatus.ACTIVE
    txn = db.query(Transaction).filter_by(external_payment_id="pay_1").one()
    assert txn.source == TransactionSource.SWEEP


def test_sweep_counts_unreachable_orders_as_pending(db, gateway, seed, order):
    db.execute(
        update(Order)
        .where(Order.id == order.id)
        .values(created_at=utcnow() - timedelta(hours=3))
    )
    db.commit()
    gateway.unavailable = True

    summary = sweep_stale_orders(db, gateway)

    assert summary["checked"] == 1
    assert summary["pending"] == 1
    assert fresh(db, Order, order.id).status == OrderStatus.ACTIVE
