"""Read-only rollups for the provider and consumer dashboards.

Status is always re-derived here, so a stale stored snapshot never shows up
as a stale DUE/OVERDUE figure. Results may lag the reconciliation engine by
one cached read.
"""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import func

from feebook.errors import NotFoundError
from feebook.models import (
    Consumer,
    FeePlan,
    FeePlanStatus,
    Member,
    Provider,
    Transaction,
    TransactionStatus,
    utcnow,
)
from feebook.status import derive_fee_plan_status

ZERO = Decimal("0.00")
MONTHS_IN_CHART = 6


def _shift_month(first_of_month, months):
    index = first_of_month.year * 12 + first_of_month.month - 1 + months
    return date(index // 12, index % 12 + 1, 1)


def _month_start(value):
    return date(value.year, value.month, 1)


def _as_datetime(day):
    return datetime(day.year, day.month, day.day)


def _growth(current, previous):
    if previous > 0:
        return ((current - previous) / previous * 100).quantize(Decimal("0.1"))
    return Decimal("100.0") if current > 0 else Decimal("0.0")


def _member_name(member):
    return f"{member.first_name} {member.last_name or ''}".strip()


def provider_dashboard(db, provider_id, now=None):
    now = now or utcnow()
    provider = db.get(Provider, provider_id)
    if provider is None:
        raise NotFoundError("Provider not found")

    this_month = _month_start(now)
    last_month = _shift_month(this_month, -1)
    chart_start = _shift_month(this_month, -(MONTHS_IN_CHART - 1))

    total_members = (
        db.query(func.count(Member.id)).filter(Member.provider_id == provider_id).scalar()
    )

    fee_plans = db.query(FeePlan).filter(FeePlan.provider_id == provider_id).all()
    totals = {"count": 0, "amount": ZERO}
    pending = {"count": 0, "amount": ZERO}
    overdue = {"count": 0, "amount": ZERO}
    for plan in fee_plans:
        totals["count"] += 1
        totals["amount"] += plan.amount
        status = derive_fee_plan_status(plan, now)
        if status == FeePlanStatus.PAID:
            continue
        pending["count"] += 1
        pending["amount"] += plan.amount
        if status == FeePlanStatus.OVERDUE:
            overdue["count"] += 1
            overdue["amount"] += plan.amount

    settled = (
        db.query(Transaction)
        .join(FeePlan, Transaction.fee_plan_id == FeePlan.id)
        .filter(
            FeePlan.provider_id == provider_id,
            Transaction.status == TransactionStatus.SUCCESS,
            Transaction.payment_time >= _as_datetime(chart_start),
        )
        .all()
    )
    monthly = {}
    for txn in settled:
        key = _month_start(txn.payment_time)
        amount, count = monthly.get(key, (ZERO, 0))
        monthly[key] = (amount + txn.amount, count + 1)

    this_month_amount = monthly.get(this_month, (ZERO, 0))[0]
    last_month_amount = monthly.get(last_month, (ZERO, 0))[0]

    monthly_data = []
    for offset in range(MONTHS_IN_CHART - 1, -1, -1):
        month = _shift_month(this_month, -offset)
        amount, count = monthly.get(month, (ZERO, 0))
        monthly_data.append({"month": month.strftime("%b"), "amount": amount, "count": count})

    recent_transactions = (
        db.query(Transaction)
        .join(FeePlan, Transaction.fee_plan_id == FeePlan.id)
        .filter(
            FeePlan.provider_id == provider_id,
            Transaction.status == TransactionStatus.SUCCESS,
        )
        .order_by(Transaction.payment_time.desc())
        .limit(3)
        .all()
    )

    recent_members = (
        db.query(Member)
        .filter(Member.provider_id == provider_id)
        .order_by(Member.created_at.desc())
        .limit(3)
        .all()
    )

    return {
        "stats": {
            "total_members": total_members,
            "total_revenue": totals["amount"],
            "pending_amount": pending["amount"],
            "overdue_amount": overdue["amount"],
            "this_month_revenue": this_month_amount,
            "last_month_revenue": last_month_amount,
            "revenue_growth": _growth(this_month_amount, last_month_amount),
            "total_fee_plans": totals["count"],
            "pending_fee_plans": pending["count"],
            "overdue_fee_plans": overdue["count"],
            "wallet_balance": provider.wallet_balance,
        },
        "recent_transactions": [
            {
                "id": txn.id,
                "amount": txn.amount,
                "payment_time": txn.payment_time,
                "member_name": _member_name(txn.fee_plan.member),
                "member_unique_id": txn.fee_plan.member.unique_id,
                "fee_plan_name": txn.fee_plan.name,
            }
            for txn in recent_transactions
        ],
        "monthly_data": monthly_data,
        "recent_members": [
            {
                "id": member.id,
                "name": _member_name(member),
                "unique_id": member.unique_id,
                "joined_at": member.created_at,
                "pending_amount": sum(
                    (p.amount for p in member.fee_plans
                     if derive_fee_plan_status(p, now) != FeePlanStatus.PAID),
                    ZERO,
                ),
            }
            for member in recent_members
        ],
    }


def consumer_dashboard(db, consumer_id, now=None):
    now = now or utcnow()
    consumer = db.get(Consumer, consumer_id)
    if consumer is None:
        raise NotFoundError("Consumer not found")

    memberships = sorted(
        consumer.memberships,
        key=lambda m: m.claimed_at or m.created_at,
        reverse=True,
    )

    unpaid = []
    stats = {
        "total_memberships": len(memberships),
        "total_pending_fees": 0,
        "total_pending_amount": ZERO,
        "overdue_fees": 0,
        "overdue_amount": ZERO,
        "upcoming_fees": 0,
    }
    for member in memberships:
        for plan in member.fee_plans:
            status = derive_fee_plan_status(plan, now)
            if status == FeePlanStatus.PAID:
                continue
            unpaid.append({
                "id": plan.id,
                "name": plan.name,
                "amount": plan.amount,
                "status": status,
                "due_date": plan.due_date,
                "member_name": _member_name(member),
                "provider_name": member.provider.name,
                "membership_id": member.id,
            })
            stats["total_pending_fees"] += 1
            stats["total_pending_amount"] += plan.amount
            if status == FeePlanStatus.OVERDUE:
                stats["overdue_fees"] += 1
                stats["overdue_amount"] += plan.amount
            else:
                stats["upcoming_fees"] += 1
    unpaid.sort(key=lambda fee: fee["due_date"])

    recent = (
        db.query(Transaction)
        .filter(
            Transaction.consumer_id == consumer_id,
            Transaction.status == TransactionStatus.SUCCESS,
        )
        .order_by(Transaction.created_at.desc())
        .limit(5)
        .all()
    )
    stats["recent_payments_total"] = sum((t.amount for t in recent), ZERO)

    return {
        "statistics": stats,
        "urgent_fees": unpaid[:5],
        "memberships": [
            {
                "id": member.id,
                "unique_id": member.unique_id,
                "member_name": _member_name(member),
                "provider": {"id": member.provider.id, "name": member.provider.name},
                "claimed_at": member.claimed_at,
            }
            for member in memberships
        ],
        "recent_transactions": [
            {
                "id": txn.id,
                "amount": txn.amount,
                "payment_time": txn.payment_time,
                "fee_plan_name": txn.fee_plan.name,
                "member_name": _member_name(txn.fee_plan.member),
                "provider_name": txn.fee_plan.member.provider.name,
            }
            for txn in recent
        ],
    }
