import logging
import math

from sqlalchemy import func

from feebook.errors import InconsistentStateError, NotFoundError, ValidationError
from feebook.models import Consumer, Transaction, TransactionStatus
from feebook.status import merge_transaction_status

logger = logging.getLogger(__name__)

METADATA_FIELDS = (
    "payment_time",
    "payment_currency",
    "payment_method",
    "bank_reference",
    "payment_gateway",
    "payment_message",
    "receipt_url",
)

MAX_PAGE_SIZE = 100


def record_attempt(db, order, external_payment_id, status, amount, metadata=None, source=None):
    """Insert or update the ledger row for one gateway payment on ``order``.

    Rows are keyed by ``external_payment_id``. Without one, the order's single
    placeholder row is reused; the first real payment adopts that placeholder.
    Status changes follow ``merge_transaction_status``. Flushes but does not
    commit. A concurrent insert of the same payment surfaces as
    ``IntegrityError`` from the flush.
    """
    metadata = {k: v for k, v in (metadata or {}).items() if k in METADATA_FIELDS}

    if external_payment_id:
        txn = db.query(Transaction).filter_by(external_payment_id=external_payment_id).first()
        if txn is not None and txn.order_id != order.id:
            logger.error(
                "Payment %s reported for order %s already belongs to order %s",
                external_payment_id, order.id, txn.order_id,
            )
            raise InconsistentStateError(
                "Payment is recorded against a different order",
                order_id=order.id, external_payment_id=external_payment_id,
            )
        if txn is None:
            txn = _placeholder(db, order)
            if txn is not None:
                # placeholders never represent money, so no merge rule applies
                txn.external_payment_id = external_payment_id
                txn.placeholder_for = None
                txn.status = status
    else:
        txn = _placeholder(db, order)

    if txn is None:
        txn = Transaction(
            order_id=order.id,
            fee_plan_id=order.fee_plan_id,
            consumer_id=order.consumer_id,
            external_payment_id=external_payment_id or None,
            placeholder_for=None if external_payment_id else order.id,
            amount=amount,
            status=status,
            source=source,
            **metadata,
        )
        db.add(txn)
        db.flush()
        logger.info(
            "Recorded %s payment %s for order %s",
            status.value, external_payment_id or "(placeholder)", order.id,
        )
        return txn

    _apply(txn, status, amount, metadata, source)
    db.flush()
    return txn


def _placeholder(db, order):
    return db.query(Transaction).filter_by(placeholder_for=order.id).first()


def _apply(txn, status, amount, metadata, source):
    previous = txn.status
    new_status, conflict = merge_transaction_status(previous, status)
    if conflict:
        logger.warning(
            "Conflicting terminal statuses for payment %s on order %s: had %s, received %s, keeping %s",
            txn.external_payment_id, txn.order_id, previous.value, status.value, new_status.value,
        )
    accepted = new_status == status

    for key, value in metadata.items():
        if value is None:
            continue
        if accepted or getattr(txn, key) is None:
            setattr(txn, key, value)
    if accepted and amount is not None:
        txn.amount = amount

    if new_status != previous:
        logger.info(
            "Payment %s on order %s moved %s -> %s",
            txn.external_payment_id or "(placeholder)", txn.order_id, previous.value, new_status.value,
        )
    txn.status = new_status
    if source is not None:
        txn.source = source


def _page_bounds(page, limit):
    if page < 1 or limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}")
    return (page - 1) * limit


def _pagination(page, limit, total):
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "current_page": page,
        "total_pages": total_pages,
        "total_count": total,
        "limit": limit,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


def list_by_consumer(db, consumer_id, status=None, start_date=None, end_date=None, page=1, limit=10):
    """Page through a consumer's payment history, newest first."""
    offset = _page_bounds(page, limit)
    if db.get(Consumer, consumer_id) is None:
        raise NotFoundError("Consumer not found")

    query = db.query(Transaction).filter(Transaction.consumer_id == consumer_id)
    if status is not None:
        query = query.filter(Transaction.status == TransactionStatus(status))
    if start_date is not None:
        query = query.filter(Transaction.created_at >= start_date)
    if end_date is not None:
        query = query.filter(Transaction.created_at <= end_date)

    total = query.count()
    transactions = (
        query.order_by(Transaction.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )

    all_count, all_amount = (
        db.query(func.count(Transaction.id), func.coalesce(func.sum(Transaction.amount), 0))
        .filter(Transaction.consumer_id == consumer_id)
        .one()
    )
    ok_count, ok_amount = (
        db.query(func.count(Transaction.id), func.coalesce(func.sum(Transaction.amount), 0))
        .filter(
            Transaction.consumer_id == consumer_id,
            Transaction.status == TransactionStatus.SUCCESS,
        )
        .one()
    )

    return {
        "transactions": transactions,
        "pagination": _pagination(page, limit, total),
        "summary": {
            "total_transactions": all_count,
            "total_amount": all_amount,
            "successful_payments": ok_count,
            "successful_amount": ok_amount,
        },
    }


def list_all(db, page=1, limit=10):
    """Moderator payment log."""
    offset = _page_bounds(page, limit)
    total = db.query(func.count(Transaction.id)).scalar()
    transactions = (
        db.query(Transaction)
        .order_by(Transaction.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return {"transactions": transactions, "pagination": _pagination(page, limit, total)}
