import logging

from feebook.errors import ConflictError, NotFoundError, ValidationError
from feebook.models import FeePlan, Member, Order
from feebook.status import derive_fee_plan_status, is_paid

logger = logging.getLogger(__name__)

# Fields a provider may not change once a plan is paid
FROZEN_WHEN_PAID = ("amount", "due_date")
EDITABLE_FIELDS = ("name", "description", "amount", "due_date")


def _check_amount(amount):
    if amount is not None and amount <= 0:
        raise ValidationError("Amount must be greater than zero")


def create_fee_plan(db, provider_id, member_id, name, amount, due_date, description=None):
    member = db.query(Member).filter_by(id=member_id, provider_id=provider_id).first()
    if member is None:
        raise NotFoundError("Member not found")
    _check_amount(amount)

    fee_plan = FeePlan(
        provider_id=provider_id,
        member_id=member_id,
        name=name,
        description=description,
        amount=amount,
        due_date=due_date,
        is_offline_paid=False,
        consumer_claims_paid=False,
    )
    fee_plan.status = derive_fee_plan_status(fee_plan)
    db.add(fee_plan)
    db.commit()
    db.refresh(fee_plan)
    logger.info("Fee plan %s created for member %s", fee_plan.id, member_id)
    return fee_plan


def get_member_with_fee_plans(db, provider_id, member_unique_id):
    member = (
        db.query(Member)
        .filter_by(provider_id=provider_id, unique_id=member_unique_id)
        .first()
    )
    if member is None:
        raise NotFoundError("Member not found")
    return member


def get_fee_plan(db, fee_plan_id):
    fee_plan = db.get(FeePlan, fee_plan_id)
    if fee_plan is None:
        raise NotFoundError("Fee plan not found")
    return fee_plan


def update_fee_plan(db, fee_plan_id, provider_id, changes):
    fee_plan = db.query(FeePlan).filter_by(id=fee_plan_id, provider_id=provider_id).first()
    if fee_plan is None:
        raise NotFoundError("Fee plan not found")

    changes = {k: v for k, v in changes.items() if k in EDITABLE_FIELDS and v is not None}
    if is_paid(fee_plan):
        frozen = [k for k in FROZEN_WHEN_PAID if k in changes and changes[k] != getattr(fee_plan, k)]
        if frozen:
            raise ConflictError(f"Cannot change {', '.join(frozen)} of a paid fee plan")
    _check_amount(changes.get("amount"))

    for key, value in changes.items():
        setattr(fee_plan, key, value)
    fee_plan.status = derive_fee_plan_status(fee_plan)
    db.commit()
    db.refresh(fee_plan)
    return fee_plan


def delete_fee_plan(db, fee_plan_id, provider_id):
    fee_plan = db.query(FeePlan).filter_by(id=fee_plan_id, provider_id=provider_id).first()
    if fee_plan is None:
        raise NotFoundError("Fee plan not found")
    if db.query(Order.id).filter_by(fee_plan_id=fee_plan_id).first() is not None:
        raise ConflictError("Fee plan has payment orders and cannot be deleted")

    db.delete(fee_plan)
    db.commit()
    logger.info("Fee plan %s deleted by provider %s", fee_plan_id, provider_id)


def claim_paid(db, fee_plan_id, consumer_id, claimed=True):
    """Record a consumer's unverified claim of payment. Status is unaffected."""
    fee_plan = get_fee_plan(db, fee_plan_id)
    if fee_plan.member.consumer_id != consumer_id:
        raise NotFoundError("Fee plan not found")
    fee_plan.consumer_claims_paid = claimed
    db.commit()
    db.refresh(fee_plan)
    return fee_plan
