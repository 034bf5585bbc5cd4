from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from starlette import status

from feebook import config
from feebook.auth import require_role
from feebook.cache import get_dashboard_cache
from feebook.dashboard import provider_dashboard
from feebook.database import get_db
from feebook.fee_plans import (
    create_fee_plan,
    delete_fee_plan,
    get_member_with_fee_plans,
    update_fee_plan,
)
from feebook.reconciliation import mark_offline_paid
from feebook.schemas import (
    FeePlanCreateRequest,
    FeePlanDeleteRequest,
    FeePlanUpdateRequest,
    MarkPaidRequest,
    MemberOut,
    fee_plan_out,
    ok,
)

router = APIRouter(prefix="/api/v1/provider", tags=["provider"])

provider_only = require_role("provider", "moderator")


@router.get("/feeplan")
def list_member_fee_plans(
    provider_id: str = Query(alias="providerId", min_length=1),
    member_id: str = Query(alias="memberId", min_length=1),
    db: Session = Depends(get_db),
    auth=Depends(provider_only),
):
    member = get_member_with_fee_plans(db, provider_id, member_id)
    return ok({
        "member": MemberOut.model_validate(member),
        "fee_plans": [fee_plan_out(plan) for plan in member.fee_plans],
    })


@router.post("/feeplan", status_code=status.HTTP_201_CREATED)
def create_fee_plan_api(
    request: FeePlanCreateRequest,
    db: Session = Depends(get_db),
    auth=Depends(provider_only),
):
    fee_plan = create_fee_plan(
        db,
        provider_id=request.provider_id,
        member_id=request.member_id,
        name=request.name,
        amount=request.amount,
        due_date=request.due_date,
        description=request.description,
    )
    return ok(fee_plan_out(fee_plan))


@router.put("/feeplan")
def update_fee_plan_api(
    request: FeePlanUpdateRequest,
    db: Session = Depends(get_db),
    auth=Depends(provider_only),
):
    changes = request.model_dump(include={"name", "description", "amount", "due_date"})
    fee_plan = update_fee_plan(db, request.id, request.provider_id, changes)
    return ok(fee_plan_out(fee_plan))


@router.delete("/feeplan")
def delete_fee_plan_api(
    request: FeePlanDeleteRequest,
    db: Session = Depends(get_db),
    auth=Depends(provider_only),
):
    delete_fee_plan(db, request.fee_plan_id, request.provider_id)
    return ok({"id": request.fee_plan_id})


@router.post("/feeplan/mark-paid")
def mark_paid_api(
    request: MarkPaidRequest,
    db: Session = Depends(get_db),
    auth=Depends(provider_only),
):
    fee_plan = mark_offline_paid(
        db, request.fee_plan_id, request.provider_id, request.is_offline_paid
    )
    message = (
        "Fee plan marked as paid successfully"
        if request.is_offline_paid
        else "Fee plan marked as unpaid successfully"
    )
    return ok(fee_plan_out(fee_plan), message=message)


@router.get("/dashboard")
def provider_dashboard_api(
    provider_id: str = Query(alias="providerId", min_length=1),
    db: Session = Depends(get_db),
    cache=Depends(get_dashboard_cache),
    auth=Depends(provider_only),
):
    cached = cache.get(provider_id)
    if cached is not None:
        return {**cached, "cached": True}

    body = ok(provider_dashboard(db, provider_id))
    cache.set(provider_id, body, config.DASHBOARD_CACHE_TTL_SECONDS)
    return body
