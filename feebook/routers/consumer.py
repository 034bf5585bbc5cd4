from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from feebook.auth import verify_token
from feebook.dashboard import consumer_dashboard
from feebook.database import get_db
from feebook.fee_plans import claim_paid, get_fee_plan
from feebook.ledger import list_by_consumer
from feebook.models import TransactionStatus
from feebook.schemas import (
    ClaimPaidRequest,
    MemberOut,
    PaymentHistoryEntry,
    ProviderBrief,
    fee_plan_out,
    ok,
)

router = APIRouter(prefix="/api/v1", tags=["consumer"])


@router.get("/consumer/payment-history")
def payment_history(
    consumer_id: str = Query(alias="consumerId", min_length=1),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[TransactionStatus] = None,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    db: Session = Depends(get_db),
    auth=Depends(verify_token),
):
    history = list_by_consumer(
        db,
        consumer_id,
        status=status,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    history["transactions"] = [
        PaymentHistoryEntry.model_validate(txn) for txn in history["transactions"]
    ]
    return ok(history)


@router.get("/consumer/dashboard")
def consumer_dashboard_api(
    consumer_id: str = Query(alias="consumerId", min_length=1),
    db: Session = Depends(get_db),
    auth=Depends(verify_token),
):
    return ok(consumer_dashboard(db, consumer_id))


@router.get("/fee-plans/{fee_plan_id}")
def fee_plan_details(
    fee_plan_id: str,
    db: Session = Depends(get_db),
    auth=Depends(verify_token),
):
    fee_plan = get_fee_plan(db, fee_plan_id)
    return ok({
        "fee_plan": fee_plan_out(fee_plan),
        "member": MemberOut.model_validate(fee_plan.member),
        "provider": ProviderBrief.model_validate(fee_plan.provider),
    })


@router.post("/fee-plans/{fee_plan_id}/claim-paid")
def claim_fee_plan_paid(
    fee_plan_id: str,
    request: ClaimPaidRequest,
    db: Session = Depends(get_db),
    auth=Depends(verify_token),
):
    fee_plan = claim_paid(db, fee_plan_id, request.consumer_id, request.claimed)
    return ok(fee_plan_out(fee_plan))
