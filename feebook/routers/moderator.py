from typing import Optional

from fastapi import APIRouter, Depends, Query as QueryParam
from sqlalchemy.orm import Session
from starlette import status

from feebook.auth import require_role
from feebook.database import get_db
from feebook.errors import NotFoundError
from feebook.ledger import list_all
from feebook.models import Query, QueryStatus
from feebook.reconciliation import sweep_stale_orders
from feebook.schemas import (
    QueryCreateRequest,
    QueryOut,
    QueryUpdateRequest,
    TransactionOut,
    ok,
)
from feebook.stripe_service import get_gateway

router = APIRouter(prefix="/api/v1", tags=["moderator"])

moderator_only = require_role("moderator")


@router.get("/moderator/transactions")
def payment_log(
    page: int = QueryParam(1, ge=1),
    limit: int = QueryParam(10, ge=1, le=100),
    db: Session = Depends(get_db),
    auth=Depends(moderator_only),
):
    log = list_all(db, page=page, limit=limit)
    log["transactions"] = [TransactionOut.model_validate(t) for t in log["transactions"]]
    return ok(log)


@router.post("/moderator/orders/sweep")
def sweep_orders(
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    auth=Depends(moderator_only),
):
    return ok(sweep_stale_orders(db, gateway))


@router.get("/moderator/queries")
def list_queries(
    status: Optional[QueryStatus] = None,
    db: Session = Depends(get_db),
    auth=Depends(moderator_only),
):
    queries = db.query(Query)
    if status is not None:
        queries = queries.filter(Query.status == status)
    queries = queries.order_by(Query.created_at.desc()).all()
    return ok([QueryOut.model_validate(q) for q in queries])


@router.patch("/moderator/queries")
def update_query(
    request: QueryUpdateRequest,
    db: Session = Depends(get_db),
    auth=Depends(moderator_only),
):
    query = db.get(Query, request.id)
    if query is None:
        raise NotFoundError("Query not found")
    query.status = request.status
    db.commit()
    db.refresh(query)
    return ok(QueryOut.model_validate(query))


@router.post("/general/query", status_code=status.HTTP_201_CREATED)
def submit_query(request: QueryCreateRequest, db: Session = Depends(get_db)):
    query = Query(**request.model_dump())
    db.add(query)
    db.commit()
    db.refresh(query)
    return ok(QueryOut.model_validate(query))
