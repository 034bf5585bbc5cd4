import logging

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.orm import Session
from starlette import status

from feebook.auth import verify_token
from feebook.database import get_db
from feebook.errors import (
    GatewayUnavailableError,
    InconsistentStateError,
    OrderNotFoundError,
    VerificationPendingError,
)
from feebook.models import TransactionSource
from feebook.orders import create_order, request_termination
from feebook.reconciliation import verify_order
from feebook.schemas import CreateOrderOut, CreateOrderRequest, OrderOut, VerifyOrderOut, ok
from feebook.stripe_service import get_gateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/pg", tags=["payments"])


@router.post("/create-order", status_code=status.HTTP_201_CREATED)
def create_order_api(
    request: CreateOrderRequest,
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    auth=Depends(verify_token),
):
    order = create_order(
        db,
        gateway,
        fee_plan_id=request.fee_plan_id,
        member_id=request.member_id,
        provider_id=request.provider_id,
        consumer_id=request.consumer_id,
    )
    return ok(CreateOrderOut.from_order(order))


@router.get("/verify-order")
def verify_order_api(
    order_id: str = Query(alias="orderId", min_length=1),
    retry: bool = False,
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    auth=Depends(verify_token),
):
    source = TransactionSource.RETRY if retry else TransactionSource.POLL
    result = verify_order(db, gateway, order_id, source=source)
    return ok(VerifyOrderOut.model_validate(result))


@router.post("/terminate-order")
def terminate_order_api(
    order_id: str = Query(alias="orderId", min_length=1),
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    auth=Depends(verify_token),
):
    order = request_termination(db, gateway, order_id)
    return ok(OrderOut.model_validate(order))


async def raw_body(request: Request):
    return await request.body()


@router.post("/webhook")
def gateway_webhook(
    payload: bytes = Depends(raw_body),
    stripe_signature: str = Header(None),
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
):
    event = gateway.parse_webhook(payload, stripe_signature)

    order_ref = event.order_reference or event.external_order_id
    if not order_ref:
        logger.debug("Ignoring %s webhook without a FeeBook order", event.type)
        return ok({"received": True, "ignored": True})

    try:
        result = verify_order(db, gateway, order_ref, TransactionSource.WEBHOOK)
    except OrderNotFoundError:
        # acknowledged so the gateway stops redelivering; nothing to flag locally
        logger.error(
            "Inconsistent state: webhook %s references unknown order %s, needs manual review",
            event.type, order_ref,
        )
        return ok({"received": True, "unknown_order": order_ref})
    except InconsistentStateError:
        # acknowledged so the gateway stops redelivering; the order is flagged
        logger.error("Webhook %s for order %s left for manual review", event.type, order_ref)
        return ok({"received": True, "flagged": True})
    except VerificationPendingError as e:
        # non-2xx makes the gateway redeliver later
        raise GatewayUnavailableError(order_id=order_ref) from e

    return ok({
        "received": True,
        "order_id": result.order.id,
        "status": result.order.status,
        "transitioned": result.transitioned,
    })
