from fastapi import APIRouter, Depends, Header, HTTPException, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import Optional

from storefront.infrastructure.db import get_db
from storefront.application.checkout import CheckoutService
from storefront.application.errors import (
    CheckoutError,
    CheckoutInProgress,
    OrderPersistenceFailedAfterPayment,
    PaymentDeclined,
    PaymentGatewayUnavailable,
    ValidationFailed,
)
from storefront.application.schemas import CheckoutRequest, OrderRead, OrderStatusUpdate
from storefront.application.service import OrderService, OrderAccessDenied, OrderConflict
from storefront.domain.status import InvalidTransition
from .deps import CurrentUser, get_current_user, get_checkout_service, require_admin

router = APIRouter(prefix="/orders", tags=["orders"])

def checkout_error_response(error: CheckoutError) -> JSONResponse:
    if isinstance(error, ValidationFailed):
        return JSONResponse(status_code=400, content={"error": error.message})
    if isinstance(error, PaymentDeclined):
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": error.message, "errorCode": error.error_code},
        )
    if isinstance(error, PaymentGatewayUnavailable):
        return JSONResponse(status_code=503, content={"error": error.message})
    if isinstance(error, CheckoutInProgress):
        return JSONResponse(status_code=409, content={"error": error.message})
    if isinstance(error, OrderPersistenceFailedAfterPayment):
        return JSONResponse(
            status_code=500,
            content={
                "error": "Your payment was approved but we could not record your order. "
                         "Our team has been notified and will contact you.",
                "transactionId": error.transaction_id,
            },
        )
    raise TypeError(f"Unhandled checkout error {error!r}")

@router.get("", response_model=list[OrderRead])
def list_orders(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    """List the caller's orders, newest first."""
    return [OrderRead.from_order(order) for order in OrderService(db).list_for_user(user.id)]

@router.get("/{order_id}", response_model=OrderRead)
def get_order(order_id: str, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    """Get one order; owners and admins only."""
    try:
        order = OrderService(db).get_visible(order_id, user.id, user.role)
    except OrderAccessDenied:
        raise HTTPException(status_code=403, detail="Forbidden")
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return OrderRead.from_order(order)

@router.post("", response_model=OrderRead, status_code=201)
async def create_order(
    payload: CheckoutRequest,
    response: Response,
    user: CurrentUser = Depends(get_current_user),
    service: CheckoutService = Depends(get_checkout_service),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    """Charge the card and record the order.

    Replaying a completed ``Idempotency-Key`` returns the original order with
    200 and does not charge again.
    """
    if idempotency_key:
        existing = await service.find_existing(user.id, idempotency_key)
        if existing is not None:
            response.status_code = status.HTTP_200_OK
            return OrderRead.from_order(existing)

    result = await service.create_order(user.id, payload, checkout_key=idempotency_key)
    if isinstance(result, CheckoutError):
        return checkout_error_response(result)
    return OrderRead.from_order(result)

@router.patch("/{order_id}/status", response_model=OrderRead)
def update_order_status(
    order_id: str,
    payload: OrderStatusUpdate,
    user: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Apply a validated status change and append it to the order timeline."""
    try:
        order = OrderService(db).transition(order_id, user.id, payload)
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except OrderConflict:
        raise HTTPException(status_code=409, detail="Order was modified concurrently, reload and retry")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return OrderRead.from_order(order)
