import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.auth.dependencies import AuthContext, get_auth_context
from app.db.session import get_db
from app.schemas.order import OrderListResponse, OrderResponse, OrderUpdateRequest
from app.services.orders_service import get_order, list_orders, update_order

router = APIRouter(prefix="/api/v1/orders", tags=["orders"])


@router.get("", response_model=OrderListResponse, summary="List orders")
def list_orders_endpoint(
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
) -> OrderListResponse:
    orders = list_orders(db, auth, limit=limit)
    return OrderListResponse(items=[OrderResponse.model_validate(order) for order in orders])


@router.get("/{order_id}", response_model=OrderResponse, summary="Get order")
def get_order_endpoint(
    order_id: uuid.UUID,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
) -> OrderResponse:
    return OrderResponse.model_validate(get_order(db, order_id, auth))


@router.patch("/{order_id}", response_model=OrderResponse, summary="Update order")
def update_order_endpoint(
    order_id: uuid.UUID,
    payload: OrderUpdateRequest,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
) -> OrderResponse:
    return OrderResponse.model_validate(update_order(db, order_id, payload, auth))
