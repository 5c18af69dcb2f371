from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from shared.config.database import get_db
from shared.security.dependencies import get_current_user, verify_internal_api_key
from .schemas import OrderResponse, OrderStatusUpdate
from .service import OrderService

router = APIRouter()
public_router = APIRouter()
# Fulfilment updates come from other services, not from end users
internal_router = APIRouter(dependencies=[Depends(verify_internal_api_key)])


@public_router.get("/health", include_in_schema=False)
async def health_check():
    return {"service": "order", "status": "running"}


@router.get("/", response_model=list[OrderResponse])
async def list_orders(
    status: str | None = None,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    return await OrderService.list_orders(db, user_id, status)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: str, db: AsyncSession = Depends(get_db), user_id: str = Depends(get_current_user)):
    order = await OrderService.get_order(db, order_id)
    # Do not reveal other users' orders
    if not order or user_id not in (order.buyer_id, order.seller_id):
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@internal_router.patch("/{order_id}/status", response_model=OrderResponse)
async def update_order_status(order_id: str, payload: OrderStatusUpdate, db: AsyncSession = Depends(get_db)):
    try:
        order = await OrderService.update_status(db, order_id, payload.status)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order
