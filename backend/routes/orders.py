from uuid import UUID
from fastapi import APIRouter, Depends, Query, status
from typing import Optional

from core.dependencies import get_current_user, get_optional_user, get_order_service, require_admin
from core.utils.response import Response
from models.orders import OrderStatus
from models.user import User
from schemas.orders import OrderCreate, OrderStatusUpdate
from services.orders import OrderService

router = APIRouter(prefix="/orders", tags=["Orders"])


@router.post("")
async def create_order(
    request: OrderCreate,
    current_user: Optional[User] = Depends(get_optional_user),
    order_service: OrderService = Depends(get_order_service)
):
    """Checkout: the signed-in user's cart, or the guest's item list."""
    order = await order_service.create_order(request, current_user)
    return Response(
        data=order.to_dict(),
        message="Order created successfully",
        status_code=status.HTTP_201_CREATED,
    )


@router.get("/my-orders")
async def get_my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    current_user: User = Depends(get_current_user),
    order_service: OrderService = Depends(get_order_service)
):
    orders, pagination = await order_service.get_user_orders(current_user.id, page, limit, status_filter)
    return Response(
        data=[order.to_dict() for order in orders],
        message="Orders retrieved successfully",
        pagination=pagination,
    )


@router.get("")
async def get_all_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    admin: User = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service)
):
    """All orders (admin)."""
    orders, pagination = await order_service.get_orders(page, limit, status_filter)
    return Response(
        data=[order.to_dict() for order in orders],
        message="Orders retrieved successfully",
        pagination=pagination,
    )


@router.get("/{order_id}")
async def get_order(
    order_id: UUID,
    current_user: Optional[User] = Depends(get_optional_user),
    order_service: OrderService = Depends(get_order_service)
):
    order = await order_service.get_order(order_id, current_user)
    return Response(data=order.to_dict(), message="Order retrieved successfully")


@router.put("/{order_id}/status")
async def update_order_status(
    order_id: UUID,
    request: OrderStatusUpdate,
    admin: User = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service)
):
    """Manual status override (admin)."""
    order = await order_service.update_order_status(order_id, request, admin)
    return Response(data=order.to_dict(), message="Order status updated successfully")
