"""Orders API router."""
from typing import List
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db
from schemas import CreateOrderRequest, OrderResponse, UpdateOrderStatusRequest
from auth import CurrentUser, get_current_user, require_role
from dependencies import get_order_service
from models import UserRole
from services.order_service import OrderService

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=OrderResponse, status_code=201)
async def create_order(
    request: CreateOrderRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(require_role(UserRole.BUYER)),
    order_service: OrderService = Depends(get_order_service)
):
    """Place an order for a product - buyers only."""
    order = order_service.create_order(
        db=db,
        buyer=user,
        product_id=request.product_id,
        quantity=request.quantity,
        notes=request.notes
    )
    return OrderResponse.model_validate(order)


@router.get("", response_model=List[OrderResponse])
async def get_orders(
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    order_service: OrderService = Depends(get_order_service)
):
    """Get the caller's orders as a buyer, newest first."""
    orders = order_service.list_orders_for_buyer(db, user.id)
    return [OrderResponse.model_validate(o) for o in orders]


@router.get("/farmer/my-orders", response_model=List[OrderResponse])
async def get_farmer_orders(
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(require_role(UserRole.FARMER)),
    order_service: OrderService = Depends(get_order_service)
):
    """Get orders placed on the caller's products - farmers only."""
    orders = order_service.list_orders_for_farmer(db, user.id)
    return [OrderResponse.model_validate(o) for o in orders]


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    order_service: OrderService = Depends(get_order_service)
):
    """Get one order - its buyer or the product's farmer only."""
    order = order_service.get_order(db, order_id, user)
    return OrderResponse.model_validate(order)


@router.put("/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: str,
    request: UpdateOrderStatusRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    order_service: OrderService = Depends(get_order_service)
):
    """Change an order's status within the allowed transitions."""
    order = order_service.update_order_status(db, order_id, request.status, user)
    return OrderResponse.model_validate(order)
