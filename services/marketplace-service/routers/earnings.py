"""Earnings API router."""
from typing import List
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db
from schemas import (
    CreateEarningRequest,
    EarningResponse,
    EarningsListResponse,
    EarningsStatsResponse,
    MonthlyEarningsResponse,
    UpdateEarningStatusRequest,
    WithdrawRequest,
    WithdrawResponse,
)
from auth import CurrentUser, require_role
from dependencies import get_earnings_service
from models import UserRole
from services.earnings_service import EarningsService

router = APIRouter(prefix="/earnings", tags=["earnings"])

farmer_only = require_role(UserRole.FARMER)
admin_only = require_role(UserRole.ADMIN)


@router.get("", response_model=EarningsListResponse)
async def get_earnings(
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(farmer_only),
    earnings_service: EarningsService = Depends(get_earnings_service)
):
    """Get the caller's earnings with summary totals."""
    result = earnings_service.list_earnings(db, user.id)
    return EarningsListResponse.model_validate(result)


@router.get("/stats", response_model=EarningsStatsResponse)
async def get_earnings_stats(
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(farmer_only),
    earnings_service: EarningsService = Depends(get_earnings_service)
):
    return earnings_service.get_stats(db, user.id)


@router.get("/monthly", response_model=List[MonthlyEarningsResponse])
async def get_monthly_earnings(
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(farmer_only),
    earnings_service: EarningsService = Depends(get_earnings_service)
):
    return earnings_service.get_monthly(db, user.id)


@router.post("", response_model=EarningResponse, status_code=201)
async def create_earning(
    request: CreateEarningRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(require_role(UserRole.FARMER, UserRole.ADMIN)),
    earnings_service: EarningsService = Depends(get_earnings_service)
):
    """Credit an earning for a paid order that was not credited automatically."""
    earning = earnings_service.credit_earning(
        db,
        user,
        farmer_id=request.farmer_id,
        order_id=request.order_id,
        product_id=request.product_id,
        amount=request.amount,
        quantity_sold=request.quantity_sold,
        description=request.description
    )
    return EarningResponse.model_validate(earning)


@router.post("/withdraw", response_model=WithdrawResponse)
async def withdraw_earnings(
    request: WithdrawRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(farmer_only),
    earnings_service: EarningsService = Depends(get_earnings_service)
):
    """Withdraw from completed earnings, oldest first."""
    return earnings_service.withdraw(db, user.id, request.amount)


@router.patch("/{earning_id}", response_model=EarningResponse)
async def update_earning_status(
    earning_id: str,
    request: UpdateEarningStatusRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(admin_only),
    earnings_service: EarningsService = Depends(get_earnings_service)
):
    earning = earnings_service.mark_earning_status(db, earning_id, request.status, user)
    return EarningResponse.model_validate(earning)
