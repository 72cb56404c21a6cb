"""Payments API router."""
from typing import Optional
from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

from database import get_db
from schemas import (
    CardPaymentInitiateRequest,
    CardPaymentInitiateResponse,
    MessageResponse,
    PaymentDetailResponse,
    PaymentResponse,
    TokenPaymentInitiateRequest,
    TokenPaymentInitiateResponse,
    TokenPaymentVerifyRequest,
    TokenPaymentVerifyResponse,
)
from auth import CurrentUser, get_current_user
from dependencies import get_payment_service
from services.payment_service import PaymentService

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/card/initiate", response_model=CardPaymentInitiateResponse)
async def initiate_card_payment(
    request: CardPaymentInitiateRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """Start a card payment; the client redirects to ``authorization_url``."""
    return await payment_service.initiate_card_payment(db, request.order_id, user)


@router.post("/card/webhook", response_model=MessageResponse)
async def card_webhook(
    request: Request,
    x_paystack_signature: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """
    Card gateway webhook.

    The signature covers the raw body, so it is read before any parsing.
    Any delivery with a valid signature is acknowledged with 200.
    """
    raw_body = await request.body()
    message = payment_service.handle_card_webhook(db, raw_body, x_paystack_signature)
    return {"message": message}


@router.post("/token/initiate", response_model=TokenPaymentInitiateResponse, status_code=201)
async def initiate_token_payment(
    request: TokenPaymentInitiateRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """Record a pending token transfer and return the farmer's wallet and contract."""
    return payment_service.initiate_token_payment(
        db, request.order_id, user, request.wallet_address
    )


@router.post("/token/verify", response_model=TokenPaymentVerifyResponse)
async def verify_token_payment(
    request: TokenPaymentVerifyRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """Confirm a token transfer by its transaction id."""
    payment, message = await payment_service.verify_token_payment(
        db, request.order_id, user, request.transaction_id
    )
    return {"payment": PaymentResponse.model_validate(payment), "message": message}


@router.get("/{payment_id}", response_model=PaymentDetailResponse)
async def get_payment(
    payment_id: str,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """Get a payment with its order."""
    payment = payment_service.get_payment(db, payment_id, user)
    return PaymentDetailResponse.model_validate(payment)


@router.post("/{payment_id}/cancel", response_model=PaymentResponse)
async def cancel_payment(
    payment_id: str,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """Abandon an open payment attempt so another can be started."""
    payment = payment_service.cancel_payment(db, payment_id, user)
    return PaymentResponse.model_validate(payment)
