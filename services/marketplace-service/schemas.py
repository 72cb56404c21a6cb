"""Pydantic schemas for request/response validation.

Wire names are camelCase; snake_case names are accepted on input too.
"""
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

from models import EarningStatus, OrderStatus, PaymentStatus, PaymentType, UserRole

# Decimal in storage and arithmetic, plain JSON number on the wire
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]
Quantity = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class CamelModel(BaseModel):
    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


# --- Users and products ---

class UserSummary(CamelModel):
    """Public view of a marketplace account."""
    id: str
    email: str
    name: Optional[str] = None
    role: UserRole


class ProductResponse(CamelModel):
    """Schema for product response."""
    id: str
    farmer_id: str
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    unit: Optional[str] = None
    price_per_unit: Money
    quantity: Quantity
    available: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProductWithFarmerResponse(ProductResponse):
    farmer: Optional[UserSummary] = None


# --- Orders ---

class CreateOrderRequest(CamelModel):
    """Schema for creating an order."""
    product_id: str = Field(min_length=1)
    quantity: Decimal = Field(gt=0, max_digits=12, decimal_places=3)
    notes: Optional[str] = None


class UpdateOrderStatusRequest(CamelModel):
    status: OrderStatus


class PaymentResponse(CamelModel):
    """Schema for a payment attempt."""
    id: str
    order_id: str
    user_id: str
    type: PaymentType
    amount: Money
    reference: Optional[str] = None
    wallet_address: Optional[str] = None
    status: PaymentStatus
    # Read from the ORM attribute, or from "metadata" when re-validating dumped output
    provider_payload: Optional[Any] = Field(
        default=None,
        validation_alias=AliasChoices("provider_payload", "metadata"),
        serialization_alias="metadata"
    )
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OrderSummary(CamelModel):
    """Order fields without related records."""
    id: str
    buyer_id: str
    product_id: str
    quantity: Quantity
    total_price: Money
    status: OrderStatus
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OrderResponse(OrderSummary):
    """Order joined with its product, buyer and payment attempts."""
    product: Optional[ProductWithFarmerResponse] = None
    buyer: Optional[UserSummary] = None
    payments: List[PaymentResponse] = []


class PaymentDetailResponse(PaymentResponse):
    order: OrderSummary


# --- Payments ---

class CardPaymentInitiateRequest(CamelModel):
    order_id: str = Field(min_length=1)


class CardPaymentInitiateResponse(BaseModel):
    """Redirect target returned by the card gateway."""
    authorization_url: str
    reference: str
    payment_id: str = Field(serialization_alias="paymentId")


class TokenPaymentInitiateRequest(CamelModel):
    order_id: str = Field(min_length=1)
    wallet_address: str = Field(min_length=1)


class TokenPaymentInitiateResponse(CamelModel):
    """Everything the client needs to submit the on-chain transfer."""
    payment_id: str
    order_id: str
    amount: Money
    farmer_wallet_address: str
    contract_address: Optional[str] = None
    contract_name: Optional[str] = None
    message: str


class TokenPaymentVerifyRequest(CamelModel):
    transaction_id: str = Field(min_length=1)
    order_id: str = Field(min_length=1)


class TokenPaymentVerifyResponse(CamelModel):
    payment: PaymentResponse
    message: str


class MessageResponse(CamelModel):
    message: str


# --- Earnings ---

class CreateEarningRequest(CamelModel):
    farmer_id: str = Field(min_length=1)
    order_id: str = Field(min_length=1)
    product_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0, max_digits=14, decimal_places=2)
    quantity_sold: Decimal = Field(default=Decimal("0"), ge=0, max_digits=12, decimal_places=3)
    description: Optional[str] = None


class UpdateEarningStatusRequest(CamelModel):
    status: EarningStatus


class WithdrawRequest(CamelModel):
    amount: Decimal = Field(gt=0, max_digits=14, decimal_places=2)


class EarningResponse(CamelModel):
    id: str
    farmer_id: str
    order_id: str
    product_id: str
    parent_id: Optional[str] = None
    amount: Money
    quantity_sold: Quantity
    status: EarningStatus
    description: Optional[str] = None
    created_at: Optional[datetime] = None


class EarningsSummary(CamelModel):
    total_earnings: Money
    completed_earnings: Money
    pending_earnings: Money
    withdrawn_earnings: Money
    total_quantity_sold: Quantity


class EarningsListResponse(CamelModel):
    earnings: List[EarningResponse]
    summary: EarningsSummary


class EarningsStatsResponse(EarningsSummary):
    available_to_withdraw: Money
    total_transactions: int


class MonthlyEarningsResponse(CamelModel):
    month: str
    earnings: Money
    transactions: int


class WithdrawResponse(CamelModel):
    success: bool
    message: str
    withdrawn_amount: Money
    remaining_available: Money
    available_balance: Money
    withdrawn_earning_ids: List[str]
