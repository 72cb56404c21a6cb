"""Order management service."""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, FrozenSet, List, Set, Tuple
from sqlalchemy.orm import Session
from opentelemetry import trace

from auth import CurrentUser
from exceptions import Forbidden, InvalidQuantity, InvalidStatusTransition, NotFound
from models import (
    OPEN_PAYMENT_STATUSES,
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    Product,
)
from services.earnings_service import EarningsService
from monitoring import (
    orders_created_counter,
    orders_rejected_counter,
    order_status_changes_counter
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

BUYER = "buyer"
FARMER = "farmer"

# (current, requested) -> parties allowed to make the change.
# PAID is absent on purpose: only payment reconciliation sets it.
ALLOWED_TRANSITIONS: Dict[Tuple[OrderStatus, OrderStatus], FrozenSet[str]] = {
    (OrderStatus.PENDING, OrderStatus.CONFIRMED): frozenset({FARMER}),
    (OrderStatus.PENDING, OrderStatus.CANCELLED): frozenset({BUYER, FARMER}),
    (OrderStatus.CONFIRMED, OrderStatus.CANCELLED): frozenset({BUYER, FARMER}),
    (OrderStatus.PAYMENT_PROCESSING, OrderStatus.CANCELLED): frozenset({BUYER}),
    (OrderStatus.FAILED, OrderStatus.PENDING): frozenset({BUYER}),
    (OrderStatus.FAILED, OrderStatus.CANCELLED): frozenset({BUYER, FARMER}),
    (OrderStatus.PAID, OrderStatus.SHIPPED): frozenset({FARMER}),
    (OrderStatus.SHIPPED, OrderStatus.DELIVERED): frozenset({BUYER, FARMER}),
}


def compute_total_price(price_per_unit: Decimal, quantity: Decimal) -> Decimal:
    return (Decimal(price_per_unit) * Decimal(quantity)).quantize(CENT, rounding=ROUND_HALF_UP)


class OrderService:
    """Service for creating orders and moving them through their lifecycle."""

    def __init__(self, earnings_service: EarningsService):
        """
        Initialize order service.

        Args:
            earnings_service: Used to settle a farmer's earning on delivery
        """
        self.earnings_service = earnings_service
        self.tracer = trace.get_tracer(__name__)

    def create_order(
        self,
        db: Session,
        buyer: CurrentUser,
        product_id: str,
        quantity: Decimal,
        notes: str = None
    ) -> Order:
        """
        Create an order and reserve the requested quantity.

        The total price is frozen from the product's current price. The
        availability check and the stock decrement are one conditional
        UPDATE, so two buyers cannot both claim the last units.

        Raises:
            NotFound: If the product does not exist
            InvalidQuantity: If the product is unavailable or short of stock
        """
        span = trace.get_current_span()
        span.set_attribute("product.id", product_id)
        span.set_attribute("order.quantity", str(quantity))

        product = db.query(Product).filter(Product.id == product_id).first()
        if product is None:
            raise NotFound("Product not found")

        if not product.available or product.quantity < quantity:
            orders_rejected_counter.add(1, {"reason": "insufficient_quantity"})
            logger.info("Order rejected: insufficient quantity", extra={
                "product_id": product_id,
                "requested": str(quantity),
                "available": str(product.quantity)
            })
            raise InvalidQuantity("Insufficient product quantity")

        total_price = compute_total_price(product.price_per_unit, quantity)

        try:
            with self.tracer.start_as_current_span("db.transaction.create_order") as db_span:
                db_span.set_attribute("db.operation", "UPDATE")
                db_span.set_attribute("db.table", "products")

                reserved = db.query(Product).filter(
                    Product.id == product.id,
                    Product.available.is_(True),
                    Product.quantity >= quantity
                ).update(
                    {Product.quantity: Product.quantity - quantity},
                    synchronize_session=False
                )
                db_span.set_attribute("db.rows_affected", reserved)

                if reserved != 1:
                    db.rollback()
                    orders_rejected_counter.add(1, {"reason": "lost_race"})
                    logger.warning("Order rejected: stock claimed concurrently", extra={
                        "product_id": product_id,
                        "requested": str(quantity)
                    })
                    raise InvalidQuantity("Insufficient product quantity")

                order = Order(
                    buyer_id=buyer.id,
                    product_id=product.id,
                    quantity=quantity,
                    total_price=total_price,
                    status=OrderStatus.PENDING,
                    notes=notes
                )
                db.add(order)
                db.commit()
                db_span.set_attribute("order.id", order.id)
        except InvalidQuantity:
            raise
        except Exception as e:
            db.rollback()
            logger.error("Failed to create order", extra={
                "buyer_id": buyer.id,
                "product_id": product_id,
                "error": str(e)
            })
            raise

        db.refresh(order)
        orders_created_counter.add(1, {"category": product.category or "unknown"})
        logger.info("Order created", extra={
            "order_id": order.id,
            "buyer_id": buyer.id,
            "product_id": product_id,
            "total_price": str(total_price)
        })
        return order

    def list_orders_for_buyer(self, db: Session, buyer_id: str) -> List[Order]:
        """Get a buyer's orders, newest first."""
        with self.tracer.start_as_current_span("db.query.get_buyer_orders") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "orders")

            orders = (
                db.query(Order)
                .filter(Order.buyer_id == buyer_id)
                .order_by(Order.created_at.desc())
                .all()
            )
            db_span.set_attribute("db.rows_returned", len(orders))
            return orders

    def list_orders_for_farmer(self, db: Session, farmer_id: str) -> List[Order]:
        """Get orders placed against a farmer's products, newest first."""
        with self.tracer.start_as_current_span("db.query.get_farmer_orders") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "orders")

            orders = (
                db.query(Order)
                .join(Product, Order.product_id == Product.id)
                .filter(Product.farmer_id == farmer_id)
                .order_by(Order.created_at.desc())
                .all()
            )
            db_span.set_attribute("db.rows_returned", len(orders))
            return orders

    def _parties(self, order: Order, user: CurrentUser) -> Set[str]:
        parties = set()
        if order.buyer_id == user.id:
            parties.add(BUYER)
        if order.product.farmer_id == user.id:
            parties.add(FARMER)
        return parties

    def get_order(self, db: Session, order_id: str, user: CurrentUser) -> Order:
        """
        Get one order visible to its buyer or the farmer who owns the product.

        Raises:
            NotFound: If the order does not exist
            Forbidden: If the caller is neither party
        """
        order = db.query(Order).filter(Order.id == order_id).first()
        if order is None:
            raise NotFound("Order not found")
        if not self._parties(order, user):
            raise Forbidden("Forbidden")
        return order

    def update_order_status(
        self,
        db: Session,
        order_id: str,
        new_status: OrderStatus,
        user: CurrentUser
    ) -> Order:
        """
        Move an order to ``new_status`` if the transition table allows it.

        Raises:
            NotFound: If the order does not exist
            Forbidden: If the caller is neither buyer nor farmer of the order
            InvalidStatusTransition: If the change is not allowed for the caller
        """
        order = db.query(Order).filter(Order.id == order_id).first()
        if order is None:
            raise NotFound("Order not found")

        parties = self._parties(order, user)
        if not parties:
            raise Forbidden("Forbidden")

        current = order.status
        if current == new_status:
            return order

        allowed = ALLOWED_TRANSITIONS.get((current, new_status), frozenset())
        if not parties & allowed:
            logger.info("Order status transition rejected", extra={
                "order_id": order.id,
                "from_status": current.value,
                "to_status": new_status.value,
                "parties": sorted(parties)
            })
            raise InvalidStatusTransition(
                f"Cannot change order status from {current.value} to {new_status.value}"
            )

        try:
            if new_status == OrderStatus.CANCELLED:
                self._release_stock(db, order)
                if current == OrderStatus.PAYMENT_PROCESSING:
                    self._fail_open_payments(db, order)
            elif new_status == OrderStatus.DELIVERED:
                self.earnings_service.settle_order_earnings(db, order.id)

            order.status = new_status
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error("Failed to update order status", extra={
                "order_id": order_id,
                "to_status": new_status.value,
                "error": str(e)
            })
            raise

        db.refresh(order)
        order_status_changes_counter.add(1, {"to_status": new_status.value})
        logger.info("Order status updated", extra={
            "order_id": order.id,
            "from_status": current.value,
            "to_status": new_status.value,
            "user_id": user.id
        })
        return order

    def _release_stock(self, db: Session, order: Order) -> None:
        db.query(Product).filter(Product.id == order.product_id).update(
            {Product.quantity: Product.quantity + order.quantity},
            synchronize_session=False
        )

    def _fail_open_payments(self, db: Session, order: Order) -> None:
        failed = db.query(Payment).filter(
            Payment.order_id == order.id,
            Payment.status.in_(OPEN_PAYMENT_STATUSES)
        ).update({Payment.status: PaymentStatus.FAILED}, synchronize_session=False)
        if failed:
            logger.info("Open payment attempts failed on order cancellation", extra={
                "order_id": order.id,
                "payments_failed": failed
            })
