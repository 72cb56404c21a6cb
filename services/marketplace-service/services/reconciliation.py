"""Binds payment completion to order completion.

Both confirmation channels (card webhook push and token-transfer proof
pull) end here, so an order reaches PAID through exactly one rule: the
payment row flips to COMPLETED once, and only the caller that flipped it
marks the order PAID and credits the farmer.
"""
import logging
from typing import Any, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from opentelemetry import trace

from exceptions import Conflict
from models import Order, OrderStatus, Payment, PaymentStatus, Product
from services.earnings_service import EarningsService, PAID_ORDER_STATUSES
from monitoring import payments_completed_counter

logger = logging.getLogger(__name__)


class PaymentReconciler:
    """Applies a confirmed payment to its order and the earnings ledger."""

    def __init__(self, earnings_service: EarningsService):
        self.earnings_service = earnings_service
        self.tracer = trace.get_tracer(__name__)

    def complete_payment(
        self,
        db: Session,
        payment_id: str,
        provider_payload: Any,
        channel: str,
        reference: Optional[str] = None
    ) -> bool:
        """
        Mark a payment COMPLETED and its order PAID.

        Args:
            db: Database session
            payment_id: Payment to complete
            provider_payload: Provider data stored on the payment for audit
            channel: "webhook" or "verify", for logs and metrics
            reference: Provider reference to record, when not already set

        Returns:
            True if this call completed the payment, False if it was
            already COMPLETED (repeat or concurrent delivery)

        Raises:
            Conflict: If ``reference`` is already recorded on another payment
        """
        with self.tracer.start_as_current_span("payments.reconcile") as span:
            span.set_attribute("payment.id", payment_id)
            span.set_attribute("payment.channel", channel)

            values = {
                Payment.status: PaymentStatus.COMPLETED,
                Payment.provider_payload: provider_payload,
            }
            if reference is not None:
                values[Payment.reference] = reference

            try:
                completed = db.query(Payment).filter(
                    Payment.id == payment_id,
                    Payment.status != PaymentStatus.COMPLETED
                ).update(values, synchronize_session=False)

                if completed == 0:
                    db.rollback()
                    span.set_attribute("payment.already_completed", True)
                    logger.info("Payment already completed; nothing to do", extra={
                        "payment_id": payment_id,
                        "channel": channel
                    })
                    return False

                payment = (
                    db.query(Payment)
                    .populate_existing()
                    .filter(Payment.id == payment_id)
                    .one()
                )
                order = payment.order

                if order.status in PAID_ORDER_STATUSES:
                    logger.warning("Additional completed payment for an already paid order", extra={
                        "payment_id": payment.id,
                        "order_id": order.id,
                        "order_status": order.status.value,
                        "channel": channel
                    })
                else:
                    if order.status == OrderStatus.CANCELLED:
                        self._reclaim_stock(db, order)
                    order.status = OrderStatus.PAID
                    self.earnings_service.credit_for_paid_order(db, order)

                db.commit()
            except IntegrityError as e:
                db.rollback()
                logger.warning("Payment reference already recorded elsewhere", extra={
                    "payment_id": payment_id,
                    "reference": reference,
                    "error": str(e.orig)
                })
                raise Conflict("Transaction already recorded for another payment") from e
            except Exception as e:
                db.rollback()
                logger.error("Failed to reconcile payment", extra={
                    "payment_id": payment_id,
                    "channel": channel,
                    "error": str(e)
                })
                raise

        payments_completed_counter.add(1, {"channel": channel})
        logger.info("Payment completed and order paid", extra={
            "payment_id": payment_id,
            "order_id": payment.order_id,
            "channel": channel
        })
        return True

    def _reclaim_stock(self, db: Session, order: Order) -> None:
        # Money arrived after the buyer cancelled; the sale stands
        reclaimed = db.query(Product).filter(
            Product.id == order.product_id,
            Product.quantity >= order.quantity
        ).update(
            {Product.quantity: Product.quantity - order.quantity},
            synchronize_session=False
        )
        logger.error("Payment completed for a cancelled order; needs review", extra={
            "order_id": order.id,
            "stock_reclaimed": bool(reclaimed)
        })
