"""Farmer earnings ledger."""
import logging
from collections import OrderedDict
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional
import redis
from sqlalchemy.orm import Session
from opentelemetry import trace

from auth import CurrentUser
from exceptions import (
    Conflict,
    Forbidden,
    InsufficientBalance,
    NotFound,
    ValidationFailed,
)
from models import Earning, EarningStatus, Order, OrderStatus
from monitoring import (
    earnings_credited_counter,
    withdrawals_counter,
    withdrawal_amount_histogram
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

# Orders whose payment has been confirmed
PAID_ORDER_STATUSES = (OrderStatus.PAID, OrderStatus.SHIPPED, OrderStatus.DELIVERED)


def _sum(earnings: List[Earning], status: Optional[EarningStatus] = None) -> Decimal:
    return sum(
        (Decimal(e.amount) for e in earnings if status is None or e.status == status),
        ZERO
    )


def summarize(earnings: List[Earning]) -> Dict[str, Decimal]:
    """Totals by status, recomputed from the full set on every call."""
    return {
        "total_earnings": _sum(earnings),
        "completed_earnings": _sum(earnings, EarningStatus.COMPLETED),
        "pending_earnings": _sum(earnings, EarningStatus.PENDING),
        "withdrawn_earnings": _sum(earnings, EarningStatus.WITHDRAWN),
        "total_quantity_sold": sum((Decimal(e.quantity_sold or 0) for e in earnings), ZERO),
    }


class EarningsService:
    """
    Credits farmers for paid orders and pays out completed earnings.

    An earning is PENDING from payment until the order is delivered, then
    COMPLETED (withdrawable), then WITHDRAWN.
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis],
        lock_timeout: float = 30.0,
        lock_wait: float = 5.0
    ):
        """
        Initialize earnings service.

        Args:
            redis_client: Redis connection for the per-farmer withdrawal lock
            lock_timeout: Seconds before an abandoned lock expires
            lock_wait: Seconds to wait for a lock held by another withdrawal
        """
        self.redis_client = redis_client
        self.lock_timeout = lock_timeout
        self.lock_wait = lock_wait
        self.tracer = trace.get_tracer(__name__)

    # --- crediting ---

    def credit_for_paid_order(self, db: Session, order: Order) -> Optional[Earning]:
        """
        Add the PENDING earning for a just-paid order to the session.

        Does not commit; the caller owns the transaction. Returns None when
        the order has already been credited.
        """
        existing = db.query(Earning).filter(
            Earning.order_id == order.id,
            Earning.parent_id.is_(None)
        ).first()
        if existing is not None:
            logger.info("Order already credited", extra={
                "order_id": order.id,
                "earning_id": existing.id
            })
            return None

        earning = Earning(
            farmer_id=order.product.farmer_id,
            order_id=order.id,
            product_id=order.product_id,
            amount=order.total_price,
            quantity_sold=order.quantity,
            status=EarningStatus.PENDING,
            description=f"Sale of {order.quantity} {order.product.unit or 'units'} of {order.product.name}"
        )
        db.add(earning)
        earnings_credited_counter.add(1, {"source": "reconciliation"})
        logger.info("Earning credited", extra={
            "order_id": order.id,
            "farmer_id": earning.farmer_id,
            "amount": str(earning.amount)
        })
        return earning

    def credit_earning(
        self,
        db: Session,
        user: CurrentUser,
        farmer_id: str,
        order_id: str,
        product_id: str,
        amount: Decimal,
        quantity_sold: Decimal,
        description: Optional[str] = None
    ) -> Earning:
        """
        Explicitly credit an earning for a paid order that has none yet.

        Raises:
            Forbidden: If the caller is not that farmer or an admin
            NotFound: If the order does not exist
            ValidationFailed: If product or farmer do not match the order
            Conflict: If the order is unpaid or already credited
        """
        if user.id != farmer_id and not user.is_admin:
            raise Forbidden("Cannot credit earnings to another farmer")

        order = db.query(Order).filter(Order.id == order_id).first()
        if order is None:
            raise NotFound("Order not found")
        if order.product_id != product_id:
            raise ValidationFailed("Product does not match the order")
        if order.product.farmer_id != farmer_id:
            raise ValidationFailed("Farmer does not own the ordered product")
        if order.status not in PAID_ORDER_STATUSES:
            raise Conflict("Order has not been paid")

        existing = db.query(Earning).filter(Earning.order_id == order_id).first()
        if existing is not None:
            raise Conflict("Earning already recorded for this order")

        earning = Earning(
            farmer_id=farmer_id,
            order_id=order_id,
            product_id=product_id,
            amount=amount,
            quantity_sold=quantity_sold,
            description=description,
            status=EarningStatus.PENDING
        )
        db.add(earning)
        db.commit()
        db.refresh(earning)

        earnings_credited_counter.add(1, {"source": "manual"})
        logger.info("Earning credited manually", extra={
            "earning_id": earning.id,
            "order_id": order_id,
            "farmer_id": farmer_id,
            "amount": str(amount)
        })
        return earning

    def settle_order_earnings(self, db: Session, order_id: str) -> int:
        """Make an order's PENDING earnings withdrawable. Does not commit."""
        settled = db.query(Earning).filter(
            Earning.order_id == order_id,
            Earning.status == EarningStatus.PENDING
        ).update({Earning.status: EarningStatus.COMPLETED}, synchronize_session=False)
        if settled:
            logger.info("Earnings settled", extra={"order_id": order_id, "count": settled})
        return settled

    def mark_earning_status(
        self,
        db: Session,
        earning_id: str,
        status: EarningStatus,
        user: CurrentUser
    ) -> Earning:
        """Overwrite an earning's status. Admin only; no transition rules."""
        earning = db.query(Earning).filter(Earning.id == earning_id).first()
        if earning is None:
            raise NotFound("Earning not found")
        if not user.is_admin:
            raise Forbidden("Forbidden")

        previous = earning.status
        earning.status = status
        db.commit()
        db.refresh(earning)

        logger.info("Earning status overwritten", extra={
            "earning_id": earning.id,
            "from_status": previous.value,
            "to_status": status.value,
            "user_id": user.id
        })
        return earning

    # --- reporting ---

    def list_earnings(self, db: Session, farmer_id: str) -> Dict[str, Any]:
        earnings = (
            db.query(Earning)
            .filter(Earning.farmer_id == farmer_id)
            .order_by(Earning.created_at.desc())
            .all()
        )
        return {"earnings": earnings, "summary": summarize(earnings)}

    def get_stats(self, db: Session, farmer_id: str) -> Dict[str, Any]:
        earnings = db.query(Earning).filter(Earning.farmer_id == farmer_id).all()
        stats = summarize(earnings)
        stats["available_to_withdraw"] = stats["completed_earnings"]
        stats["total_transactions"] = len(earnings)
        return stats

    def get_monthly(self, db: Session, farmer_id: str) -> List[Dict[str, Any]]:
        """Earnings grouped by calendar month (``YYYY-MM``), oldest first."""
        earnings = (
            db.query(Earning)
            .filter(Earning.farmer_id == farmer_id)
            .order_by(Earning.created_at.asc())
            .all()
        )

        months: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        for earning in earnings:
            key = earning.created_at.strftime("%Y-%m")
            bucket = months.setdefault(key, {"month": key, "earnings": ZERO, "transactions": 0})
            bucket["earnings"] += Decimal(earning.amount)
            bucket["transactions"] += 1
        return list(months.values())

    # --- withdrawal ---

    @contextmanager
    def _withdrawal_lock(self, farmer_id: str) -> Iterator[None]:
        """
        Serialize withdrawals per farmer.

        Falls back to the conditional row updates alone when Redis is
        unavailable; those still stop an earning being withdrawn twice.
        """
        lock = None
        if self.redis_client is not None:
            lock = self.redis_client.lock(
                f"lock:withdraw:{farmer_id}",
                timeout=self.lock_timeout,
                blocking_timeout=self.lock_wait
            )
            try:
                acquired = lock.acquire()
            except redis.RedisError as e:
                logger.warning(f"Withdrawal lock unavailable, relying on row guards: {e}")
                lock = None
            else:
                if not acquired:
                    withdrawals_counter.add(1, {"outcome": "locked"})
                    raise Conflict("A withdrawal is already in progress; try again")
        try:
            yield
        finally:
            if lock is not None:
                try:
                    lock.release()
                except redis.RedisError as e:
                    logger.warning(f"Failed to release withdrawal lock: {e}")

    def withdraw(self, db: Session, farmer_id: str, amount: Decimal) -> Dict[str, Any]:
        """
        Withdraw ``amount`` from the farmer's COMPLETED earnings.

        Earnings are consumed oldest first until they cover the amount.
        When the last one overshoots, it keeps only the withdrawn portion
        and the remainder becomes a new COMPLETED earning linked to it, so
        no balance is lost.

        Raises:
            InsufficientBalance: If COMPLETED earnings do not cover the amount
            Conflict: If another withdrawal holds the lock or changed the rows
        """
        amount = Decimal(amount)
        with self._withdrawal_lock(farmer_id), \
                self.tracer.start_as_current_span("earnings.withdraw") as span:
            span.set_attribute("farmer.id", farmer_id)
            span.set_attribute("withdrawal.amount", str(amount))

            available = (
                db.query(Earning)
                .filter(
                    Earning.farmer_id == farmer_id,
                    Earning.status == EarningStatus.COMPLETED
                )
                .order_by(Earning.created_at.asc(), Earning.id.asc())
                .all()
            )

            accumulated = ZERO
            consumed: List[Earning] = []
            for earning in available:
                if accumulated >= amount:
                    break
                accumulated += Decimal(earning.amount)
                consumed.append(earning)

            if accumulated < amount:
                withdrawals_counter.add(1, {"outcome": "insufficient_balance"})
                logger.info("Withdrawal rejected: insufficient balance", extra={
                    "farmer_id": farmer_id,
                    "requested": str(amount),
                    "available": str(accumulated)
                })
                raise InsufficientBalance(
                    f"Insufficient balance. Available: {accumulated}, Requested: {amount}"
                )

            remainder = accumulated - amount
            consumed_ids = [e.id for e in consumed]

            try:
                withdrawn = db.query(Earning).filter(
                    Earning.id.in_(consumed_ids),
                    Earning.status == EarningStatus.COMPLETED
                ).update({Earning.status: EarningStatus.WITHDRAWN}, synchronize_session=False)

                if withdrawn != len(consumed_ids):
                    db.rollback()
                    withdrawals_counter.add(1, {"outcome": "conflict"})
                    logger.warning("Withdrawal aborted: earnings changed concurrently", extra={
                        "farmer_id": farmer_id,
                        "expected": len(consumed_ids),
                        "updated": withdrawn
                    })
                    raise Conflict("Earnings changed during withdrawal; try again")

                if remainder > ZERO:
                    last = consumed[-1]
                    db.query(Earning).filter(Earning.id == last.id).update(
                        {Earning.amount: Decimal(last.amount) - remainder},
                        synchronize_session=False
                    )
                    # Keeps the parent's timestamp so it is consumed first next time
                    db.add(Earning(
                        farmer_id=farmer_id,
                        order_id=last.order_id,
                        product_id=last.product_id,
                        parent_id=last.id,
                        amount=remainder,
                        quantity_sold=ZERO,
                        status=EarningStatus.COMPLETED,
                        description=f"Remainder of earning {last.id} after withdrawal",
                        created_at=last.created_at
                    ))

                db.commit()
            except Conflict:
                raise
            except Exception as e:
                db.rollback()
                logger.error("Failed to record withdrawal", extra={
                    "farmer_id": farmer_id,
                    "amount": str(amount),
                    "error": str(e)
                })
                raise

        available_balance = _sum(
            db.query(Earning).filter(
                Earning.farmer_id == farmer_id,
                Earning.status == EarningStatus.COMPLETED
            ).all()
        )

        withdrawals_counter.add(1, {"outcome": "success"})
        withdrawal_amount_histogram.record(float(amount))
        logger.info("Withdrawal completed", extra={
            "farmer_id": farmer_id,
            "amount": str(amount),
            "earnings_consumed": len(consumed_ids),
            "remainder": str(remainder)
        })

        return {
            "success": True,
            "message": f"Successfully withdrew ₦{amount}",
            "withdrawn_amount": amount,
            "remaining_available": remainder,
            "available_balance": available_balance,
            "withdrawn_earning_ids": consumed_ids,
        }
