"""Payment initiation and confirmation for both providers."""
import json
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Tuple
from sqlalchemy.orm import Session
from opentelemetry import trace

from auth import CurrentUser
from exceptions import (
    Conflict,
    Forbidden,
    MarketplaceError,
    NotFound,
    SignatureMismatch,
    TransactionNotConfirmed,
)
from models import (
    OPEN_PAYMENT_STATUSES,
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    PaymentType,
)
from services.external_service import PaystackClient, StacksIndexerClient
from services.reconciliation import PaymentReconciler
from monitoring import (
    payments_initiated_counter,
    webhooks_received_counter,
    webhooks_rejected_counter
)

logger = logging.getLogger(__name__)

# Orders a buyer may start paying for
PAYABLE_ORDER_STATUSES = (OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.FAILED)

SUCCESS_EVENT = "charge.success"


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentService:
    """Service for card gateway and token transfer payments."""

    def __init__(
        self,
        card_gateway: PaystackClient,
        chain_indexer: StacksIndexerClient,
        reconciler: PaymentReconciler,
        frontend_url: str,
        contract_address: Optional[str] = None,
        contract_name: Optional[str] = None
    ):
        """
        Initialize payment service.

        Args:
            card_gateway: Card/bank gateway client
            chain_indexer: Chain-indexing service client
            reconciler: Applies confirmed payments to orders
            frontend_url: Base URL for the card gateway's return redirect
            contract_address: Escrow contract address, passed to clients as-is
            contract_name: Escrow contract name, passed to clients as-is
        """
        self.card_gateway = card_gateway
        self.chain_indexer = chain_indexer
        self.reconciler = reconciler
        self.frontend_url = frontend_url.rstrip("/")
        self.contract_address = contract_address
        self.contract_name = contract_name
        self.tracer = trace.get_tracer(__name__)

    # --- shared ---

    def _load_order_for_payer(self, db: Session, order_id: str, payer: CurrentUser) -> Order:
        order = db.query(Order).filter(Order.id == order_id).first()
        if order is None:
            raise NotFound("Order not found")
        if order.buyer_id != payer.id:
            logger.warning("Payment attempted on another buyer's order", extra={
                "order_id": order_id,
                "user_id": payer.id
            })
            raise Forbidden("Order belongs to another buyer")
        return order

    def _claim_order_for_payment(self, db: Session, order: Order) -> OrderStatus:
        """
        Move the order to PAYMENT_PROCESSING unless an attempt is already open.

        The status change is conditional on the order still being payable,
        which admits one concurrent initiation. Does not commit.

        Returns:
            The order's previous status
        """
        if order.status not in PAYABLE_ORDER_STATUSES:
            raise Conflict(f"Order cannot be paid in status {order.status.value}")

        open_attempt = db.query(Payment).filter(
            Payment.order_id == order.id,
            Payment.status.in_(OPEN_PAYMENT_STATUSES)
        ).first()
        if open_attempt is not None:
            raise Conflict("A payment is already in progress for this order")

        previous = order.status
        claimed = db.query(Order).filter(
            Order.id == order.id,
            Order.status == previous
        ).update({Order.status: OrderStatus.PAYMENT_PROCESSING}, synchronize_session=False)
        if claimed != 1:
            db.rollback()
            raise Conflict("A payment is already in progress for this order")
        return previous

    def _release_order_claim(self, db: Session, order_id: str, previous: OrderStatus) -> None:
        db.query(Order).filter(
            Order.id == order_id,
            Order.status == OrderStatus.PAYMENT_PROCESSING
        ).update({Order.status: previous}, synchronize_session=False)
        db.commit()

    # --- card gateway ---

    async def initiate_card_payment(
        self,
        db: Session,
        order_id: str,
        payer: CurrentUser
    ) -> Dict[str, Any]:
        """
        Start a card payment and return the gateway's redirect target.

        Raises:
            NotFound, Forbidden: If the order is missing or not the payer's
            ConfigurationError: If the gateway secret is unset
            Conflict: If the order is not payable or already has an open attempt
            PaymentInitiationFailed: If the gateway rejects the request
            ExternalServiceUnavailable: If the gateway cannot be reached
        """
        order = self._load_order_for_payer(db, order_id, payer)
        self.card_gateway.require_secret()

        previous = self._claim_order_for_payment(db, order)
        db.commit()

        try:
            data = await self.card_gateway.initialize_transaction(
                email=payer.email,
                amount_minor=to_minor_units(order.total_price),
                metadata={
                    "orderId": order.id,
                    "userId": payer.id,
                    "productId": order.product_id
                },
                callback_url=f"{self.frontend_url}/buyer/orders?orderId={order.id}"
            )
        except MarketplaceError:
            self._release_order_claim(db, order.id, previous)
            raise

        try:
            payment = Payment(
                order_id=order.id,
                user_id=payer.id,
                type=PaymentType.CARD_GATEWAY,
                amount=order.total_price,
                reference=data["reference"],
                status=PaymentStatus.PENDING
            )
            db.add(payment)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error("Failed to record card payment", extra={
                "order_id": order_id,
                "reference": data.get("reference"),
                "error": str(e)
            })
            self._release_order_claim(db, order_id, previous)
            raise

        payments_initiated_counter.add(1, {"type": PaymentType.CARD_GATEWAY.value})
        logger.info("Card payment initiated", extra={
            "order_id": order.id,
            "payment_id": payment.id,
            "reference": payment.reference
        })
        return {
            "authorization_url": data["authorization_url"],
            "reference": data["reference"],
            "payment_id": payment.id
        }

    def handle_card_webhook(
        self,
        db: Session,
        raw_body: bytes,
        signature: Optional[str]
    ) -> str:
        """
        Apply a card gateway webhook delivery.

        Once the signature verifies, every outcome is an acknowledgement:
        non-success events, unknown references and repeat deliveries
        change nothing and are not errors to the provider.

        Returns:
            Acknowledgement message

        Raises:
            ConfigurationError: If the gateway secret is unset
            SignatureMismatch: If the signature does not match the raw body
        """
        if not self.card_gateway.verify_signature(raw_body, signature):
            webhooks_rejected_counter.add(1, {"provider": "paystack"})
            logger.warning("Webhook rejected: signature mismatch")
            raise SignatureMismatch()

        try:
            event = json.loads(raw_body)
        except ValueError:
            webhooks_received_counter.add(1, {"event": "unparseable", "outcome": "ignored"})
            logger.warning("Webhook body is not valid JSON; acknowledged")
            return "Webhook received"

        event_type = event.get("event") if isinstance(event, dict) else None
        data = event.get("data") if isinstance(event, dict) else None

        if event_type != SUCCESS_EVENT:
            webhooks_received_counter.add(1, {"event": str(event_type), "outcome": "ignored"})
            logger.info("Webhook event ignored", extra={"event": event_type})
            return "Webhook received, but not a success event."

        reference = data.get("reference") if isinstance(data, dict) else None
        payment = None
        if reference:
            payment = db.query(Payment).filter(
                Payment.reference == str(reference),
                Payment.type == PaymentType.CARD_GATEWAY
            ).first()

        if payment is None:
            webhooks_received_counter.add(1, {"event": SUCCESS_EVENT, "outcome": "unknown_reference"})
            logger.warning("Webhook for unknown payment reference; acknowledged", extra={
                "reference": reference
            })
            return "Webhook processed successfully"

        transitioned = self.reconciler.complete_payment(
            db, payment.id, data, channel="webhook"
        )
        webhooks_received_counter.add(1, {
            "event": SUCCESS_EVENT,
            "outcome": "completed" if transitioned else "duplicate"
        })
        return "Webhook processed successfully"

    # --- token transfer ---

    def initiate_token_payment(
        self,
        db: Session,
        order_id: str,
        payer: CurrentUser,
        wallet_address: str
    ) -> Dict[str, Any]:
        """
        Record a pending token-transfer payment for the client to settle on-chain.

        The amount stays in the marketplace's fiat unit; conversion to
        token units happens client-side.

        Raises:
            NotFound: If the order is missing or the farmer has no wallet
            Forbidden: If the order is not the payer's
            Conflict: If the order is not payable or already has an open attempt
        """
        order = self._load_order_for_payer(db, order_id, payer)

        farmer = order.product.farmer
        if farmer is None or not farmer.wallet_address:
            raise NotFound("Farmer's wallet address not found")

        try:
            self._claim_order_for_payment(db, order)
            payment = Payment(
                order_id=order.id,
                user_id=payer.id,
                type=PaymentType.TOKEN_TRANSFER,
                amount=order.total_price,
                wallet_address=wallet_address,
                status=PaymentStatus.PENDING
            )
            db.add(payment)
            db.commit()
        except Conflict:
            raise
        except Exception as e:
            db.rollback()
            logger.error("Failed to record token payment", extra={
                "order_id": order_id,
                "error": str(e)
            })
            raise

        payments_initiated_counter.add(1, {"type": PaymentType.TOKEN_TRANSFER.value})
        logger.info("Token payment initiated", extra={
            "order_id": order.id,
            "payment_id": payment.id
        })
        return {
            "payment_id": payment.id,
            "order_id": order.id,
            "amount": order.total_price,
            "farmer_wallet_address": farmer.wallet_address,
            "contract_address": self.contract_address,
            "contract_name": self.contract_name,
            "message": "Payment record created. Proceed with the token transfer on the client."
        }

    def _transfer_matches(self, tx: Dict[str, Any], payment: Payment, order: Order) -> Tuple[bool, str]:
        """Check the indexed transaction's parties against the payment."""
        if payment.wallet_address and tx.get("sender_address") != payment.wallet_address:
            return False, "sender"

        tx_type = tx.get("tx_type")
        if tx_type == "token_transfer":
            transfer = tx.get("token_transfer") or {}
            if transfer.get("recipient_address") != order.product.farmer.wallet_address:
                return False, "recipient"
            return True, ""
        if tx_type == "contract_call":
            # Without a configured escrow contract there is no recipient to check
            if not (self.contract_address and self.contract_name):
                return False, "contract"
            call = tx.get("contract_call") or {}
            if call.get("contract_id") != f"{self.contract_address}.{self.contract_name}":
                return False, "contract"
            return True, ""
        return False, "tx_type"

    async def verify_token_payment(
        self,
        db: Session,
        order_id: str,
        payer: CurrentUser,
        transaction_id: str
    ) -> Tuple[Payment, str]:
        """
        Confirm a token-transfer payment from a client-submitted transaction id.

        The transferred amount is not compared with the order total; only
        the transfer's status and parties are checked. A contract call is
        accepted only when it targets the configured escrow contract.

        Returns:
            The completed payment and a message

        Raises:
            NotFound, Forbidden: If the order is missing or not the payer's
            Conflict: If the transaction is recorded on another payment
            TransactionNotConfirmed: If the indexer does not report success,
                or the transfer's parties do not match
            NotFound: If the order has no pending token payment
            ExternalServiceUnavailable: If the indexer cannot be reached
        """
        order = self._load_order_for_payer(db, order_id, payer)

        recorded = db.query(Payment).filter(Payment.reference == transaction_id).first()
        if recorded is not None:
            if recorded.order_id == order.id and recorded.status == PaymentStatus.COMPLETED:
                return recorded, "Payment already verified"
            raise Conflict("Transaction already recorded for another payment")

        tx = await self.chain_indexer.get_transaction(transaction_id)
        if tx.get("tx_status") != "success":
            logger.info("Token transfer not confirmed", extra={
                "order_id": order.id,
                "transaction_id": transaction_id,
                "tx_status": tx.get("tx_status")
            })
            raise TransactionNotConfirmed("Transaction has failed or is not confirmed.")

        payment = db.query(Payment).filter(
            Payment.order_id == order.id,
            Payment.type == PaymentType.TOKEN_TRANSFER,
            Payment.status == PaymentStatus.PENDING
        ).order_by(Payment.created_at.desc()).first()
        if payment is None:
            raise NotFound("No pending payment found for this order")

        matches, mismatch = self._transfer_matches(tx, payment, order)
        if not matches:
            logger.warning("Token transfer does not match payment", extra={
                "order_id": order.id,
                "payment_id": payment.id,
                "transaction_id": transaction_id,
                "mismatch": mismatch
            })
            raise TransactionNotConfirmed("Transaction does not match this payment.")

        payment_id = payment.id
        self.reconciler.complete_payment(
            db, payment_id, tx, channel="verify", reference=transaction_id
        )
        payment = db.query(Payment).filter(Payment.id == payment_id).one()
        return payment, "Payment verified and order confirmed"

    # --- lookups ---

    def get_payment(self, db: Session, payment_id: str, user: CurrentUser) -> Payment:
        """Payment joined with its order, visible to the payer, the farmer, or an admin."""
        payment = db.query(Payment).filter(Payment.id == payment_id).first()
        if payment is None:
            raise NotFound("Payment not found")
        if (
            payment.user_id != user.id
            and payment.order.product.farmer_id != user.id
            and not user.is_admin
        ):
            raise Forbidden("Forbidden")
        return payment

    def cancel_payment(self, db: Session, payment_id: str, user: CurrentUser) -> Payment:
        """
        Abandon an open attempt so the buyer can retry.

        Raises:
            NotFound: If the payment does not exist
            Forbidden: If the caller is not the payer
            Conflict: If the attempt is no longer open
        """
        payment = db.query(Payment).filter(Payment.id == payment_id).first()
        if payment is None:
            raise NotFound("Payment not found")
        if payment.user_id != user.id:
            raise Forbidden("Forbidden")

        try:
            failed = db.query(Payment).filter(
                Payment.id == payment_id,
                Payment.status.in_(OPEN_PAYMENT_STATUSES)
            ).update({Payment.status: PaymentStatus.FAILED}, synchronize_session=False)
            if failed != 1:
                db.rollback()
                raise Conflict("Only an open payment can be cancelled")

            db.query(Order).filter(
                Order.id == payment.order_id,
                Order.status == OrderStatus.PAYMENT_PROCESSING
            ).update({Order.status: OrderStatus.PENDING}, synchronize_session=False)
            db.commit()
        except Conflict:
            raise
        except Exception as e:
            db.rollback()
            logger.error("Failed to cancel payment", extra={
                "payment_id": payment_id,
                "error": str(e)
            })
            raise

        payment = db.query(Payment).populate_existing().filter(Payment.id == payment_id).one()
        logger.info("Payment cancelled by payer", extra={
            "payment_id": payment.id,
            "order_id": payment.order_id
        })
        return payment
