"""External payment provider communication layer."""
import hashlib
import hmac
import httpx
import logging
import time
from typing import Dict, Any, Optional
from urllib.parse import quote

from exceptions import (
    ConfigurationError,
    ExternalServiceUnavailable,
    PaymentInitiationFailed,
    TransactionNotConfirmed,
)
from monitoring import external_duration_histogram

logger = logging.getLogger(__name__)


def compute_signature(secret_key: str, raw_body: bytes) -> str:
    """HMAC-SHA512 hex digest the card gateway sends in ``x-paystack-signature``."""
    return hmac.new(secret_key.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


class PaystackClient:
    """Client for the card/bank gateway's transaction API."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        secret_key: Optional[str],
        base_url: str,
        timeout: float
    ):
        """
        Initialize card gateway client.

        Args:
            http_client: Async HTTP client
            secret_key: Gateway secret key, None when unconfigured
            base_url: Gateway API base URL
            timeout: Per-request timeout in seconds
        """
        self.http_client = http_client
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def require_secret(self) -> str:
        if not self.secret_key:
            logger.error("Card gateway secret key is not configured")
            raise ConfigurationError("Payment provider is not configured")
        return self.secret_key

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """Check a webhook body against its signature header in constant time."""
        secret_key = self.require_secret()
        if not signature:
            return False
        expected = compute_signature(secret_key, raw_body)
        return hmac.compare_digest(expected, signature.strip())

    async def initialize_transaction(
        self,
        email: str,
        amount_minor: int,
        metadata: Dict[str, Any],
        callback_url: str
    ) -> Dict[str, Any]:
        """
        Initialize a card transaction.

        Args:
            email: Payer email
            amount_minor: Amount in minor currency units (kobo)
            metadata: Correlation data echoed back in webhooks
            callback_url: Where the gateway sends the payer afterwards

        Returns:
            Provider data with ``authorization_url`` and ``reference``

        Raises:
            ConfigurationError: If no secret key is configured
            ExternalServiceUnavailable: On timeout, transport error or 5xx
            PaymentInitiationFailed: If the gateway rejects the request
        """
        secret_key = self.require_secret()
        start_time = time.time()
        status = "success"
        status_code = None
        try:
            response = await self.http_client.post(
                f"{self.base_url}/transaction/initialize",
                json={
                    "email": email,
                    "amount": amount_minor,
                    "metadata": metadata,
                    "callback_url": callback_url
                },
                headers={"Authorization": f"Bearer {secret_key}"},
                timeout=self.timeout
            )
            status_code = response.status_code
        except (httpx.TimeoutException, httpx.TransportError) as e:
            status = "unavailable"
            status_code = 0  # Connection failure
            logger.error("Card gateway unreachable", extra={
                "order_id": metadata.get("orderId"),
                "error": str(e)
            })
            raise ExternalServiceUnavailable("Payment provider unavailable; try again") from e
        finally:
            external_duration_histogram.record(
                time.time() - start_time,
                {
                    "provider": "paystack",
                    "operation": "initialize",
                    "status": status,
                    "status_code": str(status_code) if status_code else "0"
                }
            )

        if response.status_code >= 500:
            logger.error("Card gateway returned server error", extra={
                "status_code": response.status_code,
                "order_id": metadata.get("orderId")
            })
            raise ExternalServiceUnavailable("Payment provider unavailable; try again")

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        data = body.get("data")
        if response.status_code >= 400 or not body.get("status") or not isinstance(data, dict):
            logger.warning("Card gateway rejected initialization", extra={
                "status_code": response.status_code,
                "order_id": metadata.get("orderId"),
                "provider_message": body.get("message")
            })
            raise PaymentInitiationFailed("Failed to initialize payment")

        if not data.get("authorization_url") or not data.get("reference"):
            logger.warning("Card gateway response missing redirect data", extra={
                "order_id": metadata.get("orderId")
            })
            raise PaymentInitiationFailed("Failed to initialize payment")

        return data


class StacksIndexerClient:
    """Client for the chain-indexing service used to confirm token transfers."""

    def __init__(self, http_client: httpx.AsyncClient, base_url: str, timeout: float):
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def get_transaction(self, transaction_id: str) -> Dict[str, Any]:
        """
        Fetch an indexed transaction.

        Raises:
            TransactionNotConfirmed: If the indexer does not know the transaction
            ExternalServiceUnavailable: On timeout, transport error or 5xx
        """
        start_time = time.time()
        status = "success"
        status_code = None
        try:
            response = await self.http_client.get(
                f"{self.base_url}/extended/v1/tx/{quote(transaction_id, safe='')}",
                timeout=self.timeout
            )
            status_code = response.status_code
        except (httpx.TimeoutException, httpx.TransportError) as e:
            status = "unavailable"
            status_code = 0
            logger.error("Chain indexer unreachable", extra={
                "transaction_id": transaction_id,
                "error": str(e)
            })
            raise ExternalServiceUnavailable("Chain indexer unavailable; try again") from e
        finally:
            external_duration_histogram.record(
                time.time() - start_time,
                {
                    "provider": "stacks",
                    "operation": "get_transaction",
                    "status": status,
                    "status_code": str(status_code) if status_code else "0"
                }
            )

        if response.status_code >= 500:
            logger.error("Chain indexer returned server error", extra={
                "status_code": response.status_code,
                "transaction_id": transaction_id
            })
            raise ExternalServiceUnavailable("Chain indexer unavailable; try again")

        if response.status_code != 200:
            logger.info("Transaction not known to chain indexer", extra={
                "status_code": response.status_code,
                "transaction_id": transaction_id
            })
            raise TransactionNotConfirmed("Transaction has failed or is not confirmed.")

        try:
            body = response.json()
        except ValueError as e:
            logger.error("Chain indexer returned non-JSON body", extra={
                "transaction_id": transaction_id
            })
            raise ExternalServiceUnavailable("Chain indexer unavailable; try again") from e

        if not isinstance(body, dict):
            logger.error("Chain indexer returned unexpected body", extra={
                "transaction_id": transaction_id,
                "body_type": type(body).__name__
            })
            raise ExternalServiceUnavailable("Chain indexer unavailable; try again")
        return body
