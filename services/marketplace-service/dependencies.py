"""Dependency injection for services."""
import httpx
import redis
from fastapi import Depends, Request

import config
from services.earnings_service import EarningsService
from services.external_service import PaystackClient, StacksIndexerClient
from services.order_service import OrderService
from services.payment_service import PaymentService
from services.reconciliation import PaymentReconciler


def get_redis(request: Request) -> redis.Redis:
    """Get Redis client from app state."""
    return request.app.state.redis_client


def get_http_client(request: Request) -> httpx.AsyncClient:
    """Get HTTP client from app state."""
    return request.app.state.http_client


def get_card_gateway(http_client: httpx.AsyncClient = Depends(get_http_client)) -> PaystackClient:
    """Card gateway client built per request from the configured secret and base URL."""
    return PaystackClient(
        http_client,
        secret_key=config.PAYSTACK_SECRET_KEY,
        base_url=config.PAYSTACK_BASE_URL,
        timeout=config.EXTERNAL_TIMEOUT_SECONDS
    )


def get_chain_indexer(http_client: httpx.AsyncClient = Depends(get_http_client)) -> StacksIndexerClient:
    return StacksIndexerClient(
        http_client,
        base_url=config.STACKS_API_URL,
        timeout=config.EXTERNAL_TIMEOUT_SECONDS
    )


def get_earnings_service(redis_client: redis.Redis = Depends(get_redis)) -> EarningsService:
    return EarningsService(redis_client, lock_timeout=config.WITHDRAWAL_LOCK_TIMEOUT_SECONDS)


def get_order_service(
    earnings_service: EarningsService = Depends(get_earnings_service)
) -> OrderService:
    return OrderService(earnings_service)


def get_payment_service(
    card_gateway: PaystackClient = Depends(get_card_gateway),
    chain_indexer: StacksIndexerClient = Depends(get_chain_indexer),
    earnings_service: EarningsService = Depends(get_earnings_service)
) -> PaymentService:
    return PaymentService(
        card_gateway,
        chain_indexer,
        PaymentReconciler(earnings_service),
        frontend_url=config.FRONTEND_URL,
        contract_address=config.STACKS_CONTRACT_ADDRESS,
        contract_name=config.STACKS_CONTRACT_NAME
    )
