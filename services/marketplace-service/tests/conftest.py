"""Shared fixtures: in-memory database, fake Redis and faked payment providers."""
import itertools
import json
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

# Must be set before any service module reads its configuration
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["OTEL_ENABLED"] = "false"
os.environ["PROFILING_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SEED_DEMO_DATA"] = "false"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_marketplace"
os.environ["LOG_LEVEL"] = "WARNING"

import fakeredis
import httpx
import pytest
from fastapi.testclient import TestClient

import config
from database import SessionLocal, engine
from dependencies import get_http_client, get_redis
from main import app
from models import (
    Base,
    Earning,
    EarningStatus,
    Order,
    OrderStatus,
    Product,
    User,
    UserRole,
)
from services.external_service import compute_signature

FARMER_WALLET = "SP2J6ZY48GV1EZ5V2V5RB9MP66SW86PYKKNRV9EJ7"
BUYER_WALLET = "SP3FBR2AGK5H9QBDH3EEN6DF8EK8JY7RX8QJ5SVTE"

TOKENS = {
    "farmer": "farmer-token",
    "other_farmer": "other-farmer-token",
    "buyer": "buyer-token",
    "other_buyer": "other-buyer-token",
    "admin": "admin-token",
}


class FakeProviders:
    """httpx MockTransport handler standing in for the card gateway and chain indexer."""

    def __init__(self):
        self.requests = []
        self.card_response = None
        self.card_error = None  # httpx exception class raised for card calls
        self.indexer_status = {}
        self.transactions = {}
        self._refs = itertools.count(1)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/transaction/initialize":
            if self.card_error is not None:
                raise self.card_error("simulated provider failure", request=request)
            if self.card_response is not None:
                return self.card_response
            reference = f"ref-{next(self._refs)}"
            return httpx.Response(200, json={
                "status": True,
                "message": "Authorization URL created",
                "data": {
                    "authorization_url": f"https://checkout.paystack.com/{reference}",
                    "access_code": f"access-{reference}",
                    "reference": reference,
                },
            })
        if request.url.path.startswith("/extended/v1/tx/"):
            tx_id = request.url.path.rsplit("/", 1)[-1]
            if tx_id in self.indexer_status:
                return httpx.Response(self.indexer_status[tx_id], text="error")
            if tx_id in self.transactions:
                return httpx.Response(200, json=self.transactions[tx_id])
            return httpx.Response(404, json={"error": "transaction not found"})
        return httpx.Response(404)

    def card_requests(self):
        return [r for r in self.requests if r.url.path == "/transaction/initialize"]

    def add_transfer(self, tx_id, sender=BUYER_WALLET, recipient=FARMER_WALLET, tx_status="success"):
        self.transactions[tx_id] = {
            "tx_id": tx_id,
            "tx_status": tx_status,
            "tx_type": "token_transfer",
            "sender_address": sender,
            "token_transfer": {"recipient_address": recipient, "amount": "1000000"},
        }


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def seed(db):
    """Two farmers (one without a wallet), two buyers, an admin and three products."""
    farmer = User(email="farmer@example.com", name="Green Valley Farm", role=UserRole.FARMER,
                  wallet_address=FARMER_WALLET, api_token=TOKENS["farmer"])
    other_farmer = User(email="other-farmer@example.com", name="Hill Farm", role=UserRole.FARMER,
                        api_token=TOKENS["other_farmer"])
    buyer = User(email="buyer@example.com", name="Lagos Fresh Foods", role=UserRole.BUYER,
                 wallet_address=BUYER_WALLET, api_token=TOKENS["buyer"])
    other_buyer = User(email="other-buyer@example.com", role=UserRole.BUYER,
                       api_token=TOKENS["other_buyer"])
    admin = User(email="admin@example.com", role=UserRole.ADMIN, api_token=TOKENS["admin"])
    db.add_all([farmer, other_farmer, buyer, other_buyer, admin])
    db.flush()

    tomatoes = Product(farmer_id=farmer.id, name="Tomatoes", description="Fresh roma tomatoes",
                       category="Vegetables", unit="kg",
                       price_per_unit=Decimal("850.00"), quantity=Decimal("100"))
    peppers = Product(farmer_id=other_farmer.id, name="Scotch Bonnet", description="Hot peppers",
                      category="Vegetables", unit="kg",
                      price_per_unit=Decimal("1000.00"), quantity=Decimal("10"))
    yams = Product(farmer_id=farmer.id, name="Yam Tubers", category="Tubers", unit="tuber",
                   price_per_unit=Decimal("1200.00"), quantity=Decimal("30"), available=False)
    db.add_all([tomatoes, peppers, yams])
    db.commit()

    return SimpleNamespace(
        farmer_id=farmer.id,
        other_farmer_id=other_farmer.id,
        buyer_id=buyer.id,
        other_buyer_id=other_buyer.id,
        admin_id=admin.id,
        tomatoes_id=tomatoes.id,
        peppers_id=peppers.id,
        yams_id=yams.id,
    )


@pytest.fixture
def headers():
    return {role: {"Authorization": f"Bearer {token}"} for role, token in TOKENS.items()}


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def providers():
    return FakeProviders()


@pytest.fixture
def client(db, redis_client, providers):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(providers))
    app.dependency_overrides[get_http_client] = lambda: http_client
    app.dependency_overrides[get_redis] = lambda: redis_client
    # No context manager: the lifespan would connect to real Redis
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def place_order(client, headers, seed):
    """Place an order through the API as the buyer and return its JSON."""

    def _place(product_id=None, quantity=2, who="buyer"):
        response = client.post(
            "/orders",
            json={"productId": product_id or seed.tomatoes_id, "quantity": quantity},
            headers=headers[who],
        )
        assert response.status_code == 201, response.text
        return response.json()

    return _place


@pytest.fixture
def send_webhook(client):
    """Post a card gateway event signed with the configured secret."""

    def _send(event, reference, signature=None, **data):
        body = json.dumps({"event": event, "data": {"reference": reference, **data}}).encode()
        if signature is None:
            signature = compute_signature(config.PAYSTACK_SECRET_KEY, body)
        return client.post(
            "/payments/card/webhook",
            content=body,
            headers={"Content-Type": "application/json", "x-paystack-signature": signature},
        )

    return _send


@pytest.fixture
def make_order(db, seed):
    """Insert an order directly in a given status, bypassing stock checks."""

    def _make(status=OrderStatus.PAID, quantity="2", total_price="1700.00", product_id=None):
        order = Order(
            buyer_id=seed.buyer_id,
            product_id=product_id or seed.tomatoes_id,
            quantity=Decimal(quantity),
            total_price=Decimal(total_price),
            status=status,
        )
        db.add(order)
        db.commit()
        return order.id

    return _make


@pytest.fixture
def make_earning(db, seed, make_order):
    """Insert an earning for a fresh paid order; ``days_ago`` orders them in time."""

    def _make(amount, status=EarningStatus.COMPLETED, days_ago=0, farmer_id=None):
        order_id = make_order(total_price=str(amount))
        earning = Earning(
            farmer_id=farmer_id or seed.farmer_id,
            order_id=order_id,
            product_id=seed.tomatoes_id,
            amount=Decimal(str(amount)),
            quantity_sold=Decimal("1"),
            status=status,
            created_at=datetime(2024, 6, 30, tzinfo=timezone.utc) - timedelta(days=days_ago),
        )
        db.add(earning)
        db.commit()
        return earning.id

    return _make
