"""Database connection and session management."""
from decimal import Decimal
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from typing import Generator
import logging

from config import DATABASE_URL
from models import Base, Product, User, UserRole

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # Single shared connection so in-memory databases survive across sessions
        return {
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool,
        }
    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,  # Verify connections before use
        "pool_recycle": 3600,  # Recycle connections after 1 hour
        "pool_timeout": 30,  # Wait max 30 seconds for a connection
    }


engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for getting database session.

    Yields:
        Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(seed: bool = False) -> None:
    """Create database tables and optionally seed demo accounts and produce."""
    Base.metadata.create_all(bind=engine)

    if not seed:
        return

    db = SessionLocal()
    try:
        if db.query(User).count() == 0:
            farmer = User(
                email="farmer@example.com",
                name="Green Valley Farm",
                role=UserRole.FARMER,
                wallet_address="SP2J6ZY48GV1EZ5V2V5RB9MP66SW86PYKKNRV9EJ7",
                api_token="farmer-token-123",
            )
            buyer = User(
                email="buyer@example.com",
                name="Lagos Fresh Foods",
                role=UserRole.BUYER,
                wallet_address="SP3FBR2AGK5H9QBDH3EEN6DF8EK8JY7RX8QJ5SVTE",
                api_token="buyer-token-456",
            )
            admin = User(
                email="admin@example.com",
                name="Marketplace Admin",
                role=UserRole.ADMIN,
                api_token="admin-token-789",
            )
            db.add_all([farmer, buyer, admin])
            db.flush()

            products = [
                Product(farmer_id=farmer.id, name="Tomatoes", category="Vegetables", unit="kg",
                        price_per_unit=Decimal("850.00"), quantity=Decimal("500")),
                Product(farmer_id=farmer.id, name="Yam Tubers", category="Tubers", unit="tuber",
                        price_per_unit=Decimal("1200.00"), quantity=Decimal("300")),
                Product(farmer_id=farmer.id, name="Maize", category="Grains", unit="bag",
                        price_per_unit=Decimal("32000.00"), quantity=Decimal("40")),
                Product(farmer_id=farmer.id, name="Plantain", category="Fruits", unit="bunch",
                        price_per_unit=Decimal("2500.00"), quantity=Decimal("120")),
                Product(farmer_id=farmer.id, name="Cassava", category="Tubers", unit="kg",
                        price_per_unit=Decimal("400.00"), quantity=Decimal("1000")),
            ]
            db.add_all(products)
            db.commit()
            logger.info("Seeded database with demo accounts and products")
    finally:
        db.close()
