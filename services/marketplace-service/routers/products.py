"""Products API router (read-only catalog view)."""
from typing import List, Optional
from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy import or_
from sqlalchemy.orm import Session
from opentelemetry import trace

from database import get_db
from exceptions import NotFound
from models import Product
from schemas import ProductWithFarmerResponse

router = APIRouter(prefix="/products", tags=["products"])


@router.get("", response_model=List[ProductWithFarmerResponse])
async def get_products(
    category: Optional[str] = Query(None, description="Case-insensitive category match"),
    search: Optional[str] = Query(None, description="Matches name or description"),
    available: Optional[bool] = Query(None, description="Filter on listing status when given"),
    db: Session = Depends(get_db)
):
    """
    List products buyers can order.

    Examples:
    - GET /products?category=tubers
    - GET /products?search=tomato&available=true
    """
    query = db.query(Product)
    if category:
        query = query.filter(Product.category.ilike(f"%{category}%"))
    if search:
        query = query.filter(or_(
            Product.name.ilike(f"%{search}%"),
            Product.description.ilike(f"%{search}%")
        ))
    if available is not None:
        query = query.filter(Product.available.is_(available))

    products = query.order_by(Product.created_at.desc()).all()

    span = trace.get_current_span()
    span.set_attribute("product.count", len(products))

    return [ProductWithFarmerResponse.model_validate(p) for p in products]


@router.get("/{product_id}", response_model=ProductWithFarmerResponse)
async def get_product(
    product_id: str = Path(..., description="Product ID"),
    db: Session = Depends(get_db)
):
    product = db.query(Product).filter(Product.id == product_id).first()
    if not product:
        raise NotFound("Product not found")
    return ProductWithFarmerResponse.model_validate(product)
