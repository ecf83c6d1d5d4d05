# model/catalog.py
"""
Product catalog: validation, CRUD and conditional stock updates.

Stock is only touched through `commit_stock` / `release_stock`, which run
inside the caller's transaction (the order/payment state machine decides
when). A decrement is a conditional UPDATE, so stock never goes negative
even with concurrent payments for the last units.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from sqlalchemy import select, update, delete, or_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ValidationError, NotFoundError, ConflictError
from ..helpers import now_ts, to_iso
from ..infra.sql import GatedAsyncSession
from .orm import Product

logger = logging.getLogger(__name__)

# keep in sync with the column sizes in orm.Product
FIELD_LIMITS = {
    "name": 255,
    "code": 50,
    "image_url": 500,
    "category": 100,
    "description": 1000,
    "ingredients": 2000,
    "health_benefits": 1500,
}
MAX_PRICE = 999_999_999
MAX_STOCK = 999_999_999
LOW_STOCK_THRESHOLD = 10

NUTRITION_FIELDS = (
    "protein", "fat", "fiber", "moisture", "ash", "calcium", "phosphorus",
)
TEXT_FIELDS = (
    "name", "code", "image_url", "category", "description", "ingredients",
    "health_benefits",
) + NUTRITION_FIELDS
REQUIRED_FIELDS = ("name", "code", "category", "price", "stock")

DEFAULT_CATEGORIES = [
    {"id": 1, "name": "Dry Cat Food"},
    {"id": 2, "name": "Dry Dog Food"},
    {"id": 3, "name": "Wet Food"},
    {"id": 4, "name": "Healthy Snack Treat"},
    {"id": 5, "name": "Cat Litter"},
]


def list_categories() -> List[Dict[str, Any]]:
    return [dict(c) for c in DEFAULT_CATEGORIES]


# ------------------------------------------------------------------------------
# Validation
# ------------------------------------------------------------------------------
def is_valid_url(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _parse_int(value) -> Optional[int]:
    if isinstance(value, bool) or value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        pass
    try:
        return round(float(value))
    except (TypeError, ValueError):
        return None


def validate_product(data: Dict[str, Any], partial: bool = False
                     ) -> Dict[str, Any]:
    """
    Returns the cleaned column values. Raises ValidationError carrying a
    per-field error map. With partial=True only the given keys are checked.
    """
    errors: Dict[str, str] = {}
    clean: Dict[str, Any] = {}

    for field in TEXT_FIELDS:
        if field not in data:
            continue
        value = data[field]
        value = "" if value is None else str(value).strip()
        limit = FIELD_LIMITS.get(field)
        if limit and len(value) > limit:
            errors[field] = f"{field} must be {limit} characters or less"
            continue
        clean[field] = value or None

    for field in ("name", "code", "category"):
        if (field in data or not partial) and not clean.get(field):
            errors.setdefault(field, f"{field} is required")

    if clean.get("image_url") and "image_url" not in errors:
        if not is_valid_url(clean["image_url"]):
            errors["image_url"] = "Please enter a valid URL"

    if "price" in data or not partial:
        price = _parse_int(data.get("price"))
        if price is None or price <= 0:
            errors["price"] = "Valid price is required"
        elif price > MAX_PRICE:
            errors["price"] = "Price is too large"
        else:
            clean["price"] = price

    if "stock" in data or not partial:
        stock = _parse_int(data.get("stock"))
        if stock is None or stock < 0:
            errors["stock"] = "Valid stock quantity is required"
        elif stock > MAX_STOCK:
            errors["stock"] = "Stock quantity is too large"
        else:
            clean["stock"] = stock

    if "is_active" in data:
        clean["is_active"] = bool(data["is_active"])

    if errors:
        raise ValidationError("Invalid product data", errors)
    return clean


def product_to_dict(p: Product) -> Dict[str, Any]:
    out = {
        "id": p.id,
        "name": p.name,
        "code": p.code,
        "price": p.price,
        "stock": p.stock,
        "image_url": p.image_url,
        "category": p.category,
        "description": p.description,
        "ingredients": p.ingredients,
        "health_benefits": p.health_benefits,
        "is_active": bool(p.is_active),
        "created_at": to_iso(p.created_at),
        "updated_at": to_iso(p.updated_at),
    }
    for field in NUTRITION_FIELDS:
        out[field] = getattr(p, field)
    return out


# ------------------------------------------------------------------------------
# CRUD
# ------------------------------------------------------------------------------
async def list_products(
    db: GatedAsyncSession,
    active_only: bool = False,
    category: Optional[str] = None,
    search: Optional[str] = None,
) -> List[Dict[str, Any]]:
    stmt = select(Product).order_by(Product.created_at.desc(),
                                    Product.id.desc())
    if active_only:
        stmt = stmt.where(Product.is_active.is_(True))
    if category:
        stmt = stmt.where(Product.category == category)
    if search:
        pattern = f"%{search.lower()}%"
        stmt = stmt.where(or_(
            func.lower(Product.name).like(pattern),
            func.lower(Product.code).like(pattern),
        ))
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(stmt)).scalars().all()
    return [product_to_dict(p) for p in rows]


async def get_product(db: GatedAsyncSession, product_id: int
                      ) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            p = await db.session.get(Product, product_id)
            if p is None:
                raise NotFoundError("Product not found")
            return product_to_dict(p)


async def create_product(db: GatedAsyncSession, data: Dict[str, Any]
                         ) -> Dict[str, Any]:
    clean = validate_product(data)
    now = now_ts()
    p = Product(created_at=now, updated_at=now, **clean)
    try:
        async with db.gated():
            async with db.session.begin():
                db.session.add(p)
    except IntegrityError:
        raise ConflictError(
            f"Product code already exists: {clean['code']}"
        ) from None
    logger.info("product created id=%s code=%s", p.id, p.code)
    return product_to_dict(p)


async def update_product(db: GatedAsyncSession, product_id: int,
                         data: Dict[str, Any]) -> Dict[str, Any]:
    clean = validate_product(data, partial=True)
    try:
        async with db.gated():
            async with db.session.begin():
                p = await db.session.get(Product, product_id)
                if p is None:
                    raise NotFoundError("Product not found")
                for k, v in clean.items():
                    setattr(p, k, v)
                p.updated_at = now_ts()
    except IntegrityError:
        raise ConflictError(
            f"Product code already exists: {clean.get('code')}"
        ) from None
    return product_to_dict(p)


async def delete_product(db: GatedAsyncSession, product_id: int
                         ) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            p = await db.session.get(Product, product_id)
            if p is None:
                raise NotFoundError("Product not found")
            deleted = {"id": p.id, "name": p.name}
            await db.session.execute(
                delete(Product).where(Product.id == product_id)
            )
    logger.info("product deleted id=%s", product_id)
    return deleted


# ------------------------------------------------------------------------------
# Stock (UN-GATED: run inside the caller's transaction)
# ------------------------------------------------------------------------------
async def load_products(session: AsyncSession, ids: Iterable[int]
                        ) -> Dict[int, Product]:
    ids = sorted({int(i) for i in ids})
    if not ids:
        return {}
    rows = (await session.execute(
        select(Product).where(Product.id.in_(ids))
    )).scalars().all()
    return {p.id: p for p in rows}


async def commit_stock(session: AsyncSession,
                       items: Iterable[Tuple[int, int]]) -> List[int]:
    """
    Decrement stock for (product_id, qty) pairs. All or nothing: returns the
    product ids that were short (and leaves stock untouched), or [] when
    every line was committed.
    """
    done: List[Tuple[int, int]] = []
    short: List[int] = []
    for product_id, qty in items:
        row = (await session.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock >= qty)
            .values(stock=Product.stock - qty, updated_at=now_ts())
            .returning(Product.id)
            .execution_options(synchronize_session=False)
        )).first()
        if row is None:
            short.append(product_id)
        else:
            done.append((product_id, qty))
    if short:
        await release_stock(session, done)
    return short


async def release_stock(session: AsyncSession,
                        items: Iterable[Tuple[int, int]]) -> None:
    # a product deleted in the meantime simply matches no row
    for product_id, qty in items:
        await session.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock=Product.stock + qty, updated_at=now_ts())
            .execution_options(synchronize_session=False)
        )
