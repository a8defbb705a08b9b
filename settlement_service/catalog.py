import logging
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from common.error_handling import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from common.security import Caller, ROLE_ADMIN, ROLE_SELLER, require_role
from settlement_service.commission import to_money
from settlement_service.db import atomic
from settlement_service.models import CartItem, Order, Product

logger = logging.getLogger(__name__)

LISTING_DECISIONS = ("approved", "rejected", "inactive")

def create_listing(
    db: Session,
    caller: Caller,
    title: str,
    price,
    description: str = "",
    is_premium: bool = False,
) -> Product:
    """Only verified sellers (or admins) may list products; new listings wait for admin review."""
    require_role(caller, ROLE_SELLER, ROLE_ADMIN, message="Only verified sellers can list products")
    if not title or not title.strip():
        raise ValidationError("Title is required", field="title")
    price = to_money(price)
    if price < 0:
        raise ValidationError("Price must not be negative", field="price")

    with atomic(db, "create listing"):
        product = Product(
            seller_id=caller.user_id,
            title=title.strip(),
            description=description,
            price=price,
            is_premium=is_premium,
            status="pending",
        )
        db.add(product)
    logger.info(f"📦 Listing {product.id} created by seller {caller.user_id} at {price}")
    return product

def get_product(db: Session, product_id: str) -> Product:
    product = db.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found", context={"product_id": product_id})
    return product

def review_listing(db: Session, caller: Caller, product_id: str, decision: str) -> Product:
    require_role(caller, ROLE_ADMIN)
    if decision not in LISTING_DECISIONS:
        raise ValidationError(f"Decision must be one of {', '.join(LISTING_DECISIONS)}", field="decision")
    product = get_product(db, product_id)
    if product.status == "sold":
        raise InvalidStateError("Sold products cannot be re-reviewed", context={"product_id": product_id})

    with atomic(db, "review listing"):
        product.status = decision
    logger.info(f"Listing {product.id} {decision} by admin {caller.user_id}")
    return product

def list_available_products(db: Session) -> List[Product]:
    stmt = select(Product).where(Product.status == "approved").order_by(Product.created_at.desc())
    return list(db.scalars(stmt))

def _require_owner(caller: Caller, product: Product) -> None:
    if product.seller_id != caller.user_id and not caller.is_admin:
        raise ForbiddenError("Access denied", context={"product_id": product.id})

def update_listing(
    db: Session,
    caller: Caller,
    product_id: str,
    title: Optional[str] = None,
    description: Optional[str] = None,
    price=None,
    is_premium: Optional[bool] = None,
) -> Product:
    """Owner or admin edits a listing. Existing orders keep the price they were placed at."""
    product = get_product(db, product_id)
    _require_owner(caller, product)
    if product.status == "sold":
        raise InvalidStateError("Sold products cannot be edited", context={"product_id": product_id})
    if title is not None and not title.strip():
        raise ValidationError("Title is required", field="title")
    if price is not None:
        price = to_money(price)
        if price < 0:
            raise ValidationError("Price must not be negative", field="price")

    with atomic(db, "update listing"):
        if title is not None:
            product.title = title.strip()
        if description is not None:
            product.description = description
        if price is not None:
            product.price = price
        if is_premium is not None:
            product.is_premium = is_premium
    logger.info(f"Listing {product.id} updated by {caller.user_id}")
    return product

def delete_listing(db: Session, caller: Caller, product_id: str) -> None:
    product = get_product(db, product_id)
    _require_owner(caller, product)
    if db.scalar(select(Order.id).where(Order.product_id == product_id).limit(1)):
        raise InvalidStateError(
            "Products with transactions cannot be deleted",
            context={"product_id": product_id},
        )

    with atomic(db, "delete listing"):
        db.execute(delete(CartItem).where(CartItem.product_id == product_id))
        db.delete(product)
    logger.info(f"🗑️ Listing {product_id} deleted by {caller.user_id}")

def list_seller_products(db: Session, caller: Caller, seller_id: str) -> List[Product]:
    """Every listing of one seller, any status; visible to that seller and admins."""
    if seller_id != caller.user_id and not caller.is_admin:
        raise ForbiddenError("Access denied", context={"seller_id": seller_id})
    stmt = select(Product).where(Product.seller_id == seller_id).order_by(Product.created_at.desc())
    return list(db.scalars(stmt))
