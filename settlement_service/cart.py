"""
Shopping cart.

A cart line holds one listing for one buyer. Checkout turns every line into
its own order through ``create_order`` and removes the line once the order
exists. Listings are single items, so a line must hold quantity 1 to check out.
"""
import logging
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from common.error_handling import InvalidOperationError, NotFoundError, ValidationError
from common.security import Caller
from settlement_service.commission import ZERO, to_money
from settlement_service.db import atomic
from settlement_service.models import CartItem, Order, Product
from settlement_service.orders import create_order

logger = logging.getLogger(__name__)

def _check_quantity(quantity: int) -> None:
    if quantity is None or quantity <= 0:
        raise ValidationError("Quantity must be greater than 0", field="quantity")

def _check_purchasable(caller: Caller, product: Product) -> None:
    if product.seller_id == caller.user_id:
        raise InvalidOperationError("Cannot buy your own product", context={"product_id": product.id})
    if product.status != "approved":
        raise InvalidOperationError(
            "Product is not available",
            context={"product_id": product.id, "status": product.status},
        )

def _line(db: Session, caller: Caller, product_id: str) -> CartItem:
    item = db.scalar(select(CartItem).where(CartItem.user_id == caller.user_id, CartItem.product_id == product_id))
    if item is None:
        raise NotFoundError("Item not found in cart", context={"product_id": product_id})
    return item

def get_cart(db: Session, caller: Caller) -> Tuple[List[CartItem], Decimal]:
    """Cart lines, oldest first, with the total price of everything in them."""
    items = list(db.scalars(
        select(CartItem).where(CartItem.user_id == caller.user_id).order_by(CartItem.added_at, CartItem.id)
    ))
    total = sum((to_money(item.product.price) * item.quantity for item in items), ZERO)
    return items, total

def add_to_cart(db: Session, caller: Caller, product_id: str, quantity: int = 1) -> CartItem:
    _check_quantity(quantity)
    product = db.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found", context={"product_id": product_id})
    _check_purchasable(caller, product)

    existing = db.scalar(select(CartItem).where(CartItem.user_id == caller.user_id, CartItem.product_id == product_id))
    with atomic(db, "add to cart"):
        if existing is not None:
            existing.quantity += quantity
            item = existing
        else:
            item = CartItem(user_id=caller.user_id, product_id=product_id, quantity=quantity)
            db.add(item)
    return item

def update_cart_item(db: Session, caller: Caller, product_id: str, quantity: int) -> CartItem:
    _check_quantity(quantity)
    item = _line(db, caller, product_id)
    with atomic(db, "update cart"):
        item.quantity = quantity
    return item

def remove_from_cart(db: Session, caller: Caller, product_id: str) -> None:
    item = _line(db, caller, product_id)
    with atomic(db, "remove from cart"):
        db.delete(item)

def clear_cart(db: Session, caller: Caller) -> int:
    with atomic(db, "clear cart"):
        result = db.execute(delete(CartItem).where(CartItem.user_id == caller.user_id))
    return result.rowcount

def count_cart_items(db: Session, caller: Caller) -> int:
    return db.scalar(select(func.count(CartItem.id)).where(CartItem.user_id == caller.user_id))

def checkout(
    db: Session,
    caller: Caller,
    shipping_address: Dict,
    payment_method: str,
    shipping_method: Optional[str] = None,
) -> List[Order]:
    """Open one order per cart line. Every line is checked before any order is created."""
    items, _ = get_cart(db, caller)
    if not items:
        raise InvalidOperationError("Cart is empty")
    for item in items:
        if item.quantity != 1:
            raise ValidationError(
                "Each listing is a single item; set its quantity to 1 before checkout",
                field="quantity",
                context={"product_id": item.product_id, "quantity": item.quantity},
            )
        _check_purchasable(caller, item.product)

    placed = []
    for item in items:
        order = create_order(
            db, caller, item.product_id, shipping_address, payment_method, shipping_method=shipping_method,
        )
        with atomic(db, "remove checked out item"):
            db.delete(item)
        placed.append(order)

    logger.info(f"🛒 Checkout by {caller.user_id}: {len(placed)} order(s)")
    return placed
