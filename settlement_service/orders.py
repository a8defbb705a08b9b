"""
Order state machine.

    pending_payment -> paid -> admin_verification -> completed -> refunded
    pending_payment | paid | admin_verification -> cancelled

Every status write is a guarded UPDATE keyed on (id, status, version); a zero
row count means a concurrent writer moved the order first.
"""
import logging
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from typing import get_args

from sqlalchemy import select, update, or_, func
from sqlalchemy.orm import Session

from common.error_handling import (
    ForbiddenError, InvalidOperationError, InvalidStateError, NotFoundError, ValidationError,
)
from common.schemas import OrderEvent, PaymentEvent, PaymentMethod
from common.security import Caller, ROLE_ADMIN, require_role
from settlement_service.commission import ZERO, compute_earnings, compute_fees, to_money
from settlement_service.db import atomic
from settlement_service.events import record_event
from settlement_service.models import Order, Payment, PlatformEarning, Product, utcnow

logger = logging.getLogger(__name__)

PAYMENT_METHODS = get_args(PaymentMethod)

ORDER_TRANSITIONS = {
    "pending_payment": {"paid", "cancelled"},
    "paid": {"admin_verification", "cancelled"},
    "admin_verification": {"completed", "cancelled"},
    "completed": {"refunded"},
    "cancelled": set(),
    "refunded": set(),
}
CANCELLABLE_STATUSES = ("pending_payment", "paid", "admin_verification")
DEFAULT_CANCEL_REASON = "Transaction cancelled by user"

def load_order(db: Session, order_id: str, for_update: bool = False) -> Order:
    stmt = select(Order).where(Order.id == order_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    order = db.execute(stmt).scalar_one_or_none()
    if order is None:
        raise NotFoundError("Order not found", context={"order_id": order_id})
    return order

def try_transition(db: Session, order: Order, to_status: str, **values) -> bool:
    """Move the order if nobody else has; False when the guarded update matched no row."""
    from_status = order.status
    if to_status not in ORDER_TRANSITIONS.get(from_status, ()):
        return False
    result = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == from_status, Order.version == order.version)
        .values(status=to_status, version=Order.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    db.refresh(order)
    logger.info(f"Order {order.id}: {from_status} -> {to_status}")
    return True

def transition(db: Session, order: Order, to_status: str, error=InvalidStateError, **values) -> None:
    from_status = order.status
    if not try_transition(db, order, to_status, **values):
        raise error(
            f"Order cannot move from {from_status} to {to_status}",
            context={"order_id": order.id, "status": from_status, "requested": to_status},
        )

def touch(db: Session, order: Order, error) -> None:
    """Bump the version without changing status, serializing writers on this order.

    A lost race raises ``error``, or InvalidStateError when the winner moved the order.
    """
    expected_status = order.status
    result = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == order.status, Order.version == order.version)
        .values(version=Order.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.refresh(order)
        if order.status != expected_status:
            raise InvalidStateError(
                f"Order moved to {order.status} concurrently",
                context={"order_id": order.id, "status": order.status, "expected": expected_status},
            )
        raise error("Order was modified concurrently", context={"order_id": order.id})
    db.refresh(order)

def _can_view(caller: Caller, order: Order) -> bool:
    return caller.is_admin or caller.user_id in (order.buyer_id, order.seller_id)

# ── Commands ─────────────────────────────────────

def create_order(
    db: Session,
    caller: Caller,
    product_id: str,
    shipping_address: Dict,
    payment_method: str,
    shipping_method: Optional[str] = None,
    shipping_cost=ZERO,
) -> Order:
    """Buyer starts a purchase. The product stays listed until settlement."""
    if not shipping_address:
        raise ValidationError("Shipping address is required", field="shipping_address")
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"Unknown payment method: {payment_method}", field="payment_method")
    shipping_cost = to_money(shipping_cost)
    if shipping_cost < 0:
        raise ValidationError("Shipping cost must not be negative", field="shipping_cost")

    product = db.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found", context={"product_id": product_id})
    if product.seller_id == caller.user_id:
        raise InvalidOperationError("Cannot buy your own product", context={"product_id": product_id})
    if product.status != "approved":
        raise InvalidOperationError(
            "Product is not available for purchase",
            context={"product_id": product_id, "status": product.status},
        )

    fee, net = compute_fees(product.price)

    with atomic(db, "create order"):
        order = Order(
            buyer_id=caller.user_id,
            seller_id=product.seller_id,
            product_id=product.id,
            gross_amount=to_money(product.price),
            fee_amount=fee,
            net_amount=net,
            status="pending_payment",
            payment_method=payment_method,
            shipping_address=shipping_address,
            shipping_method=shipping_method,
            shipping_cost=shipping_cost,
        )
        db.add(order)
        db.flush()
        record_event(db, OrderEvent(type="OrderCreated", order_id=order.id, to_status=order.status, actor_id=caller.user_id))

    logger.info(f"🛒 Order {order.id} created: buyer={caller.user_id} product={product.id} gross={order.gross_amount} fee={fee}")
    return order

def admin_verify_and_complete(
    db: Session,
    caller: Caller,
    order_id: str,
    tracking_number: Optional[str] = None,
    notes: Optional[str] = None,
) -> Order:
    """Settle a paid order: order completed, product sold, platform earning booked, all in one commit."""
    require_role(caller, ROLE_ADMIN)
    order = load_order(db, order_id, for_update=True)
    if order.status != "admin_verification":
        raise InvalidStateError(
            "Transaction is not pending verification",
            context={"order_id": order_id, "status": order.status},
        )
    product = db.execute(
        select(Product).where(Product.id == order.product_id).with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()
    if product.status == "sold":
        raise InvalidStateError(
            "Product has already been sold through another transaction",
            context={"order_id": order_id, "product_id": product.id},
        )

    now = utcnow()
    with atomic(db, "complete order"):
        transition(
            db, order, "completed",
            verified_at=now,
            verified_by=caller.user_id,
            completed_at=now,
            tracking_number=tracking_number,
            shipped_at=now if tracking_number else None,
            admin_notes=notes,
        )
        product.status = "sold"

        breakdown = compute_earnings(order.fee_amount, order.shipping_cost, product.is_premium)
        db.add(PlatformEarning(
            order_id=order.id,
            transaction_fee=breakdown.transaction_fee,
            premium_listing_fee=breakdown.premium_listing_fee,
            shipping_commission=breakdown.shipping_commission,
            total_earnings=breakdown.total_earnings,
        ))
        record_event(db, OrderEvent(
            type="OrderCompleted", order_id=order.id, from_status="admin_verification",
            to_status="completed", actor_id=caller.user_id,
        ))

    logger.info(f"✅ Order {order.id} completed by admin {caller.user_id}; platform earned {breakdown.total_earnings}")
    return order

def cancel_order(db: Session, caller: Caller, order_id: str, reason: Optional[str] = None) -> Order:
    order = load_order(db, order_id, for_update=True)
    if not _can_view(caller, order):
        raise ForbiddenError("Access denied", context={"order_id": order_id})
    if order.status not in CANCELLABLE_STATUSES:
        raise InvalidStateError(
            "Transaction cannot be cancelled",
            context={"order_id": order_id, "status": order.status},
        )

    from_status = order.status
    reason = reason or DEFAULT_CANCEL_REASON
    with atomic(db, "cancel order"):
        transition(db, order, "cancelled", cancel_reason=reason)
        record_event(db, OrderEvent(
            type="OrderCancelled", order_id=order.id, from_status=from_status,
            to_status="cancelled", actor_id=caller.user_id, reason=reason,
        ))

    # an in-flight payment confirmation still lands on the payment row, never on this order
    logger.info(f"Order {order.id} cancelled by {caller.user_id}: {reason}")
    return order

def refund_order(db: Session, caller: Caller, order_id: str, reason: Optional[str] = None) -> Order:
    require_role(caller, ROLE_ADMIN)
    order = load_order(db, order_id, for_update=True)
    if order.status != "completed":
        raise InvalidStateError(
            "Only completed transactions can be refunded",
            context={"order_id": order_id, "status": order.status},
        )

    with atomic(db, "refund order"):
        transition(db, order, "refunded", admin_notes=reason or order.admin_notes)
        for payment in db.scalars(
            select(Payment).where(Payment.order_id == order.id, Payment.status == "completed")
        ):
            payment.status = "refunded"
            record_event(db, PaymentEvent(
                type="PaymentRefunded", payment_id=payment.id, order_id=order.id,
                amount=payment.amount, method=payment.method, reason=reason,
            ))
        record_event(db, OrderEvent(
            type="OrderRefunded", order_id=order.id, from_status="completed",
            to_status="refunded", actor_id=caller.user_id, reason=reason,
        ))

    logger.info(f"↩️ Order {order.id} refunded by admin {caller.user_id}")
    return order

# ── Queries ──────────────────────────────────────

def get_order(db: Session, caller: Caller, order_id: str) -> Order:
    order = load_order(db, order_id)
    if not _can_view(caller, order):
        raise ForbiddenError("Access denied", context={"order_id": order_id})
    return order

def list_orders_for_user(db: Session, caller: Caller, kind: str = "all") -> List[Order]:
    """Orders where the caller is the buyer, the seller, or either."""
    stmt = select(Order)
    if kind == "buyer":
        stmt = stmt.where(Order.buyer_id == caller.user_id)
    elif kind == "seller":
        stmt = stmt.where(Order.seller_id == caller.user_id)
    else:
        stmt = stmt.where(or_(Order.buyer_id == caller.user_id, Order.seller_id == caller.user_id))
    return list(db.scalars(stmt.order_by(Order.created_at.desc())))

def list_orders_awaiting_verification(db: Session, caller: Caller) -> List[Order]:
    require_role(caller, ROLE_ADMIN)
    stmt = select(Order).where(Order.status == "admin_verification").order_by(Order.created_at.asc())
    return list(db.scalars(stmt))

def list_platform_earnings(db: Session, caller: Caller) -> Tuple[List[PlatformEarning], Decimal]:
    require_role(caller, ROLE_ADMIN)
    earnings = list(db.scalars(select(PlatformEarning).order_by(PlatformEarning.created_at.desc())))
    total = db.scalar(select(func.coalesce(func.sum(PlatformEarning.total_earnings), 0)))
    return earnings, to_money(total)
