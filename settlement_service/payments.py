"""
Payment initiation and confirmation.

A payment is created in ``processing`` and resolved later by the confirmation
worker. The order only advances when a confirmation reports success while the
order is still waiting for payment.
"""
import logging
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from common.error_handling import ConflictError, ForbiddenError, InvalidStateError, ValidationError
from common.schemas import OrderEvent, PaymentEvent
from common.security import Caller
from settlement_service.db import atomic
from settlement_service.events import record_event
from settlement_service.models import Order, Payment, utcnow
from settlement_service.orders import PAYMENT_METHODS, load_order, touch, try_transition

logger = logging.getLogger(__name__)

OPEN_PAYMENT_STATUSES = ("pending", "processing")

def initiate_payment(
    db: Session,
    caller: Caller,
    order_id: str,
    method: str,
    reference: Optional[str] = None,
    details: Optional[Dict] = None,
    confirmations=None,
) -> Payment:
    """Open a payment attempt for an order awaiting payment.

    ``confirmations`` is anything with ``submit(payment_id)``; the job is only
    handed over after the payment row is committed.
    """
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"Unknown payment method: {method}", field="payment_method")

    order = load_order(db, order_id, for_update=True)
    if order.buyer_id != caller.user_id:
        raise ForbiddenError("Access denied", context={"order_id": order_id})
    if order.status != "pending_payment":
        raise InvalidStateError(
            "Transaction is not in pending payment status",
            context={"order_id": order_id, "status": order.status},
        )
    in_flight = db.scalar(
        select(Payment.id).where(Payment.order_id == order.id, Payment.status.in_(OPEN_PAYMENT_STATUSES)).limit(1)
    )
    if in_flight:
        raise ConflictError(
            "A payment for this transaction is already being processed",
            context={"order_id": order_id, "payment_id": in_flight},
        )

    with atomic(db, "initiate payment"):
        # two initiations racing past the check above collide here
        touch(db, order, error=ConflictError)
        payment = Payment(
            order_id=order.id,
            amount=order.gross_amount,
            method=method,
            reference=reference,
            details=details,
            status="processing",
        )
        db.add(payment)
        db.flush()
        record_event(db, PaymentEvent(
            type="PaymentInitiated", payment_id=payment.id, order_id=order.id,
            amount=payment.amount, method=method,
        ))

    logger.info(f"💳 Payment {payment.id} initiated for order {order.id}: {payment.amount} via {method}")
    if confirmations is not None:
        confirmations.submit(payment.id)
    return payment

def apply_payment_confirmation(
    db: Session,
    payment_id: str,
    succeeded: bool,
    failure_reason: Optional[str] = None,
    provider_payload: Optional[Dict] = None,
) -> Optional[Payment]:
    """Resolve a processing payment. Never raises: the outcome is recorded on the payment row."""
    try:
        return _apply_confirmation(db, payment_id, succeeded, failure_reason, provider_payload)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"❌ Could not record confirmation for payment {payment_id}: {e}")
        return _record_failure(db, payment_id, "confirmation could not be recorded")

def _apply_confirmation(db, payment_id, succeeded, failure_reason, provider_payload):
    payment = db.execute(
        select(Payment).where(Payment.id == payment_id).with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if payment is None:
        logger.error(f"Confirmation for unknown payment {payment_id}")
        return None
    if payment.status != "processing":
        logger.info(f"Payment {payment_id} already {payment.status}; ignoring duplicate confirmation")
        db.rollback()
        return payment

    if provider_payload:
        payment.details = {**(payment.details or {}), "provider": provider_payload}

    if not succeeded:
        payment.status = "failed"
        payment.failure_reason = failure_reason or "Payment processing failed"
        record_event(db, PaymentEvent(
            type="PaymentFailed", payment_id=payment.id, order_id=payment.order_id,
            amount=payment.amount, method=payment.method, reason=payment.failure_reason,
        ))
        db.commit()
        logger.warning(f"Payment {payment.id} failed: {payment.failure_reason}")
        return payment

    payment.status = "completed"
    payment.processed_at = utcnow()
    record_event(db, PaymentEvent(
        type="PaymentCompleted", payment_id=payment.id, order_id=payment.order_id,
        amount=payment.amount, method=payment.method,
    ))

    order = load_order(db, payment.order_id, for_update=True)
    if order.status == "pending_payment":
        _advance_paid_order(db, order, payment)
    else:
        logger.warning(f"Order {order.id} is {order.status}; payment {payment.id} recorded without moving the order")

    db.commit()
    logger.info(f"✅ Payment {payment.id} completed")
    return payment

def _advance_paid_order(db: Session, order: Order, payment: Payment) -> None:
    for to_status in ("paid", "admin_verification"):
        from_status = order.status
        values = {"payment_reference": payment.reference, "payment_method": payment.method} if to_status == "paid" else {}
        if not try_transition(db, order, to_status, **values):
            logger.warning(f"Order {order.id} moved concurrently; left at {order.status}")
            return
        record_event(db, OrderEvent(
            type="OrderStatusChanged", order_id=order.id, from_status=from_status, to_status=to_status,
        ))

def _record_failure(db: Session, payment_id: str, reason: str) -> Optional[Payment]:
    try:
        payment = db.get(Payment, payment_id, populate_existing=True)
        if payment is None or payment.status != "processing":
            return payment
        payment.status = "failed"
        payment.failure_reason = reason
        db.commit()
        return payment
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"❌ Payment {payment_id} left in processing: {e}")
        return None
