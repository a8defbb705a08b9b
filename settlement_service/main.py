"""
Settlement Service: orders, payments, seller verification and listings over REST
"""
import logging
import threading
from contextlib import asynccontextmanager
from typing import Iterator, Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from sqlalchemy.orm import Session

from common.error_handling import add_error_handlers
from common.schemas import (
    AddToCart, CancelOrder, CartItemOut, Checkout, CreateListing, CreateOrder, EarningOut, InitiatePayment,
    OrderOut, PaymentOut, ProductOut, RefundOrder, ReviewListing, ReviewVerification, SubmitVerification,
    UpdateCartItem, UpdateListing, VerificationOut, VerifyOrder,
)
from common.security import Caller, verify_token
from common.settings import settings
from common.tracing import settlement_tracer, tracing_middleware
from settlement_service import cart, catalog, orders, outbox_worker, payments, stats, verification
from settlement_service.confirmation import PaymentConfirmationWorker
from settlement_service.db import SessionLocal
from settlement_service.models import Base, User

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    session_factory = app.state.session_factory
    Base.metadata.create_all(bind=session_factory.kw["bind"])

    worker = PaymentConfirmationWorker(session_factory, gateway=getattr(app.state, "payment_gateway", None))
    worker.start()
    app.state.confirmations = worker

    if settings.kafka_enabled:
        threading.Thread(target=outbox_worker.run, args=(session_factory,), daemon=True).start()

    logger.info("🚀 Settlement service started")
    yield
    await worker.stop()

app = FastAPI(title="Settlement Service", version="1.0.0", lifespan=lifespan)
app.state.session_factory = SessionLocal
add_error_handlers(app)

@app.middleware("http")
async def trace_requests(request: Request, call_next):
    return await tracing_middleware(request, call_next, settlement_tracer)

# ── Dependencies ─────────────────────────────────

def get_db(request: Request) -> Iterator[Session]:
    with request.app.state.session_factory() as db:
        yield db

async def current_caller(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)) -> Caller:
    """Trust only the token subject; the role is read fresh so a promotion applies immediately."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "missing bearer token")
    token = authorization.split(" ", 1)[1]
    try:
        claims = verify_token(token)
    except Exception as e:
        raise HTTPException(401, f"invalid token: {e}")
    user = db.get(User, claims["sub"])
    if user is None:
        raise HTTPException(401, "unknown user")
    return Caller(user_id=user.id, role=user.role)

# ── Catalog ──────────────────────────────────────

@app.post("/products", status_code=201)
async def create_listing(req: CreateListing, caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    product = catalog.create_listing(db, caller, req.title, req.price, req.description, req.is_premium)
    return {"message": "Product listed successfully", "product": ProductOut.model_validate(product)}

@app.get("/products")
async def list_products(db: Session = Depends(get_db)):
    return {"products": [ProductOut.model_validate(p) for p in catalog.list_available_products(db)]}

@app.get("/products/{product_id}")
async def get_product(product_id: str, db: Session = Depends(get_db)):
    return {"product": ProductOut.model_validate(catalog.get_product(db, product_id))}

@app.put("/products/{product_id}/review")
async def review_listing(product_id: str, req: ReviewListing, caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    product = catalog.review_listing(db, caller, product_id, req.decision)
    return {"message": f"Product {req.decision}", "product": ProductOut.model_validate(product)}

@app.put("/products/{product_id}")
async def update_listing(product_id: str, req: UpdateListing, caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    product = catalog.update_listing(db, caller, product_id, req.title, req.description, req.price, req.is_premium)
    return {"message": "Product updated successfully", "product": ProductOut.model_validate(product)}

@app.delete("/products/{product_id}")
async def delete_listing(product_id: str, caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    catalog.delete_listing(db, caller, product_id)
    return {"message": "Product deleted successfully"}

@app.get("/products/seller/{seller_id}")
async def seller_products(seller_id: str, caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    return {"products": [ProductOut.model_validate(p) for p in catalog.list_seller_products(db, caller, seller_id)]}

# ── Cart ─────────────────────────────────────────

@app.get("/cart")
async def view_cart(caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    items, total = cart.get_cart(db, caller)
    return {"items": [CartItemOut.model_validate(i) for i in items], "total": total}

@app.get("/cart/count")
async def cart_count(caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    return {"count": cart.count_cart_items(db, caller)}

@app.post("/cart/add")
async def add_to_cart(req: AddToCart, caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    item = cart.add_to_cart(db, caller, req.product_id, req.quantity)
    return {"message": "Item added to cart successfully", "item": CartItemOut.model_validate(item)}

@app.put("/cart/update")
async def update_cart(req: UpdateCartItem, caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    item = cart.update_cart_item(db, caller, req.product_id, req.quantity)
    return {"message": "Cart item updated successfully", "item": CartItemOut.model_validate(item)}

@app.delete("/cart/{product_id}")
async def remove_from_cart(product_id: str, caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    cart.remove_from_cart(db, caller, product_id)
    return {"message": "Item removed from cart successfully"}

@app.delete("/cart")
async def clear_cart(caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    cart.clear_cart(db, caller)
    return {"message": "Cart cleared successfully"}

@app.post("/cart/checkout", status_code=201)
async def checkout(req: Checkout, caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    placed = cart.checkout(db, caller, req.shipping_address, req.payment_method, req.shipping_method)
    return {"message": "Checkout completed", "orders": [OrderOut.model_validate(o) for o in placed]}

# ── Orders ───────────────────────────────────────

@app.post("/orders", status_code=201)
async def create_order(req: CreateOrder, caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    order = orders.create_order(
        db, caller, req.product_id, req.shipping_address, req.payment_method,
        shipping_method=req.shipping_method, shipping_cost=req.shipping_cost,
    )
    return {"message": "Transaction created successfully", "order": OrderOut.model_validate(order)}

@app.get("/orders/mine")
async def my_orders(type: Literal["buyer", "seller", "all"] = "all", caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    return {"orders": [OrderOut.model_validate(o) for o in orders.list_orders_for_user(db, caller, type)]}

@app.get("/orders/admin/pending-verification")
async def pending_verification(caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    return {"orders": [OrderOut.model_validate(o) for o in orders.list_orders_awaiting_verification(db, caller)]}

@app.get("/orders/{order_id}")
async def get_order(order_id: str, caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    order = orders.get_order(db, caller, order_id)
    return {
        "order": OrderOut.model_validate(order),
        "payments": [PaymentOut.model_validate(p) for p in order.payments],
    }

@app.post("/orders/{order_id}/payment")
async def initiate_payment(order_id: str, req: InitiatePayment, request: Request, caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    payment = payments.initiate_payment(
        db, caller, order_id, req.payment_method, req.payment_reference, req.payment_details,
        confirmations=request.app.state.confirmations,
    )
    return {"message": "Payment initiated successfully", "payment": PaymentOut.model_validate(payment)}

@app.put("/orders/{order_id}/verify")
async def verify_order(order_id: str, req: VerifyOrder, caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    order = orders.admin_verify_and_complete(db, caller, order_id, req.tracking_number, req.admin_notes)
    return {"message": "Transaction verified and completed successfully", "order": OrderOut.model_validate(order)}

@app.put("/orders/{order_id}/cancel")
async def cancel_order(order_id: str, req: CancelOrder, caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    order = orders.cancel_order(db, caller, order_id, req.reason)
    return {"message": "Transaction cancelled successfully", "order": OrderOut.model_validate(order)}

@app.put("/orders/{order_id}/refund")
async def refund_order(order_id: str, req: RefundOrder, caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    order = orders.refund_order(db, caller, order_id, req.reason)
    return {"message": "Transaction refunded successfully", "order": OrderOut.model_validate(order)}

@app.get("/earnings")
async def platform_earnings(caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    earnings, total = orders.list_platform_earnings(db, caller)
    return {"earnings": [EarningOut.model_validate(e) for e in earnings], "total": total}

@app.get("/admin/stats")
async def admin_stats(caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    return stats.marketplace_stats(db, caller)

# ── Verifications ────────────────────────────────

@app.post("/verifications", status_code=201)
async def submit_verification(req: SubmitVerification, caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    v = verification.submit_verification(db, caller, req.model_dump())
    return {"message": "Verification request submitted successfully", "verification_id": v.id, "code": v.code}

@app.get("/verifications/mine")
async def my_verification(caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    v = verification.get_latest_verification(db, caller)
    return {"verification": VerificationOut.model_validate(v) if v else None}

@app.get("/verifications")
async def all_verifications(status: Optional[Literal["pending", "approved", "rejected"]] = None, caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    return {"verifications": [VerificationOut.model_validate(v) for v in verification.list_verifications(db, caller, status)]}

@app.put("/verifications/{verification_id}/status")
async def review_verification(verification_id: str, req: ReviewVerification, caller: Caller = Depends(current_caller), db: Session = Depends(get_db)):
    v = verification.review_verification(db, caller, verification_id, req.status, req.rejection_reason)
    return {"message": f"Verification {req.status} successfully", "verification": VerificationOut.model_validate(v)}

@app.get("/health")
async def health():
    return {"ok": True, "service": "settlement"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8002)
