import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Text, Boolean, Integer, BigInteger, Numeric, DateTime, JSON,
    ForeignKey, UniqueConstraint, func,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

MONEY = Numeric(10, 2)

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def new_id() -> str:
    return str(uuid.uuid4())

class User(Base):
    __tablename__ = "users"
    id = Column(String(36), primary_key=True, default=new_id)
    username = Column(String(64), nullable=False, unique=True)
    email = Column(String(255), nullable=False, unique=True)
    role = Column(String(16), nullable=False, default="user")  # user|seller|admin
    is_verified = Column(Boolean, nullable=False, default=False)
    # derived from the latest Verification; written only alongside it
    verification_status = Column(String(16), nullable=False, default="none")  # none|pending|approved|rejected
    verification_code = Column(String(64), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

class Product(Base):
    __tablename__ = "products"
    id = Column(String(36), primary_key=True, default=new_id)
    seller_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    price = Column(MONEY, nullable=False)
    status = Column(String(16), nullable=False, default="pending", index=True)  # pending|approved|rejected|sold|inactive
    is_premium = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, server_default=func.now())

class CartItem(Base):
    __tablename__ = "cart_items"
    __table_args__ = (UniqueConstraint("user_id", "product_id", name="uq_cart_items_user_product"),)
    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    added_at = Column(DateTime, server_default=func.now())

    product = relationship("Product")

class Order(Base):
    __tablename__ = "orders"
    id = Column(String(36), primary_key=True, default=new_id)
    buyer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    seller_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False, index=True)

    gross_amount = Column(MONEY, nullable=False)
    fee_amount = Column(MONEY, nullable=False, default=0)
    net_amount = Column(MONEY, nullable=False)

    status = Column(String(32), nullable=False, default="pending_payment", index=True)
    version = Column(Integer, nullable=False, default=0)

    payment_method = Column(String(50))
    payment_reference = Column(String(100))

    shipping_address = Column(JSON, nullable=False)
    shipping_method = Column(String(50))
    shipping_cost = Column(MONEY, nullable=False, default=0)
    tracking_number = Column(String(100))
    shipped_at = Column(DateTime)
    delivered_at = Column(DateTime)

    admin_notes = Column(Text)
    cancel_reason = Column(Text)
    created_at = Column(DateTime, server_default=func.now(), index=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    verified_at = Column(DateTime)
    verified_by = Column(String(36), ForeignKey("users.id"))
    completed_at = Column(DateTime)

    payments = relationship("Payment", back_populates="order", order_by="Payment.created_at")

class Payment(Base):
    __tablename__ = "payments"
    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    method = Column(String(32), nullable=False)
    reference = Column(String(100))
    provider = Column(String(50))
    status = Column(String(16), nullable=False, default="pending", index=True)  # pending|processing|completed|failed|cancelled|refunded
    details = Column(JSON)
    processed_at = Column(DateTime)
    failure_reason = Column(Text)
    created_at = Column(DateTime, server_default=func.now())

    order = relationship("Order", back_populates="payments")

class PlatformEarning(Base):
    __tablename__ = "platform_earnings"
    __table_args__ = (UniqueConstraint("order_id", name="uq_platform_earnings_order"),)
    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False)
    transaction_fee = Column(MONEY, nullable=False)
    premium_listing_fee = Column(MONEY, nullable=False, default=0)
    shipping_commission = Column(MONEY, nullable=False, default=0)
    total_earnings = Column(MONEY, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

class Verification(Base):
    __tablename__ = "verifications"
    id = Column(String(36), primary_key=True, default=new_id)
    code = Column(String(64), nullable=False, unique=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    full_name = Column(String(255), nullable=False)
    address = Column(Text, nullable=False)
    phone_number = Column(String(32), nullable=False)
    id_type = Column(String(32), nullable=False)
    id_number = Column(String(64), nullable=False)
    id_image = Column(Text, nullable=False)
    selfie_image = Column(Text, nullable=False)
    proof_of_ownership = Column(Text)
    status = Column(String(16), nullable=False, default="pending", index=True)  # pending|approved|rejected
    submitted_at = Column(DateTime, server_default=func.now())
    reviewed_at = Column(DateTime)
    reviewed_by = Column(String(36), ForeignKey("users.id"))
    rejection_reason = Column(Text)

class Outbox(Base):
    __tablename__ = "outbox"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    topic = Column(String(64), nullable=False)
    key = Column(String(64))
    payload = Column(String(4000), nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    status = Column(String(16), default="new")  # new|sent|failed
