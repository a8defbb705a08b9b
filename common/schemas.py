from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Literal, Optional
from pydantic import BaseModel, Field

PaymentMethod = Literal["credit_card", "debit_card", "bank_transfer", "gcash", "paymaya", "paypal", "other"]
IdType = Literal[
    "Driver's License", "Passport", "National ID", "SSS ID",
    "PhilHealth ID", "TIN ID", "Voter's ID", "Postal ID",
]

# ── Requests ──────────────────────────────────────

class CreateListing(BaseModel):
    title: str
    description: str = ""
    price: Decimal = Field(ge=0, decimal_places=2)
    is_premium: bool = False

class ReviewListing(BaseModel):
    decision: Literal["approved", "rejected", "inactive"]

class UpdateListing(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    is_premium: Optional[bool] = None

class AddToCart(BaseModel):
    product_id: str
    quantity: int = Field(default=1, ge=1)

class UpdateCartItem(BaseModel):
    product_id: str
    quantity: int = Field(ge=1)

class Checkout(BaseModel):
    shipping_address: Dict[str, Any]
    payment_method: PaymentMethod
    shipping_method: Optional[str] = None

class CreateOrder(BaseModel):
    product_id: str
    shipping_address: Dict[str, Any]
    payment_method: PaymentMethod
    shipping_method: Optional[str] = None
    shipping_cost: Decimal = Field(default=Decimal("0.00"), ge=0, decimal_places=2)

class InitiatePayment(BaseModel):
    payment_method: PaymentMethod
    payment_reference: Optional[str] = None
    payment_details: Optional[Dict[str, Any]] = None

class VerifyOrder(BaseModel):
    tracking_number: Optional[str] = None
    admin_notes: Optional[str] = None

class CancelOrder(BaseModel):
    reason: Optional[str] = None

class RefundOrder(BaseModel):
    reason: Optional[str] = None

class SubmitVerification(BaseModel):
    full_name: str
    address: str
    phone_number: str
    id_type: IdType
    id_number: str
    id_image: str
    selfie_image: str
    proof_of_ownership: Optional[str] = None

class ReviewVerification(BaseModel):
    status: Literal["approved", "rejected"]
    rejection_reason: Optional[str] = None

# ── Responses ─────────────────────────────────────

class ProductOut(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    seller_id: str
    title: str
    description: Optional[str] = None
    price: Decimal
    status: str
    is_premium: bool

class CartItemOut(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    product_id: str
    quantity: int
    added_at: Optional[datetime] = None
    product: ProductOut

class PaymentOut(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    order_id: str
    amount: Decimal
    method: str
    reference: Optional[str] = None
    status: str
    processed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

class OrderOut(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    buyer_id: str
    seller_id: str
    product_id: str
    gross_amount: Decimal
    fee_amount: Decimal
    net_amount: Decimal
    status: str
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    shipping_address: Optional[Dict[str, Any]] = None
    shipping_method: Optional[str] = None
    shipping_cost: Decimal
    tracking_number: Optional[str] = None
    admin_notes: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    verified_by: Optional[str] = None
    completed_at: Optional[datetime] = None

class EarningOut(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    order_id: str
    transaction_fee: Decimal
    premium_listing_fee: Decimal
    shipping_commission: Decimal
    total_earnings: Decimal

class VerificationOut(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    code: str
    user_id: str
    full_name: str
    id_type: str
    status: str
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    rejection_reason: Optional[str] = None

# ── Events ────────────────────────────────────────

class OrderEvent(BaseModel):
    type: Literal["OrderCreated", "OrderStatusChanged", "OrderCompleted", "OrderCancelled", "OrderRefunded"]
    order_id: str
    from_status: Optional[str] = None
    to_status: str
    actor_id: Optional[str] = None
    reason: Optional[str] = None

class PaymentEvent(BaseModel):
    type: Literal["PaymentInitiated", "PaymentCompleted", "PaymentFailed", "PaymentRefunded"]
    payment_id: str
    order_id: str
    amount: Decimal
    method: str
    reason: Optional[str] = None

class VerificationEvent(BaseModel):
    type: Literal["VerificationSubmitted", "VerificationApproved", "VerificationRejected"]
    verification_id: str
    code: str
    user_id: str
    reviewed_by: Optional[str] = None
    reason: Optional[str] = None
