"""
Platform commission arithmetic.

Every amount is a ``Decimal`` with two places. The fee is rounded half-up to
the cent and the seller's net is the remainder, so ``fee + net == gross``
holds exactly for any input.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Tuple

from common.error_handling import ValidationError
from common.settings import settings

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)

def compute_fees(gross_amount, fee_rate=None) -> Tuple[Decimal, Decimal]:
    """Split a sale price into (platform fee, seller net)."""
    gross = to_money(gross_amount)
    rate = Decimal(str(settings.platform_fee_rate if fee_rate is None else fee_rate))
    if gross < 0:
        raise ValidationError("Amount must not be negative", field="gross_amount", context={"gross_amount": str(gross)})
    if rate < 0 or rate > 1:
        raise ValidationError("Fee rate must be between 0 and 1", field="fee_rate", context={"fee_rate": str(rate)})

    fee = (gross * rate).quantize(CENT, rounding=ROUND_HALF_UP)
    net = gross - fee
    return fee, net

@dataclass(frozen=True)
class EarningBreakdown:
    transaction_fee: Decimal
    premium_listing_fee: Decimal
    shipping_commission: Decimal

    @property
    def total_earnings(self) -> Decimal:
        return self.transaction_fee + self.premium_listing_fee + self.shipping_commission

def compute_earnings(fee_amount, shipping_cost=ZERO, is_premium: bool = False) -> EarningBreakdown:
    """Platform's take on a settled order."""
    premium = to_money(settings.premium_listing_fee) if is_premium else ZERO
    shipping = (to_money(shipping_cost) * Decimal(str(settings.shipping_commission_rate))).quantize(CENT, rounding=ROUND_HALF_UP)
    return EarningBreakdown(
        transaction_fee=to_money(fee_amount),
        premium_listing_fee=premium,
        shipping_commission=shipping,
    )
