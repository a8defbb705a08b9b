from typing import Dict

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from common.security import Caller, ROLE_ADMIN, ROLE_SELLER, require_role
from settlement_service.commission import to_money
from settlement_service.models import Order, PlatformEarning, Product, User

def _count_by(db: Session, column) -> Dict[str, int]:
    return {value: count for value, count in db.execute(select(column, func.count()).group_by(column))}

def marketplace_stats(db: Session, caller: Caller) -> Dict:
    """Admin dashboard counters."""
    require_role(caller, ROLE_ADMIN)
    roles = _count_by(db, User.role)
    products = _count_by(db, Product.status)
    earned = db.scalar(select(func.coalesce(func.sum(PlatformEarning.total_earnings), 0)))
    return {
        "total_users": sum(roles.values()),
        "total_admins": roles.get(ROLE_ADMIN, 0),
        "total_sellers": roles.get(ROLE_SELLER, 0),
        "total_products": sum(products.values()),
        "approved_products": products.get("approved", 0),
        "pending_products": products.get("pending", 0),
        "orders_by_status": _count_by(db, Order.status),
        "total_earnings": to_money(earned),
    }
