from pydantic import BaseModel
from sqlalchemy.orm import Session
from common.kafka import TOPIC_ORDER_EVENTS, TOPIC_PAYMENT_EVENTS, TOPIC_VERIFICATION_EVENTS
from common.schemas import OrderEvent, PaymentEvent, VerificationEvent
from settlement_service.models import Outbox

_TOPICS = {
    OrderEvent: TOPIC_ORDER_EVENTS,
    PaymentEvent: TOPIC_PAYMENT_EVENTS,
    VerificationEvent: TOPIC_VERIFICATION_EVENTS,
}

def _key(event: BaseModel) -> str:
    for attr in ("order_id", "payment_id", "verification_id"):
        if hasattr(event, attr):
            return getattr(event, attr)
    return None

def record_event(db: Session, event: BaseModel) -> Outbox:
    """Stage an event in the outbox; it commits or rolls back with the caller's transaction"""
    row = Outbox(topic=_TOPICS[type(event)], key=_key(event), payload=event.model_dump_json())
    db.add(row)
    return row
