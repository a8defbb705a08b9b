import logging, time
from sqlalchemy import select, update
from confluent_kafka import KafkaException
from common.kafka import get_producer
from common.settings import settings
from settlement_service.db import SessionLocal
from settlement_service.models import Outbox

logger = logging.getLogger(__name__)

BATCH_SIZE = 50

def relay_once(db, producer) -> int:
    """Publish one batch of staged events; returns how many were sent."""
    sent = 0
    rows = db.execute(
        select(Outbox).where(Outbox.status == "new").order_by(Outbox.id).limit(BATCH_SIZE)
    ).scalars().all()
    for row in rows:
        try:
            producer.produce(row.topic, key=row.key, value=row.payload.encode("utf-8"))
            producer.flush()
            db.execute(update(Outbox).where(Outbox.id == row.id).values(status="sent"))
            sent += 1
        except KafkaException as e:
            logger.error(f"❌ Outbox event {row.id} on {row.topic} failed: {e}")
            db.execute(update(Outbox).where(Outbox.id == row.id).values(status="failed"))
        db.commit()
    return sent

def run(session_factory=SessionLocal):
    if not settings.kafka_enabled:
        logger.info("Kafka disabled; outbox relay not started")
        return
    producer = get_producer()
    logger.info("🚀 Outbox relay started")
    while True:
        try:
            with session_factory() as db:
                relay_once(db, producer)
        except Exception as e:
            logger.error(f"Outbox relay pass failed: {e}")
        time.sleep(settings.outbox_poll_interval)

if __name__ == "__main__":
    logging.basicConfig(level=settings.log_level)
    run()
