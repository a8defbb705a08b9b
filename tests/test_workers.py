#!/usr/bin/env python3
"""
Background worker tests: the asynchronous payment confirmation queue and the
outbox relay that publishes domain events to Kafka.
"""

import asyncio
import json
import unittest
from datetime import datetime, timedelta, timezone

from confluent_kafka import KafkaError, KafkaException
from sqlalchemy import select, update

from settlement_service import orders, payments
from settlement_service.confirmation import (
    ConfirmationJob, GatewayResult, PaymentConfirmationWorker, SimulatedPaymentGateway, TIMEOUT_REASON,
)
from settlement_service.models import Order, Outbox, Payment
from settlement_service.outbox_worker import relay_once

from support import StoreMixin


class SlowGateway:
    async def confirm(self, payment):
        await asyncio.sleep(5)
        return GatewayResult(succeeded=True)


class HangingGateway:
    def __init__(self):
        self.called = asyncio.Event()

    async def confirm(self, payment):
        self.called.set()
        await asyncio.sleep(30)
        return GatewayResult(succeeded=True)


class DecliningGateway:
    async def confirm(self, payment):
        return GatewayResult(succeeded=False, failure_reason="insufficient_funds")


class BrokenGateway:
    async def confirm(self, payment):
        raise ConnectionError("gateway unreachable")


class TestPaymentConfirmationWorker(StoreMixin, unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        super().setUp()
        self.seller = self.make_user("sam", role="seller")
        self.buyer = self.make_user("bea")
        self.order = self.place_order(self.buyer, self.make_product(self.seller))

    async def run_worker(self, gateway, timeout_seconds=1.0):
        worker = PaymentConfirmationWorker(self.Session, gateway=gateway, timeout_seconds=timeout_seconds)
        worker.start()
        try:
            payment = payments.initiate_payment(self.db, self.buyer, self.order.id, "gcash", confirmations=worker)
            await asyncio.wait_for(worker.drain(), timeout=5)
        finally:
            await worker.stop()
        return self.reload(Payment, payment.id), self.reload(Order, self.order.id)

    async def test_confirmed_payment_moves_order_to_admin_verification(self):
        payment, order = await self.run_worker(SimulatedPaymentGateway(delay_seconds=0.01))

        self.assertEqual(payment.status, "completed")
        self.assertEqual(payment.details["provider"]["gateway"], "simulated")
        self.assertEqual(order.status, "admin_verification")

    async def test_declined_payment_is_recorded_not_raised(self):
        payment, order = await self.run_worker(DecliningGateway())

        self.assertEqual(payment.status, "failed")
        self.assertEqual(payment.failure_reason, "insufficient_funds")
        self.assertEqual(order.status, "pending_payment")

    async def test_gateway_timeout_fails_payment(self):
        payment, order = await self.run_worker(SlowGateway(), timeout_seconds=0.05)

        self.assertEqual(payment.status, "failed")
        self.assertEqual(payment.failure_reason, TIMEOUT_REASON)
        self.assertEqual(order.status, "pending_payment")

    async def test_gateway_error_fails_payment(self):
        payment, _ = await self.run_worker(BrokenGateway())

        self.assertEqual(payment.status, "failed")
        self.assertIn("gateway unreachable", payment.failure_reason)

    async def test_late_confirmation_after_cancel(self):
        worker = PaymentConfirmationWorker(self.Session, gateway=SimulatedPaymentGateway(delay_seconds=0))
        payment = payments.initiate_payment(self.db, self.buyer, self.order.id, "gcash")
        orders.cancel_order(self.db, self.seller, self.order.id, "Sold elsewhere")

        await worker.process(ConfirmationJob(payment.id))

        self.assertEqual(self.reload(Payment, payment.id).status, "completed")
        self.assertEqual(self.reload(Order, self.order.id).status, "cancelled")

    async def test_unknown_payment_is_ignored(self):
        worker = PaymentConfirmationWorker(self.Session, gateway=SimulatedPaymentGateway(delay_seconds=0))
        self.assertIsNone(await worker.process(ConfirmationJob("missing")))


class TestConfirmationRecovery(StoreMixin, unittest.IsolatedAsyncioTestCase):
    """Payments must not stay in processing when their job is lost"""

    def setUp(self):
        super().setUp()
        seller = self.make_user("sam", role="seller")
        self.buyer = self.make_user("bea")
        self.order = self.place_order(self.buyer, self.make_product(seller))

    def orphaned_payment(self, age=None):
        payment = payments.initiate_payment(self.db, self.buyer, self.order.id, "gcash")
        if age is not None:
            created = datetime.now(timezone.utc).replace(tzinfo=None) - age
            with self.Session() as s:
                s.execute(update(Payment).where(Payment.id == payment.id).values(created_at=created))
                s.commit()
        return payment

    async def start_and_drain(self, worker):
        worker.start()
        try:
            await asyncio.wait_for(worker.drain(), timeout=5)
        finally:
            await worker.stop()

    async def test_shutdown_mid_confirmation_records_timeout(self):
        gateway = HangingGateway()
        worker = PaymentConfirmationWorker(self.Session, gateway=gateway, timeout_seconds=30)
        worker.start()
        payment = payments.initiate_payment(self.db, self.buyer, self.order.id, "gcash", confirmations=worker)
        await asyncio.wait_for(gateway.called.wait(), timeout=5)

        await worker.stop()

        stopped = self.reload(Payment, payment.id)
        self.assertEqual(stopped.status, "failed")
        self.assertEqual(stopped.failure_reason, TIMEOUT_REASON)
        retry = payments.initiate_payment(self.db, self.buyer, self.order.id, "gcash")
        self.assertEqual(retry.status, "processing")

    async def test_restart_fails_payments_past_the_confirmation_window(self):
        payment = self.orphaned_payment(age=timedelta(hours=1))
        worker = PaymentConfirmationWorker(
            self.Session, gateway=SimulatedPaymentGateway(delay_seconds=0), timeout_seconds=0.2,
        )

        await self.start_and_drain(worker)

        recovered = self.reload(Payment, payment.id)
        self.assertEqual(recovered.status, "failed")
        self.assertEqual(recovered.failure_reason, TIMEOUT_REASON)
        self.assertEqual(self.reload(Order, self.order.id).status, "pending_payment")
        retry = payments.initiate_payment(self.db, self.buyer, self.order.id, "gcash")
        self.assertEqual(retry.status, "processing")

    async def test_restart_requeues_recent_payments(self):
        payment = self.orphaned_payment()
        worker = PaymentConfirmationWorker(
            self.Session, gateway=SimulatedPaymentGateway(delay_seconds=0), timeout_seconds=30,
        )

        await self.start_and_drain(worker)

        self.assertEqual(self.reload(Payment, payment.id).status, "completed")
        self.assertEqual(self.reload(Order, self.order.id).status, "admin_verification")


class FakeProducer:
    def __init__(self, fail_topics=()):
        self.fail_topics = set(fail_topics)
        self.messages = []

    def produce(self, topic, key=None, value=None):
        if topic in self.fail_topics:
            raise KafkaException(KafkaError(KafkaError._ALL_BROKERS_DOWN))
        self.messages.append((topic, key, value))

    def flush(self):
        return 0


class TestOutboxRelay(StoreMixin, unittest.TestCase):

    def setUp(self):
        super().setUp()
        seller = self.make_user("sam", role="seller")
        self.buyer = self.make_user("bea")
        self.order = self.place_order(self.buyer, self.make_product(seller))
        payments.initiate_payment(self.db, self.buyer, self.order.id, "gcash")

    def statuses(self):
        with self.Session() as s:
            return {row.topic: row.status for row in s.scalars(select(Outbox))}

    def test_relays_staged_events_once(self):
        producer = FakeProducer()

        self.assertEqual(relay_once(self.db, producer), 2)
        self.assertEqual(relay_once(self.db, producer), 0)

        topics = [topic for topic, _, _ in producer.messages]
        self.assertEqual(topics, ["order_events", "payment_events"])
        created = json.loads(producer.messages[0][2])
        self.assertEqual(created["type"], "OrderCreated")
        self.assertEqual(producer.messages[0][1], self.order.id)
        self.assertEqual(set(self.statuses().values()), {"sent"})

    def test_publish_failure_marks_row_failed(self):
        relay_once(self.db, FakeProducer(fail_topics={"payment_events"}))
        self.assertEqual(self.statuses(), {"order_events": "sent", "payment_events": "failed"})


if __name__ == "__main__":
    unittest.main(verbosity=2)
