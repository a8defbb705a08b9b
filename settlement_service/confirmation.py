"""
Asynchronous payment confirmation.

``initiate_payment`` hands a payment id to ``PaymentConfirmationWorker.submit``;
the worker waits out the gateway round trip, asks the gateway for the outcome
(bounded by a timeout) and records it through ``apply_payment_confirmation``.
Each job is processed once; there is no retry. Payments a previous run left
in ``processing`` are picked up again on start, and a job cut short by
shutdown is recorded as a timeout.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from common.settings import settings
from common.tracing import settlement_tracer
from settlement_service.models import Payment
from settlement_service.payments import apply_payment_confirmation

logger = logging.getLogger(__name__)

TIMEOUT_REASON = "timeout"

@dataclass
class GatewayResult:
    succeeded: bool
    failure_reason: Optional[str] = None
    payload: Dict = field(default_factory=dict)

class SimulatedPaymentGateway:
    """Stands in for an external processor: every payment clears after a fixed delay."""

    def __init__(self, delay_seconds: float = None):
        self.delay_seconds = settings.payment_confirmation_delay_seconds if delay_seconds is None else delay_seconds

    async def confirm(self, payment: Payment) -> GatewayResult:
        await asyncio.sleep(self.delay_seconds)
        return GatewayResult(succeeded=True, payload={"gateway": "simulated", "reference": payment.reference})

@dataclass
class ConfirmationJob:
    payment_id: str
    enqueued_at: float = field(default_factory=time.monotonic)

class PaymentConfirmationWorker:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway=None,
        timeout_seconds: float = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway or SimulatedPaymentGateway()
        self.timeout_seconds = settings.payment_confirmation_timeout_seconds if timeout_seconds is None else timeout_seconds
        self.queue: asyncio.Queue = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._inflight: set = set()

    def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self.recover()
        self._task = asyncio.create_task(self.run(), name="payment-confirmation-worker")
        logger.info("🚀 Payment confirmation worker started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        for task in list(self._inflight):
            task.cancel()
        await asyncio.gather(*self._inflight, return_exceptions=True)

    def recover(self) -> int:
        """Re-enqueue processing payments, failing those already past the confirmation window."""
        cutoff = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(seconds=self.timeout_seconds)
        with self.session_factory() as db:
            stranded = db.execute(
                select(Payment.id, Payment.created_at).where(Payment.status == "processing")
            ).all()
            for payment_id, created_at in stranded:
                if created_at is not None and created_at.replace(tzinfo=None) < cutoff:
                    logger.warning(f"⏱️ Payment {payment_id} outlived the confirmation window; failing it")
                    apply_payment_confirmation(db, payment_id, False, failure_reason=TIMEOUT_REASON)
                else:
                    self.submit(payment_id)
        if stranded:
            logger.info(f"Recovered {len(stranded)} payment(s) left in processing")
        return len(stranded)

    def submit(self, payment_id: str) -> None:
        """Enqueue a confirmation; callable from the loop thread or a worker thread."""
        job = ConfirmationJob(payment_id)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if self._loop is not None and running is not self._loop:
            self._loop.call_soon_threadsafe(self.queue.put_nowait, job)
        else:
            self.queue.put_nowait(job)

    async def run(self) -> None:
        while True:
            job = await self.queue.get()
            # jobs run side by side; one slow gateway call does not hold up the rest
            task = asyncio.create_task(self._process_and_ack(job))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _process_and_ack(self, job: ConfirmationJob) -> None:
        try:
            await self.process(job)
        except Exception as e:
            logger.error(f"❌ Confirmation job for payment {job.payment_id} crashed: {e}")
        finally:
            self.queue.task_done()

    async def process(self, job: ConfirmationJob) -> Optional[Payment]:
        with settlement_tracer.start_span("payment.confirm") as span:
            span.add_tag("payment.id", job.payment_id)
            with self.session_factory() as db:
                payment = db.get(Payment, job.payment_id)
                if payment is None:
                    logger.error(f"Confirmation job for unknown payment {job.payment_id}")
                    return None

                try:
                    result = await self._ask_gateway(payment)
                except asyncio.CancelledError:
                    apply_payment_confirmation(db, job.payment_id, False, failure_reason=TIMEOUT_REASON)
                    raise
                span.add_tag("payment.succeeded", result.succeeded)
                return apply_payment_confirmation(
                    db, job.payment_id, result.succeeded,
                    failure_reason=result.failure_reason,
                    provider_payload=result.payload or None,
                )

    async def _ask_gateway(self, payment: Payment) -> GatewayResult:
        try:
            return await asyncio.wait_for(self.gateway.confirm(payment), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ Gateway did not answer for payment {payment.id} within {self.timeout_seconds}s")
            return GatewayResult(succeeded=False, failure_reason=TIMEOUT_REASON)
        except Exception as e:
            logger.error(f"Gateway error for payment {payment.id}: {e}")
            return GatewayResult(succeeded=False, failure_reason=f"gateway error: {e}")

    async def drain(self) -> None:
        """Wait until every submitted job has been processed."""
        await self.queue.join()
