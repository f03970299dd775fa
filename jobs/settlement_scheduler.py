"""
Settlement Background Job Scheduler

Jobs:
1. Payment Events - drain monitor events into order/subscription state
2. Subscription Expiry - expire ended subscriptions and release escrow
3. Order Expiry - expire unpaid orders and stop watching their addresses
4. Outbound Queue Recovery - redeliver claimed messages nobody acknowledged
"""

import logging
from typing import Any, Dict, Iterable, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.order_service import OrderService
from services.outbound_queue import OutboundQueue
from services.payment_processing_service import PaymentProcessingService
from services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


class SettlementScheduler:
    """
    Scheduling Strategy:
    - Payment Events: every PAYMENT_EVENT_INTERVAL_SECONDS (default 5s)
    - Subscription Expiry: every SUBSCRIPTION_EXPIRY_INTERVAL_MINUTES (default hourly)
    - Order Expiry: every ORDER_EXPIRY_INTERVAL_MINUTES (default 15 minutes)
    - Queue Recovery: every QUEUE_RECOVERY_INTERVAL_MINUTES (default 5 minutes)
    """

    def __init__(
        self,
        payment_processing: PaymentProcessingService,
        subscription_service: SubscriptionService,
        order_service: OrderService,
        outbound_queues: Optional[Iterable[OutboundQueue]] = None,
    ):
        self.payment_processing = payment_processing
        self.subscription_service = subscription_service
        self.order_service = order_service
        self.outbound_queues = list(outbound_queues or [])

        self.scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,  # Prevent job pileup
                "max_instances": 1,  # Single instance enforcement
                "misfire_grace_time": 120,
            },
            timezone="UTC",
        )

    async def run_payment_event_processing(self) -> Dict[str, int]:
        try:
            result = await self.payment_processing.process_pending_events()
            if result["processed"] or result["failed"]:
                logger.info(f"💳 PAYMENT_EVENTS_JOB: {result}")
            return result
        except Exception as e:
            logger.error(f"❌ PAYMENT_EVENTS_JOB failed: {e}", exc_info=True)
            return {"processed": 0, "failed": 0}

    async def run_subscription_expiry(self) -> Dict[str, Any]:
        try:
            result = await self.subscription_service.expire_subscriptions()
            retried = await self.payment_processing.retry_unsubscribed_orders()
            if retried:
                logger.info(f"🎫 SUBSCRIPTION_ACTIVATION_RETRIED: {retried} orders")
            return result
        except Exception as e:
            logger.error(f"❌ SUBSCRIPTION_EXPIRY_JOB failed: {e}", exc_info=True)
            return {"expired": 0, "errors": 1}

    async def run_order_expiry(self) -> int:
        try:
            return await self.order_service.expire_unpaid_orders()
        except Exception as e:
            logger.error(f"❌ ORDER_EXPIRY_JOB failed: {e}", exc_info=True)
            return 0

    async def run_outbound_queue_recovery(self) -> Dict[str, int]:
        totals = {"requeued": 0, "dead_lettered": 0}
        for queue in self.outbound_queues:
            try:
                result = await queue.requeue_stale_in_flight()
            except Exception as e:
                logger.error(f"❌ QUEUE_RECOVERY_JOB failed for {queue.queue_name}: {e}", exc_info=True)
                continue
            totals["requeued"] += result["requeued"]
            totals["dead_lettered"] += result["dead_lettered"]
        if totals["requeued"] or totals["dead_lettered"]:
            logger.info(f"📬 QUEUE_RECOVERY_JOB: {totals}")
        return totals

    def setup_jobs(self):
        self.scheduler.add_job(
            self.run_payment_event_processing,
            trigger=IntervalTrigger(seconds=Config.PAYMENT_EVENT_INTERVAL_SECONDS),
            id="payment_event_processing",
            name="💳 Payment Event Processing",
            replace_existing=True,
        )
        logger.info(f"✅ Payment Event Processing scheduled every {Config.PAYMENT_EVENT_INTERVAL_SECONDS} seconds")

        self.scheduler.add_job(
            self.run_subscription_expiry,
            trigger=IntervalTrigger(minutes=Config.SUBSCRIPTION_EXPIRY_INTERVAL_MINUTES),
            id="subscription_expiry",
            name="⌛ Subscription Expiry & Escrow Release",
            replace_existing=True,
        )
        logger.info(
            f"✅ Subscription Expiry scheduled every {Config.SUBSCRIPTION_EXPIRY_INTERVAL_MINUTES} minutes"
        )

        self.scheduler.add_job(
            self.run_order_expiry,
            trigger=IntervalTrigger(minutes=Config.ORDER_EXPIRY_INTERVAL_MINUTES),
            id="order_expiry",
            name="🧾 Unpaid Order Expiry",
            replace_existing=True,
        )
        logger.info(f"✅ Order Expiry scheduled every {Config.ORDER_EXPIRY_INTERVAL_MINUTES} minutes")

        self.scheduler.add_job(
            self.run_outbound_queue_recovery,
            trigger=IntervalTrigger(minutes=Config.QUEUE_RECOVERY_INTERVAL_MINUTES),
            id="outbound_queue_recovery",
            name="📬 Outbound Queue Recovery",
            replace_existing=True,
        )
        logger.info(
            f"✅ Outbound Queue Recovery scheduled every {Config.QUEUE_RECOVERY_INTERVAL_MINUTES} minutes "
            f"for {len(self.outbound_queues)} queues"
        )

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        job_names = [f"{job.name} ({job.id})" for job in self.scheduler.get_jobs()]
        logger.info(f"📋 Active jobs: {job_names}")

    def stop(self):
        self.scheduler.shutdown(wait=False)
        logger.info("📴 Settlement job scheduler stopped")
