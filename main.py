#!/usr/bin/env python3
"""
Clean Deterministic Startup - ChannelPass Settlement Core

Startup sequence:
1. Validate configuration
2. Create/verify database tables
3. Build services with explicit dependencies (no module globals)
4. Re-watch open orders, connect chain clients and start the blockchain monitor
5. Start the settlement job scheduler
"""

import asyncio
import logging
import signal
import sys
from typing import List, Optional

from config import Config
from database import AsyncSessionLocal, close_database, create_tables
from jobs.settlement_scheduler import SettlementScheduler
from models import BlockchainNetwork
from services.address_watch_registry import AddressWatchRegistry, InMemoryWatchStore
from services.audit_trail_service import AuditTrailService
from services.blockchain_monitor import BlockchainMonitor
from services.bot_operation_queue import BotOperationQueue
from services.chain_connection_manager import ChainConnectionManager, HttpIndexerChainClient
from services.dispute_service import DisputeService
from services.escrow_ledger import EscrowLedger
from services.merchant_balance_service import MerchantBalanceService
from services.order_service import OrderService
from services.outbound_queue import OutboundQueue
from services.payment_event_queue import PaymentEventQueue
from services.payment_processing_service import PaymentProcessingService
from services.payout_service import PayoutService
from services.price_feed_service import PriceFeedService
from services.refund_transaction_queue import RefundTransactionQueue
from services.subscription_service import SubscriptionService

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class SettlementApplication:
    """
    Owns every long-lived settlement component.
    Built once at startup and torn down in reverse order.
    """

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or AsyncSessionLocal
        self.startup_errors: List[str] = []
        self.scheduler: Optional[SettlementScheduler] = None

        # Chain side
        clients = {
            BlockchainNetwork(network): HttpIndexerChainClient(
                BlockchainNetwork(network), url, Config.CHAIN_REQUEST_TIMEOUT_SECONDS
            )
            for network, url in Config.node_urls().items()
        }
        self.connection_manager = ChainConnectionManager(
            clients,
            base_delay=Config.CHAIN_RECONNECT_BASE_DELAY,
            max_delay=Config.CHAIN_RECONNECT_MAX_DELAY,
            max_attempts=Config.CHAIN_RECONNECT_MAX_ATTEMPTS,
        )
        ttl = Config.WATCH_ENTRY_TTL_SECONDS or None
        self.registry = AddressWatchRegistry(InMemoryWatchStore(ttl_seconds=ttl))
        self.payment_events = PaymentEventQueue(self.session_factory)
        self.monitor = BlockchainMonitor(
            self.connection_manager,
            self.registry,
            payment_events=self.payment_events,
            poll_interval=Config.CHAIN_POLL_INTERVAL_SECONDS,
        )

        # Custody side
        self.audit_trail = AuditTrailService(self.session_factory)
        self.balances = MerchantBalanceService(self.session_factory)
        self.escrow_ledger = EscrowLedger(self.session_factory, self.audit_trail, self.balances)
        self.bot_queue = BotOperationQueue(self.session_factory)
        self.refund_queue = RefundTransactionQueue(self.session_factory)
        self.payout_service = PayoutService(self.session_factory, self.balances)

        # Order lifecycle
        self.subscription_service = SubscriptionService(self.session_factory, self.escrow_ledger, self.bot_queue)
        self.order_service = OrderService(self.session_factory, monitor=self.monitor)
        self.payment_processing = PaymentProcessingService(
            self.session_factory,
            self.subscription_service,
            monitor=self.monitor,
            payment_events=self.payment_events,
        )
        self.dispute_service = DisputeService(
            self.session_factory, self.escrow_ledger, self.refund_queue, self.bot_queue
        )
        self.price_feed = PriceFeedService(timeout_seconds=Config.CHAIN_REQUEST_TIMEOUT_SECONDS)

    def outbound_queues(self) -> List[OutboundQueue]:
        return [
            self.payment_events.queue,
            self.bot_queue.queue,
            self.refund_queue.queue,
            self.payout_service.queue,
        ]

    async def initialize_database(self) -> bool:
        try:
            logger.info("🗄️ Initializing database...")
            await create_tables()
            return True
        except Exception as e:
            logger.error(f"❌ Database initialization failed: {e}")
            self.startup_errors.append(f"Database: {e}")
            return False

    async def start(self) -> bool:
        try:
            Config.validate()
        except ValueError as e:
            logger.error(f"❌ Configuration invalid: {e}")
            self.startup_errors.append(f"Config: {e}")
            return False
        Config.log_environment_config()

        if not await self.initialize_database():
            return False

        await self.order_service.rewatch_open_orders()
        await self.monitor.start()
        logger.info(f"🔗 Chain connections: {self.monitor.get_connection_status()}")

        self.scheduler = SettlementScheduler(
            self.payment_processing,
            self.subscription_service,
            self.order_service,
            outbound_queues=self.outbound_queues(),
        )
        self.scheduler.start()

        logger.info("🚀 Settlement core started")
        return True

    async def stop(self) -> None:
        logger.info("🛑 Shutting down settlement core...")
        if self.scheduler is not None:
            self.scheduler.stop()
        await self.monitor.stop()
        await close_database()


async def run() -> int:
    app = SettlementApplication()
    if not await app.start():
        logger.error(f"❌ Startup failed: {app.startup_errors}")
        await close_database()
        return 1

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    try:
        await stop_event.wait()
    finally:
        await app.stop()
    return 0


def main():
    try:
        sys.exit(asyncio.run(run()))
    except KeyboardInterrupt:
        logger.info("👋 Interrupted")


if __name__ == "__main__":
    main()
