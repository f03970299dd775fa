"""
Blockchain Monitor
Watches deposit addresses on every network and classifies incoming transfers.

- A transfer below the network's confirmation threshold yields DETECTED
  (again whenever its confirmation count changes)
- Reaching the threshold yields CONFIRMED exactly once per transaction hash
- Every event is published to the durable payment-events queue and put on each
  subscriber's asyncio.Queue; publish failures are logged, never raised
"""

import asyncio
import inspect
import logging
from decimal import Decimal
from typing import Dict, List, Optional, Set, Union

from models import BlockchainNetwork, CryptoCurrency
from services.address_watch_registry import AddressWatchRegistry, WatchedAddress
from services.chain_connection_manager import (
    ChainConnectionError, ChainConnectionManager, ChainTransaction,
)
from services.payment_event_queue import PaymentEventQueue
from services.transaction_events import TransactionEvent, TransactionEventType
from utils.chain_constants import (
    addresses_match, get_network_for_currency, get_required_confirmations,
    is_amount_within_tolerance, to_currency,
)
from config import Config

logger = logging.getLogger(__name__)


class BlockchainMonitor:
    """Composes the connection manager and the watch registry"""

    def __init__(
        self,
        connection_manager: ChainConnectionManager,
        registry: AddressWatchRegistry,
        payment_events: Optional[PaymentEventQueue] = None,
        poll_interval: Optional[float] = None,
    ):
        self.connections = connection_manager
        self.registry = registry
        self.payment_events = payment_events
        self.poll_interval = Config.CHAIN_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval

        self._confirmed_hashes: Set[str] = set()
        self._seen_confirmations: Dict[str, int] = {}
        # Per watched address, so tracking ends with the watch
        self._hashes_by_address: Dict[str, Set[str]] = {}
        self._subscribers: List[asyncio.Queue] = []
        self._watch_tasks: Dict[BlockchainNetwork, asyncio.Task] = {}
        self._running = False

        self.connections.add_connected_listener(self._resubscribe_network)

    # ------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        await self.connections.start()
        for network in self.connections.clients:
            self._watch_tasks[network] = asyncio.create_task(
                self._watch_loop(network), name=f"chain-watch-{network.value}"
            )
        logger.info(f"🚀 MONITOR_STARTED: networks={[n.value for n in self.connections.clients]}")

    async def stop(self) -> None:
        self._running = False
        tasks = list(self._watch_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._watch_tasks.clear()
        await self.connections.stop()
        logger.info("🛑 MONITOR_STOPPED")

    # -------------------------------------------------------------- watches

    async def watch_address(
        self,
        address: str,
        order_id: int,
        currency: Union[str, CryptoCurrency],
        expected_amount: Union[Decimal, str, float],
        callback=None,
    ) -> WatchedAddress:
        """Start watching (or re-watch, replacing the previous entry for) an address"""
        currency = to_currency(currency)
        network = get_network_for_currency(currency)
        entry = self.registry.watch(
            WatchedAddress(
                address=address,
                order_id=order_id,
                currency=currency,
                expected_amount=Decimal(str(expected_amount)),
                network=network,
                callback=callback,
            )
        )

        if self.connections.is_connected(network):
            try:
                await self.connections.get_client(network).subscribe_address(entry.address)
            except Exception as e:
                # Re-subscribed on reconnect
                logger.warning(f"⚠️ WATCH_SUBSCRIBE_FAILED: {entry.address} on {network.value}: {e}")

        logger.info(
            f"👀 WATCHING: {entry.address} order={order_id} {entry.expected_amount} {currency.value} "
            f"on {network.value}"
        )
        return entry

    async def unwatch_address(self, address: str) -> bool:
        entry = self.registry.get(address)
        removed = self.registry.unwatch(address)
        self._forget_address(entry.address if entry is not None else address)
        if entry is not None and self.connections.is_connected(entry.network):
            try:
                await self.connections.get_client(entry.network).unsubscribe_address(entry.address)
            except Exception as e:
                logger.warning(f"⚠️ WATCH_UNSUBSCRIBE_FAILED: {address}: {e}")
        if removed:
            logger.info(f"🙈 UNWATCHED: {address}")
        return removed

    def get_tracking_stats(self) -> Dict[str, int]:
        return {
            "tracked_addresses": len(self._hashes_by_address),
            "confirmed_hashes": len(self._confirmed_hashes),
            "pending_hashes": len(self._seen_confirmations),
        }

    def _forget_address(self, address: str) -> None:
        hashes = self._hashes_by_address.pop(address, None)
        if not hashes:
            return
        for tx_hash in hashes:
            self._confirmed_hashes.discard(tx_hash)
            self._seen_confirmations.pop(tx_hash, None)
        logger.debug(f"🧹 TRACKING_PRUNED: {address} ({len(hashes)} hashes)")

    def _prune_unwatched(self) -> None:
        for address in list(self._hashes_by_address):
            if not self.registry.is_watched(address):
                self._forget_address(address)

    def get_watched_addresses(self) -> Dict[str, WatchedAddress]:
        return self.registry.snapshot()

    def get_connection_status(self) -> Dict[str, bool]:
        return self.connections.get_connection_status()

    # ----------------------------------------------------------- consumers

    def subscribe(self, maxsize: int = 0) -> "asyncio.Queue[TransactionEvent]":
        """
        Register an in-process event channel.

        Delivery never blocks the watch loop: when a bounded queue is full the
        event is dropped for that subscriber and logged. The durable
        payment-events queue still carries it.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    # --------------------------------------------------------- classification

    def classify_transaction(
        self, transaction: ChainTransaction, watched: WatchedAddress
    ) -> Optional[TransactionEvent]:
        """
        Turn an observed transfer into an event, or None if there is nothing new.

        Pure with respect to the outside world; it only updates the monitor's
        seen/confirmed bookkeeping.
        """
        tx_hash = transaction.transaction_hash
        if tx_hash in self._confirmed_hashes:
            return None

        if not addresses_match(transaction.to_address, watched.address):
            logger.debug(f"Ignoring {tx_hash}: destination {transaction.to_address} != {watched.address}")
            return None

        required = get_required_confirmations(watched.currency)
        confirmations = max(0, int(transaction.confirmations))
        self._hashes_by_address.setdefault(watched.address, set()).add(tx_hash)

        if confirmations >= required:
            event_type = TransactionEventType.CONFIRMED
            self._confirmed_hashes.add(tx_hash)
            self._seen_confirmations.pop(tx_hash, None)
        else:
            if self._seen_confirmations.get(tx_hash) == confirmations:
                return None
            event_type = TransactionEventType.DETECTED
            self._seen_confirmations[tx_hash] = confirmations

        return TransactionEvent(
            event_type=event_type,
            transaction_hash=tx_hash,
            address=watched.address,
            order_id=watched.order_id,
            currency=watched.currency,
            network=watched.network,
            amount=transaction.amount,
            expected_amount=watched.expected_amount,
            amount_valid=is_amount_within_tolerance(transaction.amount, watched.expected_amount),
            confirmations=confirmations,
            required_confirmations=required,
            from_address=transaction.from_address,
            block_number=transaction.block_number,
        )

    async def process_transaction(
        self, transaction: ChainTransaction, watched: WatchedAddress
    ) -> Optional[TransactionEvent]:
        event = self.classify_transaction(transaction, watched)
        if event is None:
            return None

        if not event.amount_valid:
            logger.warning(
                f"⚠️ AMOUNT_MISMATCH: {event.transaction_hash} order={event.order_id} "
                f"received {event.amount} expected {event.expected_amount} {event.currency.value}"
            )

        logger.info(
            f"{'✅' if event.event_type == TransactionEventType.CONFIRMED else '🔎'} "
            f"PAYMENT_{event.event_type.name}: {event.transaction_hash} order={event.order_id} "
            f"{event.amount} {event.currency.value} ({event.confirmations}/{event.required_confirmations} confirmations)"
        )

        await self._publish(event)
        self._deliver_to_subscribers(event)
        await self._invoke_callback(watched, event)
        return event

    def _deliver_to_subscribers(self, event: TransactionEvent) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.error(
                    f"🚨 SUBSCRIBER_QUEUE_FULL: dropped {event.event_type.value} {event.transaction_hash} "
                    f"order={event.order_id} (maxsize={queue.maxsize})"
                )

    async def _publish(self, event: TransactionEvent) -> None:
        if self.payment_events is None:
            return
        try:
            message_id = await self.payment_events.publish(event)
        except Exception as e:
            message_id = None
            logger.error(f"❌ EVENT_PUBLISH_ERROR: {event.transaction_hash}: {e}", exc_info=True)
        if message_id is None:
            logger.error(
                f"🚨 EVENT_NOT_PUBLISHED: {event.event_type.value} {event.transaction_hash} "
                f"order={event.order_id} - manual reconciliation required"
            )

    @staticmethod
    async def _invoke_callback(watched: WatchedAddress, event: TransactionEvent) -> None:
        if watched.callback is None:
            return
        try:
            result = watched.callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"❌ WATCH_CALLBACK_FAILED: {watched.address}: {e}", exc_info=True)

    # ----------------------------------------------------------- watch loop

    async def poll_network(self, network: BlockchainNetwork) -> List[TransactionEvent]:
        """
        One pass over every watched address on a network.

        A connectivity failure hands the network to the connection manager and
        ends the pass; other per-address errors are logged and skipped.
        """
        if not self.connections.is_connected(network):
            return []

        client = self.connections.get_client(network)
        events: List[TransactionEvent] = []
        self.registry.evict_expired()
        self._prune_unwatched()

        for watched in self.registry.for_network(network):
            try:
                transactions = await client.get_incoming_transactions(watched.address, watched.currency)
            except ChainConnectionError as e:
                await self.connections.handle_disconnect(network, e)
                break
            except Exception as e:
                logger.error(f"❌ WATCH_POLL_FAILED: {watched.address} on {network.value}: {e}", exc_info=True)
                continue

            for transaction in transactions:
                event = await self.process_transaction(transaction, watched)
                if event is not None:
                    events.append(event)

        return events

    async def _watch_loop(self, network: BlockchainNetwork) -> None:
        while self._running:
            try:
                await self.poll_network(network)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"❌ WATCH_LOOP_ERROR: {network.value}: {e}", exc_info=True)
            await asyncio.sleep(self.poll_interval)

    async def _resubscribe_network(self, network: BlockchainNetwork) -> None:
        """Re-register every watched address of a network after (re)connect"""
        client = self.connections.get_client(network)
        entries = self.registry.for_network(network)
        for entry in entries:
            await client.subscribe_address(entry.address)
        if entries:
            logger.info(f"🔁 RESUBSCRIBED: {len(entries)} addresses on {network.value}")
