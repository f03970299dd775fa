"""
Chain Connection Manager
One logical connection per blockchain network, each reconnecting independently.

Reconnect uses exponential backoff (1s, 2s, 4s ... capped at 60s) for a bounded
number of attempts. When the budget is spent the network stays disconnected and
is reported through get_connection_status() until an operator calls reconnect().
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional, Set

import aiohttp

from config import Config
from models import BlockchainNetwork, CryptoCurrency

logger = logging.getLogger(__name__)


class ChainConnectionError(Exception):
    """Node unreachable or returned an unusable response"""
    pass


@dataclass
class ChainTransaction:
    """Incoming transfer as reported by a chain node/indexer"""

    transaction_hash: str
    to_address: str
    amount: Decimal
    confirmations: int
    from_address: Optional[str] = None
    block_number: Optional[int] = None


def compute_backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
) -> float:
    """Delay before reconnect attempt number `attempt` (0-based): base * 2**attempt, capped"""
    return min(base_delay * (2 ** attempt), max_delay)


class ChainClient(ABC):
    """Narrow interface the monitor needs from a blockchain node"""

    network: BlockchainNetwork

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection; raise ChainConnectionError on failure"""

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def subscribe_address(self, address: str) -> None:
        ...

    @abstractmethod
    async def unsubscribe_address(self, address: str) -> None:
        ...

    @abstractmethod
    async def get_incoming_transactions(
        self, address: str, currency: CryptoCurrency
    ) -> List[ChainTransaction]:
        """Transfers of `currency` into `address`; raise ChainConnectionError when the node is unreachable"""


class HttpIndexerChainClient(ChainClient):
    """
    Polls a JSON indexer API for one network.

    GET {base_url}/health
    GET {base_url}/addresses/{address}/transactions?currency={code}
        -> {"transactions": [{"hash", "from", "to", "amount", "confirmations", "blockNumber"}]}
    """

    def __init__(self, network: BlockchainNetwork, base_url: str, timeout_seconds: Optional[float] = None):
        self.network = network
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(
            total=timeout_seconds or Config.CHAIN_REQUEST_TIMEOUT_SECONDS
        )
        self._session: Optional[aiohttp.ClientSession] = None
        self._subscribed: Set[str] = set()

    async def connect(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        try:
            async with self._session.get(f"{self.base_url}/health") as response:
                if response.status != 200:
                    raise ChainConnectionError(f"{self.network.value} health check returned HTTP {response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ChainConnectionError(f"{self.network.value} unreachable: {e}") from e

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def subscribe_address(self, address: str) -> None:
        # Polling indexer: subscription is the local poll set
        self._subscribed.add(address)

    async def unsubscribe_address(self, address: str) -> None:
        self._subscribed.discard(address)

    async def get_incoming_transactions(
        self, address: str, currency: CryptoCurrency
    ) -> List[ChainTransaction]:
        if self._session is None or self._session.closed:
            raise ChainConnectionError(f"{self.network.value} client not connected")

        url = f"{self.base_url}/addresses/{address}/transactions"
        try:
            async with self._session.get(url, params={"currency": currency.value}) as response:
                if response.status >= 500:
                    raise ChainConnectionError(f"{self.network.value} indexer returned HTTP {response.status}")
                if response.status != 200:
                    logger.warning(f"⚠️ CHAIN_QUERY_REJECTED: {self.network.value} {address} HTTP {response.status}")
                    return []
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ChainConnectionError(f"{self.network.value} request failed: {e}") from e

        transactions = []
        for item in data.get("transactions", []):
            try:
                transactions.append(
                    ChainTransaction(
                        transaction_hash=item["hash"],
                        to_address=item["to"],
                        amount=Decimal(str(item["amount"])),
                        confirmations=int(item.get("confirmations", 0)),
                        from_address=item.get("from"),
                        block_number=item.get("blockNumber"),
                    )
                )
            except (KeyError, ValueError, ArithmeticError) as e:
                logger.warning(f"⚠️ CHAIN_TX_UNPARSEABLE: {self.network.value} {item!r}: {e}")
        return transactions


ReconnectCallback = Callable[[BlockchainNetwork], Awaitable[None]]


class ChainConnectionManager:
    """Owns per-network clients, their connection flags and reconnect loops"""

    def __init__(
        self,
        clients: Dict[BlockchainNetwork, ChainClient],
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        max_attempts: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.clients = dict(clients)
        self.base_delay = Config.CHAIN_RECONNECT_BASE_DELAY if base_delay is None else base_delay
        self.max_delay = Config.CHAIN_RECONNECT_MAX_DELAY if max_delay is None else max_delay
        self.max_attempts = Config.CHAIN_RECONNECT_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self._sleep = sleep

        self._connected: Dict[BlockchainNetwork, bool] = {network: False for network in self.clients}
        self._exhausted: Set[BlockchainNetwork] = set()
        self._reconnect_tasks: Dict[BlockchainNetwork, asyncio.Task] = {}
        self._on_connected: List[ReconnectCallback] = []

    def add_connected_listener(self, callback: ReconnectCallback) -> None:
        """Awaited after every successful (re)connect of a network"""
        self._on_connected.append(callback)

    def get_client(self, network: BlockchainNetwork) -> ChainClient:
        return self.clients[network]

    def is_connected(self, network: BlockchainNetwork) -> bool:
        return self._connected.get(network, False)

    def get_connection_status(self) -> Dict[str, bool]:
        return {network.value: connected for network, connected in self._connected.items()}

    def get_exhausted_networks(self) -> List[str]:
        return sorted(network.value for network in self._exhausted)

    async def start(self) -> None:
        """Start one independent connect loop per network; does not wait for them"""
        for network in self.clients:
            self._spawn_reconnect(network)

    async def stop(self) -> None:
        tasks = list(self._reconnect_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._reconnect_tasks.clear()

        for network, client in self.clients.items():
            try:
                await client.close()
            except Exception as e:
                logger.warning(f"⚠️ CHAIN_CLOSE_FAILED: {network.value}: {e}")
            self._connected[network] = False

    async def handle_disconnect(self, network: BlockchainNetwork, error: Exception) -> None:
        """Mark a network down and start reconnecting in the background"""
        if self._connected.get(network):
            logger.warning(f"🔌 CHAIN_DISCONNECTED: {network.value}: {error}")
        self._connected[network] = False
        self._spawn_reconnect(network)

    async def reconnect(self, network: BlockchainNetwork) -> Optional[asyncio.Task]:
        """Operator action: retry a network whose reconnect budget was exhausted"""
        self._exhausted.discard(network)
        return self._spawn_reconnect(network)

    def _spawn_reconnect(self, network: BlockchainNetwork) -> Optional[asyncio.Task]:
        if network in self._exhausted:
            return None
        task = self._reconnect_tasks.get(network)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self.connect_with_backoff(network), name=f"chain-connect-{network.value}")
        self._reconnect_tasks[network] = task
        return task

    async def connect_with_backoff(self, network: BlockchainNetwork) -> bool:
        """
        Initial attempt plus up to max_attempts retries.

        Returns True once connected; False after the budget is spent, leaving
        the network disconnected.
        """
        client = self.clients[network]

        for attempt in range(self.max_attempts + 1):
            try:
                await client.connect()
            except Exception as e:
                if attempt >= self.max_attempts:
                    break
                delay = compute_backoff_delay(attempt, self.base_delay, self.max_delay)
                logger.warning(
                    f"🔄 CHAIN_RECONNECT: {network.value} attempt {attempt + 1}/{self.max_attempts} "
                    f"failed: {e}. Retrying in {delay:.0f}s"
                )
                await self._sleep(delay)
                continue

            self._connected[network] = True
            self._exhausted.discard(network)
            logger.info(f"✅ CHAIN_CONNECTED: {network.value}" + (f" after {attempt} retries" if attempt else ""))
            await self._notify_connected(network)
            return True

        self._connected[network] = False
        self._exhausted.add(network)
        logger.critical(
            f"🚨 CHAIN_RECONNECT_EXHAUSTED: {network.value} still down after {self.max_attempts} retries "
            f"- operator action required"
        )
        return False

    async def _notify_connected(self, network: BlockchainNetwork) -> None:
        for callback in self._on_connected:
            try:
                await callback(network)
            except Exception as e:
                logger.error(f"❌ CHAIN_CONNECTED_CALLBACK_FAILED: {network.value}: {e}", exc_info=True)
