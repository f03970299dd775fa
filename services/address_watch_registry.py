"""
Address Watch Registry
Keyed store of deposit addresses the blockchain monitor is watching.

One entry per address; re-watching an address replaces the previous entry
(last writer wins). The backing store is injected so a multi-process deployment
can swap the in-memory store for a shared one.
"""

import dataclasses
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from caching.simple_cache import SimpleCache
from models import BlockchainNetwork, CryptoCurrency
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


@dataclass
class WatchedAddress:
    address: str
    order_id: int
    currency: CryptoCurrency
    expected_amount: Decimal
    network: BlockchainNetwork
    callback: Optional[Callable[..., Any]] = None
    watched_at: datetime = field(default_factory=get_naive_utc_now)


class WatchStore(ABC):
    """Storage contract for watch entries; each operation must be atomic per key"""

    @abstractmethod
    def get(self, address: str) -> Optional[WatchedAddress]:
        ...

    @abstractmethod
    def put(self, entry: WatchedAddress) -> Optional[WatchedAddress]:
        """Store entry, returning the entry it replaced"""

    @abstractmethod
    def remove(self, address: str) -> Optional[WatchedAddress]:
        ...

    @abstractmethod
    def values(self) -> List[WatchedAddress]:
        ...

    def evict_expired(self) -> int:
        return 0


class InMemoryWatchStore(WatchStore):
    """Process-local store; ttl_seconds evicts entries nobody unwatched"""

    def __init__(self, ttl_seconds: Optional[float] = None, clock=None):
        kwargs = {"clock": clock} if clock is not None else {}
        self._cache = SimpleCache(default_ttl=ttl_seconds or None, **kwargs)

    def get(self, address: str) -> Optional[WatchedAddress]:
        return self._cache.get(address)

    def put(self, entry: WatchedAddress) -> Optional[WatchedAddress]:
        previous = self._cache.get(entry.address)
        self._cache.set(entry.address, entry)
        return previous

    def remove(self, address: str) -> Optional[WatchedAddress]:
        previous = self._cache.get(address)
        self._cache.delete(address)
        return previous

    def values(self) -> List[WatchedAddress]:
        return [entry for _, entry in self._cache.items()]

    def evict_expired(self) -> int:
        return self._cache.evict_expired()


class AddressWatchRegistry:
    """Watch entries keyed by address string"""

    def __init__(self, store: Optional[WatchStore] = None):
        self._store = store if store is not None else InMemoryWatchStore()

    @staticmethod
    def _key(address: str) -> str:
        if not address or not address.strip():
            raise ValueError("Address is required")
        return address.strip()

    def watch(self, entry: WatchedAddress) -> WatchedAddress:
        entry = dataclasses.replace(entry, address=self._key(entry.address))
        previous = self._store.put(entry)
        if previous is not None and previous.order_id != entry.order_id:
            logger.warning(
                f"⚠️ WATCH_REPLACED: {entry.address} order {previous.order_id} -> {entry.order_id}"
            )
        return entry

    def unwatch(self, address: str) -> bool:
        return self._store.remove(self._key(address)) is not None

    def get(self, address: str) -> Optional[WatchedAddress]:
        return self._store.get(self._key(address))

    def is_watched(self, address: str) -> bool:
        return self.get(address) is not None

    def snapshot(self) -> Dict[str, WatchedAddress]:
        """Copy of all entries; mutating it does not touch the registry"""
        return {entry.address: dataclasses.replace(entry) for entry in self._store.values()}

    def for_network(self, network: BlockchainNetwork) -> List[WatchedAddress]:
        return [entry for entry in self._store.values() if entry.network == network]

    def evict_expired(self) -> int:
        evicted = self._store.evict_expired()
        if evicted:
            logger.info(f"🧹 WATCH_EVICTED: {evicted} expired watch entries")
        return evicted

    def __len__(self) -> int:
        return len(self._store.values())
