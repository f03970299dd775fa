"""
Price Feed Service
USD <-> crypto conversion backed by the CoinGecko simple price API.

Rates are cached for one minute. When a fetch fails the last cached rate is used
even if stale; with no cached rate at all the lookup raises PriceFeedError.
"""

import asyncio
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, Optional, Union

import aiohttp

from caching.simple_cache import SimpleCache
from config import Config
from models import CryptoCurrency
from utils.chain_constants import PRICE_FEED_IDS, to_currency

logger = logging.getLogger(__name__)

CRYPTO_PRECISION = Decimal("0.00000001")
USD_PRECISION = Decimal("0.01")


class PriceFeedError(Exception):
    """No fresh or cached rate available"""
    pass


class PriceFeedService:
    def __init__(
        self,
        base_url: Optional[str] = None,
        cache: Optional[SimpleCache] = None,
        timeout_seconds: float = 10,
    ):
        self.base_url = base_url or Config.PRICE_FEED_URL
        if cache is None:
            cache = SimpleCache(default_ttl=Config.PRICE_CACHE_TTL_SECONDS, keep_stale=True)
        self.cache = cache
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def get_usd_rate(self, currency: Union[str, CryptoCurrency]) -> Decimal:
        """USD price of one unit of `currency`"""
        currency = to_currency(currency)
        cache_key = f"usd_rate_{currency.value}"

        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            rates = await self._fetch_rates([currency])
            rate = rates[currency]
        except (aiohttp.ClientError, asyncio.TimeoutError, KeyError, ValueError, ArithmeticError) as e:
            stale = self.cache.get_stale(cache_key)
            if stale is not None:
                logger.warning(
                    f"⚠️ PRICE_FEED_STALE: {currency.value} fetch failed ({e}), using rate "
                    f"{stale} aged {self.cache.get_age(cache_key):.0f}s"
                )
                return stale
            logger.error(f"❌ PRICE_FEED_UNAVAILABLE: {currency.value}: {e}")
            raise PriceFeedError(f"No exchange rate available for {currency.value}") from e

        self.cache.set(cache_key, rate)
        return rate

    async def convert_usd_to_crypto(self, usd_amount: Union[Decimal, str, float], currency) -> Decimal:
        rate = await self.get_usd_rate(currency)
        if rate <= 0:
            raise PriceFeedError(f"Invalid rate {rate} for {currency}")
        return (Decimal(str(usd_amount)) / rate).quantize(CRYPTO_PRECISION, rounding=ROUND_HALF_UP)

    async def convert_crypto_to_usd(self, amount: Union[Decimal, str, float], currency) -> Decimal:
        rate = await self.get_usd_rate(currency)
        return (Decimal(str(amount)) * rate).quantize(USD_PRECISION, rounding=ROUND_HALF_UP)

    async def _fetch_rates(self, currencies: Iterable[CryptoCurrency]) -> Dict[CryptoCurrency, Decimal]:
        currencies = list(currencies)
        ids = sorted({PRICE_FEED_IDS[currency] for currency in currencies})
        params = {"ids": ",".join(ids), "vs_currencies": "usd"}

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(self.base_url, params=params) as response:
                if response.status != 200:
                    raise aiohttp.ClientResponseError(
                        response.request_info, response.history,
                        status=response.status, message="price feed request failed",
                    )
                data = await response.json()

        rates = {}
        for currency in currencies:
            rates[currency] = Decimal(str(data[PRICE_FEED_IDS[currency]]["usd"]))
        logger.info(f"💱 PRICE_FEED_FETCHED: {', '.join(f'{c.value}={r}' for c, r in rates.items())}")
        return rates
