"""
Chain routing and payment validation constants.

Currency -> network routing, per-network confirmation thresholds and the
amount tolerance used when matching an on-chain payment to an order.
"""

from decimal import Decimal
from typing import Dict, Union

from models import BlockchainNetwork, CryptoCurrency

# 0.1% to absorb network fee rounding
PAYMENT_TOLERANCE = Decimal("0.001")

CURRENCY_NETWORKS: Dict[CryptoCurrency, BlockchainNetwork] = {
    CryptoCurrency.BNB: BlockchainNetwork.BNB_CHAIN,
    CryptoCurrency.USDT_BEP20: BlockchainNetwork.BNB_CHAIN,
    CryptoCurrency.USDC_BEP20: BlockchainNetwork.BNB_CHAIN,
    CryptoCurrency.BTC: BlockchainNetwork.BITCOIN,
    CryptoCurrency.USDT_TRC20: BlockchainNetwork.TRON,
}

REQUIRED_CONFIRMATIONS: Dict[BlockchainNetwork, int] = {
    BlockchainNetwork.BNB_CHAIN: 12,
    BlockchainNetwork.BITCOIN: 3,
    BlockchainNetwork.TRON: 19,
}

# Symbols used by the price feed
PRICE_FEED_IDS: Dict[CryptoCurrency, str] = {
    CryptoCurrency.BNB: "binancecoin",
    CryptoCurrency.USDT_BEP20: "tether",
    CryptoCurrency.USDC_BEP20: "usd-coin",
    CryptoCurrency.BTC: "bitcoin",
    CryptoCurrency.USDT_TRC20: "tether",
}


def to_currency(currency: Union[str, CryptoCurrency]) -> CryptoCurrency:
    """Coerce a stored currency code to the enum; raises ValueError for unknown codes"""
    if isinstance(currency, CryptoCurrency):
        return currency
    return CryptoCurrency(currency)


def get_network_for_currency(currency: Union[str, CryptoCurrency]) -> BlockchainNetwork:
    return CURRENCY_NETWORKS[to_currency(currency)]


def get_required_confirmations(currency: Union[str, CryptoCurrency]) -> int:
    return REQUIRED_CONFIRMATIONS[get_network_for_currency(currency)]


def is_amount_within_tolerance(actual: Decimal, expected: Decimal,
                               tolerance: Decimal = PAYMENT_TOLERANCE) -> bool:
    """
    Accept if |actual - expected| / expected <= tolerance.

    A zero expected amount only matches a zero actual amount.
    """
    actual = Decimal(str(actual))
    expected = Decimal(str(expected))

    if expected == 0:
        return actual == 0

    return abs(actual - expected) / expected <= tolerance


def addresses_match(left: str, right: str) -> bool:
    """Case-insensitive address comparison (EVM addresses are checksum-cased)"""
    if not left or not right:
        return False
    return left.strip().lower() == right.strip().lower()
