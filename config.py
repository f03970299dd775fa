"""Configuration management for the ChannelPass settlement core"""

import os
import logging
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./channelpass.db")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Platform economics
    PLATFORM_FEE_PERCENTAGE = Decimal(os.getenv("PLATFORM_FEE_PERCENTAGE", "0.05"))
    ORDER_EXPIRY_HOURS = int(os.getenv("ORDER_EXPIRY_HOURS", "24"))

    # Disputes
    DISPUTE_WINDOW_DAYS = int(os.getenv("DISPUTE_WINDOW_DAYS", "7"))
    DISPUTE_ISSUE_MAX_LENGTH = int(os.getenv("DISPUTE_ISSUE_MAX_LENGTH", "2000"))

    # Outbound queues
    QUEUE_MAX_RETRIES = int(os.getenv("QUEUE_MAX_RETRIES", "3"))
    QUEUE_DEDUP_WINDOW_SECONDS = int(os.getenv("QUEUE_DEDUP_WINDOW_SECONDS", "300"))
    # In-flight messages not acked within this window are redelivered
    QUEUE_VISIBILITY_TIMEOUT_SECONDS = int(os.getenv("QUEUE_VISIBILITY_TIMEOUT_SECONDS", "300"))

    # Merchant payouts (minimum amount per currency unit)
    PAYOUT_MINIMUM_AMOUNT = Decimal(os.getenv("PAYOUT_MINIMUM_AMOUNT", "20"))

    # Blockchain node endpoints (indexer-style JSON APIs)
    BSC_NODE_URL = os.getenv("BSC_NODE_URL", "https://bsc-indexer.example.invalid")
    BITCOIN_NODE_URL = os.getenv("BITCOIN_NODE_URL", "https://btc-indexer.example.invalid")
    TRON_NODE_URL = os.getenv("TRON_NODE_URL", "https://tron-indexer.example.invalid")

    CHAIN_POLL_INTERVAL_SECONDS = float(os.getenv("CHAIN_POLL_INTERVAL_SECONDS", "15"))
    CHAIN_REQUEST_TIMEOUT_SECONDS = float(os.getenv("CHAIN_REQUEST_TIMEOUT_SECONDS", "10"))
    CHAIN_RECONNECT_BASE_DELAY = float(os.getenv("CHAIN_RECONNECT_BASE_DELAY", "1"))
    CHAIN_RECONNECT_MAX_DELAY = float(os.getenv("CHAIN_RECONNECT_MAX_DELAY", "60"))
    CHAIN_RECONNECT_MAX_ATTEMPTS = int(os.getenv("CHAIN_RECONNECT_MAX_ATTEMPTS", "10"))

    # Watch registry eviction (0 disables)
    WATCH_ENTRY_TTL_SECONDS = int(os.getenv("WATCH_ENTRY_TTL_SECONDS", "0"))

    # Price feed
    PRICE_FEED_URL = os.getenv(
        "PRICE_FEED_URL", "https://api.coingecko.com/api/v3/simple/price"
    )
    PRICE_CACHE_TTL_SECONDS = int(os.getenv("PRICE_CACHE_TTL_SECONDS", "60"))

    # Scheduler intervals
    PAYMENT_EVENT_INTERVAL_SECONDS = int(os.getenv("PAYMENT_EVENT_INTERVAL_SECONDS", "5"))
    SUBSCRIPTION_EXPIRY_INTERVAL_MINUTES = int(
        os.getenv("SUBSCRIPTION_EXPIRY_INTERVAL_MINUTES", "60")
    )
    ORDER_EXPIRY_INTERVAL_MINUTES = int(os.getenv("ORDER_EXPIRY_INTERVAL_MINUTES", "15"))
    QUEUE_RECOVERY_INTERVAL_MINUTES = int(os.getenv("QUEUE_RECOVERY_INTERVAL_MINUTES", "5"))

    @staticmethod
    def node_urls():
        """Node endpoint per blockchain network name"""
        return {
            "bnb_chain": Config.BSC_NODE_URL,
            "bitcoin": Config.BITCOIN_NODE_URL,
            "tron": Config.TRON_NODE_URL,
        }

    @staticmethod
    def validate():
        """Validate configuration ranges, raising ValueError on bad values"""
        errors = []
        if not Config.DATABASE_URL:
            errors.append("DATABASE_URL is required")
        if not (Decimal("0") <= Config.PLATFORM_FEE_PERCENTAGE <= Decimal("1")):
            errors.append(
                f"PLATFORM_FEE_PERCENTAGE must be within [0, 1], got {Config.PLATFORM_FEE_PERCENTAGE}"
            )
        if Config.ORDER_EXPIRY_HOURS <= 0:
            errors.append("ORDER_EXPIRY_HOURS must be positive")
        if Config.CHAIN_RECONNECT_MAX_ATTEMPTS <= 0:
            errors.append("CHAIN_RECONNECT_MAX_ATTEMPTS must be positive")
        if Config.CHAIN_POLL_INTERVAL_SECONDS <= 0:
            errors.append("CHAIN_POLL_INTERVAL_SECONDS must be positive")
        if Config.QUEUE_VISIBILITY_TIMEOUT_SECONDS <= 0:
            errors.append("QUEUE_VISIBILITY_TIMEOUT_SECONDS must be positive")
        if Config.PAYOUT_MINIMUM_AMOUNT < 0:
            errors.append("PAYOUT_MINIMUM_AMOUNT must not be negative")

        if errors:
            for error in errors:
                logger.error(f"❌ CONFIG_INVALID: {error}")
            raise ValueError("; ".join(errors))

        return True

    @staticmethod
    def log_environment_config():
        """Log current configuration for debugging"""
        logger.info(f"🔧 Settlement Core Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Platform fee: {Config.PLATFORM_FEE_PERCENTAGE}")
        logger.info(f"   Order expiry: {Config.ORDER_EXPIRY_HOURS}h")
        logger.info(f"   Dispute window: {Config.DISPUTE_WINDOW_DAYS} days")
        logger.info(
            f"   Reconnect: base={Config.CHAIN_RECONNECT_BASE_DELAY}s "
            f"max={Config.CHAIN_RECONNECT_MAX_DELAY}s attempts={Config.CHAIN_RECONNECT_MAX_ATTEMPTS}"
        )
        logger.info(
            f"   Queue retries: {Config.QUEUE_MAX_RETRIES} "
            f"visibility={Config.QUEUE_VISIBILITY_TIMEOUT_SECONDS}s"
        )
