"""Configuration management for the escrow and payout core"""

import os
import logging
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./escrow_core.db")

    # Chain
    RPC_URL = os.getenv("RPC_URL")
    CHAIN_ID = int(os.getenv("CHAIN_ID")) if os.getenv("CHAIN_ID") else None
    OPERATOR_SECRET = os.getenv("OPERATOR_SECRET")
    FACTORY_ADDRESS = os.getenv("FACTORY_ADDRESS")
    TOKEN_ADDRESS = os.getenv("TOKEN_ADDRESS")
    BLOCK_EXPLORER_URL = os.getenv("BLOCK_EXPLORER_URL")
    RPC_MAX_IN_FLIGHT = int(os.getenv("RPC_MAX_IN_FLIGHT", "8"))
    RPC_RATE_PER_SECOND = float(os.getenv("RPC_RATE_PER_SECOND", "20"))
    RPC_REQUEST_TIMEOUT = int(os.getenv("RPC_REQUEST_TIMEOUT", "30"))
    GAS_SAFETY_FACTOR = int(os.getenv("GAS_SAFETY_FACTOR", "5"))
    GAS_LIMIT_MULTIPLIER = Decimal(os.getenv("GAS_LIMIT_MULTIPLIER", "1.2"))
    DISPUTE_ON_CHAIN = _env_bool("DISPUTE_ON_CHAIN", False)

    # Wallet custody
    KEY_ENCRYPTION_SECRET = os.getenv("KEY_ENCRYPTION_SECRET")
    KEY_ENCRYPTION_MIN_LENGTH = 32

    # Payments provider (Razorpay payouts)
    RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", os.getenv("PROVIDER_KEY"))
    RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", os.getenv("PROVIDER_SECRET"))
    RAZORPAY_ACCOUNT_NUMBER = os.getenv("RAZORPAY_ACCOUNT_NUMBER", os.getenv("PROVIDER_ACCOUNT"))
    RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET")
    RAZORPAY_BASE_URL = os.getenv("RAZORPAY_BASE_URL", "https://api.razorpay.com/v1")
    USD_TO_INR_RATE = Decimal(os.getenv("USD_TO_INR_RATE", "89"))
    MIN_CLAIM_USD = Decimal(os.getenv("MIN_CLAIM_USD", "10"))

    # Timing (seconds unless stated)
    VERIFICATION_POLL_SECONDS = int(os.getenv("VERIFICATION_POLL_SECONDS", "30"))
    VERIFICATION_WINDOW_HOURS = int(os.getenv("VERIFICATION_WINDOW_HOURS", "24"))
    VERIFICATION_BATCH_SIZE = int(os.getenv("VERIFICATION_BATCH_SIZE", "20"))
    STUCK_TX_HOURS = int(os.getenv("STUCK_TX_HOURS", "2"))
    RECEIPT_WAIT_SECONDS = int(os.getenv("RECEIPT_WAIT_SECONDS", "60"))
    ESCROW_TIMEOUT_SECONDS = int(os.getenv("ESCROW_TIMEOUT_SECONDS", str(7 * 24 * 3600)))
    REQUEST_DEADLINE_SECONDS = float(os.getenv("REQUEST_DEADLINE_SECONDS", "30"))
    REQUEST_DEADLINE_MARGIN_SECONDS = float(os.getenv("REQUEST_DEADLINE_MARGIN_SECONDS", "2"))
    LOCK_WAIT_SECONDS = float(os.getenv("LOCK_WAIT_SECONDS", "10"))
    PAYOUT_SYNC_INTERVAL_MINUTES = int(os.getenv("PAYOUT_SYNC_INTERVAL_MINUTES", "10"))

    # Server
    PORT = int(os.getenv("PORT", "8000"))
    ENABLE_SCHEDULER = _env_bool("ENABLE_SCHEDULER", True)

    # API auth
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY")
    JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

    @staticmethod
    def chain_configured() -> bool:
        return bool(Config.RPC_URL and Config.OPERATOR_SECRET and Config.FACTORY_ADDRESS)

    @staticmethod
    def payouts_configured() -> bool:
        return bool(
            Config.RAZORPAY_KEY_ID and Config.RAZORPAY_KEY_SECRET and Config.RAZORPAY_ACCOUNT_NUMBER
        )

    @staticmethod
    def log_environment_config():
        """Log which integrations are configured, never their secrets"""
        logger.info(f"🔧 Escrow Core Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.DATABASE_URL.split('://')[0]}")
        logger.info(f"   Chain RPC: {'configured' if Config.chain_configured() else 'MISSING'}")
        logger.info(f"   Token contract: {Config.TOKEN_ADDRESS or 'MISSING'}")
        logger.info(f"   Payouts API: {'configured' if Config.payouts_configured() else 'manual mode'}")
        logger.info(f"   FX USD->INR: {Config.USD_TO_INR_RATE}")
        logger.info(
            f"   Verification: every {Config.VERIFICATION_POLL_SECONDS}s, "
            f"batch={Config.VERIFICATION_BATCH_SIZE}, window={Config.VERIFICATION_WINDOW_HOURS}h"
        )
        if not Config.KEY_ENCRYPTION_SECRET:
            logger.error("❌ KEY_ENCRYPTION_SECRET not configured - custodial wallets unavailable")
        if not Config.JWT_SECRET_KEY:
            logger.warning("⚠️ JWT_SECRET_KEY not configured - all authenticated requests will be rejected")
