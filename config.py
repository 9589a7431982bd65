"""Configuration management for the AssetLink custody engine"""

import os
import logging
from decimal import Decimal
from typing import Dict, Any

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _decimal_env(name: str, default: str) -> Decimal:
    return Decimal(os.getenv(name, default))


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./assetlink_custody.db")
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "7"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "15"))

    # Custody provider (signing/vault service)
    CUSTODY_PROVIDER_API_KEY = os.getenv("CUSTODY_PROVIDER_API_KEY")
    CUSTODY_PROVIDER_SECRET_KEY_PATH = os.getenv("CUSTODY_PROVIDER_SECRET_KEY_PATH")
    CUSTODY_PROVIDER_BASE_URL = os.getenv("CUSTODY_PROVIDER_BASE_URL", "https://sandbox-api.fireblocks.io")
    CUSTODY_PROVIDER_TIMEOUT_SECONDS = int(os.getenv("CUSTODY_PROVIDER_TIMEOUT_SECONDS", "30"))
    CUSTODY_PROVIDER_MAX_RETRIES = int(os.getenv("CUSTODY_PROVIDER_MAX_RETRIES", "3"))
    TOKEN_CONTRACT_TEMPLATE_ID = os.getenv("TOKEN_CONTRACT_TEMPLATE_ID")
    DEFAULT_BLOCKCHAIN = os.getenv("DEFAULT_BLOCKCHAIN", "ETH_TEST5")
    DEFAULT_TOKEN_STANDARD = os.getenv("DEFAULT_TOKEN_STANDARD", "ERC20")

    # Gas station
    GAS_VAULT_ID = os.getenv("GAS_VAULT_ID", "88")
    MIN_GAS_THRESHOLD = _decimal_env("MIN_GAS_THRESHOLD", "0.001")
    GAS_TOP_UP_AMOUNT = _decimal_env("GAS_TOP_UP_AMOUNT", "0.002")
    GAS_BALANCE_CACHE_TTL_SECONDS = int(os.getenv("GAS_BALANCE_CACHE_TTL_SECONDS", "600"))
    GAS_FUNDING_POLL_INTERVAL_SECONDS = float(os.getenv("GAS_FUNDING_POLL_INTERVAL_SECONDS", "10"))
    GAS_FUNDING_MAX_ATTEMPTS = int(os.getenv("GAS_FUNDING_MAX_ATTEMPTS", "30"))

    # Mint reconciliation
    MINT_MONITOR_INITIAL_DELAY_SECONDS = float(os.getenv("MINT_MONITOR_INITIAL_DELAY_SECONDS", "120"))
    MINT_MONITOR_STEP_DELAY_SECONDS = float(os.getenv("MINT_MONITOR_STEP_DELAY_SECONDS", "60"))
    MINT_MONITOR_MAX_DELAY_SECONDS = float(os.getenv("MINT_MONITOR_MAX_DELAY_SECONDS", "600"))
    MINT_MONITOR_MAX_ATTEMPTS = int(os.getenv("MINT_MONITOR_MAX_ATTEMPTS", "20"))
    MINT_MONITOR_RATE_LIMIT_COOLDOWN_SECONDS = float(os.getenv("MINT_MONITOR_RATE_LIMIT_COOLDOWN_SECONDS", "300"))

    # Burn reconciliation
    BURN_MONITOR_INITIAL_DELAY_SECONDS = float(os.getenv("BURN_MONITOR_INITIAL_DELAY_SECONDS", "5"))
    BURN_MONITOR_STEP_DELAY_SECONDS = float(os.getenv("BURN_MONITOR_STEP_DELAY_SECONDS", "0"))
    BURN_MONITOR_MAX_DELAY_SECONDS = float(os.getenv("BURN_MONITOR_MAX_DELAY_SECONDS", "5"))
    BURN_MONITOR_MAX_ATTEMPTS = int(os.getenv("BURN_MONITOR_MAX_ATTEMPTS", "30"))
    BURN_MONITOR_RATE_LIMIT_COOLDOWN_SECONDS = float(os.getenv("BURN_MONITOR_RATE_LIMIT_COOLDOWN_SECONDS", "60"))

    # Poll numbers at which coarse progress events are audited
    MONITOR_PROGRESS_MILESTONES: Dict[int, str] = {
        2: "ON_CHAIN_SUBMISSION",
        5: "BLOCK_PROPAGATION",
        10: "FINALIZING_SETTLEMENT",
    }

    RESYNC_COOLDOWN_SECONDS = int(os.getenv("RESYNC_COOLDOWN_SECONDS", "60"))
    MONITOR_REGISTRY_MAX_AGE_HOURS = int(os.getenv("MONITOR_REGISTRY_MAX_AGE_HOURS", "24"))

    # Webhook sink
    WEBHOOK_URL = os.getenv("WEBHOOK_URL")
    WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "5"))

    # Scheduled jobs
    RESYNC_SWEEP_INTERVAL_MINUTES = int(os.getenv("RESYNC_SWEEP_INTERVAL_MINUTES", "5"))
    LISTING_EXPIRY_SWEEP_INTERVAL_MINUTES = int(os.getenv("LISTING_EXPIRY_SWEEP_INTERVAL_MINUTES", "15"))
    MONITOR_CLEANUP_INTERVAL_MINUTES = int(os.getenv("MONITOR_CLEANUP_INTERVAL_MINUTES", "60"))

    AUDIT_LOG_FILE = os.getenv("AUDIT_LOG_FILE")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @staticmethod
    def provider_configured() -> bool:
        """True when real provider credentials are present"""
        return bool(Config.CUSTODY_PROVIDER_API_KEY and Config.CUSTODY_PROVIDER_SECRET_KEY_PATH)

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Custody Engine Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.DATABASE_URL.split('@')[-1]}")
        logger.info(f"   Provider: {'LIVE' if Config.provider_configured() else 'SIMULATION'} ({Config.CUSTODY_PROVIDER_BASE_URL})")
        logger.info(f"   Default chain: {Config.DEFAULT_BLOCKCHAIN}")
        logger.info(f"   Gas vault: {Config.GAS_VAULT_ID} (min {Config.MIN_GAS_THRESHOLD}, top-up {Config.GAS_TOP_UP_AMOUNT})")
        logger.info(f"   Webhook: {'configured' if Config.WEBHOOK_URL else 'disabled'}")

    @staticmethod
    def as_dict() -> Dict[str, Any]:
        return {
            "environment": Config.ENVIRONMENT,
            "provider_mode": "live" if Config.provider_configured() else "simulation",
            "default_blockchain": Config.DEFAULT_BLOCKCHAIN,
            "gas_vault_id": Config.GAS_VAULT_ID,
            "webhook_enabled": bool(Config.WEBHOOK_URL),
        }
