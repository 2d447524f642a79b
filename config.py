"""Configuration management for the Vault escrow service"""

import os
import logging
from decimal import Decimal
from typing import Optional

logger = logging.getLogger(__name__)


def _optional_decimal(name: str) -> Optional[Decimal]:
    value = os.getenv(name, "").strip()
    return Decimal(value) if value else None


def _optional_int(name: str) -> Optional[int]:
    value = os.getenv(name, "").strip()
    return int(value) if value else None


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database configuration
    # Render/Heroku style URLs use the legacy "postgres://" scheme which SQLAlchemy rejects
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./vault.db")
    if DATABASE_URL.startswith("postgres://"):
        DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)
    DATABASE_SOURCE = "SQLite (local)" if DATABASE_URL.startswith("sqlite") else "PostgreSQL"

    DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "7"))
    DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "15"))
    DB_POOL_TIMEOUT_SECONDS = int(os.getenv("DB_POOL_TIMEOUT_SECONDS", "30"))
    # Bounds how long an atomic unit waits for a row/database lock
    DB_LOCK_TIMEOUT_SECONDS = int(os.getenv("DB_LOCK_TIMEOUT_SECONDS", "15"))

    # Ledger
    DEFAULT_STARTING_BALANCE = Decimal(os.getenv("DEFAULT_STARTING_BALANCE", "1000.00"))
    CURRENCY_LABEL = os.getenv("CURRENCY_LABEL", "KSH")

    # Transaction bounds - positivity is always enforced, upper bounds only when configured
    MAX_TRANSACTION_AMOUNT = _optional_decimal("MAX_TRANSACTION_AMOUNT")
    MAX_TIME_LIMIT_HOURS = _optional_int("MAX_TIME_LIMIT_HOURS")

    # Identifier lengths
    VID_LENGTH = int(os.getenv("VID_LENGTH", "8"))
    VTID_LENGTH = int(os.getenv("VTID_LENGTH", "12"))

    # Expiry sweep
    EXPIRY_SWEEP_ENABLED = os.getenv("EXPIRY_SWEEP_ENABLED", "true").lower() == "true"
    EXPIRY_SWEEP_BATCH_SIZE = int(os.getenv("EXPIRY_SWEEP_BATCH_SIZE", "100"))

    # Notifications
    PUSH_BACKEND = os.getenv("PUSH_BACKEND", "log").lower()  # log | expo
    EXPO_PUSH_URL = os.getenv("EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send")
    EXPO_PUSH_TIMEOUT_SECONDS = int(os.getenv("EXPO_PUSH_TIMEOUT_SECONDS", "10"))
    NOTIFICATION_QUEUE_INTERVAL_SECONDS = int(os.getenv("NOTIFICATION_QUEUE_INTERVAL_SECONDS", "60"))
    NOTIFICATION_MAX_RETRIES = int(os.getenv("NOTIFICATION_MAX_RETRIES", "3"))
    NOTIFICATION_COOLDOWN_HIGH_SECONDS = int(os.getenv("NOTIFICATION_COOLDOWN_HIGH_SECONDS", "30"))
    NOTIFICATION_COOLDOWN_MEDIUM_SECONDS = int(os.getenv("NOTIFICATION_COOLDOWN_MEDIUM_SECONDS", str(15 * 60)))
    NOTIFICATION_COOLDOWN_LOW_SECONDS = int(os.getenv("NOTIFICATION_COOLDOWN_LOW_SECONDS", str(60 * 60)))

    # Server
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "10000"))

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Vault Environment Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.DATABASE_SOURCE}")
        logger.info(f"   Starting balance: {Config.DEFAULT_STARTING_BALANCE} {Config.CURRENCY_LABEL}")
        logger.info(f"   Max amount: {Config.MAX_TRANSACTION_AMOUNT or 'unbounded'}")
        logger.info(f"   Max time limit: {Config.MAX_TIME_LIMIT_HOURS or 'unbounded'} hours")
        logger.info(f"   Expiry sweep: {'enabled' if Config.EXPIRY_SWEEP_ENABLED else 'DISABLED'}")
        logger.info(f"   Push backend: {Config.PUSH_BACKEND}")

    @staticmethod
    def validate_configuration():
        """Validate configuration and fail fast on values that would corrupt the ledger"""
        if Config.DEFAULT_STARTING_BALANCE < 0:
            raise ValueError("DEFAULT_STARTING_BALANCE must not be negative")
        if Config.MAX_TRANSACTION_AMOUNT is not None and Config.MAX_TRANSACTION_AMOUNT <= 0:
            raise ValueError("MAX_TRANSACTION_AMOUNT must be positive when set")
        if Config.MAX_TIME_LIMIT_HOURS is not None and Config.MAX_TIME_LIMIT_HOURS <= 0:
            raise ValueError("MAX_TIME_LIMIT_HOURS must be positive when set")
        if Config.VID_LENGTH < 4 or Config.VTID_LENGTH < 4:
            raise ValueError("Identifier lengths must be at least 4 characters")
        if Config.PUSH_BACKEND not in ("log", "expo"):
            raise ValueError(f"Unknown PUSH_BACKEND: {Config.PUSH_BACKEND}")

        if Config.IS_PRODUCTION and Config.DATABASE_URL.startswith("sqlite"):
            logger.warning("⚠️ Production environment is running on SQLite - use PostgreSQL for concurrent workers")

        return True
