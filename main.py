#!/usr/bin/env python3
"""
Vault Escrow - Startup

Deterministic sequence: configure logging, validate configuration,
verify the database, create tables, serve the API (scheduler starts with the app).
"""

import logging
import sys

import uvicorn

from config import Config
from database import create_tables, test_connection

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def initialize_database() -> bool:
    logger.info("🗄️ Initializing database...")
    if not test_connection():
        logger.error("❌ Database connection test failed")
        return False
    return create_tables()


def main() -> int:
    try:
        Config.validate_configuration()
    except ValueError as e:
        logger.error(f"❌ Invalid configuration: {e}")
        return 1
    Config.log_environment_config()

    if not initialize_database():
        return 1

    from api_server import create_app

    app = create_app()
    logger.info(f"🚀 Starting Vault API on {Config.HOST}:{Config.PORT}")
    uvicorn.run(app, host=Config.HOST, port=Config.PORT, log_level=Config.LOG_LEVEL.lower())
    return 0


if __name__ == "__main__":
    sys.exit(main())
