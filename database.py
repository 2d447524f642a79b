"""
Database Configuration and Session Management
============================================

This module provides the database engine, session factory, and table creation
functionality for the Vault escrow service.

PostgreSQL is the production store: row locks come from SELECT ... FOR UPDATE.
SQLite is supported for local development and tests: every transaction is
opened with BEGIN IMMEDIATE so writers serialize on the database lock instead
of failing on lock upgrade.
"""

import logging
from typing import Callable, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool

from config import Config
from models import Base

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def _enable_sqlite_immediate_transactions(engine: Engine) -> None:
    """Take the SQLite write lock at BEGIN so read-validate-write units cannot interleave"""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Disable pysqlite's own BEGIN handling, we emit BEGIN ourselves
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine for the given URL with the pool settings this service expects"""
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={
                "check_same_thread": False,
                "timeout": Config.DB_LOCK_TIMEOUT_SECONDS,
            },
        )
        _enable_sqlite_immediate_transactions(engine)
        return engine

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=Config.DB_POOL_SIZE,
        max_overflow=Config.DB_MAX_OVERFLOW,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=Config.DB_POOL_TIMEOUT_SECONDS,
        echo=echo,
        connect_args={
            "connect_timeout": 10,
            "application_name": "vault_escrow",
            # No atomic unit may wait forever on a row lock
            "options": f"-c lock_timeout={Config.DB_LOCK_TIMEOUT_SECONDS * 1000}",
        },
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


engine = build_engine(Config.DATABASE_URL)

# Session factory
SessionLocal = build_session_factory(engine)


def create_tables(bind: Optional[Engine] = None) -> bool:
    """Create all database tables if they don't exist"""
    target = bind or engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        Base.metadata.create_all(bind=target, checkfirst=True)
        logger.info(f"✅ Database schema verified: {len(Base.metadata.tables)} tables available")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        return False


def test_connection(bind: Optional[Engine] = None) -> bool:
    """Test database connection"""
    try:
        with (bind or engine).connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
