"""
Escrow Expiry Sweeper
Finds pending/accepted transactions past their deadline and cancels them through the engine
"""

import logging
from datetime import datetime
from typing import Optional

from config import Config
from database import SessionFactory
from services.escrow_engine import EscrowEngine
from services.transaction_store import ScanCursor, TransactionStore, scan_cursor
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.escrow_errors import EscrowError

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Batch driver for EscrowEngine.expire_transaction"""

    def __init__(
        self,
        engine: EscrowEngine,
        session_factory: Optional[SessionFactory] = None,
        batch_size: Optional[int] = None,
    ):
        self.engine = engine
        self.session_factory = session_factory or engine.session_factory
        self.batch_size = batch_size or Config.EXPIRY_SWEEP_BATCH_SIZE

    def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Cancel every transaction whose deadline is before now.

        Candidates are paged by a (created_at, id) cursor, so each is visited
        once per sweep. Each candidate is its own atomic unit. A candidate
        that a concurrent action already resolved, or that fails, is logged
        and skipped.
        Returns the number of transactions this sweep cancelled.
        """
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        cursor: Optional[ScanCursor] = None
        cancelled = skipped = failed = 0

        while True:
            with atomic_transaction(self.session_factory) as session:
                page = TransactionStore(session).scan_expiry_candidates(
                    now, limit=self.batch_size, after=cursor
                )
                batch = [transaction.id for transaction in page if transaction.is_expired(now)]
                if page:
                    cursor = scan_cursor(page[-1])

            if batch:
                logger.info(f"🔍 SWEEP_BATCH: {len(batch)} expired transaction(s) found")
            for transaction_id in batch:
                try:
                    if self.engine.expire_transaction(transaction_id, now) is not None:
                        cancelled += 1
                    else:
                        skipped += 1
                except EscrowError as e:
                    skipped += 1
                    logger.info(f"⏭️ SWEEP_SKIPPED: {transaction_id}: {e.message}")
                except Exception as e:
                    failed += 1
                    logger.error(f"❌ SWEEP_ITEM_FAILED: {transaction_id}: {e}")

            if len(page) < self.batch_size:
                break

        if cancelled or skipped or failed:
            logger.info(f"✅ SWEEP_COMPLETE: cancelled={cancelled} skipped={skipped} failed={failed}")
        else:
            logger.debug("SWEEP_COMPLETE: nothing expired")
        return cancelled

    def sweep_expired(self) -> int:
        return self.sweep()
