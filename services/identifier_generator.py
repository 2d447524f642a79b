"""
Collision-Checked Identifier Generator
Mints short human-readable codes for users (VID) and transactions (VTID)
"""

import logging
import secrets
import string
from enum import Enum
from typing import Callable, Optional

from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from config import Config
from models import Transaction, User

logger = logging.getLogger(__name__)


class EntityType(Enum):
    """Entity kinds that carry a human-readable code"""
    USER = "user"
    TRANSACTION = "transaction"


class IdentifierGenerator:
    """
    Generates uppercase alphanumeric codes and retries until the code is free.

    The retry loop is unbounded: with 36^8 possible VIDs a collision is rare,
    but a single-shot generator would still fail a registration when it happens.
    The unique constraints on users.vault_id and transactions.vtid remain the
    final guard against two concurrent generators picking the same free code.
    """

    ALPHABET = string.ascii_uppercase + string.digits

    def __init__(
        self,
        user_code_length: Optional[int] = None,
        transaction_code_length: Optional[int] = None,
        rng: Optional[secrets.SystemRandom] = None,
    ):
        self.lengths = {
            EntityType.USER: user_code_length or Config.VID_LENGTH,
            EntityType.TRANSACTION: transaction_code_length or Config.VTID_LENGTH,
        }
        self._rng = rng or secrets.SystemRandom()

    def _random_code(self, kind: EntityType) -> str:
        return "".join(self._rng.choice(self.ALPHABET) for _ in range(self.lengths[kind]))

    def generate_unique(self, kind: EntityType, is_taken: Callable[[str], bool]) -> str:
        """Draw codes until is_taken reports one as free"""
        attempts = 0
        while True:
            attempts += 1
            code = self._random_code(kind)
            if not is_taken(code):
                if attempts > 1:
                    logger.info(f"🔁 ID_COLLISION_RESOLVED: {kind.value} code minted after {attempts} attempts")
                return code
            logger.warning(f"⚠️ ID_COLLISION: {kind.value} code {code} already stored, retrying")

    def generate(self, kind: EntityType, session: Session) -> str:
        """Generate a code that does not collide with any stored code of the same kind"""
        column = User.vault_id if kind is EntityType.USER else Transaction.vtid

        def is_taken(code: str) -> bool:
            return bool(session.execute(select(exists().where(column == code))).scalar())

        return self.generate_unique(kind, is_taken)

    def generate_vid(self, session: Session) -> str:
        return self.generate(EntityType.USER, session)

    def generate_vtid(self, session: Session) -> str:
        return self.generate(EntityType.TRANSACTION, session)
