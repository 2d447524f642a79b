"""Push notification device tokens, one row per (user, token)"""

import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from database import SessionFactory
from models import DeviceToken, User
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.escrow_errors import InvalidArgument, NotFound

logger = logging.getLogger(__name__)

SUPPORTED_PLATFORMS = ("ios", "android", "web")


class DeviceTokenRegistry:
    """Save-or-refresh device tokens and resolve them for delivery"""

    def __init__(self, session_factory: Optional[SessionFactory] = None):
        self.session_factory = session_factory

    def save_device_token(
        self,
        user_id: str,
        token: str,
        platform: str,
        device_name: Optional[str] = None,
    ) -> DeviceToken:
        """Insert the token, or refresh last_used_at and device details if it is already registered"""
        token = (token or "").strip()
        platform = (platform or "").strip().lower()
        if not token:
            raise InvalidArgument("device token is required")
        if platform not in SUPPORTED_PLATFORMS:
            raise InvalidArgument(f"unsupported platform {platform!r}")

        try:
            return self._upsert(user_id, token, platform, device_name)
        except IntegrityError:
            # Another request registered the same token between our read and insert
            logger.info(f"🔁 DEVICE_TOKEN_RACE: retrying upsert for user {user_id}")
            return self._upsert(user_id, token, platform, device_name)

    def _upsert(self, user_id: str, token: str, platform: str, device_name: Optional[str]) -> DeviceToken:
        with atomic_transaction(self.session_factory) as session:
            if session.get(User, user_id) is None:
                raise NotFound(f"User {user_id} not found")

            device_token = session.execute(
                select(DeviceToken).where(DeviceToken.user_id == user_id, DeviceToken.token == token)
            ).scalar_one_or_none()

            now = get_naive_utc_now()
            if device_token is None:
                device_token = DeviceToken(
                    user_id=user_id,
                    token=token,
                    platform=platform,
                    device_name=device_name,
                    created_at=now,
                    last_used_at=now,
                )
                session.add(device_token)
                logger.info(f"📱 DEVICE_TOKEN_SAVED: {platform} token for user {user_id}")
            else:
                device_token.platform = platform
                device_token.device_name = device_name or device_token.device_name
                device_token.last_used_at = now
                logger.debug(f"📱 DEVICE_TOKEN_REFRESHED: {platform} token for user {user_id}")

            session.flush()
            return device_token

    def tokens_for(self, user_ids: Iterable[str]) -> Dict[str, List[str]]:
        """Map each user id to its registered tokens"""
        user_ids = list(user_ids)
        tokens: Dict[str, List[str]] = {user_id: [] for user_id in user_ids}
        if not user_ids:
            return tokens

        with atomic_transaction(self.session_factory) as session:
            rows = session.execute(
                select(DeviceToken.user_id, DeviceToken.token)
                .where(DeviceToken.user_id.in_(user_ids))
                .order_by(DeviceToken.last_used_at.desc())
            ).all()

        for user_id, token in rows:
            tokens[user_id].append(token)
        return tokens
