"""Volatile mapping from user identity to live delivery channel."""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Tracks which live channel, if any, currently belongs to each user.

    The registry is memory-only; after a restart every user is offline until
    their client registers again. A user maps to at most one channel and the
    most recent registration wins.
    """

    def __init__(self) -> None:
        self._channels: Dict[str, str] = {}
        self._lock = threading.Lock()

    def register(self, user_id: str, channel_id: str) -> Optional[str]:
        """Map *user_id* to *channel_id* and return the channel it replaced, if any."""

        if not user_id or not channel_id:
            raise ValueError("user_id and channel_id must be provided")
        with self._lock:
            previous = self._channels.get(user_id)
            self._channels[user_id] = channel_id
        if previous and previous != channel_id:
            logger.info("User %s moved from channel %s to %s", user_id, previous, channel_id)
            return previous
        logger.info("User %s registered with channel %s", user_id, channel_id)
        return None

    def unregister(self, channel_id: str) -> List[str]:
        """Remove every mapping that holds *channel_id* and return the users it served."""

        with self._lock:
            removed = [user_id for user_id, current in self._channels.items() if current == channel_id]
            for user_id in removed:
                del self._channels[user_id]
        for user_id in removed:
            logger.info("Channel %s for user %s removed", channel_id, user_id)
        return removed

    def resolve(self, user_id: str) -> Optional[str]:
        with self._lock:
            return self._channels.get(user_id)

    def connected_users(self) -> List[str]:
        with self._lock:
            return list(self._channels)

    def __len__(self) -> int:
        with self._lock:
            return len(self._channels)
