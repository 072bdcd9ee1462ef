"""
Redis persistence for cart snapshots.

A snapshot is the JSON document ``{items, timestamp, version}``. Snapshots
older than ``CART_TTL_DAYS`` are dropped in full on load; Redis also
expires the key on its own after the same period.
"""
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional
import redis

from .config import CART_TTL_SECONDS, REDIS_URL

logger = logging.getLogger(__name__)

# Initialize Redis client
redis_client = redis.from_url(REDIS_URL, decode_responses=True)

CART_KEY_PREFIX = "cart"
SNAPSHOT_VERSION = "2.0"


def cart_key(cart_id: str) -> str:
    return f"{CART_KEY_PREFIX}:{cart_id}"


class RedisCartStore:
    """
    Saves and restores cart snapshots.

    Args:
        client: Redis client (defaults to the module-level client)
        ttl_seconds: Maximum snapshot age
        clock: Returns the current UNIX time in seconds
    """

    def __init__(self, client=None, ttl_seconds: int = CART_TTL_SECONDS,
                 clock: Callable[[], float] = time.time):
        self.client = client if client is not None else redis_client
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def save(self, cart_id: str, items: List[Dict[str, Any]]) -> bool:
        """
        Write a snapshot of the cart lines with the current timestamp.

        Returns:
            True if successful, False otherwise
        """
        snapshot = {
            "items": items,
            "timestamp": self.clock(),
            "version": SNAPSHOT_VERSION,
        }
        try:
            self.client.setex(cart_key(cart_id), self.ttl_seconds, json.dumps(snapshot))
            return True
        except redis.RedisError as e:
            logger.warning(f"Failed to save cart {cart_id}: {e}")
            return False

    def load(self, cart_id: str) -> Optional[Dict[str, Any]]:
        """
        Read a snapshot back.

        Returns:
            The snapshot, or None when it is missing, unreadable or expired
        """
        try:
            raw = self.client.get(cart_key(cart_id))
        except redis.RedisError as e:
            logger.warning(f"Failed to load cart {cart_id}: {e}")
            return None

        if not raw:
            return None

        try:
            snapshot = json.loads(raw)
            timestamp = float(snapshot["timestamp"])
            items = snapshot["items"]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable cart snapshot {cart_id}: {e}")
            self.delete(cart_id)
            return None

        if self.clock() - timestamp > self.ttl_seconds:
            logger.info(f"Discarding expired cart snapshot {cart_id}")
            self.delete(cart_id)
            return None

        if not isinstance(items, list):
            self.delete(cart_id)
            return None

        return snapshot

    def delete(self, cart_id: str) -> bool:
        try:
            self.client.delete(cart_key(cart_id))
            return True
        except redis.RedisError as e:
            logger.warning(f"Failed to delete cart {cart_id}: {e}")
            return False
