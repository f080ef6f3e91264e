"""
services/realtime/bridge.py
Change feed for seller applications and the bridge that keeps the
admin queue current.

Writers publish a small JSON notification on a Redis pub/sub channel
after each committed application insert or update. The bridge ignores
the notification body beyond its event type and re-fetches the full
applications and shops collections, so duplicate or out-of-order
notifications converge to the same snapshot.
"""

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from config.settings import settings

logger = logging.getLogger(__name__)

APPLICATIONS_TABLE = "seller_applications"
REFETCH_EVENTS = frozenset({"INSERT", "UPDATE"})


class ApplicationChangeFeed:
    """Publisher/subscriber for the seller_applications change channel."""

    def __init__(self, redis, channel: str = settings.APPLICATIONS_CHANNEL):
        self.redis = redis
        self.channel = channel

    async def publish(self, event: str, application_id: uuid.UUID) -> bool:
        """
        Announce a committed change. Returns False if the broker rejected it;
        the write it announces has already been committed either way.
        """
        message = json.dumps({
            "event": event,
            "table": APPLICATIONS_TABLE,
            "id": str(application_id),
        })
        try:
            await self.redis.publish(self.channel, message)
        except RedisError as e:
            logger.error(f"Failed to publish {event} for application {application_id}: {e}")
            return False
        return True

    @asynccontextmanager
    async def subscribe(self):
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.channel)
        logger.info(f"Subscribed to {self.channel}")
        try:
            yield pubsub
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()
            logger.info(f"Unsubscribed from {self.channel}")


def parse_change(message: Optional[dict]) -> Optional[dict]:
    """Decode a pub/sub message into a change dict, or None if it is not one."""
    if not message or message.get("type") != "message":
        return None
    data = message.get("data")
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    try:
        change = json.loads(data)
    except (TypeError, json.JSONDecodeError) as e:
        logger.error(f"Error decoding change notification: {e}")
        return None
    return change if isinstance(change, dict) else None


class RealtimeSyncBridge:
    """
    Pushes full snapshots to a subscriber: one on start, then one per
    relevant change notification.
    """

    def __init__(
        self,
        feed: ApplicationChangeFeed,
        fetch_snapshot: Callable[[], Awaitable[dict]],
        send: Callable[[dict], Awaitable[None]],
        poll_timeout: float = 1.0,
    ):
        self.feed = feed
        self.fetch_snapshot = fetch_snapshot
        self.send = send
        self.poll_timeout = poll_timeout
        self.snapshots_sent = 0

    async def push_snapshot(self) -> bool:
        """Fetch and send one snapshot. A failed read is logged and skipped."""
        try:
            snapshot = await self.fetch_snapshot()
        except SQLAlchemyError as e:
            logger.error(f"Error fetching queue snapshot, keeping the last one: {e}")
            return False
        await self.send(snapshot)
        self.snapshots_sent += 1
        return True

    async def handle_message(self, message: Optional[dict]) -> bool:
        """Re-fetch on INSERT/UPDATE. Returns True if a snapshot was pushed."""
        change = parse_change(message)
        if not change or change.get("event") not in REFETCH_EVENTS:
            return False
        logger.info(f"Application {change.get('event')} ({change.get('id')}), refreshing queue")
        return await self.push_snapshot()

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        """Run until cancelled or until `stop` is set."""
        # Subscribe before the first fetch so no change falls between them.
        async with self.feed.subscribe() as pubsub:
            await self.push_snapshot()
            try:
                while stop is None or not stop.is_set():
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=self.poll_timeout
                    )
                    if message:
                        await self.handle_message(message)
            except asyncio.CancelledError:
                logger.info("Realtime bridge cancelled")
                raise
