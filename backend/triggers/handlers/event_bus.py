"""Redis pub/sub event source.

The Pipeline service publishes contact events on ``EVENT_CHANNEL`` as
JSON objects in the TriggerEvent wire form::

    {"type": "stage_changed", "organizationId": "org-1",
     "subjectId": "c-42", "payload": {"toStageId": "s-qualified"}}
"""

import asyncio
import json
import logging
from typing import Optional

from core.exceptions import ValidationError
from triggers.base import BaseEventSource, TriggerEvent

logger = logging.getLogger(__name__)


def decode_event(raw_data) -> Optional[TriggerEvent]:
    """Parse one pub/sub message body, or None if it is not a valid event."""
    try:
        if isinstance(raw_data, bytes):
            raw_data = raw_data.decode("utf-8")
        data = json.loads(raw_data) if raw_data else {}
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Discarding undecodable event message: %r", raw_data)
        return None
    if not isinstance(data, dict):
        logger.warning("Discarding non-object event message: %r", data)
        return None
    try:
        return TriggerEvent.from_dict(data)
    except ValidationError as exc:
        logger.warning("Discarding invalid event: %s", exc.message)
        return None


class RedisEventSource(BaseEventSource):
    """Subscribes to a Redis pub/sub channel and forwards every event."""

    name = "redis"

    def __init__(self, redis_url: str, channel: str):
        super().__init__()
        self.redis_url = redis_url
        self.channel = channel
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._listen_channel())
            logger.info("Started Redis subscriber for channel: %s", self.channel)

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            logger.info("Stopped Redis subscriber for channel: %s", self.channel)
        self._task = None

    async def _listen_channel(self):
        """Background task that listens to the Redis pub/sub channel."""
        import redis.asyncio as aioredis

        redis_client = aioredis.from_url(self.redis_url)
        pubsub = redis_client.pubsub()
        try:
            await pubsub.subscribe(self.channel)
            logger.info("Listening on Redis channel: %s", self.channel)

            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                event = decode_event(message["data"])
                if event is None or self._callback is None:
                    continue
                try:
                    await self._callback(event)
                except Exception as exc:
                    logger.error(
                        "Failed to handle event %s from channel %s: %s",
                        event.event_id,
                        self.channel,
                        exc,
                        exc_info=True,
                    )
        except asyncio.CancelledError:
            logger.info("Redis listener cancelled for channel: %s", self.channel)
            raise
        except Exception as exc:
            logger.error(
                "Redis listener error for channel %s: %s", self.channel, exc, exc_info=True
            )
        finally:
            await pubsub.close()
            await redis_client.aclose()
