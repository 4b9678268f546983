import logging
from typing import List, Optional

import redis

from .events import ActivityEvent

logger = logging.getLogger(__name__)


class ActivityPublisher:
    """
    Fans activity events out over Redis pub/sub and keeps a capped log per
    event so late joiners can catch up. With no Redis client configured every
    call is a no-op.
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None, log_size: int = 1000):
        self.redis = redis_client
        self.log_size = log_size

    @staticmethod
    def channel(event_id: int) -> str:
        return f"event:{event_id}:activity"

    @staticmethod
    def log_key(event_id: int) -> str:
        return f"event:{event_id}:activity_log"

    def publish(self, event: ActivityEvent):
        if self.redis is None:
            logger.debug(f"Activity {event.to_dict()['type']} for event {event.event_id} (no Redis)")
            return

        payload = event.to_json()
        try:
            self.redis.publish(self.channel(event.event_id), payload)
            key = self.log_key(event.event_id)
            self.redis.lpush(key, payload)
            self.redis.ltrim(key, 0, self.log_size - 1)
        except redis.RedisError as e:
            # Activity is best effort; the state change is already committed.
            logger.warning(f"Failed to publish activity for event {event.event_id}: {e}")

    def recent(self, event_id: int, count: int = 50) -> List[ActivityEvent]:
        if self.redis is None:
            return []
        events_json = self.redis.lrange(self.log_key(event_id), 0, count - 1)
        return [ActivityEvent.from_json(e) for e in events_json]
