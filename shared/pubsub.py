from typing import Iterator, List, Optional

import redis

from .events import Event


def game_channel(game_id: str) -> str:
    return f"game:{game_id}:events"


class EventSubscription:
    """
    Handle for a stream of lifecycle events on one game.

    Releasing the handle (close(), or leaving the `with` block) ends the
    subscription.
    """

    def __init__(self, pubsub, game_id: str):
        self._pubsub = pubsub
        self.game_id = game_id
        self.closed = False

    def get(self, timeout: float = 1.0) -> Optional[Event]:
        if self.closed:
            return None
        message = self._pubsub.get_message(timeout=timeout)
        if message and message['type'] == 'message':
            return Event.from_json(message['data'])
        return None

    def __iter__(self) -> Iterator[Optional[Event]]:
        # Yields None on idle timeouts so callers can emit keepalives.
        while not self.closed:
            yield self.get(timeout=30)

    def close(self):
        if not self.closed:
            self.closed = True
            self._pubsub.unsubscribe()
            self._pubsub.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class EventBus:
    def publish(self, event: Event):
        raise NotImplementedError

    def subscribe(self, game_id: str) -> EventSubscription:
        raise NotImplementedError


class RedisEventBus(EventBus):
    """Publishes lifecycle events on per-game Redis channels and keeps a short log."""

    LOG_SIZE = 1000

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    def publish(self, event: Event):
        payload = event.to_json()
        self.redis.publish(game_channel(event.game_id), payload)
        key = f"game:{event.game_id}:event_log"
        self.redis.lpush(key, payload)
        self.redis.ltrim(key, 0, self.LOG_SIZE - 1)

    def subscribe(self, game_id: str) -> EventSubscription:
        pubsub = self.redis.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(game_channel(game_id))
        return EventSubscription(pubsub, game_id)

    def get_recent_events(self, game_id: str, count: int = 50) -> List[Event]:
        events_json = self.redis.lrange(f"game:{game_id}:event_log", 0, count - 1)
        return [Event.from_json(e) for e in events_json]
