"""Redis pub/sub broadcaster for aggregated vehicle positions."""

import asyncio
import logging

import orjson
import redis.asyncio as aioredis

from crowdbus.config import settings

logger = logging.getLogger(__name__)

CHANNEL = "crowdbus:positions"
STATE_KEY = "crowdbus:state"


class Broadcaster:
    """Publishes positions to Redis and manages WebSocket subscribers.

    Fire-and-forget: a failed publish is logged and never reaches the caller.
    """

    def __init__(self, redis: aioredis.Redis | None = None) -> None:
        self._redis = redis
        self._subscribers: set[asyncio.Queue] = set()

    async def connect(self) -> None:
        self._redis = aioredis.from_url(settings.redis_url, decode_responses=False)

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()

    async def publish(self, position: dict) -> None:
        """Publish one vehicle position and fan it out to WebSocket subscribers."""
        payload = orjson.dumps({"type": "update", "positions": [position]})

        if self._redis:
            try:
                # Latest position per vehicle, for new connections
                await self._redis.hset(STATE_KEY, position["vehicle_id"], orjson.dumps(position))
                await self._redis.publish(CHANNEL, payload)
            except Exception:
                logger.exception("Failed to publish position for %s", position.get("vehicle_id"))

        dead = set()
        for q in self._subscribers:
            try:
                q.put_nowait(payload)
            except asyncio.QueueFull:
                dead.add(q)
        self._subscribers -= dead

    async def get_current_state(self) -> bytes | None:
        """Snapshot of the latest position of every vehicle."""
        if self._redis:
            try:
                state = await self._redis.hgetall(STATE_KEY)
            except Exception:
                logger.exception("Failed to get state from Redis")
                return None
            positions = [orjson.loads(v) for _, v in sorted(state.items())]
            return orjson.dumps({"type": "snapshot", "positions": positions})
        return None

    def subscribe(self) -> asyncio.Queue:
        """Create a new subscriber queue for WebSocket fan-out."""
        q: asyncio.Queue = asyncio.Queue(maxsize=10)
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._subscribers.discard(q)
