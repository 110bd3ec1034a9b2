import json
import logging
from typing import AsyncGenerator, Awaitable, Callable
from uuid import UUID

from redis.asyncio import Redis
from redis.exceptions import RedisError

from packbattle.models.dc_models import BattleStatus
from packbattle.models.schema_models import BattleSchema

HEART_BEAT = 15


def battle_channel(battle_id: UUID) -> str:
    return f"battle:{battle_id}"


class BattleNotifier:
    """Publish battle lifecycle events on Redis and stream them as SSE."""

    def __init__(self, redis: Redis):
        self.redis = redis

    @classmethod
    def from_url(cls, url: str) -> "BattleNotifier":
        return cls(Redis.from_url(url, decode_responses=True, health_check_interval=30))

    async def close(self) -> None:
        await self.redis.aclose()

    async def publish(self, battle_id: UUID, event: str) -> None:
        """Publish an event for a battle. Failures are logged, never raised,
        because the state change they announce is already committed.

        Args:
            battle_id (UUID): To identify the channel
            event (str): joined, ready, unready, bots, finished
        """
        try:
            await self.redis.publish(battle_channel(battle_id), json.dumps({"event": event}))
        except RedisError as e:
            logging.error(f"Failed to publish {event} for battle {battle_id}: {e}")

    async def event_generator(
        self,
        battle_id: UUID,
        read_battle: Callable[[], Awaitable[BattleSchema]],
    ) -> AsyncGenerator[str, None]:
        """Event generator to handle SSE events.

        The current battle is sent first, then once more after every published
        event until the battle is finished.

        Args:
            battle_id (UUID): Battle to follow
            read_battle (Callable): Returns the latest BattleSchema
        """
        channel = battle_channel(battle_id)
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(channel)
        try:
            battle = await read_battle()
            yield f"event: battle_update\ndata: {battle.model_dump_json()}\n\n"
            while battle.status != BattleStatus.FINISHED:
                msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=HEART_BEAT)
                if msg is None:
                    yield ": heartbeat\n\n"
                    continue
                if msg["type"] != "message":
                    continue
                battle = await read_battle()
                payload = battle.model_dump_json()
                logging.debug(f"Payload: {payload}")
                yield f"event: battle_update\ndata: {payload}\n\n"
        finally:
            logging.info(f"Unsubscribing from {channel}")
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
