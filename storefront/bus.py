"""
Storefront — イベントバス

コミット後のドメインイベントを Redis Pub/Sub の storefront_events チャネルに発行する。
発行はベストエフォート: 失敗してもコミット済みの状態は変わらないのでログに残すだけ。
"""

import json
import logging
from abc import ABC, abstractmethod

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .events import DomainEvent

logger = logging.getLogger(__name__)

CHANNEL = "storefront_events"


class EventBus(ABC):
    @abstractmethod
    async def publish(self, event: DomainEvent) -> None: ...


class RedisEventBus(EventBus):
    def __init__(self, redis: aioredis.Redis, channel: str = CHANNEL) -> None:
        self.redis = redis
        self.channel = channel

    async def publish(self, event: DomainEvent) -> None:
        message = json.dumps(
            {"event_type": event.event_type, "data": event.model_dump(mode="json")},
            default=str,
        )
        try:
            await self.redis.publish(self.channel, message)
        except RedisError:
            logger.exception("Failed to publish %s for order %s", event.event_type, event.order_id)


class InMemoryEventBus(EventBus):
    """単一プロセス・テスト用。発行されたイベントを保持する。"""

    def __init__(self) -> None:
        self.published: list[DomainEvent] = []

    async def publish(self, event: DomainEvent) -> None:
        self.published.append(event)
        logger.info("Published event: %s (order %s)", event.event_type, event.order_id)

    def of_type(self, event_type: type[DomainEvent]) -> list[DomainEvent]:
        return [e for e in self.published if type(e) is event_type]
