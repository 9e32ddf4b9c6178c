"""
Rebalance Priority Queue

Durable, score-ordered queue of pending opportunities (higher priority
first). Membership is keyed by the opportunity's stable id; the serialized
payload is stored next to it, so removal never depends on the payload being
byte-identical to what was inserted.

Only score order is guaranteed; opportunities with equal scores come back
in an unspecified (but stable) order.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from loguru import logger

from .kv_store import KVStore
from .models import Opportunity, utc_now


QUEUE_KEY = "rebalance_queue"
ITEM_KEY = "rebalance_queue:item:{opportunity_id}"


@dataclass
class QueuedOpportunity:
    """Queue entry with its score and age, for inspection"""
    opportunity: Opportunity
    score: float
    age_seconds: float


class RebalanceQueue:
    """Priority queue of opportunities backed by a sorted set"""

    def __init__(self, store: KVStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self._clock = clock

    async def add(self, opportunity: Opportunity) -> bool:
        """
        Insert an opportunity scored by its priority

        Returns:
            True if newly queued, False if the same opportunity id was already queued
        """
        await self.store.set(
            ITEM_KEY.format(opportunity_id=opportunity.opportunity_id),
            opportunity.to_json()
        )
        added = await self.store.zadd(QUEUE_KEY, opportunity.opportunity_id, opportunity.priority)
        if not added:
            logger.debug(f"Opportunity {opportunity.opportunity_id} already queued, score refreshed")
        return bool(added)

    async def top(self, count: int = 5) -> List[Opportunity]:
        """Highest-priority opportunities (at most count), without removing them"""
        if count <= 0:
            return []
        entries = await self.store.zrevrange(QUEUE_KEY, 0, count - 1)
        opportunities = []
        for opportunity_id, _score in entries:
            opportunity = await self._load(opportunity_id)
            if opportunity is not None:
                opportunities.append(opportunity)
        return opportunities

    async def inspect(self, count: int = 20) -> List[QueuedOpportunity]:
        """Top entries with score and age"""
        now = self._clock()
        result = []
        for opportunity in await self.top(count):
            result.append(QueuedOpportunity(
                opportunity=opportunity,
                score=opportunity.priority,
                age_seconds=(now - opportunity.created_at).total_seconds(),
            ))
        return result

    async def remove(self, opportunity: Opportunity) -> bool:
        return await self.remove_by_id(opportunity.opportunity_id)

    async def remove_by_id(self, opportunity_id: str) -> bool:
        removed = await self.store.zrem(QUEUE_KEY, opportunity_id)
        await self.store.delete(ITEM_KEY.format(opportunity_id=opportunity_id))
        return bool(removed)

    async def contains(self, opportunity: Opportunity) -> bool:
        return await self.store.zscore(QUEUE_KEY, opportunity.opportunity_id) is not None

    async def size(self) -> int:
        return await self.store.zcard(QUEUE_KEY)

    async def clear(self) -> int:
        """Drop every queued opportunity"""
        entries = await self.store.zrevrange(QUEUE_KEY, 0, -1)
        for opportunity_id, _score in entries:
            await self.remove_by_id(opportunity_id)
        if entries:
            logger.info(f"Cleared {len(entries)} queued opportunities")
        return len(entries)

    async def _load(self, opportunity_id: str) -> Optional[Opportunity]:
        raw = await self.store.get(ITEM_KEY.format(opportunity_id=opportunity_id))
        if raw is None:
            # payload lost (e.g. partial write); drop the dangling id
            logger.warning(f"Queue entry {opportunity_id} has no payload, removing it")
            await self.store.zrem(QUEUE_KEY, opportunity_id)
            return None
        try:
            return Opportunity.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Unreadable queue entry {opportunity_id}: {e}, removing it")
            await self.remove_by_id(opportunity_id)
            return None
