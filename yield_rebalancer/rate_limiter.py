"""
Rate Limiter / Cooldown Policy

Per-account gate checked before an account is even evaluated:
- cooldown: minimum interval since the last successful move
- daily cap: maximum successful moves per UTC calendar day

State lives in the durable store (one timestamp and one day-scoped counter
per account); only a successful execution updates it.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from loguru import logger

from .kv_store import KVStore


LAST_MOVE_KEY = "user:last_rebalance:{account}"
DAILY_COUNT_KEY = "user:rebalance_count:{account}:{day}"

DAY_SECONDS = 24 * 60 * 60


@dataclass
class RateLimitDecision:
    allowed: bool
    reason: Optional[str] = None


class RateLimiter:
    """Cooldown + daily cap for automated moves"""

    def __init__(
        self,
        store: KVStore,
        cooldown_seconds: float = 12 * 60 * 60,
        max_moves_per_day: int = 2,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize rate limiter

        Args:
            store: Durable store holding the rate-limit records
            cooldown_seconds: Minimum time between two successful moves
            max_moves_per_day: Daily cap on successful moves
            clock: Unix-time source
        """
        self.store = store
        self.cooldown_seconds = cooldown_seconds
        self.max_moves_per_day = max_moves_per_day
        self._clock = clock

    def _day(self, now: float) -> str:
        return datetime.fromtimestamp(now, tz=timezone.utc).strftime('%Y-%m-%d')

    async def can_submit(self, account: str) -> RateLimitDecision:
        """Check whether the account may be evaluated for a move right now"""
        now = self._clock()

        last_move = await self.store.get(LAST_MOVE_KEY.format(account=account))
        if last_move is not None:
            elapsed = now - float(last_move)
            if elapsed < self.cooldown_seconds:
                remaining = self.cooldown_seconds - elapsed
                return RateLimitDecision(
                    allowed=False,
                    reason=(f"Cooldown active (last move {elapsed / 60:.0f} min ago, "
                            f"{remaining / 60:.0f} min remaining)")
                )

        daily_count = await self.store.get(DAILY_COUNT_KEY.format(account=account, day=self._day(now)))
        count = int(daily_count) if daily_count is not None else 0
        if count >= self.max_moves_per_day:
            return RateLimitDecision(
                allowed=False,
                reason=f"Max moves per day reached ({count}/{self.max_moves_per_day})"
            )

        return RateLimitDecision(allowed=True)

    async def record_move(self, account: str) -> int:
        """
        Record a successful move

        Returns:
            Number of moves recorded for the account today
        """
        now = self._clock()
        await self.store.set(LAST_MOVE_KEY.format(account=account), repr(now))
        count = await self.store.incr(
            DAILY_COUNT_KEY.format(account=account, day=self._day(now)),
            ex=DAY_SECONDS
        )
        logger.debug(f"Recorded move for {account} ({count} today)")
        return count
