"""
Rebalance History Log

Bounded, newest-first audit trail of every execution attempt (successful
or not). After each append the log is trimmed to the retention limit, so
the newest `retention` entries are all that is ever kept.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .kv_store import KVStore
from .models import ExecutionResult, HistoryEntry, Opportunity, utc_now


HISTORY_KEY = "rebalance_history"


class HistoryLog:
    """Capped append-only log of execution attempts"""

    def __init__(self, store: KVStore, retention: int = 1000,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.retention = retention
        self._clock = clock

    async def append(self, opportunity: Opportunity, result: ExecutionResult) -> HistoryEntry:
        """
        Record one execution attempt

        Args:
            opportunity: Opportunity that was executed
            result: Execution outcome

        Returns:
            The stored HistoryEntry
        """
        entry = HistoryEntry(opportunity=opportunity, result=result, executed_at=self._clock())
        await self.store.lpush(HISTORY_KEY, entry.to_json())
        await self.store.ltrim(HISTORY_KEY, 0, self.retention - 1)
        logger.debug(f"History entry added for {opportunity.opportunity_id} (success={result.success})")
        return entry

    async def recent(self, limit: int = 50) -> List[HistoryEntry]:
        """Newest entries first"""
        if limit <= 0:
            return []
        raw_entries = await self.store.lrange(HISTORY_KEY, 0, limit - 1)
        entries = []
        for raw in raw_entries:
            try:
                entries.append(HistoryEntry.from_json(raw))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping unreadable history entry: {e}")
        return entries

    async def size(self) -> int:
        return await self.store.llen(HISTORY_KEY)

    async def statistics(self, entries: Optional[List[HistoryEntry]] = None) -> Dict[str, Any]:
        """
        Aggregate statistics over the retained history

        Returns:
            Statistics dictionary
        """
        if entries is None:
            entries = await self.recent(self.retention)

        total = len(entries)
        successful = [e for e in entries if e.success]
        failed = total - len(successful)

        total_value_moved = sum(e.opportunity.amount_usd for e in successful)
        total_yearly_gain = sum(e.opportunity.expected_yearly_gain for e in successful)
        success_rate = (len(successful) / total * 100) if total > 0 else 0

        return {
            'total_executions': total,
            'successful_executions': len(successful),
            'failed_executions': failed,
            'success_rate': success_rate,
            'total_value_moved_usd': total_value_moved,
            'total_expected_yearly_gain_usd': total_yearly_gain,
        }

    async def print_statistics(self):
        """Print history statistics"""
        stats = await self.statistics()

        print("\n" + "=" * 80)
        print("REBALANCE STATISTICS")
        print("=" * 80)
        print(f"Total Executions:       {stats['total_executions']}")
        print(f"Successful:             {stats['successful_executions']}")
        print(f"Failed:                 {stats['failed_executions']}")
        print(f"Success Rate:           {stats['success_rate']:.1f}%")
        print(f"Total Value Moved:      ${stats['total_value_moved_usd']:,.2f}")
        print(f"Expected Yearly Gain:   ${stats['total_expected_yearly_gain_usd']:,.2f}")
        print("=" * 80 + "\n")
