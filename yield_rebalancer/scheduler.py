"""
Rebalance Cycle Strategies

One cycle = evaluate every enrolled account against the cycle's best vault,
then execute what was found. Two interchangeable strategies share the same
evaluator/executor primitives:

- QueuedCycle (two-phase): Phase 1 evaluates accounts in concurrent batches
  and inserts accepted opportunities into the durable priority queue;
  Phase 2 executes the top N queued opportunities one at a time with a
  pacing delay between them. Cross-account prioritization by score.
- FusedCycle: evaluate one account, execute its opportunities immediately,
  move on. No queue; opportunities run in discovery order.

Failures are isolated per account and per opportunity; a cycle never raises
for them and reports them in its CycleSummary instead.

Overlapping cycles are not guarded against here: the cooldown check and the
queue insert are separate store operations, so two concurrent cycles could
queue the same account twice. The worker runs at most one cycle at a time.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from loguru import logger

from .account_registry import AccountRegistry
from .config import ExecutionConfig, SchedulerConfig
from .models import Account, AccountEvaluation, Opportunity, Vault
from .opportunity_evaluator import OpportunityEvaluator
from .providers import (
    BalanceProvider,
    PositionProvider,
    ProviderError,
    VaultCatalogProvider,
)
from .rate_limiter import RateLimiter
from .rebalance_executor import RebalanceExecutor
from .rebalance_queue import RebalanceQueue


@dataclass
class CycleSummary:
    """Aggregate outcome of one cycle (or one phase of it)"""
    mode: str
    users_checked: int = 0
    opportunities_found: int = 0
    skipped: int = 0
    executed: int = 0
    failed: int = 0
    total_value_moved_usd: float = 0.0
    errors: List[str] = field(default_factory=list)
    budget_exhausted: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['started_at'] = self.started_at.isoformat()
        data['finished_at'] = self.finished_at.isoformat() if self.finished_at else None
        data['duration_seconds'] = self.duration_seconds
        return data


class RebalanceCycle(ABC):
    """Shared evaluation/execution plumbing for the cycle strategies"""

    mode = ""

    def __init__(
        self,
        registry: AccountRegistry,
        vault_catalog: VaultCatalogProvider,
        positions: PositionProvider,
        balances: BalanceProvider,
        evaluator: OpportunityEvaluator,
        rate_limiter: RateLimiter,
        executor: RebalanceExecutor,
        scheduler_config: Optional[SchedulerConfig] = None,
        execution_config: Optional[ExecutionConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic
    ):
        self.registry = registry
        self.vault_catalog = vault_catalog
        self.positions = positions
        self.balances = balances
        self.evaluator = evaluator
        self.rate_limiter = rate_limiter
        self.executor = executor
        self.scheduler_config = scheduler_config or SchedulerConfig()
        self.execution_config = execution_config or ExecutionConfig()
        self._sleep = sleep
        self._monotonic = monotonic
        self._deadline: Optional[float] = None

    @abstractmethod
    async def run(self) -> CycleSummary:
        """Run one full cycle"""

    # ---- time budget -------------------------------------------------

    def _start_budget(self):
        budget = self.scheduler_config.cycle_time_budget_seconds
        self._deadline = self._monotonic() + budget if budget else None

    def _budget_exhausted(self, summary: CycleSummary) -> bool:
        if self._deadline is None or self._monotonic() < self._deadline:
            return False
        if not summary.budget_exhausted:
            logger.warning("⏱ Cycle time budget exhausted, remaining work deferred to next cycle")
        summary.budget_exhausted = True
        return True

    # ---- phase 1 -----------------------------------------------------

    async def _load_inputs(self, summary: CycleSummary) -> Tuple[List[Account], Optional[Vault]]:
        """Enrolled accounts and the single best-vault snapshot for this cycle"""
        accounts = await self.registry.list_enrolled_accounts()
        logger.info(f"Found {len(accounts)} users with auto-balance enabled")
        if not accounts:
            return accounts, None

        try:
            best_vault = await self.vault_catalog.get_best_vault()
        except ProviderError as e:
            summary.errors.append(f"Vault catalog unavailable: {e}")
            logger.error(f"✗ Failed to fetch vaults: {e}")
            return accounts, None
        except Exception as e:
            logger.exception("Unexpected error fetching vaults")
            summary.errors.append(f"Vault catalog unavailable: unexpected error: {e}")
            return accounts, None

        if best_vault is None:
            summary.errors.append("No eligible vaults available")
            logger.error("✗ No eligible vaults available")
            return accounts, None

        logger.info(f"Best vault: {best_vault.name or best_vault.target_address} "
                    f"with {best_vault.net_apy * 100:.2f}% APY")
        return accounts, best_vault

    async def _evaluate_account(self, account: Account, best_vault: Vault) -> AccountEvaluation:
        """
        Rate-limit gate, idle balance, then every position of one account

        Provider failures abandon the account for this cycle; nothing found
        for it before the failure is kept.
        """
        evaluation = AccountEvaluation(account=account.address)

        gate = await self.rate_limiter.can_submit(account.address)
        if not gate.allowed:
            logger.info(f"⏭️  Skipping {account.address}: {gate.reason}")
            evaluation.skipped = 1
            evaluation.reasons.append(gate.reason)
            return evaluation

        try:
            balance = await self.balances.get_spendable_balance(account.address, account.wallet_id)
            idle = self.evaluator.evaluate_idle_balance(balance, best_vault, account)
            if idle.accepted:
                logger.info(f"💵 {account.address} has ${balance.amount_usd:,.2f} idle, creating deposit opportunity")
                evaluation.opportunities.append(idle.opportunity)

            for position in await self.positions.get_positions(account.address):
                decision = self.evaluator.evaluate(position, best_vault, account)
                if decision.accepted:
                    logger.info(f"💰 Opportunity for {account.address}: "
                                f"{decision.opportunity.apy_diff * 100:.2f}% APY improvement")
                    evaluation.opportunities.append(decision.opportunity)
                else:
                    logger.info(f"⏭️  {account.address} {position.protocol}:{position.vault_address}: {decision.reason}")
                    evaluation.skipped += 1
                    evaluation.reasons.append(decision.reason)
        except ProviderError as e:
            logger.error(f"✗ Error processing user {account.address}: {e}")
            evaluation.opportunities = []
            evaluation.error = f"{account.address}: {e}"
        except Exception as e:
            logger.exception(f"Unexpected error processing user {account.address}")
            evaluation.opportunities = []
            evaluation.error = f"{account.address}: unexpected error: {e}"

        return evaluation

    def _tally_evaluation(self, evaluation: AccountEvaluation, summary: CycleSummary):
        summary.users_checked += 1
        summary.skipped += evaluation.skipped
        summary.opportunities_found += len(evaluation.opportunities)
        if evaluation.error:
            summary.errors.append(evaluation.error)

    # ---- phase 2 -----------------------------------------------------

    async def _execute_one(self, opportunity: Opportunity, summary: CycleSummary):
        try:
            result = await self.executor.execute(opportunity)
        except Exception as e:
            logger.exception(f"Execution of {opportunity.opportunity_id} raised")
            summary.failed += 1
            summary.errors.append(f"{opportunity.account}: {e}")
            return

        if result.success:
            summary.executed += 1
            summary.total_value_moved_usd += opportunity.amount_usd
        else:
            summary.failed += 1
            summary.errors.append(f"{opportunity.account}: {result.failed_step} failed: {result.error}")

    async def _execute_sequentially(self, opportunities: List[Opportunity], summary: CycleSummary,
                                    paced_before: bool = False) -> bool:
        """
        Execute in order with the pacing delay between executions

        Returns:
            True if an execution ran (so the next call must pace before its first one)
        """
        ran = paced_before
        for opportunity in opportunities:
            if self._budget_exhausted(summary):
                break
            if ran and self.execution_config.pacing_delay > 0:
                await self._sleep(self.execution_config.pacing_delay)
            await self._execute_one(opportunity, summary)
            ran = True
        return ran

    def _finish(self, summary: CycleSummary) -> CycleSummary:
        summary.finished_at = datetime.now(timezone.utc)
        logger.info(
            f"✅ Cycle complete ({summary.mode}): {summary.users_checked} users checked, "
            f"{summary.opportunities_found} opportunities, {summary.skipped} skipped, "
            f"{summary.executed} executed, {summary.failed} failed, "
            f"${summary.total_value_moved_usd:,.2f} moved in {summary.duration_seconds:.1f}s"
        )
        for error in summary.errors:
            logger.warning(f"  ✗ {error}")
        return summary


class QueuedCycle(RebalanceCycle):
    """Two-phase cycle: evaluate into the priority queue, then drain its top"""

    mode = "queued"

    def __init__(self, *args, queue: RebalanceQueue, **kwargs):
        super().__init__(*args, **kwargs)
        self.queue = queue

    async def check(self, summary: Optional[CycleSummary] = None) -> CycleSummary:
        """Phase 1: evaluate accounts in concurrent batches and queue opportunities"""
        own_summary = summary is None
        if own_summary:
            summary = CycleSummary(mode=f"{self.mode}:check")
            self._start_budget()

        logger.info("🔍 Phase 1: Checking for rebalance opportunities...")
        accounts, best_vault = await self._load_inputs(summary)

        if best_vault is not None:
            batch_size = self.scheduler_config.evaluation_batch_size
            for start in range(0, len(accounts), batch_size):
                if self._budget_exhausted(summary):
                    break
                batch = accounts[start:start + batch_size]
                evaluations = await asyncio.gather(
                    *(self._evaluate_account(account, best_vault) for account in batch)
                )
                for evaluation in evaluations:
                    self._tally_evaluation(evaluation, summary)
                    for opportunity in evaluation.opportunities:
                        await self.queue.add(opportunity)

        logger.info(f"Check complete: {summary.opportunities_found} opportunities found, "
                    f"{summary.skipped} skipped")
        return self._finish(summary) if own_summary else summary

    async def execute(self, limit: Optional[int] = None,
                      summary: Optional[CycleSummary] = None) -> CycleSummary:
        """Phase 2: execute the top queued opportunities one at a time"""
        own_summary = summary is None
        if own_summary:
            summary = CycleSummary(mode=f"{self.mode}:execute")
            self._start_budget()

        if limit is None:
            limit = self.execution_config.execute_batch_size
        logger.info("🚀 Phase 2: Executing rebalances...")

        jobs = await self.queue.top(limit)
        if not jobs:
            logger.info("No rebalances to execute")
        else:
            logger.info(f"Found {len(jobs)} rebalances to execute")
            await self._execute_sequentially(jobs, summary)

        return self._finish(summary) if own_summary else summary

    async def run(self) -> CycleSummary:
        summary = CycleSummary(mode=self.mode)
        self._start_budget()
        await self.check(summary)
        await self.execute(summary=summary)
        return self._finish(summary)


class FusedCycle(RebalanceCycle):
    """Per-account evaluate-then-execute loop without a queue"""

    mode = "fused"

    async def run(self) -> CycleSummary:
        summary = CycleSummary(mode=self.mode)
        self._start_budget()

        accounts, best_vault = await self._load_inputs(summary)
        if best_vault is None:
            return self._finish(summary)

        paced = False
        for account in accounts:
            if self._budget_exhausted(summary):
                break
            evaluation = await self._evaluate_account(account, best_vault)
            self._tally_evaluation(evaluation, summary)
            paced = await self._execute_sequentially(evaluation.opportunities, summary, paced_before=paced)

        return self._finish(summary)


def create_cycle(mode: str, *args, queue: Optional[RebalanceQueue] = None, **kwargs) -> RebalanceCycle:
    """Build the cycle strategy for a scheduler mode"""
    if mode == QueuedCycle.mode:
        if queue is None:
            raise ValueError("queued mode requires a RebalanceQueue")
        return QueuedCycle(*args, queue=queue, **kwargs)
    if mode == FusedCycle.mode:
        return FusedCycle(*args, **kwargs)
    raise ValueError(f"Unknown scheduler mode: {mode}")
