"""
Rebalance Executor

Runs one opportunity through the custody service as a strictly sequential
chain of steps:

Idle balance deposit:
1. Approve destination vault
2. Wait step confirmation delay
3. Deposit into destination vault

Vault-to-vault rebalance:
1. Withdraw from source vault (shares when known)
2. Wait withdraw confirmation delay
3. Approve destination vault
4. Wait step confirmation delay
5. Deposit into destination vault

The chain stops at the first failed step. Nothing is retried or rolled back:
funds stranded by a failed deposit sit in the wallet as idle balance and are
picked up by the next cycle. Whatever the outcome, the attempt is written to
the history log and the opportunity leaves the queue.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Tuple

from loguru import logger

from .config import ExecutionConfig
from .custody_client import SigningService
from .models import ExecutionResult, Opportunity, StepOutcome
from .rate_limiter import RateLimiter
from .rebalance_history import HistoryLog
from .rebalance_queue import RebalanceQueue


STEP_APPROVE = "approve"
STEP_WITHDRAW = "withdraw"
STEP_DEPOSIT = "deposit"

# (step name, custody call factory, delay after the step succeeds)
Step = Tuple[str, Callable[[], Awaitable[StepOutcome]], float]


class RebalanceExecutor:
    """Executes opportunities one step at a time through the signing service"""

    def __init__(
        self,
        signer: SigningService,
        queue: RebalanceQueue,
        rate_limiter: RateLimiter,
        history: HistoryLog,
        execution: Optional[ExecutionConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        """
        Initialize executor

        Args:
            signer: Custody service that submits the transactions
            queue: Priority queue the opportunity is removed from afterwards
            rate_limiter: Records successful moves
            history: Audit log of every attempt
            execution: Step delays
            sleep: Awaitable sleep (replaced in tests)
        """
        self.signer = signer
        self.queue = queue
        self.rate_limiter = rate_limiter
        self.history = history
        self.execution = execution or ExecutionConfig()
        self._sleep = sleep

    def _plan(self, opportunity: Opportunity) -> List[Step]:
        wallet_id = opportunity.wallet_id
        account = opportunity.account

        approve = (
            STEP_APPROVE,
            lambda: self.signer.submit_approve(wallet_id, account, opportunity.to_vault, opportunity.amount_raw),
            self.execution.step_confirmation_delay,
        )
        deposit = (
            STEP_DEPOSIT,
            lambda: self.signer.submit_deposit(
                wallet_id, account, opportunity.to_protocol, opportunity.to_vault, opportunity.amount_raw
            ),
            0.0,
        )

        if opportunity.is_idle_deposit:
            return [approve, deposit]

        withdraw = (
            STEP_WITHDRAW,
            lambda: self.signer.submit_withdraw(
                wallet_id, account, opportunity.from_protocol, opportunity.from_vault, opportunity.withdraw_amount
            ),
            self.execution.withdraw_confirmation_delay,
        )
        return [withdraw, approve, deposit]

    async def _run_steps(self, opportunity: Opportunity) -> ExecutionResult:
        step_references = {}
        steps = self._plan(opportunity)

        for index, (step_name, call, delay_after) in enumerate(steps, start=1):
            logger.info(f"  Step {index}/{len(steps)}: {step_name}...")
            try:
                outcome = await call()
            except Exception as e:
                # a signer that raises fails the current step
                logger.exception(f"Unexpected error during {step_name}")
                outcome = StepOutcome.failure(f"Unexpected error: {e}")

            if not outcome.ok:
                logger.error(f"✗ {step_name} failed: {outcome.error}")
                return ExecutionResult(
                    success=False,
                    error=outcome.error,
                    failed_step=step_name,
                    step_references=step_references,
                    completed_at=datetime.now(timezone.utc),
                )

            step_references[step_name] = outcome.reference
            logger.info(f"✓ {step_name} submitted: {outcome.reference}")

            if delay_after > 0 and index < len(steps):
                await self._sleep(delay_after)

        return ExecutionResult(
            success=True,
            reference=step_references.get(STEP_DEPOSIT),
            step_references=step_references,
            completed_at=datetime.now(timezone.utc),
        )

    async def execute(self, opportunity: Opportunity) -> ExecutionResult:
        """
        Execute one opportunity

        Args:
            opportunity: Opportunity popped from the queue (or evaluated just now)

        Returns:
            ExecutionResult (failed_step and partial references on failure)
        """
        kind = "idle deposit" if opportunity.is_idle_deposit else "rebalance"
        logger.info(f"Executing {kind} {opportunity.opportunity_id}")
        logger.info(f"  Account: {opportunity.account}")
        logger.info(f"  From: {opportunity.from_protocol} {opportunity.from_vault}")
        logger.info(f"  To: {opportunity.to_protocol} {opportunity.to_vault}")
        logger.info(f"  Amount: ${opportunity.amount_usd:,.2f} (+{opportunity.apy_diff * 100:.2f}% APY)")

        result = await self._run_steps(opportunity)

        try:
            if result.success:
                await self.rate_limiter.record_move(opportunity.account)
        finally:
            try:
                await self.history.append(opportunity, result)
            finally:
                await self.queue.remove(opportunity)

        if result.success:
            logger.info(f"✅ Rebalance completed: {result.reference}")
        else:
            logger.error(f"❌ Rebalance failed at {result.failed_step}: {result.error}")
            if result.step_references:
                logger.warning(f"⚠ Partial execution, reconcile manually: {result.step_references}")

        return result
