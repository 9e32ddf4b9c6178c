"""
Opportunity Evaluator

Decides whether moving a position into the best available vault is worth it.

Checks (in order, first failure rejects):
1. Position already sits in the best vault
2. APY improvement below the minimum delta
3. Position below the minimum size
4. Gain accrued over one cooldown window below fixed cost x profit multiplier

Idle wallet balance takes a separate path: any balance above the idle
threshold becomes a deposit opportunity ranked above every ordinary
rebalance of the same size.
"""

from datetime import datetime
from typing import Callable, Optional

from loguru import logger

from .config import PolicyConfig, PriorityWeights
from .models import (
    Account,
    Decision,
    Opportunity,
    Position,
    Vault,
    UNINVESTED,
    utc_now,
)
from .providers import WalletBalance


class OpportunityEvaluator:
    """Pure evaluation and scoring of candidate moves"""

    def __init__(
        self,
        policy: Optional[PolicyConfig] = None,
        weights: Optional[PriorityWeights] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.policy = policy or PolicyConfig()
        self.weights = weights or PriorityWeights()
        self._clock = clock

    @property
    def profit_threshold(self) -> float:
        return self.policy.fixed_cost_usd * self.policy.profit_multiplier

    def expected_gain(self, amount_usd: float, apy_diff: float) -> float:
        """USD gained over one cooldown window (the earliest a next move could happen)"""
        return (amount_usd * apy_diff / 365) * (self.policy.cooldown_hours / 24)

    def priority_score(self, opportunity: Opportunity) -> float:
        """
        Deterministic priority of an opportunity (higher = more urgent)

        Weighted blend of near-term gain, position size and yield delta.
        Idle-balance deposits add the idle priority on top of the blend
        rather than replacing it with a flat constant: they still outrank any
        rebalance of a position of the same size into the same vault, and
        among themselves larger or higher-yield deposits come first.
        """
        score = (
            opportunity.expected_gain * self.weights.expected_gain
            + opportunity.amount_usd * self.weights.position_size
            + opportunity.apy_diff * self.weights.apy_delta
        )
        if opportunity.is_idle_deposit:
            score += self.policy.idle_priority
        return score

    def evaluate(self, position: Position, best_vault: Vault, account: Account) -> Decision:
        """
        Evaluate moving one position into the best vault

        Args:
            position: Current position
            best_vault: Highest-yield eligible vault this cycle
            account: Owner of the position

        Returns:
            Decision (accepted opportunity or rejection reason)
        """
        if best_vault.matches(position.vault_address):
            return Decision.reject("Already in best vault")

        apy_diff = best_vault.net_apy - position.current_apy
        if apy_diff < self.policy.min_apy_delta:
            return Decision.reject(f"APY difference too small ({apy_diff * 100:.2f}%)")

        if position.amount_usd < self.policy.min_position_usd:
            return Decision.reject(f"Position too small (${position.amount_usd:,.2f})")

        if position.amount_raw <= 0:
            return Decision.reject("Position has no withdrawable amount")

        expected_gain = self.expected_gain(position.amount_usd, apy_diff)
        if expected_gain < self.profit_threshold:
            return Decision.reject(
                f"Not profitable enough (expected ${expected_gain:.2f} "
                f"vs ${self.profit_threshold:.2f} threshold)"
            )

        opportunity = Opportunity(
            account=account.address,
            wallet_id=account.wallet_id,
            from_protocol=position.protocol,
            from_vault=position.vault_address,
            to_protocol=best_vault.protocol,
            to_vault=best_vault.target_address,
            amount_raw=position.amount_raw,
            amount_usd=position.amount_usd,
            current_apy=position.current_apy,
            target_apy=best_vault.net_apy,
            apy_diff=apy_diff,
            expected_gain=expected_gain,
            expected_yearly_gain=position.amount_usd * apy_diff,
            priority=0.0,
            created_at=self._clock(),
            shares=position.shares,
        )
        opportunity.priority = self.priority_score(opportunity)
        return Decision.accept(opportunity)

    def evaluate_idle_balance(self, balance: WalletBalance, best_vault: Vault, account: Account) -> Decision:
        """Turn idle wallet balance into a deposit opportunity"""
        threshold = self.policy.idle_balance_threshold_usd
        if balance.amount_usd <= threshold or balance.amount_raw <= 0:
            return Decision.reject(f"Idle balance ${balance.amount_usd:,.2f} not above ${threshold:,.2f}")

        apy_diff = best_vault.net_apy
        opportunity = Opportunity(
            account=account.address,
            wallet_id=account.wallet_id,
            from_protocol=UNINVESTED,
            from_vault=UNINVESTED,
            to_protocol=best_vault.protocol,
            to_vault=best_vault.target_address,
            amount_raw=balance.amount_raw,
            amount_usd=balance.amount_usd,
            current_apy=0.0,
            target_apy=best_vault.net_apy,
            apy_diff=apy_diff,
            expected_gain=self.expected_gain(balance.amount_usd, apy_diff),
            expected_yearly_gain=balance.amount_usd * apy_diff,
            priority=0.0,
            created_at=self._clock(),
        )
        opportunity.priority = self.priority_score(opportunity)
        logger.debug(f"Idle balance opportunity for {account.address}: ${balance.amount_usd:,.2f}")
        return Decision.accept(opportunity)
