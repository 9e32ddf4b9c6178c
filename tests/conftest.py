"""
Yield Rebalancer Test Configuration
===================================
Shared fixtures: controllable clocks, in-memory store, scripted providers
and signer, and a zero-delay configuration.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

import pytest

from yield_rebalancer.account_registry import AccountRegistry
from yield_rebalancer.config import (
    ExecutionConfig,
    RebalanceConfig,
    SchedulerConfig,
)
from yield_rebalancer.custody_client import SigningService
from yield_rebalancer.kv_store import MemoryStore
from yield_rebalancer.models import Account, Opportunity, Position, StepOutcome, Vault, UNINVESTED
from yield_rebalancer.opportunity_evaluator import OpportunityEvaluator
from yield_rebalancer.providers import (
    BalanceProvider,
    PositionProvider,
    ProviderError,
    VaultCatalogProvider,
    WalletBalance,
)
from yield_rebalancer.rate_limiter import RateLimiter
from yield_rebalancer.rebalance_executor import RebalanceExecutor
from yield_rebalancer.rebalance_history import HistoryLog
from yield_rebalancer.rebalance_queue import RebalanceQueue


# ============================================================================
# PYTEST MARKERS
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: tests that wire the full engine together"
    )


# ============================================================================
# FAKES
# ============================================================================

class FakeClock:
    """Wall clock that only moves when told to"""

    def __init__(self, start: datetime = datetime(2024, 6, 1, 8, 0, tzinfo=timezone.utc)):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def time(self) -> float:
        return self.current.timestamp()

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


class FakeMonotonic:
    def __init__(self):
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


class FakeCatalog(VaultCatalogProvider):

    def __init__(self, vaults: Optional[List[Vault]] = None, error: Optional[str] = None):
        self.vaults = vaults or []
        self.error = error
        self.calls = 0

    async def list_eligible_vaults(self) -> List[Vault]:
        self.calls += 1
        if self.error:
            raise ProviderError(self.error)
        return list(self.vaults)


class FakePositions(PositionProvider):

    def __init__(self):
        self.positions: Dict[str, List[Position]] = {}
        self.failing: Set[str] = set()

    async def get_positions(self, account: str) -> List[Position]:
        if account in self.failing:
            raise ProviderError(f"positions unavailable for {account}")
        return list(self.positions.get(account, []))


class FakeBalances(BalanceProvider):

    def __init__(self):
        self.balances: Dict[str, WalletBalance] = {}
        self.on_call: Optional[Callable[[str], None]] = None

    async def get_spendable_balance(self, account: str, wallet_id: str) -> WalletBalance:
        if self.on_call is not None:
            self.on_call(account)
        return self.balances.get(account, WalletBalance(amount_raw=0, amount_usd=0.0))


class FakeSigner(SigningService):
    """
    Records every custody call

    failures maps an action to the error it returns; raises maps an action
    to an exception raised instead of returning.
    """

    def __init__(self):
        self.calls: List[Tuple[str, Dict]] = []
        self.failures: Dict[str, str] = {}
        self.raises: Dict[str, Exception] = {}
        self.on_call: Optional[Callable[[str], None]] = None

    def _record(self, action: str, **details) -> StepOutcome:
        self.calls.append((action, details))
        if self.on_call is not None:
            self.on_call(action)
        if action in self.raises:
            raise self.raises[action]
        if action in self.failures:
            return StepOutcome.failure(self.failures[action])
        return StepOutcome.success(f"0x{action}{len(self.calls)}")

    @property
    def actions(self) -> List[str]:
        return [action for action, _ in self.calls]

    async def submit_approve(self, wallet_id, account, spender, amount):
        return self._record('approve', wallet_id=wallet_id, account=account, spender=spender, amount=amount)

    async def submit_withdraw(self, wallet_id, account, protocol, vault, amount):
        return self._record('withdraw', wallet_id=wallet_id, account=account,
                            protocol=protocol, vault=vault, amount=amount)

    async def submit_deposit(self, wallet_id, account, protocol, vault, amount):
        return self._record('deposit', wallet_id=wallet_id, account=account,
                            protocol=protocol, vault=vault, amount=amount)


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


# ============================================================================
# SHARED FIXTURES
# ============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock.time)


@pytest.fixture
def config():
    """Reference policy with every wall-clock delay and the time budget disabled"""
    return RebalanceConfig(
        execution=ExecutionConfig(
            step_confirmation_delay=0.0,
            withdraw_confirmation_delay=0.0,
            pacing_delay=0.0,
        ),
        scheduler=SchedulerConfig(cycle_time_budget_seconds=None),
    )


@pytest.fixture
def best_vault():
    return Vault(
        protocol="morpho",
        address="0xB0000000000000000000000000000000000000B1",
        net_apy=0.08,
        total_assets_usd=5_000_000.0,
        name="Best USDC",
    )


@pytest.fixture
def catalog(best_vault):
    return FakeCatalog([best_vault])


@pytest.fixture
def positions():
    return FakePositions()


@pytest.fixture
def balances():
    return FakeBalances()


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def registry(store):
    return AccountRegistry(store)


@pytest.fixture
def evaluator(config, clock):
    return OpportunityEvaluator(config.policy, config.priority_weights, clock=clock.now)


@pytest.fixture
def rate_limiter(store, config, clock):
    return RateLimiter(
        store,
        cooldown_seconds=config.cooldown_seconds,
        max_moves_per_day=config.policy.max_moves_per_day,
        clock=clock.time,
    )


@pytest.fixture
def queue(store, clock):
    return RebalanceQueue(store, clock=clock.now)


@pytest.fixture
def history(store, config, clock):
    return HistoryLog(store, retention=config.history.retention, clock=clock.now)


@pytest.fixture
def executor(signer, queue, rate_limiter, history, config, sleep):
    return RebalanceExecutor(signer, queue, rate_limiter, history, config.execution, sleep=sleep)


@pytest.fixture
def make_position():
    def factory(
        vault_address: str = "0xA0000000000000000000000000000000000000A1",
        amount_usd: float = 10_000.0,
        current_apy: float = 0.03,
        protocol: str = "aave",
        shares: Optional[int] = None,
    ) -> Position:
        return Position(
            protocol=protocol,
            vault_address=vault_address,
            amount_raw=int(amount_usd * 1_000_000),
            amount_usd=amount_usd,
            current_apy=current_apy,
            shares=shares,
        )
    return factory


@pytest.fixture
def make_opportunity(clock):
    def factory(
        account: str = "0xACC1",
        priority: float = 100.0,
        amount_usd: float = 10_000.0,
        idle: bool = False,
        shares: Optional[int] = None,
        to_vault: str = "0xB0000000000000000000000000000000000000B1",
        created_at: Optional[datetime] = None,
    ) -> Opportunity:
        return Opportunity(
            account=account,
            wallet_id=f"wallet-{account}",
            from_protocol=UNINVESTED if idle else "aave",
            from_vault=UNINVESTED if idle else "0xA0000000000000000000000000000000000000A1",
            to_protocol="morpho",
            to_vault=to_vault,
            amount_raw=int(amount_usd * 1_000_000),
            amount_usd=amount_usd,
            current_apy=0.0 if idle else 0.03,
            target_apy=0.08,
            apy_diff=0.08 if idle else 0.05,
            expected_gain=1.0,
            expected_yearly_gain=amount_usd * 0.05,
            priority=priority,
            created_at=created_at or clock.now(),
            shares=shares,
        )
    return factory


@pytest.fixture
def account():
    return Account(address="0xACC1", wallet_id="wallet-0xACC1")
