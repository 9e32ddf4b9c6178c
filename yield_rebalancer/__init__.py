"""
Yield Rebalancer

Periodically moves each enrolled account's funds into the highest-yield
eligible vault when the move pays for itself.

Components:
- opportunity_evaluator: Profitability gate and priority scoring
- rate_limiter: Per-account cooldown and daily move cap
- rebalance_queue: Durable priority queue keyed by opportunity id
- rebalance_executor: Sequential withdraw / approve / deposit state machine
- rebalance_history: Bounded audit log with reporting statistics
- scheduler: Two-phase queued cycle and fused per-account cycle
- rebalance_integration: Wiring of all components from configuration
- worker: Cron-driven long-lived cycle runner
- kv_store: Memory, SQLite and Redis store backends

Cycle:
1. Rate-limit gate - skip accounts in cooldown or over the daily cap
2. Idle balance - deposit uninvested wallet balance first
3. Position check - yield delta, size and profitability gates
4. Queue - rank every accepted move across accounts
5. Execute - top N moves one at a time with pacing
6. Record - cooldown, daily count and history
"""

from .models import (
    Account,
    Decision,
    ExecutionResult,
    HistoryEntry,
    Opportunity,
    Position,
    StepOutcome,
    Vault,
    UNINVESTED,
)
from .config import (
    ConfigError,
    RebalanceConfig,
    configure_logging,
    load_config,
)
from .kv_store import (
    KVStore,
    MemoryStore,
    RedisStore,
    SqliteStore,
    StoreError,
    create_store,
)
from .account_registry import AccountRegistry
from .providers import (
    ProviderError,
    WalletBalance,
    HttpDataProvider,
)
from .custody_client import (
    SigningService,
    HttpCustodyClient,
    DryRunCustodyClient,
)
from .opportunity_evaluator import OpportunityEvaluator
from .rate_limiter import RateLimiter
from .rebalance_queue import RebalanceQueue
from .rebalance_executor import RebalanceExecutor
from .rebalance_history import HistoryLog
from .scheduler import (
    CycleSummary,
    FusedCycle,
    QueuedCycle,
    create_cycle,
)
from .rebalance_integration import RebalanceIntegration

__all__ = [
    # Data model
    'Account',
    'Decision',
    'ExecutionResult',
    'HistoryEntry',
    'Opportunity',
    'Position',
    'StepOutcome',
    'Vault',
    'UNINVESTED',

    # Configuration
    'ConfigError',
    'RebalanceConfig',
    'configure_logging',
    'load_config',

    # Storage
    'KVStore',
    'MemoryStore',
    'RedisStore',
    'SqliteStore',
    'StoreError',
    'create_store',
    'AccountRegistry',

    # External services
    'ProviderError',
    'WalletBalance',
    'HttpDataProvider',
    'SigningService',
    'HttpCustodyClient',
    'DryRunCustodyClient',

    # Engine
    'OpportunityEvaluator',
    'RateLimiter',
    'RebalanceQueue',
    'RebalanceExecutor',
    'HistoryLog',
    'CycleSummary',
    'FusedCycle',
    'QueuedCycle',
    'create_cycle',

    # Integration
    'RebalanceIntegration',
]

__version__ = '1.0.0'
__description__ = 'Automated yield rebalancing across lending vaults'
