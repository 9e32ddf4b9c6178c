"""
Rebalance Integration

Builds the complete engine from configuration and owns the lifecycle of
everything that holds a connection (store, HTTP sessions).

Dry run swaps the custody client for one that only logs, and keeps the
queue, rate-limit records and history in memory so a rehearsal never
blocks or pollutes live runs. Enrolled accounts are still read from the
configured store.
"""

from typing import Optional

from loguru import logger

from .account_registry import AccountRegistry
from .config import RebalanceConfig
from .custody_client import DryRunCustodyClient, HttpCustodyClient, SigningService
from .kv_store import KVStore, MemoryStore, create_store
from .opportunity_evaluator import OpportunityEvaluator
from .providers import BalanceProvider, HttpDataProvider, PositionProvider, VaultCatalogProvider
from .rate_limiter import RateLimiter
from .rebalance_executor import RebalanceExecutor
from .rebalance_history import HistoryLog
from .rebalance_queue import RebalanceQueue
from .scheduler import CycleSummary, QueuedCycle, RebalanceCycle, create_cycle


class RebalanceIntegration:
    """
    Fully wired rebalance engine

    Features:
    - Store, providers and custody client built from configuration
    - Either cycle strategy over the same components
    - Phase-only runs (check / execute) for the two-phase deployment
    - Single close() for every owned connection
    """

    def __init__(
        self,
        config: RebalanceConfig,
        store: KVStore,
        vault_catalog: VaultCatalogProvider,
        positions: PositionProvider,
        balances: BalanceProvider,
        signer: SigningService,
        state_store: Optional[KVStore] = None,
        dry_run: bool = False
    ):
        """
        Initialize integration

        Args:
            config: Complete configuration
            store: Durable store holding the account registry
            vault_catalog: Vault catalog provider
            positions: Position provider
            balances: Wallet balance provider
            signer: Custody service client
            state_store: Store for queue, rate limits and history (defaults to store)
            dry_run: True when the signer is a dry-run client
        """
        self.config = config
        self.store = store
        self.state_store = state_store or store
        self.vault_catalog = vault_catalog
        self.positions = positions
        self.balances = balances
        self.signer = signer
        self.dry_run = dry_run

        self.registry = AccountRegistry(store)
        self.evaluator = OpportunityEvaluator(config.policy, config.priority_weights)
        self.rate_limiter = RateLimiter(
            self.state_store,
            cooldown_seconds=config.cooldown_seconds,
            max_moves_per_day=config.policy.max_moves_per_day
        )
        self.queue = RebalanceQueue(self.state_store)
        self.history = HistoryLog(self.state_store, retention=config.history.retention)
        self.executor = RebalanceExecutor(
            signer, self.queue, self.rate_limiter, self.history, config.execution
        )

        logger.info(f"Rebalance integration initialized "
                    f"(store: {config.store.backend}, mode: {config.scheduler.mode}, dry_run: {dry_run})")

    @classmethod
    def from_config(cls, config: RebalanceConfig, dry_run: bool = False) -> "RebalanceIntegration":
        """Build every collaborator named in the configuration"""
        store = create_store(config.store.backend, path=config.store.path, url=config.store.url)

        data_provider = HttpDataProvider(
            config.providers.base_url,
            timeout_seconds=config.providers.timeout_seconds,
            min_vault_apy=config.providers.min_vault_apy,
            min_vault_tvl_usd=config.providers.min_vault_tvl_usd,
            asset_decimals=config.providers.asset_decimals,
        )

        if dry_run:
            signer: SigningService = DryRunCustodyClient()
            state_store: Optional[KVStore] = MemoryStore()
            logger.warning("⚡ DRY RUN: no transactions will be submitted")
        else:
            signer = HttpCustodyClient(
                config.custody.base_url,
                api_key=config.custody.api_key,
                chain_id=config.custody.chain_id,
                timeout_seconds=config.custody.timeout_seconds,
            )
            state_store = None

        return cls(
            config,
            store=store,
            vault_catalog=data_provider,
            positions=data_provider,
            balances=data_provider,
            signer=signer,
            state_store=state_store,
            dry_run=dry_run,
        )

    def build_cycle(self, mode: Optional[str] = None) -> RebalanceCycle:
        """Cycle strategy for the given mode (configured mode by default)"""
        return create_cycle(
            mode or self.config.scheduler.mode,
            self.registry,
            self.vault_catalog,
            self.positions,
            self.balances,
            self.evaluator,
            self.rate_limiter,
            self.executor,
            queue=self.queue,
            scheduler_config=self.config.scheduler,
            execution_config=self.config.execution,
        )

    def _queued_cycle(self) -> QueuedCycle:
        return QueuedCycle(
            self.registry,
            self.vault_catalog,
            self.positions,
            self.balances,
            self.evaluator,
            self.rate_limiter,
            self.executor,
            queue=self.queue,
            scheduler_config=self.config.scheduler,
            execution_config=self.config.execution,
        )

    async def run_cycle(self, mode: Optional[str] = None) -> CycleSummary:
        return await self.build_cycle(mode).run()

    async def check(self) -> CycleSummary:
        """Phase 1 only"""
        return await self._queued_cycle().check()

    async def execute(self, limit: Optional[int] = None) -> CycleSummary:
        """Phase 2 only"""
        return await self._queued_cycle().execute(limit)

    async def close(self):
        """Close every owned connection"""
        closed = set()
        for component in (self.vault_catalog, self.positions, self.balances, self.signer):
            if id(component) in closed:
                continue
            closed.add(id(component))
            close = getattr(component, 'close', None)
            if close is not None:
                await close()
        if self.state_store is not self.store:
            await self.state_store.close()
        await self.store.close()
        logger.info("✓ Rebalance integration closed")
