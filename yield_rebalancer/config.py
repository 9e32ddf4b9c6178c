"""
Rebalancer Configuration

Loads rebalance_config.yaml into typed sections. Every key is optional:
values missing from the file fall back to the defaults below, and custom
values are merged over them.

Secrets (custody API key, store URL) can also be supplied through the
environment (a .env file is honoured).
"""

import os
import sys
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Dict, List, Optional, Any

import yaml
from dotenv import load_dotenv
from loguru import logger


DEFAULT_CONFIG_PATH = "rebalance_config.yaml"

STORE_BACKENDS = ('memory', 'sqlite', 'redis')
SCHEDULER_MODES = ('queued', 'fused')


class ConfigError(ValueError):
    """Raised when the configuration file holds invalid values"""


@dataclass
class PolicyConfig:
    min_apy_delta: float = 0.005  # 0.5 percentage points
    min_position_usd: float = 100.0
    fixed_cost_usd: float = 0.10
    profit_multiplier: float = 3.0
    cooldown_hours: float = 12.0
    max_moves_per_day: int = 2
    idle_balance_threshold_usd: float = 1.0
    idle_priority: float = 1000.0


@dataclass
class PriorityWeights:
    expected_gain: float = 100.0
    position_size: float = 0.01
    apy_delta: float = 10000.0


@dataclass
class ExecutionConfig:
    step_confirmation_delay: float = 2.0
    withdraw_confirmation_delay: float = 3.0
    pacing_delay: float = 2.0
    execute_batch_size: int = 10


@dataclass
class SchedulerConfig:
    mode: str = 'queued'
    evaluation_batch_size: int = 10
    cycle_time_budget_seconds: Optional[float] = 270.0
    cron_hours: List[int] = field(default_factory=lambda: [6, 18])
    run_on_startup: bool = False


@dataclass
class HistoryConfig:
    retention: int = 1000


@dataclass
class StoreConfig:
    backend: str = 'sqlite'
    path: str = 'rebalancer_state.db'
    url: str = 'redis://localhost:6379/0'


@dataclass
class ProvidersConfig:
    base_url: str = 'http://localhost:3000'
    timeout_seconds: float = 15.0
    min_vault_apy: float = 0.01
    min_vault_tvl_usd: float = 1_000_000.0
    asset_decimals: int = 6


@dataclass
class CustodyConfig:
    base_url: str = 'http://localhost:8080'
    api_key: Optional[str] = None
    timeout_seconds: float = 30.0
    chain_id: int = 8453


@dataclass
class LoggingConfig:
    level: str = 'INFO'
    file: Optional[str] = None
    rotation: str = '10 MB'
    retention: str = '14 days'


@dataclass
class RebalanceConfig:
    """Complete rebalancer configuration"""
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    priority_weights: PriorityWeights = field(default_factory=PriorityWeights)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    custody: CustodyConfig = field(default_factory=CustodyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def cooldown_seconds(self) -> float:
        return self.policy.cooldown_hours * 3600

    def to_dict(self) -> Dict:
        return asdict(self)

    def validate(self):
        """Raise ConfigError on values the engine cannot run with"""
        if self.store.backend not in STORE_BACKENDS:
            raise ConfigError(f"Unknown store backend '{self.store.backend}' (expected one of {STORE_BACKENDS})")
        if self.scheduler.mode not in SCHEDULER_MODES:
            raise ConfigError(f"Unknown scheduler mode '{self.scheduler.mode}' (expected one of {SCHEDULER_MODES})")
        if self.scheduler.evaluation_batch_size < 1:
            raise ConfigError("scheduler.evaluation_batch_size must be >= 1")
        if self.execution.execute_batch_size < 1:
            raise ConfigError("execution.execute_batch_size must be >= 1")
        if self.history.retention < 1:
            raise ConfigError("history.retention must be >= 1")
        if self.policy.max_moves_per_day < 1:
            raise ConfigError("policy.max_moves_per_day must be >= 1")
        if self.policy.cooldown_hours < 0:
            raise ConfigError("policy.cooldown_hours must not be negative")
        if self.policy.min_apy_delta < 0:
            raise ConfigError("policy.min_apy_delta must not be negative")
        for name in ('step_confirmation_delay', 'withdraw_confirmation_delay', 'pacing_delay'):
            if getattr(self.execution, name) < 0:
                raise ConfigError(f"execution.{name} must not be negative")
        budget = self.scheduler.cycle_time_budget_seconds
        if budget is not None and budget <= 0:
            raise ConfigError("scheduler.cycle_time_budget_seconds must be positive")
        for hour in self.scheduler.cron_hours:
            if not 0 <= int(hour) <= 23:
                raise ConfigError(f"scheduler.cron_hours contains invalid hour {hour}")


def _build_section(section_cls, values: Optional[Dict[str, Any]], section_name: str):
    """Merge YAML values over a section's defaults, ignoring unknown keys"""
    known = {f.name for f in fields(section_cls)}
    values = values or {}
    if not isinstance(values, dict):
        raise ConfigError(f"Section '{section_name}' must be a mapping")

    unknown = set(values) - known
    if unknown:
        logger.warning(f"Ignoring unknown keys in '{section_name}': {sorted(unknown)}")

    custom = {k: v for k, v in values.items() if k in known}
    if custom:
        logger.debug(f"Loaded custom {section_name} settings: {custom}")
    return section_cls(**custom)


def _apply_env_overrides(config: RebalanceConfig):
    """Environment variables win over the YAML file for secrets and endpoints"""
    env_map = {
        'REBALANCE_STORE_URL': (config.store, 'url'),
        'REBALANCE_STORE_BACKEND': (config.store, 'backend'),
        'REBALANCE_PROVIDERS_URL': (config.providers, 'base_url'),
        'CUSTODY_BASE_URL': (config.custody, 'base_url'),
        'CUSTODY_API_KEY': (config.custody, 'api_key'),
    }
    for env_name, (section, attr) in env_map.items():
        value = os.environ.get(env_name)
        if value:
            setattr(section, attr, value)
            if 'KEY' not in env_name:
                logger.debug(f"Config override from {env_name}: {value}")


def load_config(config_path: Optional[str] = None) -> RebalanceConfig:
    """
    Load configuration from YAML

    Args:
        config_path: Path to config file (defaults to $REBALANCE_CONFIG or rebalance_config.yaml)

    Returns:
        RebalanceConfig with defaults for everything the file omits
    """
    load_dotenv()

    path = Path(config_path or os.environ.get('REBALANCE_CONFIG', DEFAULT_CONFIG_PATH))
    raw: Dict[str, Any] = {}

    if path.exists():
        try:
            with open(path, 'r', encoding='utf-8') as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse {path}: {e}") from e
        logger.info(f"Loaded rebalance config from {path}")
    else:
        logger.warning(f"Config file {path} not found, using defaults")

    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")

    kwargs = {}
    for section in fields(RebalanceConfig):
        # each section field's default_factory is the section dataclass itself
        kwargs[section.name] = _build_section(section.default_factory, raw.get(section.name), section.name)

    config = RebalanceConfig(**kwargs)
    _apply_env_overrides(config)
    config.validate()
    return config


def configure_logging(level: str = 'INFO', log_file: Optional[str] = None,
                      rotation: str = '10 MB', retention: str = '14 days'):
    """Replace loguru's default sink with stderr (+ optional rotating file)"""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
               "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
    )
    if log_file:
        logger.add(log_file, level=level.upper(), rotation=rotation, retention=retention, enqueue=True)
