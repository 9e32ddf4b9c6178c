"""
Rebalancer Data Model

Plain dataclasses shared by every stage of the rebalance pipeline:
- Vault / Position / Account: read-only inputs supplied by external providers
- Opportunity: candidate fund move (created by the evaluator, queued, executed)
- Decision: evaluator verdict (accepted opportunity or rejection reason)
- StepOutcome: result of one custody call (Ok(reference) | Err(error))
- ExecutionResult / HistoryEntry: executor output and its audit record
"""

import hashlib
import json
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Dict, Optional, List, Any


# Sentinel source for moves that deploy idle wallet balance
UNINVESTED = "uninvested"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


@dataclass
class Vault:
    """Destination candidate reported by the vault catalog"""
    protocol: str
    address: str
    net_apy: float
    total_assets_usd: float
    name: str = ""
    market_address: Optional[str] = None

    @property
    def target_address(self) -> str:
        """Address that receives approvals and deposits"""
        return self.market_address or self.address

    def matches(self, address: Optional[str]) -> bool:
        if not address:
            return False
        candidates = {self.address.lower()}
        if self.market_address:
            candidates.add(self.market_address.lower())
        return address.lower() in candidates

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Vault":
        return cls(
            protocol=data['protocol'],
            address=data['address'],
            net_apy=float(data.get('net_apy', data.get('netApy', 0.0))),
            total_assets_usd=float(data.get('total_assets_usd', data.get('totalAssetsUsd', 0.0))),
            name=data.get('name', ''),
            market_address=data.get('market_address', data.get('marketAddress')),
        )

    def __repr__(self):
        return f"Vault({self.protocol}:{self.target_address[:10]} {self.net_apy * 100:.2f}%)"


@dataclass
class Position:
    """Account stake in one vault"""
    protocol: str
    vault_address: str
    amount_raw: int
    amount_usd: float
    current_apy: float
    position_id: str = ""
    shares: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        deposited = data.get('deposited', {})
        shares = data.get('shares')
        return cls(
            protocol=data['protocol'],
            vault_address=data.get('vault_address', data.get('vaultAddress')),
            amount_raw=int(data.get('amount_raw', deposited.get('amount', 0))),
            amount_usd=float(data.get('amount_usd', deposited.get('usd', 0.0))),
            current_apy=float(data.get('current_apy', data.get('currentApy', 0.0))),
            position_id=str(data.get('position_id', data.get('id', ''))),
            shares=int(shares) if shares is not None else None,
        )


@dataclass
class Account:
    """Enrolled account and the custody wallet that signs for it"""
    address: str
    wallet_id: str


@dataclass
class Opportunity:
    """
    Candidate fund move from a source (vault or idle balance) to a better vault

    opportunity_id is derived from account, vault pair and creation time when
    the opportunity is created and never changes afterwards; the queue is keyed
    by it.
    """
    account: str
    wallet_id: str
    from_protocol: str
    from_vault: str
    to_protocol: str
    to_vault: str
    amount_raw: int
    amount_usd: float
    current_apy: float
    target_apy: float
    apy_diff: float
    expected_gain: float
    expected_yearly_gain: float
    priority: float
    created_at: datetime = field(default_factory=utc_now)
    shares: Optional[int] = None
    opportunity_id: str = ""

    def __post_init__(self):
        if not self.opportunity_id:
            self.opportunity_id = self.make_id(
                self.account, self.from_vault, self.to_vault, self.created_at
            )

    @staticmethod
    def make_id(account: str, from_vault: str, to_vault: str, created_at: datetime) -> str:
        raw = f"{account.lower()}|{from_vault.lower()}|{to_vault.lower()}|{created_at.isoformat()}"
        return hashlib.sha256(raw.encode('utf-8')).hexdigest()[:24]

    @property
    def is_idle_deposit(self) -> bool:
        return self.from_protocol == UNINVESTED

    @property
    def withdraw_amount(self) -> int:
        """Share amount when the source vault reports shares, raw amount otherwise"""
        return self.shares if self.shares is not None else self.amount_raw

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Opportunity":
        data = dict(data)
        data['created_at'] = _parse_dt(data['created_at'])
        return cls(**data)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "Opportunity":
        return cls.from_dict(json.loads(raw))


@dataclass
class Decision:
    """Evaluator verdict: accepted opportunity or rejection reason"""
    accepted: bool
    opportunity: Optional[Opportunity] = None
    reason: Optional[str] = None

    @classmethod
    def accept(cls, opportunity: Opportunity) -> "Decision":
        return cls(accepted=True, opportunity=opportunity)

    @classmethod
    def reject(cls, reason: str) -> "Decision":
        return cls(accepted=False, reason=reason)


@dataclass
class StepOutcome:
    """Outcome of a single custody call"""
    ok: bool
    reference: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, reference: str) -> "StepOutcome":
        return cls(ok=True, reference=reference)

    @classmethod
    def failure(cls, error: str) -> "StepOutcome":
        return cls(ok=False, error=error)


@dataclass
class ExecutionResult:
    """Result of executing one opportunity"""
    success: bool
    reference: Optional[str] = None
    error: Optional[str] = None
    failed_step: Optional[str] = None
    step_references: Dict[str, str] = field(default_factory=dict)
    completed_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['completed_at'] = self.completed_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionResult":
        data = dict(data)
        data['completed_at'] = _parse_dt(data['completed_at'])
        return cls(**data)


@dataclass(frozen=True)
class HistoryEntry:
    """Immutable audit record of one execution attempt"""
    opportunity: Opportunity
    result: ExecutionResult
    executed_at: datetime

    @property
    def success(self) -> bool:
        return self.result.success

    def to_json(self) -> str:
        return json.dumps({
            'opportunity': self.opportunity.to_dict(),
            'result': self.result.to_dict(),
            'executed_at': self.executed_at.isoformat(),
        }, sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "HistoryEntry":
        data = json.loads(raw)
        return cls(
            opportunity=Opportunity.from_dict(data['opportunity']),
            result=ExecutionResult.from_dict(data['result']),
            executed_at=_parse_dt(data['executed_at']),
        )


@dataclass
class AccountEvaluation:
    """Phase 1 outcome for one account"""
    account: str
    opportunities: List[Opportunity] = field(default_factory=list)
    skipped: int = 0
    reasons: List[str] = field(default_factory=list)
    error: Optional[str] = None
