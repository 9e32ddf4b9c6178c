"""
External Data Providers

Interfaces the engine consumes for market and account data, and an aiohttp
client for the dashboard API that serves them:
- VaultCatalogProvider: eligible vaults, sorted by descending net yield
- PositionProvider: an account's current vault deposits
- BalanceProvider: an account's idle (spendable) wallet balance
"""

import asyncio
import ssl
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Any

import aiohttp
from loguru import logger

from .models import Vault, Position


# what a well-formed HTTP response with a broken payload raises while parsing
PAYLOAD_ERRORS = (KeyError, TypeError, ValueError, AttributeError)


class ProviderError(RuntimeError):
    """Raised when an external data provider cannot answer"""


@dataclass
class WalletBalance:
    """Idle asset balance held by an account's wallet"""
    amount_raw: int
    amount_usd: float


class VaultCatalogProvider(ABC):

    @abstractmethod
    async def list_eligible_vaults(self) -> List[Vault]:
        """Vaults passing the yield/liquidity filters, best first"""

    async def get_best_vault(self) -> Optional[Vault]:
        vaults = await self.list_eligible_vaults()
        return vaults[0] if vaults else None


class PositionProvider(ABC):

    @abstractmethod
    async def get_positions(self, account: str) -> List[Position]:
        pass


class BalanceProvider(ABC):

    @abstractmethod
    async def get_spendable_balance(self, account: str, wallet_id: str) -> WalletBalance:
        pass


def get_ssl_context() -> Optional[ssl.SSLContext]:
    """SSL context with certificate verification"""
    try:
        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
        context.check_hostname = True
        context.verify_mode = ssl.CERT_REQUIRED
        return context
    except ssl.SSLError as e:
        logger.warning(f"SSL context creation failed ({e}), using aiohttp default")
        return None


def filter_and_rank_vaults(vaults: List[Vault], min_apy: float, min_tvl_usd: float) -> List[Vault]:
    """Drop vaults below the yield/liquidity floors and sort by net yield (desc)"""
    eligible = [
        v for v in vaults
        if v.net_apy >= min_apy and v.total_assets_usd >= min_tvl_usd
    ]
    eligible.sort(key=lambda v: v.net_apy, reverse=True)
    return eligible


class HttpDataProvider(VaultCatalogProvider, PositionProvider, BalanceProvider):
    """
    Dashboard API client

    Endpoints:
    - GET /api/vaults                      -> {success, vaults: [...]}
    - GET /api/user/positions?address=...  -> {success, positions: [...]}
    - GET /api/user/balance?walletId=...   -> {success, balance: {raw}}

    Transport, HTTP and payload failures all surface as ProviderError.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 15.0,
        min_vault_apy: float = 0.01,
        min_vault_tvl_usd: float = 1_000_000.0,
        asset_decimals: int = 6,
        session: Optional[aiohttp.ClientSession] = None
    ):
        """
        Initialize provider

        Args:
            base_url: Dashboard API root
            timeout_seconds: Per-request timeout
            min_vault_apy: Minimum net APY for a vault to be eligible
            min_vault_tvl_usd: Minimum total USD liquidity for a vault to be eligible
            asset_decimals: Decimals of the deposited asset (USDC = 6)
            session: Optional pre-built aiohttp session
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.min_vault_apy = min_vault_apy
        self.min_vault_tvl_usd = min_vault_tvl_usd
        self.asset_decimals = asset_decimals
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=get_ssl_context() or True)
            self._session = aiohttp.ClientSession(timeout=self.timeout, connector=connector)
            self._owns_session = True
        return self._session

    async def _get_json(self, path: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with self._get_session().get(url, params=params) as response:
                if response.status != 200:
                    text = await response.text()
                    raise ProviderError(f"GET {path} returned HTTP {response.status}: {text[:200]}")
                data = await response.json()
        except aiohttp.ClientError as e:
            raise ProviderError(f"GET {path} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise ProviderError(f"GET {path} timed out") from e
        except ValueError as e:
            raise ProviderError(f"GET {path} returned invalid JSON: {e}") from e

        if not isinstance(data, dict) or not data.get('success', False):
            raise ProviderError(f"GET {path} reported failure: {str(data)[:200]}")
        return data

    async def list_eligible_vaults(self) -> List[Vault]:
        data = await self._get_json('/api/vaults')
        try:
            vaults = [Vault.from_dict(v) for v in data.get('vaults') or []]
        except PAYLOAD_ERRORS as e:
            raise ProviderError(f"GET /api/vaults returned a malformed vault: {e!r}") from e
        eligible = filter_and_rank_vaults(vaults, self.min_vault_apy, self.min_vault_tvl_usd)
        logger.debug(f"Vault catalog: {len(eligible)}/{len(vaults)} eligible")
        return eligible

    async def get_positions(self, account: str) -> List[Position]:
        data = await self._get_json('/api/user/positions', params={'address': account})
        try:
            return [Position.from_dict(p) for p in data.get('positions') or []]
        except PAYLOAD_ERRORS as e:
            raise ProviderError(f"GET /api/user/positions returned a malformed position: {e!r}") from e

    async def get_spendable_balance(self, account: str, wallet_id: str) -> WalletBalance:
        data = await self._get_json('/api/user/balance', params={'walletId': wallet_id})
        # missing or null balance means nothing idle
        try:
            raw = int((data.get('balance') or {}).get('raw') or 0)
        except PAYLOAD_ERRORS as e:
            raise ProviderError(f"GET /api/user/balance returned a malformed balance: {e!r}") from e
        return WalletBalance(amount_raw=raw, amount_usd=raw / 10 ** self.asset_decimals)

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
            logger.debug("✓ Data provider session closed")
        self._session = None
