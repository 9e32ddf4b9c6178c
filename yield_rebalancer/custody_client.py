"""
Custody / Signing Service Client

The custody service holds each account's wallet key and authorizes and
broadcasts the approve / withdraw / deposit transactions. Every call is
fire-and-wait: it returns once the service hands back a transaction
reference, or fails.

Calls never raise into the executor. Transport and service errors come back
as StepOutcome.failure(...), so callers branch on the outcome explicitly.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple

import aiohttp
from loguru import logger

from .models import StepOutcome
from .providers import get_ssl_context


class SigningService(ABC):
    """Operations the executor needs from the custody service"""

    @abstractmethod
    async def submit_approve(self, wallet_id: str, account: str, spender: str, amount: int) -> StepOutcome:
        pass

    @abstractmethod
    async def submit_withdraw(self, wallet_id: str, account: str, protocol: str,
                              vault: str, amount: int) -> StepOutcome:
        pass

    @abstractmethod
    async def submit_deposit(self, wallet_id: str, account: str, protocol: str,
                             vault: str, amount: int) -> StepOutcome:
        pass

    async def close(self):
        pass


class HttpCustodyClient(SigningService):
    """
    HTTP client for the custody service

    POST {base_url}/v1/wallets/{wallet_id}/transactions
        {"action": "approve" | "withdraw" | "deposit", "chain_id": ..., ...}
    -> {"hash": "0x..."}
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        chain_id: int = 8453,
        timeout_seconds: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.chain_id = chain_id
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None

        if not api_key:
            logger.warning("Custody client has no API key configured")

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {'Content-Type': 'application/json'}
            if self.api_key:
                headers['Authorization'] = f"Bearer {self.api_key}"
            connector = aiohttp.TCPConnector(ssl=get_ssl_context() or True)
            self._session = aiohttp.ClientSession(
                timeout=self.timeout, headers=headers, connector=connector
            )
            self._owns_session = True
        return self._session

    async def _submit(self, wallet_id: str, payload: Dict[str, Any]) -> StepOutcome:
        action = payload['action']
        url = f"{self.base_url}/v1/wallets/{wallet_id}/transactions"
        body = dict(payload, chain_id=self.chain_id)

        try:
            async with self._get_session().post(url, json=body) as response:
                if response.status >= 400:
                    text = await response.text()
                    return StepOutcome.failure(f"{action} rejected (HTTP {response.status}): {text[:300]}")
                data = await response.json()
        except aiohttp.ClientError as e:
            return StepOutcome.failure(f"{action} request failed: {str(e)[:300]}")
        except asyncio.TimeoutError:
            return StepOutcome.failure(f"{action} request timed out")
        except ValueError as e:
            return StepOutcome.failure(f"{action} returned invalid JSON: {e}")

        tx_hash = data.get('hash') or data.get('txHash')
        if not tx_hash:
            return StepOutcome.failure(f"{action} response had no transaction hash: {str(data)[:200]}")
        return StepOutcome.success(tx_hash)

    async def submit_approve(self, wallet_id: str, account: str, spender: str, amount: int) -> StepOutcome:
        return await self._submit(wallet_id, {
            'action': 'approve',
            'account': account,
            'spender': spender,
            'amount': str(amount),
        })

    async def submit_withdraw(self, wallet_id: str, account: str, protocol: str,
                              vault: str, amount: int) -> StepOutcome:
        return await self._submit(wallet_id, {
            'action': 'withdraw',
            'account': account,
            'protocol': protocol,
            'vault': vault,
            'amount': str(amount),
        })

    async def submit_deposit(self, wallet_id: str, account: str, protocol: str,
                             vault: str, amount: int) -> StepOutcome:
        return await self._submit(wallet_id, {
            'action': 'deposit',
            'account': account,
            'protocol': protocol,
            'vault': vault,
            'amount': str(amount),
        })

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
            logger.debug("✓ Custody client session closed")
        self._session = None


class DryRunCustodyClient(SigningService):
    """Logs every call and returns synthetic references; moves no funds"""

    def __init__(self):
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    def _record(self, action: str, **details) -> StepOutcome:
        self.calls.append((action, details))
        reference = f"dryrun-{action}-{uuid.uuid4().hex[:12]}"
        logger.info(f"[DRY RUN] {action} {details} -> {reference}")
        return StepOutcome.success(reference)

    async def submit_approve(self, wallet_id: str, account: str, spender: str, amount: int) -> StepOutcome:
        return self._record('approve', wallet_id=wallet_id, spender=spender, amount=amount)

    async def submit_withdraw(self, wallet_id: str, account: str, protocol: str,
                              vault: str, amount: int) -> StepOutcome:
        return self._record('withdraw', wallet_id=wallet_id, protocol=protocol, vault=vault, amount=amount)

    async def submit_deposit(self, wallet_id: str, account: str, protocol: str,
                             vault: str, amount: int) -> StepOutcome:
        return self._record('deposit', wallet_id=wallet_id, protocol=protocol, vault=vault, amount=amount)
