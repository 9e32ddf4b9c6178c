"""
Account Registry

Set of accounts opted into automated rebalancing, plus the custody wallet id
that signs for each of them.
"""

from typing import List, Optional

from loguru import logger

from .kv_store import KVStore
from .models import Account


ENROLLED_KEY = "users:auto_balance_enabled"
WALLET_ID_KEY = "user:wallet_id:{account}"


class AccountRegistry:
    """Store-backed registry of enrolled accounts"""

    def __init__(self, store: KVStore):
        self.store = store

    async def enroll(self, address: str, wallet_id: Optional[str] = None) -> bool:
        """
        Opt an account into automated rebalancing

        Args:
            address: Account address
            wallet_id: Custody wallet id (defaults to the address)

        Returns:
            True if the account was newly enrolled
        """
        added = await self.store.sadd(ENROLLED_KEY, address)
        await self.store.set(WALLET_ID_KEY.format(account=address), wallet_id or address)
        if added:
            logger.info(f"✓ Enrolled {address} for auto-rebalancing")
        else:
            logger.info(f"{address} already enrolled, wallet id refreshed")
        return bool(added)

    async def unenroll(self, address: str) -> bool:
        removed = await self.store.srem(ENROLLED_KEY, address)
        await self.store.delete(WALLET_ID_KEY.format(account=address))
        if removed:
            logger.info(f"✓ Unenrolled {address}")
        return bool(removed)

    async def is_enrolled(self, address: str) -> bool:
        return await self.store.sismember(ENROLLED_KEY, address)

    async def get_wallet_id(self, address: str) -> str:
        wallet_id = await self.store.get(WALLET_ID_KEY.format(account=address))
        return wallet_id or address

    async def list_enrolled_accounts(self) -> List[Account]:
        """Enrolled accounts, sorted by address for stable batching"""
        addresses = sorted(await self.store.smembers(ENROLLED_KEY))
        accounts = []
        for address in addresses:
            accounts.append(Account(address=address, wallet_id=await self.get_wallet_id(address)))
        return accounts
