"""
Durable Key-Value Store

Storage abstraction for the rebalancer's shared state (rate-limit records,
priority queue, history log, account registry).

Backends:
- MemoryStore: in-process dicts, for tests and throwaway runs
- SqliteStore: single-file durable store, for single-host deployments
- RedisStore: shared store for production (redis.asyncio)

Individual operations are atomic; multi-step sequences built on top of them
are not wrapped in transactions.
"""

import sqlite3
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

from loguru import logger


class StoreError(RuntimeError):
    """Raised when the backing store cannot complete an operation"""


class KVStore(ABC):
    """Operations the rebalancer needs from its durable store"""

    # Scalars
    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> int:
        pass

    @abstractmethod
    async def incr(self, key: str, ex: Optional[int] = None) -> int:
        """Increment an integer counter; ex (seconds) resets its expiry"""
        pass

    # Sets
    @abstractmethod
    async def sadd(self, key: str, member: str) -> int:
        pass

    @abstractmethod
    async def srem(self, key: str, member: str) -> int:
        pass

    @abstractmethod
    async def smembers(self, key: str) -> Set[str]:
        pass

    @abstractmethod
    async def sismember(self, key: str, member: str) -> bool:
        pass

    # Sorted sets
    @abstractmethod
    async def zadd(self, key: str, member: str, score: float) -> int:
        pass

    @abstractmethod
    async def zrem(self, key: str, member: str) -> int:
        pass

    @abstractmethod
    async def zrevrange(self, key: str, start: int, stop: int) -> List[Tuple[str, float]]:
        """Members ordered by descending score, stop inclusive (-1 = last)"""
        pass

    @abstractmethod
    async def zcard(self, key: str) -> int:
        pass

    @abstractmethod
    async def zscore(self, key: str, member: str) -> Optional[float]:
        pass

    # Lists
    @abstractmethod
    async def lpush(self, key: str, value: str) -> int:
        pass

    @abstractmethod
    async def ltrim(self, key: str, start: int, stop: int) -> None:
        pass

    @abstractmethod
    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        pass

    @abstractmethod
    async def llen(self, key: str) -> int:
        pass

    async def close(self):
        pass


def _slice_bounds(length: int, start: int, stop: int) -> Tuple[int, int]:
    """Translate inclusive redis-style indices into a python slice"""
    if start < 0:
        start = max(length + start, 0)
    if stop < 0:
        stop = length + stop
    stop = min(stop, length - 1)
    if start > stop:
        return 0, 0
    return start, stop + 1


class MemoryStore(KVStore):
    """In-memory store with lazy key expiry"""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._values: Dict[str, str] = {}
        self._expiry: Dict[str, float] = {}
        self._sets: Dict[str, Set[str]] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}
        self._lists: Dict[str, List[str]] = {}

    def _expired(self, key: str) -> bool:
        deadline = self._expiry.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._values.pop(key, None)
            self._expiry.pop(key, None)
            return True
        return False

    async def get(self, key: str) -> Optional[str]:
        if self._expired(key):
            return None
        return self._values.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        self._values[key] = str(value)
        if ex is not None:
            self._expiry[key] = self._clock() + ex
        else:
            self._expiry.pop(key, None)

    async def delete(self, key: str) -> int:
        removed = 0
        for bucket in (self._values, self._sets, self._zsets, self._lists):
            if key in bucket:
                del bucket[key]
                removed = 1
        self._expiry.pop(key, None)
        return removed

    async def incr(self, key: str, ex: Optional[int] = None) -> int:
        self._expired(key)
        value = int(self._values.get(key, 0)) + 1
        self._values[key] = str(value)
        if ex is not None:
            self._expiry[key] = self._clock() + ex
        return value

    async def sadd(self, key: str, member: str) -> int:
        members = self._sets.setdefault(key, set())
        if member in members:
            return 0
        members.add(member)
        return 1

    async def srem(self, key: str, member: str) -> int:
        members = self._sets.get(key, set())
        if member not in members:
            return 0
        members.discard(member)
        return 1

    async def smembers(self, key: str) -> Set[str]:
        return set(self._sets.get(key, set()))

    async def sismember(self, key: str, member: str) -> bool:
        return member in self._sets.get(key, set())

    async def zadd(self, key: str, member: str, score: float) -> int:
        zset = self._zsets.setdefault(key, {})
        added = 0 if member in zset else 1
        zset[member] = float(score)
        return added

    async def zrem(self, key: str, member: str) -> int:
        zset = self._zsets.get(key, {})
        if member not in zset:
            return 0
        del zset[member]
        return 1

    async def zrevrange(self, key: str, start: int, stop: int) -> List[Tuple[str, float]]:
        zset = self._zsets.get(key, {})
        # same tie-break as redis ZREVRANGE: score desc, then member desc
        ordered = sorted(zset.items(), key=lambda item: (item[1], item[0]), reverse=True)
        lo, hi = _slice_bounds(len(ordered), start, stop)
        return ordered[lo:hi]

    async def zcard(self, key: str) -> int:
        return len(self._zsets.get(key, {}))

    async def zscore(self, key: str, member: str) -> Optional[float]:
        return self._zsets.get(key, {}).get(member)

    async def lpush(self, key: str, value: str) -> int:
        items = self._lists.setdefault(key, [])
        items.insert(0, value)
        return len(items)

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        items = self._lists.get(key, [])
        lo, hi = _slice_bounds(len(items), start, stop)
        self._lists[key] = items[lo:hi]

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        items = self._lists.get(key, [])
        lo, hi = _slice_bounds(len(items), start, stop)
        return items[lo:hi]

    async def llen(self, key: str) -> int:
        return len(self._lists.get(key, []))


class SqliteStore(KVStore):
    """
    SQLite-backed durable store

    Tables:
    - kv: scalar values with optional expiry (unix seconds)
    - sets: set membership
    - zsets: sorted-set members and scores
    - lists: list items, newest row = list head
    """

    def __init__(self, db_path: str = "rebalancer_state.db", clock: Callable[[], float] = time.time):
        """
        Initialize store

        Args:
            db_path: Path to SQLite database (":memory:" for a private in-memory DB)
            clock: Time source for expiry
        """
        self.db_path = db_path
        self._clock = clock
        self.conn: Optional[sqlite3.Connection] = None
        self._initialize_db()
        logger.info(f"SQLite store initialized: {self.db_path}")

    def _initialize_db(self):
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self):
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sets (
                key TEXT NOT NULL,
                member TEXT NOT NULL,
                PRIMARY KEY (key, member)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS zsets (
                key TEXT NOT NULL,
                member TEXT NOT NULL,
                score REAL NOT NULL,
                PRIMARY KEY (key, member)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS lists (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                key TEXT NOT NULL,
                value TEXT NOT NULL
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_zsets_score ON zsets(key, score)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_lists_key ON lists(key, id)")

        self.conn.commit()
        logger.debug("Store tables created successfully")

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        if self.conn is None:
            raise StoreError("SQLite store is closed")
        try:
            cursor = self.conn.execute(sql, params)
            self.conn.commit()
            return cursor
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StoreError(f"SQLite operation failed: {e}") from e

    def _purge_if_expired(self, key: str):
        self._execute(
            "DELETE FROM kv WHERE key = ? AND expires_at IS NOT NULL AND expires_at <= ?",
            (key, self._clock())
        )

    async def get(self, key: str) -> Optional[str]:
        self._purge_if_expired(key)
        row = self._execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row['value'] if row else None

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        expires_at = self._clock() + ex if ex is not None else None
        self._execute(
            "INSERT OR REPLACE INTO kv (key, value, expires_at) VALUES (?, ?, ?)",
            (key, str(value), expires_at)
        )

    async def delete(self, key: str) -> int:
        removed = 0
        for table in ('kv', 'sets', 'zsets', 'lists'):
            removed += self._execute(f"DELETE FROM {table} WHERE key = ?", (key,)).rowcount
        return 1 if removed else 0

    async def incr(self, key: str, ex: Optional[int] = None) -> int:
        self._purge_if_expired(key)
        expires_at = self._clock() + ex if ex is not None else None
        self._execute("""
            INSERT INTO kv (key, value, expires_at) VALUES (?, '1', ?)
            ON CONFLICT(key) DO UPDATE SET
                value = CAST(CAST(value AS INTEGER) + 1 AS TEXT),
                expires_at = COALESCE(excluded.expires_at, kv.expires_at)
        """, (key, expires_at))
        row = self._execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return int(row['value'])

    async def sadd(self, key: str, member: str) -> int:
        return self._execute(
            "INSERT OR IGNORE INTO sets (key, member) VALUES (?, ?)", (key, member)
        ).rowcount

    async def srem(self, key: str, member: str) -> int:
        return self._execute(
            "DELETE FROM sets WHERE key = ? AND member = ?", (key, member)
        ).rowcount

    async def smembers(self, key: str) -> Set[str]:
        rows = self._execute("SELECT member FROM sets WHERE key = ?", (key,)).fetchall()
        return {row['member'] for row in rows}

    async def sismember(self, key: str, member: str) -> bool:
        row = self._execute(
            "SELECT 1 FROM sets WHERE key = ? AND member = ?", (key, member)
        ).fetchone()
        return row is not None

    async def zadd(self, key: str, member: str, score: float) -> int:
        exists = await self.zscore(key, member) is not None
        self._execute(
            "INSERT OR REPLACE INTO zsets (key, member, score) VALUES (?, ?, ?)",
            (key, member, float(score))
        )
        return 0 if exists else 1

    async def zrem(self, key: str, member: str) -> int:
        return self._execute(
            "DELETE FROM zsets WHERE key = ? AND member = ?", (key, member)
        ).rowcount

    async def zrevrange(self, key: str, start: int, stop: int) -> List[Tuple[str, float]]:
        rows = self._execute(
            "SELECT member, score FROM zsets WHERE key = ? ORDER BY score DESC, member DESC",
            (key,)
        ).fetchall()
        lo, hi = _slice_bounds(len(rows), start, stop)
        return [(row['member'], row['score']) for row in rows[lo:hi]]

    async def zcard(self, key: str) -> int:
        return self._execute("SELECT COUNT(*) FROM zsets WHERE key = ?", (key,)).fetchone()[0]

    async def zscore(self, key: str, member: str) -> Optional[float]:
        row = self._execute(
            "SELECT score FROM zsets WHERE key = ? AND member = ?", (key, member)
        ).fetchone()
        return row['score'] if row else None

    async def lpush(self, key: str, value: str) -> int:
        self._execute("INSERT INTO lists (key, value) VALUES (?, ?)", (key, value))
        return await self.llen(key)

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        ids = [row['id'] for row in self._execute(
            "SELECT id FROM lists WHERE key = ? ORDER BY id DESC", (key,)
        ).fetchall()]
        lo, hi = _slice_bounds(len(ids), start, stop)
        keep = ids[lo:hi]
        if not keep:
            self._execute("DELETE FROM lists WHERE key = ?", (key,))
            return
        # kept ids form a contiguous range of the newest-first ordering
        self._execute(
            "DELETE FROM lists WHERE key = ? AND (id > ? OR id < ?)",
            (key, max(keep), min(keep))
        )

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        rows = self._execute(
            "SELECT value FROM lists WHERE key = ? ORDER BY id DESC", (key,)
        ).fetchall()
        lo, hi = _slice_bounds(len(rows), start, stop)
        return [row['value'] for row in rows[lo:hi]]

    async def llen(self, key: str) -> int:
        return self._execute("SELECT COUNT(*) FROM lists WHERE key = ?", (key,)).fetchone()[0]

    async def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("SQLite store closed")


class RedisStore(KVStore):
    """
    Redis-backed store for production

    Provides:
    - Cross-instance visibility (several workers can share state)
    - Native TTL expiry for rate-limit counters
    """

    def __init__(self, redis_url: str = "redis://localhost:6379/0", client=None):
        self.redis_url = redis_url
        self._client = client

    def _get_client(self):
        """Lazy-create the Redis client"""
        if self._client is None:
            import redis.asyncio as redis
            self._client = redis.from_url(self.redis_url, decode_responses=True)
            logger.info(f"Connected Redis store: {self.redis_url.split('@')[-1]}")
        return self._client

    async def get(self, key: str) -> Optional[str]:
        return await self._get_client().get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        await self._get_client().set(key, value, ex=ex)

    async def delete(self, key: str) -> int:
        return await self._get_client().delete(key)

    async def incr(self, key: str, ex: Optional[int] = None) -> int:
        async with self._get_client().pipeline(transaction=True) as pipe:
            pipe.incr(key)
            if ex is not None:
                pipe.expire(key, ex)
            results = await pipe.execute()
        return int(results[0])

    async def sadd(self, key: str, member: str) -> int:
        return await self._get_client().sadd(key, member)

    async def srem(self, key: str, member: str) -> int:
        return await self._get_client().srem(key, member)

    async def smembers(self, key: str) -> Set[str]:
        return set(await self._get_client().smembers(key))

    async def sismember(self, key: str, member: str) -> bool:
        return bool(await self._get_client().sismember(key, member))

    async def zadd(self, key: str, member: str, score: float) -> int:
        return await self._get_client().zadd(key, {member: score})

    async def zrem(self, key: str, member: str) -> int:
        return await self._get_client().zrem(key, member)

    async def zrevrange(self, key: str, start: int, stop: int) -> List[Tuple[str, float]]:
        items = await self._get_client().zrevrange(key, start, stop, withscores=True)
        return [(member, float(score)) for member, score in items]

    async def zcard(self, key: str) -> int:
        return await self._get_client().zcard(key)

    async def zscore(self, key: str, member: str) -> Optional[float]:
        score = await self._get_client().zscore(key, member)
        return float(score) if score is not None else None

    async def lpush(self, key: str, value: str) -> int:
        return await self._get_client().lpush(key, value)

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        await self._get_client().ltrim(key, start, stop)

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        return await self._get_client().lrange(key, start, stop)

    async def llen(self, key: str) -> int:
        return await self._get_client().llen(key)

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis store closed")


def create_store(backend: str, path: Optional[str] = None, url: Optional[str] = None) -> KVStore:
    """Build the store backend named in configuration"""
    if backend == 'memory':
        return MemoryStore()
    if backend == 'sqlite':
        return SqliteStore(path or "rebalancer_state.db")
    if backend == 'redis':
        return RedisStore(url or "redis://localhost:6379/0")
    raise StoreError(f"Unknown store backend: {backend}")
