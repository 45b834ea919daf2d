"""Cache backends for computed leaderboards.

Values are opaque JSON strings. Neither backend expires entries on its own;
they live until `evict_prefix` removes them. Cache trouble is never fatal to
a leaderboard read: a failed get is a miss and a failed set is skipped.

Each group also has a generation counter, bumped on every invalidation. A
board computed before an invalidation must not be written after it, so
recomputed boards go through `set_if_generation`.
"""
import asyncio
import re
from typing import Dict, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from studysync.core.logging import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "leaderboard:"
GENERATION_PREFIX = "leaderboard-gen:"

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def leaderboard_key(group_id: str, week: Optional[str] = None) -> str:
    """`leaderboard:<group>:<week>`, or the group prefix when week is None."""
    if week is None:
        return f"{KEY_PREFIX}{group_id}:"
    return f"{KEY_PREFIX}{group_id}:{week}"


def generation_key(group_id: str) -> str:
    # outside KEY_PREFIX so prefix eviction never drops it
    return f"{GENERATION_PREFIX}{group_id}"


def escape_glob(value: str) -> str:
    """Escape Redis MATCH metacharacters so `value` is matched literally."""
    return _GLOB_SPECIAL.sub(r"\\\1", value)


class RedisLeaderboardCache:
    """Redis-backed cache shared by every API worker."""

    def __init__(self, client: Redis):
        self._client = client

    async def get(self, key: str) -> Optional[str]:
        try:
            value = await self._client.get(key)
        except RedisError as e:
            logger.warning(f"Cache get failed for {key}: {e}")
            return None
        if value is None:
            logger.debug(f"Cache MISS: {key}")
        else:
            logger.debug(f"Cache HIT: {key}")
        return value

    async def set(self, key: str, value: str) -> None:
        try:
            await self._client.set(key, value)
        except RedisError as e:
            logger.warning(f"Cache set failed for {key}: {e}")

    async def generation(self, group_id: str) -> int:
        try:
            value = await self._client.get(generation_key(group_id))
        except RedisError as e:
            logger.warning(f"Cache generation read failed for {group_id}: {e}")
            return -1
        return int(value or 0)

    async def bump_generation(self, group_id: str) -> int:
        try:
            return await self._client.incr(generation_key(group_id))
        except RedisError as e:
            logger.warning(f"Cache generation bump failed for {group_id}: {e}")
            return -1

    async def set_if_generation(self, key: str, value: str, group_id: str, expected: int) -> bool:
        """Write `value` only while the group's generation is still `expected`."""
        if expected < 0:
            return False
        gen_key = generation_key(group_id)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                await pipe.watch(gen_key)
                current = int(await pipe.get(gen_key) or 0)
                if current != expected:
                    return False
                pipe.multi()
                pipe.set(key, value)
                await pipe.execute()
        except WatchError:
            # invalidated between the check and the write
            return False
        except RedisError as e:
            logger.warning(f"Cache set failed for {key}: {e}")
            return False
        return True

    async def evict_prefix(self, prefix: str) -> int:
        # SCAN rather than KEYS so a big keyspace does not block the server
        try:
            keys = [k async for k in self._client.scan_iter(match=f"{escape_glob(prefix)}*")]
            if not keys:
                return 0
            deleted = await self._client.delete(*keys)
        except RedisError as e:
            logger.warning(f"Cache eviction failed for {prefix}: {e}")
            return 0
        logger.info(f"Cache invalidated: {deleted} keys matching '{prefix}'")
        return deleted


class InMemoryLeaderboardCache:
    """Process-local cache used when Redis is not configured."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._generations: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            self._data[key] = value

    async def generation(self, group_id: str) -> int:
        return self._generations.get(group_id, 0)

    async def bump_generation(self, group_id: str) -> int:
        async with self._lock:
            self._generations[group_id] = self._generations.get(group_id, 0) + 1
            return self._generations[group_id]

    async def set_if_generation(self, key: str, value: str, group_id: str, expected: int) -> bool:
        async with self._lock:
            if self._generations.get(group_id, 0) != expected:
                return False
            self._data[key] = value
            return True

    async def evict_prefix(self, prefix: str) -> int:
        async with self._lock:
            doomed = [k for k in self._data if k.startswith(prefix)]
            for k in doomed:
                del self._data[k]
        return len(doomed)

    def __len__(self) -> int:
        return len(self._data)
