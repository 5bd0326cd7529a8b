"""Per-tenant quota gate with daily and monthly windows.

Check-and-increment is one atomic backend operation: a Lua script in
Redis, or an ``asyncio.Lock`` in the single-process memory backend. A
limit of 0 disables that window.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import redis.asyncio as redis

from compmatch import metrics
from compmatch.errors import InvalidInputError, QuotaExceededError

logger = logging.getLogger(__name__)

DAY_KEY_TTL_SECONDS = 2 * 24 * 3600
MONTH_KEY_TTL_SECONDS = 32 * 24 * 3600

# KEYS: day key, month key
# ARGV: amount, daily limit, monthly limit, reject (0/1), day ttl, month ttl
CONSUME_LUA = """
local amount = tonumber(ARGV[1])
local daily_limit = tonumber(ARGV[2])
local monthly_limit = tonumber(ARGV[3])
local reject = tonumber(ARGV[4])
local day_used = tonumber(redis.call('GET', KEYS[1]) or '0')
local month_used = tonumber(redis.call('GET', KEYS[2]) or '0')
local granted = amount
if daily_limit > 0 then
    granted = math.min(granted, math.max(daily_limit - day_used, 0))
end
if monthly_limit > 0 then
    granted = math.min(granted, math.max(monthly_limit - month_used, 0))
end
if reject == 1 and granted < amount then
    granted = 0
end
if granted > 0 then
    day_used = redis.call('INCRBY', KEYS[1], granted)
    redis.call('EXPIRE', KEYS[1], tonumber(ARGV[5]))
    month_used = redis.call('INCRBY', KEYS[2], granted)
    redis.call('EXPIRE', KEYS[2], tonumber(ARGV[6]))
end
return {granted, day_used, month_used}
"""


class QuotaPolicy(str, Enum):
    """What to do when a request exceeds the remaining capacity."""

    TRUNCATE = "truncate"  # grant what is left
    REJECT = "reject"  # all or nothing


@dataclass(frozen=True)
class QuotaDecision:
    """Result of a consume call. ``remaining``/``limit`` are None when no window is enabled."""

    allowed: bool
    granted: int
    requested: int
    used: int
    remaining: Optional[int]
    limit: Optional[int]
    policy: QuotaPolicy
    window: Optional[str] = None


@dataclass(frozen=True)
class QuotaWindow:
    name: str
    period: str
    used: int
    limit: int
    remaining: Optional[int]


def _remaining(limit: int, used: int) -> Optional[int]:
    if limit <= 0:
        return None
    return max(limit - used, 0)


class QuotaBackend(ABC):
    """Atomic counter storage for quota windows."""

    @abstractmethod
    async def consume(
        self,
        day_key: str,
        month_key: str,
        amount: int,
        daily_limit: int,
        monthly_limit: int,
        reject: bool,
    ) -> tuple[int, int, int]:
        """Atomically grant up to ``amount`` and return (granted, day_used, month_used)."""
        ...

    @abstractmethod
    async def peek(self, day_key: str, month_key: str) -> tuple[int, int]:
        """Return (day_used, month_used) without consuming."""
        ...

    async def close(self) -> None:
        return None


class RedisQuotaBackend(QuotaBackend):
    """Quota counters in Redis, updated by a single Lua script."""

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None

    async def consume(self, day_key, month_key, amount, daily_limit, monthly_limit, reject):
        redis_client = await self._get_redis()
        result = await redis_client.eval(
            CONSUME_LUA,
            2,  # Number of keys
            day_key,
            month_key,
            amount,
            daily_limit,
            monthly_limit,
            1 if reject else 0,
            DAY_KEY_TTL_SECONDS,
            MONTH_KEY_TTL_SECONDS,
        )
        granted, day_used, month_used = (int(v) for v in result)
        return granted, day_used, month_used

    async def peek(self, day_key, month_key):
        redis_client = await self._get_redis()
        day_used, month_used = await redis_client.mget(day_key, month_key)
        return int(day_used or 0), int(month_used or 0)


class MemoryQuotaBackend(QuotaBackend):
    """In-process counters; correct only within a single process."""

    def __init__(self):
        self._counters: dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def consume(self, day_key, month_key, amount, daily_limit, monthly_limit, reject):
        async with self._lock:
            day_used = self._counters.get(day_key, 0)
            month_used = self._counters.get(month_key, 0)
            granted = amount
            if daily_limit > 0:
                granted = min(granted, max(daily_limit - day_used, 0))
            if monthly_limit > 0:
                granted = min(granted, max(monthly_limit - month_used, 0))
            if reject and granted < amount:
                granted = 0
            if granted > 0:
                day_used += granted
                month_used += granted
                self._counters[day_key] = day_used
                self._counters[month_key] = month_used
            return granted, day_used, month_used

    async def peek(self, day_key, month_key):
        return self._counters.get(day_key, 0), self._counters.get(month_key, 0)


class QuotaGate:
    """
    Named quota gate (e.g. ``discovery`` or ``scrape``) over a counter backend.

    Keys look like ``quota:{gate}:{tenant}:day:{YYYY-MM-DD}`` and
    ``quota:{gate}:{tenant}:month:{YYYY-MM}`` (UTC).
    """

    def __init__(
        self,
        name: str,
        backend: QuotaBackend,
        policy: QuotaPolicy = QuotaPolicy.TRUNCATE,
        daily_limit: int = 0,
        monthly_limit: int = 0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            name: Gate name, part of every key
            backend: Counter storage
            policy: Default policy for consume
            daily_limit: Default daily cap (0 disables)
            monthly_limit: Default monthly cap (0 disables)
            clock: UTC "now" provider, for tests
        """
        self.name = name
        self.backend = backend
        self.policy = policy
        self.daily_limit = daily_limit
        self.monthly_limit = monthly_limit
        self._clock = clock or datetime.utcnow

    def _keys(self, tenant_id: int) -> tuple[str, str, str, str]:
        now = self._clock()
        day = now.strftime("%Y-%m-%d")
        month = now.strftime("%Y-%m")
        prefix = f"quota:{self.name}:{tenant_id}"
        return f"{prefix}:day:{day}", f"{prefix}:month:{month}", day, month

    def _binding(
        self,
        day_used: int,
        month_used: int,
        daily_limit: int,
        monthly_limit: int,
    ) -> tuple[Optional[str], int, Optional[int], Optional[int]]:
        """Pick the window with less remaining capacity: (name, used, remaining, limit)."""
        windows = []
        if daily_limit > 0:
            windows.append(("day", day_used, _remaining(daily_limit, day_used), daily_limit))
        if monthly_limit > 0:
            windows.append(("month", month_used, _remaining(monthly_limit, month_used), monthly_limit))
        if not windows:
            return None, month_used, None, None
        return min(windows, key=lambda w: w[2])

    async def consume(
        self,
        tenant_id: int,
        amount: int,
        policy: Optional[QuotaPolicy] = None,
        monthly_limit: Optional[int] = None,
        daily_limit: Optional[int] = None,
    ) -> QuotaDecision:
        """
        Atomically consume up to ``amount`` units for a tenant.

        Args:
            tenant_id: Tenant (store) id
            amount: Units requested
            policy: TRUNCATE grants what is left, REJECT is all-or-nothing
            monthly_limit: Override the gate's monthly cap (e.g. per plan tier)
            daily_limit: Override the gate's daily cap

        Returns:
            QuotaDecision describing the grant and the binding window
        """
        if amount < 0:
            raise InvalidInputError(f"Quota amount must not be negative: {amount}")

        policy = policy or self.policy
        daily = self.daily_limit if daily_limit is None else daily_limit
        monthly = self.monthly_limit if monthly_limit is None else monthly_limit
        day_key, month_key, _, _ = self._keys(tenant_id)

        if amount == 0:
            day_used, month_used = await self.backend.peek(day_key, month_key)
            granted = 0
        else:
            granted, day_used, month_used = await self.backend.consume(
                day_key,
                month_key,
                amount,
                daily,
                monthly,
                policy == QuotaPolicy.REJECT,
            )

        window, used, remaining, limit = self._binding(day_used, month_used, daily, monthly)
        if policy == QuotaPolicy.REJECT:
            allowed = granted == amount
        else:
            allowed = granted > 0 or amount == 0

        metrics.record_quota_decision(self.name, amount, granted)
        if granted < amount:
            logger.warning(
                f"Quota {self.name}: tenant {tenant_id} requested {amount}, granted {granted} "
                f"(policy={policy.value}, window={window}, remaining={remaining}, limit={limit})"
            )

        return QuotaDecision(
            allowed=allowed,
            granted=granted,
            requested=amount,
            used=used,
            remaining=remaining,
            limit=limit,
            policy=policy,
            window=window,
        )

    async def require(
        self,
        tenant_id: int,
        amount: int,
        policy: Optional[QuotaPolicy] = None,
        monthly_limit: Optional[int] = None,
        daily_limit: Optional[int] = None,
    ) -> QuotaDecision:
        """
        Consume and raise when the decision is not allowed.

        Raises:
            QuotaExceededError: With remaining and limit of the binding window
        """
        decision = await self.consume(tenant_id, amount, policy, monthly_limit, daily_limit)
        if not decision.allowed:
            raise QuotaExceededError(
                f"{self.name} quota exceeded: requested {amount}, "
                f"remaining {decision.remaining} of {decision.limit} ({decision.window})",
                remaining=decision.remaining or 0,
                limit=decision.limit or 0,
                requested=amount,
            )
        return decision

    async def status(
        self,
        tenant_id: int,
        monthly_limit: Optional[int] = None,
        daily_limit: Optional[int] = None,
    ) -> list[QuotaWindow]:
        """Report usage per window without consuming."""
        daily = self.daily_limit if daily_limit is None else daily_limit
        monthly = self.monthly_limit if monthly_limit is None else monthly_limit
        day_key, month_key, day, month = self._keys(tenant_id)
        day_used, month_used = await self.backend.peek(day_key, month_key)
        return [
            QuotaWindow("day", day, day_used, daily, _remaining(daily, day_used)),
            QuotaWindow("month", month, month_used, monthly, _remaining(monthly, month_used)),
        ]


def create_quota_backend(kind: str, redis_url: str) -> QuotaBackend:
    """Build the configured backend (``redis`` or ``memory``)."""
    if kind == "memory":
        logger.warning("Using in-memory quota backend; limits are per process")
        return MemoryQuotaBackend()
    if kind == "redis":
        return RedisQuotaBackend(redis_url)
    raise ValueError(f"Unknown quota backend: {kind}")
