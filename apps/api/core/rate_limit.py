"""
Coach Quota Enforcement

Multi-window admission control for the AI coach, backed by Redis counters:

1. Global daily ceiling (stays under the provider's free-tier quota)
2. Per-athlete hourly ceiling
3. Per-athlete daily ceiling

Each check is a single INCR compared locally. Admission is all-or-nothing:
when any window is over its ceiling, every counter bumped during the attempt
is decremented again before the denial is returned.

If Redis is unreachable the request is admitted (FAIL_OPEN). Blocking every
athlete on a cache outage is worse than briefly losing the cost cap.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from redis.exceptions import RedisError

from core.config import settings

logger = logging.getLogger(__name__)

# Named policy: counter-store failures admit the request.
FAIL_OPEN = True

HOUR_TTL_S = 60 * 60
# Day windows outlive the calendar day by an hour so callers with skewed clocks
# never see a counter vanish mid-day.
DAY_TTL_S = 25 * 60 * 60

KEY_PREFIX = "ratelimit:coach"


class QuotaScope(str, Enum):
    GLOBAL_DAY = "global_day"
    USER_HOUR = "user_hour"
    USER_DAY = "user_day"


@dataclass(frozen=True)
class QuotaWindow:
    scope: QuotaScope
    key: str
    limit: int
    ttl_s: int


@dataclass
class QuotaDecision:
    """Outcome of one admission attempt."""
    allowed: bool
    reason: str = "ok"
    scope: Optional[QuotaScope] = None
    retry_after_minutes: int = 0
    message: str = ""
    counts: Dict[str, int] = field(default_factory=dict)


def _day_stamp(now: datetime) -> str:
    return now.astimezone(timezone.utc).strftime("%Y-%m-%d")


def _minutes_until(ttl_s: int) -> int:
    return max(1, math.ceil(ttl_s / 60))


class CoachQuotaEnforcer:
    """Admission control for quota-governed coach calls."""

    def __init__(
        self,
        redis_client: Any,
        global_daily_limit: Optional[int] = None,
        user_hourly_limit: Optional[int] = None,
        user_daily_limit: Optional[int] = None,
        fail_open: bool = FAIL_OPEN,
    ):
        self.redis = redis_client
        self.global_daily_limit = global_daily_limit if global_daily_limit is not None else settings.COACH_GLOBAL_DAILY_LIMIT
        self.user_hourly_limit = user_hourly_limit if user_hourly_limit is not None else settings.COACH_USER_HOURLY_LIMIT
        self.user_daily_limit = user_daily_limit if user_daily_limit is not None else settings.COACH_USER_DAILY_LIMIT
        self.fail_open = fail_open

    def windows(self, user_key: str, now: Optional[datetime] = None) -> List[QuotaWindow]:
        """Windows in the fixed order they are checked."""
        day = _day_stamp(now or datetime.now(timezone.utc))
        return [
            QuotaWindow(QuotaScope.GLOBAL_DAY, f"{KEY_PREFIX}:global:{day}", self.global_daily_limit, DAY_TTL_S),
            QuotaWindow(QuotaScope.USER_HOUR, f"{KEY_PREFIX}:{user_key}:hour", self.user_hourly_limit, HOUR_TTL_S),
            QuotaWindow(QuotaScope.USER_DAY, f"{KEY_PREFIX}:{user_key}:{day}", self.user_daily_limit, DAY_TTL_S),
        ]

    def admit(self, user_key: str, now: Optional[datetime] = None) -> QuotaDecision:
        """
        Charge one unit against every window, or none of them.

        Returns an allowed decision, or a denial naming the window that
        tripped and how many minutes until it resets.
        """
        if self.redis is None:
            return self._fail_open("counter store unavailable")

        incremented: List[str] = []
        counts: Dict[str, int] = {}
        try:
            for window in self.windows(user_key, now):
                count = int(self.redis.incr(window.key))
                incremented.append(window.key)
                counts[window.scope.value] = count

                if count == 1 or self.redis.ttl(window.key) == -1:
                    # Every counter carries an expiry, even after a failed EXPIRE
                    self.redis.expire(window.key, window.ttl_s)

                if count > window.limit:
                    ttl = self._ttl(window)
                    self._rollback(incremented)
                    decision = self._deny(window, user_key, ttl)
                    decision.counts = counts
                    return decision
        except RedisError as e:
            # Increments already applied stay charged: the request is admitted.
            return self._fail_open(str(e))

        return QuotaDecision(allowed=True, counts=counts)

    def usage(self, user_key: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Current counts and remaining budget per window (read-only)."""
        status: Dict[str, Any] = {"enforced": self.redis is not None}
        if self.redis is None:
            return status

        try:
            for window in self.windows(user_key, now):
                used = int(self.redis.get(window.key) or 0)
                ttl = int(self.redis.ttl(window.key))
                status[window.scope.value] = {
                    "used": used,
                    "limit": window.limit,
                    "remaining": max(0, window.limit - used),
                    "resets_in_minutes": _minutes_until(ttl) if ttl > 0 else None,
                }
        except RedisError as e:
            logger.warning(f"Coach quota usage lookup failed: {e}")
            return {"enforced": False}
        return status

    def _ttl(self, window: QuotaWindow) -> int:
        try:
            ttl = int(self.redis.ttl(window.key))
        except RedisError:
            ttl = -2
        if ttl == -1:
            try:
                self.redis.expire(window.key, window.ttl_s)
            except RedisError as e:
                logger.warning(f"Coach quota expiry repair failed for {window.key}: {e}")
        return ttl if ttl > 0 else window.ttl_s

    def _rollback(self, keys: List[str]) -> None:
        for key in reversed(keys):
            try:
                self.redis.decr(key)
            except RedisError as e:
                logger.error(f"Coach quota rollback failed for {key}: {e}")

    def _deny(self, window: QuotaWindow, user_key: str, ttl_s: int) -> QuotaDecision:
        minutes = _minutes_until(ttl_s)
        if window.scope == QuotaScope.GLOBAL_DAY:
            logger.warning(f"Coach global daily limit reached ({window.limit})")
            message = "The AI coach has reached its daily limit. Please try again tomorrow."
        elif window.scope == QuotaScope.USER_HOUR:
            logger.info(f"User {user_key} exceeded hourly coach limit ({window.limit})")
            message = f"You've reached the hourly message limit. Try again in {minutes} minutes."
        else:
            logger.info(f"User {user_key} exceeded daily coach limit ({window.limit})")
            message = f"You've reached the daily message limit ({window.limit}). Try again tomorrow."

        return QuotaDecision(
            allowed=False,
            reason="quota_exceeded",
            scope=window.scope,
            retry_after_minutes=minutes,
            message=message,
        )

    def _fail_open(self, error: str) -> QuotaDecision:
        if not self.fail_open:
            return QuotaDecision(
                allowed=False,
                reason="counter_store_unavailable",
                retry_after_minutes=1,
                message="The AI coach is temporarily unavailable. Please try again shortly.",
            )
        logger.warning(f"Coach quota check skipped, failing open: {error}")
        return QuotaDecision(allowed=True, reason="counter_store_unavailable")
