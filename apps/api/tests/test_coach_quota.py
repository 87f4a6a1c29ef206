"""
Tests for coach quota enforcement (core/rate_limit.py).

Covers window ordering, the all-or-nothing rollback on denial, retry-after
derivation, fail-open on counter store errors and bounded admission under
concurrent callers.
"""
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from core.rate_limit import (
    DAY_TTL_S,
    FAIL_OPEN,
    HOUR_TTL_S,
    CoachQuotaEnforcer,
    QuotaScope,
)

NOW = datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)
USER = "athlete-1"

GLOBAL_KEY = "ratelimit:coach:global:2026-03-14"
HOUR_KEY = f"ratelimit:coach:{USER}:hour"
DAY_KEY = f"ratelimit:coach:{USER}:2026-03-14"


def make_enforcer(redis_client, global_daily=1400, hourly=10, daily=50, **kwargs):
    return CoachQuotaEnforcer(
        redis_client,
        global_daily_limit=global_daily,
        user_hourly_limit=hourly,
        user_daily_limit=daily,
        **kwargs,
    )


class TestQuotaWindows:
    def test_windows_checked_global_then_hour_then_day(self, fake_redis):
        enforcer = make_enforcer(fake_redis)
        windows = enforcer.windows(USER, NOW)

        assert [w.scope for w in windows] == [QuotaScope.GLOBAL_DAY, QuotaScope.USER_HOUR, QuotaScope.USER_DAY]
        assert [w.key for w in windows] == [GLOBAL_KEY, HOUR_KEY, DAY_KEY]
        assert [w.limit for w in windows] == [1400, 10, 50]

    def test_day_keys_use_utc_date(self, fake_redis):
        enforcer = make_enforcer(fake_redis)
        # 23:30 at UTC-5 is already the next day in UTC
        local = datetime(2026, 3, 13, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
        keys = [w.key for w in enforcer.windows(USER, local)]
        assert GLOBAL_KEY in keys
        assert DAY_KEY in keys

    def test_defaults_come_from_settings(self, fake_redis):
        from core.config import settings

        enforcer = CoachQuotaEnforcer(fake_redis)
        assert enforcer.global_daily_limit == settings.COACH_GLOBAL_DAILY_LIMIT
        assert enforcer.user_hourly_limit == settings.COACH_USER_HOURLY_LIMIT
        assert enforcer.user_daily_limit == settings.COACH_USER_DAILY_LIMIT


class TestAdmission:
    def test_first_request_admitted_and_sets_expiry(self, fake_redis):
        enforcer = make_enforcer(fake_redis)

        decision = enforcer.admit(USER, NOW)

        assert decision.allowed is True
        assert decision.reason == "ok"
        assert fake_redis.count(GLOBAL_KEY) == 1
        assert fake_redis.count(HOUR_KEY) == 1
        assert fake_redis.count(DAY_KEY) == 1
        assert fake_redis.ttl(HOUR_KEY) == HOUR_TTL_S
        assert fake_redis.ttl(DAY_KEY) == DAY_TTL_S
        assert fake_redis.ttl(GLOBAL_KEY) == DAY_TTL_S

    def test_day_windows_outlive_the_calendar_day(self):
        assert DAY_TTL_S == 25 * 60 * 60
        assert HOUR_TTL_S == 60 * 60

    def test_expiry_only_set_on_first_increment(self, fake_redis):
        enforcer = make_enforcer(fake_redis)
        enforcer.admit(USER, NOW)
        fake_redis._ttls[HOUR_KEY] = 120

        enforcer.admit(USER, NOW)

        assert fake_redis.ttl(HOUR_KEY) == 120

    def test_hourly_limit_denies_eleventh_request(self, fake_redis):
        enforcer = make_enforcer(fake_redis)
        for _ in range(10):
            assert enforcer.admit(USER, NOW).allowed

        decision = enforcer.admit(USER, NOW)

        assert decision.allowed is False
        assert decision.scope == QuotaScope.USER_HOUR
        assert decision.reason == "quota_exceeded"
        assert "hourly message limit" in decision.message

    def test_denial_rolls_back_every_counter_bumped_in_the_attempt(self, fake_redis):
        enforcer = make_enforcer(fake_redis, hourly=2)
        enforcer.admit(USER, NOW)
        enforcer.admit(USER, NOW)

        decision = enforcer.admit(USER, NOW)

        assert decision.allowed is False
        # Global and hourly were incremented then undone; daily never reached
        assert fake_redis.count(GLOBAL_KEY) == 2
        assert fake_redis.count(HOUR_KEY) == 2
        assert fake_redis.count(DAY_KEY) == 2

    def test_daily_denial_rolls_back_global_and_hour(self, fake_redis):
        enforcer = make_enforcer(fake_redis, hourly=100, daily=3)
        for _ in range(3):
            enforcer.admit(USER, NOW)

        decision = enforcer.admit(USER, NOW)

        assert decision.allowed is False
        assert decision.scope == QuotaScope.USER_DAY
        assert decision.message == "You've reached the daily message limit (3). Try again tomorrow."
        assert fake_redis.count(GLOBAL_KEY) == 3
        assert fake_redis.count(HOUR_KEY) == 3
        assert fake_redis.count(DAY_KEY) == 3

    def test_global_denial_does_not_touch_user_windows(self, fake_redis):
        enforcer = make_enforcer(fake_redis, global_daily=1)
        assert enforcer.admit("someone-else", NOW).allowed

        decision = enforcer.admit(USER, NOW)

        assert decision.allowed is False
        assert decision.scope == QuotaScope.GLOBAL_DAY
        assert decision.message == "The AI coach has reached its daily limit. Please try again tomorrow."
        assert fake_redis.count(GLOBAL_KEY) == 1
        assert fake_redis.get(HOUR_KEY) is None
        assert fake_redis.get(DAY_KEY) is None

    def test_denied_requests_do_not_consume_budget(self, fake_redis):
        enforcer = make_enforcer(fake_redis, hourly=1)
        assert enforcer.admit(USER, NOW).allowed
        for _ in range(5):
            assert not enforcer.admit(USER, NOW).allowed

        assert fake_redis.count(HOUR_KEY) == 1
        assert fake_redis.count(GLOBAL_KEY) == 1

    def test_users_do_not_share_personal_windows(self, fake_redis):
        enforcer = make_enforcer(fake_redis, hourly=1)
        assert enforcer.admit("a", NOW).allowed
        assert not enforcer.admit("a", NOW).allowed
        assert enforcer.admit("b", NOW).allowed


class TestRetryAfter:
    @pytest.mark.parametrize(
        "ttl, expected",
        [(3600, 60), (61, 2), (60, 1), (1, 1)],
    )
    def test_retry_after_is_ttl_in_minutes_rounded_up(self, fake_redis, ttl, expected):
        enforcer = make_enforcer(fake_redis, hourly=1)
        enforcer.admit(USER, NOW)
        fake_redis._ttls[HOUR_KEY] = ttl

        decision = enforcer.admit(USER, NOW)

        assert decision.retry_after_minutes == expected
        assert f"Try again in {expected} minutes." in decision.message

    def test_missing_ttl_falls_back_to_window_length(self, fake_redis):
        enforcer = make_enforcer(fake_redis, hourly=1)
        enforcer.admit(USER, NOW)
        fake_redis._ttls.pop(HOUR_KEY)

        decision = enforcer.admit(USER, NOW)

        assert decision.retry_after_minutes == 60


class TestCounterStoreFailure:
    def test_fail_open_is_the_policy(self):
        assert FAIL_OPEN is True

    def test_no_client_admits(self):
        decision = make_enforcer(None).admit(USER, NOW)
        assert decision.allowed is True
        assert decision.reason == "counter_store_unavailable"

    def test_redis_error_admits(self):
        redis_client = MagicMock()
        redis_client.incr.side_effect = RedisConnectionError("connection refused")

        decision = make_enforcer(redis_client).admit(USER, NOW)

        assert decision.allowed is True
        assert decision.reason == "counter_store_unavailable"

    def test_error_midway_admits(self, fake_redis):
        calls = {"n": 0}
        real_incr = fake_redis.incr

        def flaky_incr(key):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RedisConnectionError("reset by peer")
            return real_incr(key)

        fake_redis.incr = flaky_incr
        decision = make_enforcer(fake_redis).admit(USER, NOW)

        assert decision.allowed is True

    def test_fail_closed_denies_without_scope(self):
        redis_client = MagicMock()
        redis_client.incr.side_effect = RedisConnectionError("down")

        decision = make_enforcer(redis_client, fail_open=False).admit(USER, NOW)

        assert decision.allowed is False
        assert decision.scope is None
        assert decision.reason == "counter_store_unavailable"

    def test_rollback_failure_still_denies(self, fake_redis):
        enforcer = make_enforcer(fake_redis, hourly=1)
        enforcer.admit(USER, NOW)

        def broken_decr(key):
            raise RedisConnectionError("down")

        fake_redis.decr = broken_decr
        decision = enforcer.admit(USER, NOW)

        assert decision.allowed is False
        assert decision.scope == QuotaScope.USER_HOUR

    def test_failed_expire_is_repaired_on_next_admission(self, fake_redis):
        real_expire = fake_redis.expire
        failed = {"done": False}

        def flaky_expire(key, ttl):
            if key == HOUR_KEY and not failed["done"]:
                failed["done"] = True
                raise RedisConnectionError("connection reset")
            return real_expire(key, ttl)

        fake_redis.expire = flaky_expire
        enforcer = make_enforcer(fake_redis)

        assert enforcer.admit(USER, NOW).allowed
        assert fake_redis.ttl(HOUR_KEY) == -1

        assert enforcer.admit(USER, NOW).allowed
        assert fake_redis.ttl(HOUR_KEY) == HOUR_TTL_S

    def test_window_without_expiry_still_resets_once_full(self, fake_redis):
        enforcer = make_enforcer(fake_redis, hourly=2)
        for _ in range(2):
            enforcer.admit(USER, NOW)
        fake_redis._ttls.pop(HOUR_KEY)

        decision = enforcer.admit(USER, NOW)

        assert decision.allowed is False
        assert fake_redis.ttl(HOUR_KEY) == HOUR_TTL_S


class TestUsage:
    def test_usage_reports_counts_and_remaining(self, fake_redis):
        enforcer = make_enforcer(fake_redis)
        for _ in range(3):
            enforcer.admit(USER, NOW)

        usage = enforcer.usage(USER, NOW)

        assert usage["enforced"] is True
        assert usage["user_hour"] == {"used": 3, "limit": 10, "remaining": 7, "resets_in_minutes": 60}
        assert usage["user_day"]["remaining"] == 47
        assert usage["global_day"]["used"] == 3

    def test_usage_does_not_charge(self, fake_redis):
        enforcer = make_enforcer(fake_redis)
        enforcer.usage(USER, NOW)
        assert fake_redis.get(HOUR_KEY) is None

    def test_usage_without_redis(self):
        assert make_enforcer(None).usage(USER, NOW) == {"enforced": False}


class TestConcurrency:
    def test_concurrent_admissions_never_exceed_hourly_limit(self, fake_redis):
        enforcer = make_enforcer(fake_redis, hourly=10)
        results = []
        results_lock = threading.Lock()
        start = threading.Barrier(40)

        def worker():
            start.wait()
            decision = enforcer.admit(USER, NOW)
            with results_lock:
                results.append(decision.allowed)

        threads = [threading.Thread(target=worker) for _ in range(40)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(results) <= 10
        assert sum(results) >= 1
        # Rollbacks leave the counters exactly at the admitted count
        assert fake_redis.count(HOUR_KEY) == sum(results)
        assert fake_redis.count(GLOBAL_KEY) == sum(results)

    def test_sequential_admissions_hit_limit_exactly(self, fake_redis):
        enforcer = make_enforcer(fake_redis, hourly=10)
        admitted = sum(1 for _ in range(25) if enforcer.admit(USER, NOW).allowed)
        assert admitted == 10
