"""
Tests for velocity checks and the per-application payment rate limiter
"""
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from permit_payments.core.exceptions import RateLimitExceededError
from permit_payments.domain.services.payment_rate_limiter import PaymentRateLimiter
from permit_payments.domain.services.velocity_service import (
    VelocityLimits,
    VelocityService,
    calculate_risk_score,
)


class TestVelocityService:

    @pytest.mark.unit
    async def test_first_attempt_is_allowed(self, fake_redis):
        verdict = await VelocityService(fake_redis).check_velocity(1, email="a@example.com", ip_address="10.0.0.1")

        assert verdict.allowed
        assert verdict.violations == []
        assert verdict.risk_score == 0

    @pytest.mark.unit
    async def test_rapid_fire_blocks_third_attempt(self, fake_redis):
        service = VelocityService(fake_redis)

        await service.check_velocity(1)
        second = await service.check_velocity(1)
        third = await service.check_velocity(1)

        assert second.allowed
        assert not third.allowed
        assert [v["type"] for v in third.violations] == ["rapid_fire"]
        assert third.risk_score == 50

    @pytest.mark.unit
    async def test_hourly_user_limit(self, fake_redis):
        service = VelocityService(fake_redis, VelocityLimits(user_hourly=2, rapid_fire_attempts=100))

        for _ in range(2):
            assert (await service.check_velocity(1)).allowed
        verdict = await service.check_velocity(1)

        assert verdict.violations == [{"type": "user_hourly", "limit": 2, "current": 3, "severity": "medium"}]

    @pytest.mark.unit
    async def test_counters_expire_with_their_window(self, fake_redis):
        await VelocityService(fake_redis).check_velocity(1, card_fingerprint="fp_1")

        assert fake_redis.ttl_of("velocity:user:1:hourly") == 3600
        assert fake_redis.ttl_of("velocity:user:1:daily") == 86400
        assert fake_redis.ttl_of("velocity:card:fp_1:daily") == 86400

    @pytest.mark.unit
    async def test_email_is_normalized(self, fake_redis):
        service = VelocityService(fake_redis, VelocityLimits(email_hourly=1, rapid_fire_attempts=100))

        await service.check_velocity(1, email="Juan@Example.com")
        verdict = await service.check_velocity(2, email=" juan@example.com ")

        assert [v["type"] for v in verdict.violations] == ["email_hourly"]

    @pytest.mark.unit
    async def test_high_value_only_counts_large_amounts(self, fake_redis):
        service = VelocityService(fake_redis, VelocityLimits(rapid_fire_attempts=100))

        await service.check_velocity(1, amount=Decimal("150.00"))
        assert await fake_redis.get("velocity:highvalue:1:hourly") is None

        for _ in range(3):
            verdict = await service.check_velocity(1, amount=Decimal("5000"))

        assert [v["type"] for v in verdict.violations] == ["high_value_hourly"]

    @pytest.mark.unit
    async def test_disabled_service_allows_everything(self, fake_redis):
        service = VelocityService(fake_redis, enabled=False)

        for _ in range(5):
            assert (await service.check_velocity(1)).allowed
        assert fake_redis.published == []
        assert await fake_redis.get("velocity:user:1:hourly") is None

    @pytest.mark.unit
    async def test_redis_failure_fails_open(self, fake_redis):
        with patch.object(fake_redis, "incr", AsyncMock(side_effect=RedisConnectionError("down"))):
            verdict = await VelocityService(fake_redis).check_velocity(1)

        assert verdict.allowed

    @pytest.mark.unit
    def test_risk_score_is_capped(self):
        violations = [{"severity": "high"}] * 3 + [{"severity": "low"}]

        assert calculate_risk_score(violations) == 100
        assert calculate_risk_score([{"severity": "medium"}, {"severity": "low"}]) == 35


class TestPaymentRateLimiter:

    @pytest.mark.unit
    async def test_fourth_attempt_in_window_is_rejected(self, fake_redis):
        limiter = PaymentRateLimiter(fake_redis, max_attempts=3, window_seconds=900)

        for _ in range(3):
            await limiter.check(10, "cus_1")

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.check(10, "cus_1")

        assert exc_info.value.status_code == 429
        assert 0 < exc_info.value.retry_after_seconds <= 900
        assert exc_info.value.details["retry_after_seconds"] == exc_info.value.retry_after_seconds

    @pytest.mark.unit
    async def test_limits_are_per_application_and_customer(self, fake_redis):
        limiter = PaymentRateLimiter(fake_redis, max_attempts=1, window_seconds=900)

        await limiter.check(10, "cus_1")
        await limiter.check(11, "cus_1")
        await limiter.check(10, "cus_2")

        with pytest.raises(RateLimitExceededError):
            await limiter.check(10, "cus_1")

    @pytest.mark.unit
    async def test_old_attempts_fall_out_of_the_window(self, fake_redis):
        limiter = PaymentRateLimiter(fake_redis, max_attempts=1, window_seconds=900)
        await fake_redis.zadd("app_payment:10:cus_1", {"stale": 1.0})

        await limiter.check(10, "cus_1")

        assert await fake_redis.zcard("app_payment:10:cus_1") == 1

    @pytest.mark.unit
    async def test_reset_clears_the_window(self, fake_redis):
        limiter = PaymentRateLimiter(fake_redis, max_attempts=1, window_seconds=900)
        await limiter.check(10, "cus_1")

        await limiter.reset(10, "cus_1")

        await limiter.check(10, "cus_1")

    @pytest.mark.unit
    async def test_redis_failure_allows_attempt(self, fake_redis):
        limiter = PaymentRateLimiter(fake_redis)

        with patch.object(fake_redis, "zremrangebyscore", AsyncMock(side_effect=RedisConnectionError("down"))):
            await limiter.check(10, "cus_1")
