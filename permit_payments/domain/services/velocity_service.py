"""
Velocity Service - fraud heuristics on payment attempt frequency.

Fixed-window Redis counters (INCR, EXPIRE on first hit) per user, IP,
card fingerprint, email and high-value amount. Every exceeded limit is
reported as a violation; the gateway rejects the attempt when any exist.

Redis being unavailable fails open: a risk heuristic must not take the
payment path down with it.
"""
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import redis.asyncio as aioredis

from permit_payments.core.logging import get_logger, mask_email, mask_secret

logger = get_logger(__name__)

HOUR = 3600
DAY = 86400
MONTH = 2592000

SEVERITY_WEIGHTS = {"low": 10, "medium": 25, "high": 50}
MAX_RISK_SCORE = 100


@dataclass
class VelocityLimits:
    user_hourly: int = 5
    user_daily: int = 10
    user_monthly: int = 30
    ip_hourly: int = 20
    ip_daily: int = 50
    card_hourly: int = 3
    card_daily: int = 5
    email_hourly: int = 5
    email_daily: int = 10
    high_value_threshold: Decimal = Decimal("5000")
    high_value_hourly: int = 2
    high_value_daily: int = 5
    rapid_fire_attempts: int = 3
    rapid_fire_window_seconds: int = 60


@dataclass
class VelocityVerdict:
    allowed: bool
    violations: list[dict[str, Any]] = field(default_factory=list)
    risk_score: int = 0


def calculate_risk_score(violations: list[dict[str, Any]]) -> int:
    score = sum(SEVERITY_WEIGHTS.get(v["severity"], 0) for v in violations)
    return min(score, MAX_RISK_SCORE)


class VelocityService:
    def __init__(self, redis: aioredis.Redis, limits: VelocityLimits | None = None, *, enabled: bool = True):
        self._redis = redis
        self.limits = limits or VelocityLimits()
        self.enabled = enabled

    async def _bump(self, key: str, ttl_seconds: int) -> int:
        count = int(await self._redis.incr(key))
        if count == 1:
            await self._redis.expire(key, ttl_seconds)
        return count

    async def _check_windows(
        self,
        prefix: str,
        windows: list[tuple[str, int, int, str]],
        violation_type: str,
    ) -> list[dict[str, Any]]:
        """windows: (suffix, ttl, limit, severity)"""
        violations = []
        for suffix, ttl, limit, severity in windows:
            current = await self._bump(f"{prefix}:{suffix}", ttl)
            if current > limit:
                violations.append({
                    "type": f"{violation_type}_{suffix}",
                    "limit": limit,
                    "current": current,
                    "severity": severity,
                })
        return violations

    async def _check_rapid_fire(self, user_id: int) -> dict[str, Any] | None:
        key = f"velocity:user:{user_id}:rapid"
        now = time.time()
        window = self.limits.rapid_fire_window_seconds
        await self._redis.zremrangebyscore(key, 0, now - window)
        await self._redis.zadd(key, {f"{now:.6f}": now})
        await self._redis.expire(key, window)
        current = int(await self._redis.zcard(key))
        if current >= self.limits.rapid_fire_attempts:
            return {
                "type": "rapid_fire",
                "limit": self.limits.rapid_fire_attempts,
                "current": current,
                "severity": "high",
            }
        return None

    async def check_velocity(
        self,
        user_id: int,
        email: str | None = None,
        ip_address: str | None = None,
        amount: Decimal | float | None = None,
        card_fingerprint: str | None = None,
    ) -> VelocityVerdict:
        if not self.enabled:
            return VelocityVerdict(allowed=True)

        lim = self.limits
        try:
            violations = await self._check_windows(
                f"velocity:user:{user_id}",
                [
                    ("hourly", HOUR, lim.user_hourly, "medium"),
                    ("daily", DAY, lim.user_daily, "high"),
                    ("monthly", MONTH, lim.user_monthly, "high"),
                ],
                "user",
            )
            if ip_address:
                violations += await self._check_windows(
                    f"velocity:ip:{ip_address}",
                    [
                        ("hourly", HOUR, lim.ip_hourly, "medium"),
                        ("daily", DAY, lim.ip_daily, "high"),
                    ],
                    "ip",
                )
            if card_fingerprint:
                violations += await self._check_windows(
                    f"velocity:card:{card_fingerprint}",
                    [
                        ("hourly", HOUR, lim.card_hourly, "high"),
                        ("daily", DAY, lim.card_daily, "high"),
                    ],
                    "card",
                )
            if email:
                violations += await self._check_windows(
                    f"velocity:email:{email.strip().lower()}",
                    [
                        ("hourly", HOUR, lim.email_hourly, "medium"),
                        ("daily", DAY, lim.email_daily, "medium"),
                    ],
                    "email",
                )
            if amount is not None and Decimal(str(amount)) >= lim.high_value_threshold:
                violations += await self._check_windows(
                    f"velocity:highvalue:{user_id}",
                    [
                        ("hourly", HOUR, lim.high_value_hourly, "high"),
                        ("daily", DAY, lim.high_value_daily, "high"),
                    ],
                    "high_value",
                )
            rapid = await self._check_rapid_fire(user_id)
            if rapid:
                violations.append(rapid)
        except Exception as e:
            logger.error(
                "Velocity check failed, allowing payment",
                extra_data={"user_id": user_id, "error": str(e)},
                exc_info=True,
            )
            return VelocityVerdict(allowed=True)

        verdict = VelocityVerdict(
            allowed=not violations,
            violations=violations,
            risk_score=calculate_risk_score(violations),
        )
        if violations:
            logger.warning(
                "Payment velocity limits exceeded",
                extra_data={
                    "user_id": user_id,
                    "email": mask_email(email),
                    "ip_address": ip_address,
                    "card_fingerprint": mask_secret(card_fingerprint),
                    "violations": [v["type"] for v in violations],
                    "risk_score": verdict.risk_score,
                },
            )
        return verdict
