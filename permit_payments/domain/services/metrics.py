"""
Payment Metrics - in-process counters exposed on the admin stats endpoint.
"""
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

_LATENCY_WINDOW = 500


@dataclass
class PaymentMetrics:
    """Attempt/success/failure counters and a bounded latency window"""

    attempts: Counter = field(default_factory=Counter)
    successes: Counter = field(default_factory=Counter)
    failures: Counter = field(default_factory=Counter)
    latencies_ms: deque = field(default_factory=lambda: deque(maxlen=_LATENCY_WINDOW))
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def record_attempt(self, method: str) -> None:
        self.attempts[method] += 1

    def record_success(self, method: str, latency_ms: float) -> None:
        self.successes[method] += 1
        self.latencies_ms.append(latency_ms)

    def record_failure(self, method: str, reason: str) -> None:
        self.failures[f"{method}:{reason}"] += 1

    def _percentile(self, pct: float) -> float | None:
        if not self.latencies_ms:
            return None
        ordered = sorted(self.latencies_ms)
        index = min(len(ordered) - 1, int(round(pct / 100 * (len(ordered) - 1))))
        return round(ordered[index], 1)

    def snapshot(self) -> dict[str, Any]:
        total_attempts = sum(self.attempts.values())
        total_successes = sum(self.successes.values())
        average = (
            round(sum(self.latencies_ms) / len(self.latencies_ms), 1)
            if self.latencies_ms else None
        )
        return {
            "attempts": dict(self.attempts),
            "successes": dict(self.successes),
            "failures": dict(self.failures),
            "success_rate": round(total_successes / total_attempts, 4) if total_attempts else None,
            "latency_ms": {
                "average": average,
                "p50": self._percentile(50),
                "p95": self._percentile(95),
            },
            "since": self.started_at.isoformat(),
        }
