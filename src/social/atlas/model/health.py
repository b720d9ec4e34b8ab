import asyncio
from collections import Counter
from typing import Dict


class HealthGauge:
    """
    Error-burst gauge backing the readiness probe.

    Handlers call ``record_error`` when a request fails for a reason outside
    regular flow control; resolution failures and missing records do not
    count. A background task calls ``decay`` periodically. While the score is
    above the threshold the service reports itself as not ready.
    """

    def __init__(self, threshold: int = 100) -> None:
        self._score = 0
        self._threshold = threshold
        self._errors: Counter[str] = Counter()
        self._lock = asyncio.Lock()

    @property
    def score(self) -> int:
        return self._score

    async def record_error(self, kind: str, weight: int = 1) -> int:
        async with self._lock:
            self._score += weight
            self._errors[kind] += 1
            return self._score

    async def decay(self) -> None:
        async with self._lock:
            self._score = max(0, self._score - 1)
            if self._score == 0:
                self._errors.clear()

    async def is_healthy(self) -> bool:
        async with self._lock:
            return self._score <= self._threshold

    async def snapshot(self) -> Dict[str, object]:
        """Score and error kinds seen since the gauge last drained."""
        async with self._lock:
            return {
                "score": self._score,
                "threshold": self._threshold,
                "errors": dict(self._errors),
            }
