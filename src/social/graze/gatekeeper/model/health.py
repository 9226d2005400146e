import asyncio
import logging

logger = logging.getLogger(__name__)


class HealthGauge:
    """
    Makeshift health check used by the readiness probe.

    Unexpected errors (failed background tasks, store outages seen by request
    handlers) push the gauge up with `womp`. A periodic task calls `tick` to bring
    it back down. When a burst of errors pushes the value past the threshold, the
    service reports itself as not ready until things calm down.
    """

    def __init__(self, value: int = 0, health_threshold: int = 100) -> None:
        self._value = value
        self._health_threshold = health_threshold
        self._lock = asyncio.Lock()

    @property
    def value(self) -> int:
        return self._value

    @property
    def threshold(self) -> int:
        return self._health_threshold

    async def womp(self, d=1) -> int:
        async with self._lock:
            was_healthy = self._value <= self._health_threshold
            self._value += int(d)
            if was_healthy and self._value > self._health_threshold:
                logger.warning(
                    "Health gauge crossed threshold (%d > %d), reporting not ready",
                    self._value,
                    self._health_threshold,
                )
            return self._value

    async def tick(self, d: int = 1) -> None:
        async with self._lock:
            self._value = max(0, self._value - d)

    async def is_healthy(self) -> bool:
        async with self._lock:
            return self._value <= self._health_threshold
