"""Failure-rate alerting for the identity providers.

Every answered provider request is recorded as a success or a failure. Once a
window has seen enough requests and the share of failures reaches the threshold,
an alert is logged at warning level and sent to Sentry. Alerts are spaced by a
cooldown, and the counters start over at the end of every window.
"""

import logging
import time
from typing import Callable, Dict, Optional

import sentry_sdk

from social.graze.gatekeeper.app.metrics import MetricsClient, NoOpMetricsClient
from social.graze.gatekeeper.app.tasks import BackgroundTaskRunner

logger = logging.getLogger(__name__)


class ResolverFailureMonitor:
    def __init__(
        self,
        enabled: bool = True,
        failure_rate_threshold: float = 0.5,
        min_requests: int = 10,
        window_minutes: float = 5,
        cooldown_minutes: float = 30,
        metrics_client: Optional[MetricsClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.enabled = enabled
        self.failure_rate_threshold = failure_rate_threshold
        self.min_requests = min_requests
        self.window_seconds = window_minutes * 60
        self.cooldown_seconds = cooldown_minutes * 60
        self.metrics_client = metrics_client or NoOpMetricsClient()
        self.clock = clock

        self.total = 0
        self.failed = 0
        self.failures_by_provider: Dict[str, int] = {}
        self.window_started_at = clock()
        self.last_alert_at: Optional[float] = None

    def start(self, runner: BackgroundTaskRunner) -> None:
        if not self.enabled:
            return
        runner.schedule_periodic(self._reset_window, self.window_seconds, "resolver-alert-window")
        logger.info(
            "Resolver failure alerts enabled (threshold %.0f%%, window %ds)",
            self.failure_rate_threshold * 100,
            self.window_seconds,
        )

    @property
    def failure_rate(self) -> float:
        return self.failed / self.total if self.total > 0 else 0.0

    def record(self, provider_id: str, success: bool) -> bool:
        """Count one provider answer. Returns True when it raised an alert."""
        if not self.enabled:
            return False
        self.total += 1
        if success:
            return False
        self.failed += 1
        self.failures_by_provider[provider_id] = (
            self.failures_by_provider.get(provider_id, 0) + 1
        )
        return self._check()

    def reset(self) -> None:
        if self.total > 0:
            logger.debug(
                "Resolver alert window closed: %d/%d failed (%.1f%%)",
                self.failed,
                self.total,
                self.failure_rate * 100,
            )
        self.total = 0
        self.failed = 0
        self.failures_by_provider = {}
        self.window_started_at = self.clock()

    def stats(self) -> Dict[str, object]:
        return {
            "total": self.total,
            "failed": self.failed,
            "failure_rate": self.failure_rate,
            "failures_by_provider": dict(self.failures_by_provider),
            "window_age_seconds": self.clock() - self.window_started_at,
            "last_alert_at": self.last_alert_at,
        }

    def _check(self) -> bool:
        if self.total < self.min_requests:
            return False
        if self.failure_rate < self.failure_rate_threshold:
            return False
        now = self.clock()
        if self.last_alert_at is not None and now - self.last_alert_at < self.cooldown_seconds:
            logger.debug(
                "Resolver alert suppressed, cooldown has %ds left",
                self.cooldown_seconds - (now - self.last_alert_at),
            )
            return False

        self.last_alert_at = now
        breakdown = ", ".join(
            f"{provider}={count}"
            for provider, count in sorted(self.failures_by_provider.items())
        )
        message = (
            f"High resolver failure rate: {self.failed}/{self.total} "
            f"({self.failure_rate * 100:.1f}%, threshold "
            f"{self.failure_rate_threshold * 100:.1f}%) failures by provider: {breakdown}"
        )
        logger.warning(message)
        sentry_sdk.capture_message(message, level="warning")
        self.metrics_client.increment("gatekeeper.resolver.alert")
        return True

    async def _reset_window(self) -> None:
        self.reset()
