"""Remote identity providers.

Each provider answers "is this name a premium account, and what is its id?" over
HTTP. Providers never raise: every failure is folded into an UNKNOWN result so
that the pool can keep racing the remaining providers.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import aiohttp
import sentry_sdk
from aiohttp import ClientSession

from social.graze.gatekeeper.app.metrics import MetricsClient, NoOpMetricsClient
from social.graze.gatekeeper.resolve.alerts import ResolverFailureMonitor
from social.graze.gatekeeper.resolve.result import (
    ResolutionResult,
    ResolutionStatus,
    parse_identity_id,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_WINDOW_SECONDS = 60.0
MIN_REQUEST_TIMEOUT_MS = 100


@dataclass(frozen=True)
class ProviderConfig:
    """Static description of a remote identity endpoint."""

    provider_id: str
    endpoint: str
    not_found_status: int
    id_field: str
    name_field: str


MOJANG = ProviderConfig(
    provider_id="mojang",
    endpoint="https://api.mojang.com/users/profiles/minecraft/",
    not_found_status=204,
    id_field="id",
    name_field="name",
)

ASHCON = ProviderConfig(
    provider_id="ashcon",
    endpoint="https://api.ashcon.app/mojang/v2/user/",
    not_found_status=404,
    id_field="uuid",
    name_field="username",
)

WPME = ProviderConfig(
    provider_id="wpme",
    endpoint="https://api-mc.wpme.pl/v2/user/",
    not_found_status=404,
    id_field="uuid",
    name_field="username",
)


class RateLimitWindow:
    """Fixed-size request budget that resets a window length after it opened."""

    def __init__(
        self,
        provider_id: str,
        max_requests: int = 60,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider_id = provider_id
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self.request_count = 0
        self.window_started_at = clock()

    def try_acquire(self) -> bool:
        now = self.clock()
        if now - self.window_started_at >= self.window_seconds:
            self.window_started_at = now
            self.request_count = 0
        if self.request_count >= self.max_requests:
            return False
        self.request_count += 1
        return True


class ProviderResolver:
    """
    Resolves names against a single remote identity endpoint.

    The resolver owns its rate limit window and its request timeout. The shared
    aiohttp session is injected so that connection pooling spans every provider.
    """

    def __init__(
        self,
        config: ProviderConfig,
        http_session: ClientSession,
        enabled: bool = True,
        request_timeout_ms: int = 2000,
        requests_per_window: int = 60,
        metrics_client: Optional[MetricsClient] = None,
        failure_monitor: Optional[ResolverFailureMonitor] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.http_session = http_session
        self.enabled = enabled
        self.request_timeout_ms = max(MIN_REQUEST_TIMEOUT_MS, request_timeout_ms)
        self.rate_limit = RateLimitWindow(
            config.provider_id, max_requests=requests_per_window, clock=clock
        )
        self.metrics_client = metrics_client or NoOpMetricsClient()
        self.failure_monitor = failure_monitor
        self.counters: Dict[str, int] = {
            "requests": 0,
            "premium": 0,
            "offline": 0,
            "unknown": 0,
            "rate_limited": 0,
        }

    @property
    def provider_id(self) -> str:
        return self.config.provider_id

    async def resolve(self, name: str) -> ResolutionResult:
        if not self.enabled:
            return ResolutionResult.unknown(self.provider_id, "disabled")

        if not self.rate_limit.try_acquire():
            logger.debug("[%s] rate limited for %s", self.provider_id, name)
            self.counters["rate_limited"] += 1
            self._record("rate_limited")
            return ResolutionResult.unknown(self.provider_id, "rate limited")

        self.counters["requests"] += 1
        try:
            result = await self._query(name)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug("[%s] io error for %s: %s", self.provider_id, name, e)
            result = ResolutionResult.unknown(self.provider_id, "io error")
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.warning("[%s] unexpected error for %s", self.provider_id, name, exc_info=True)
            result = ResolutionResult.unknown(self.provider_id, "unexpected")

        self.counters[result.status.value] += 1
        self._record(result.status.value)
        if self.failure_monitor is not None:
            self.failure_monitor.record(
                self.provider_id, result.status != ResolutionStatus.UNKNOWN
            )
        return result

    async def _query(self, name: str) -> ResolutionResult:
        url = f"{self.config.endpoint}{quote(name)}"
        timeout = aiohttp.ClientTimeout(total=self.request_timeout_ms / 1000)
        async with self.http_session.get(url, timeout=timeout) as resp:
            if resp.status == self.config.not_found_status:
                return ResolutionResult.offline(self.provider_id, "not found")
            if resp.status != 200:
                logger.debug("[%s] http %d for %s", self.provider_id, resp.status, name)
                return ResolutionResult.unknown(self.provider_id, f"http {resp.status}")
            try:
                body: Any = await resp.json(content_type=None)
            except ValueError:
                body = None

        if not isinstance(body, dict):
            logger.debug("[%s] missing fields for %s", self.provider_id, name)
            return ResolutionResult.unknown(self.provider_id, "missing fields")

        raw_id = body.get(self.config.id_field)
        canonical = body.get(self.config.name_field)
        if not isinstance(raw_id, str) or not isinstance(canonical, str):
            logger.debug("[%s] missing fields for %s", self.provider_id, name)
            return ResolutionResult.unknown(self.provider_id, "missing fields")

        identity_id = parse_identity_id(raw_id)
        if identity_id is None:
            logger.debug("[%s] invalid uuid %s for %s", self.provider_id, raw_id, name)
            return ResolutionResult.unknown(self.provider_id, "uuid parse error")

        return ResolutionResult.premium(identity_id, canonical, self.provider_id)

    def _record(self, outcome: str) -> None:
        self.metrics_client.increment(
            f"gatekeeper.resolver.{outcome}",
            1,
            tag_dict={"provider": self.provider_id},
        )


def create_providers(
    http_session: ClientSession,
    mojang_enabled: bool = True,
    ashcon_enabled: bool = True,
    wpme_enabled: bool = False,
    request_timeout_ms: int = 2000,
    requests_per_window: int = 60,
    metrics_client: Optional[MetricsClient] = None,
    failure_monitor: Optional[ResolverFailureMonitor] = None,
) -> list[ProviderResolver]:
    """Build the default provider list in priority order."""
    return [
        ProviderResolver(
            config,
            http_session,
            enabled=enabled,
            request_timeout_ms=request_timeout_ms,
            requests_per_window=requests_per_window,
            metrics_client=metrics_client,
            failure_monitor=failure_monitor,
        )
        for config, enabled in (
            (MOJANG, mojang_enabled),
            (ASHCON, ashcon_enabled),
            (WPME, wpme_enabled),
        )
    ]
