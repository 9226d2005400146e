"""Concurrent resolution across every enabled provider.

The pool races one task per enabled provider. The first PREMIUM answer wins
immediately; otherwise the first OFFLINE answer wins once every provider has
reported, and UNKNOWN is returned only when nobody could decide.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set

from social.graze.gatekeeper.resolve.providers import ProviderResolver
from social.graze.gatekeeper.resolve.result import (
    ResolutionResult,
    ResolutionStatus,
    validate_username,
)

logger = logging.getLogger(__name__)

RESOLVER_SERVICE = "resolver-service"


def normalize_result(result: ResolutionResult, requested: str) -> ResolutionResult:
    """Apply the cross-provider sanity rules to a single provider answer."""
    if result.status != ResolutionStatus.PREMIUM:
        return result
    if result.identity_id is None:
        return ResolutionResult.unknown(result.source, "missing uuid")
    if result.canonical_name is None or result.canonical_name.lower() != requested.lower():
        logger.debug(
            "username mismatch %s vs %s from %s",
            result.canonical_name,
            requested,
            result.source,
        )
        return ResolutionResult.offline(
            result.source, "username mismatch with canonical name"
        )
    return result


class ResolverPool:
    """
    Aggregates a list of providers behind a single `resolve` call.

    `aggregate_timeout_ms` bounds the whole race. Providers still running when the
    deadline passes (or when a PREMIUM answer arrives) are abandoned: they run to
    completion so their rate-limit and failure accounting stays accurate, but their
    results are discarded. `close` cancels whatever is still in flight.
    """

    def __init__(
        self, providers: List[ProviderResolver], aggregate_timeout_ms: int = 3000
    ) -> None:
        self.providers = providers
        self.aggregate_timeout_ms = aggregate_timeout_ms
        self._abandoned: Set[asyncio.Task] = set()

    @property
    def enabled_providers(self) -> List[ProviderResolver]:
        return [provider for provider in self.providers if provider.enabled]

    @property
    def abandoned(self) -> int:
        return len(self._abandoned)

    async def resolve(self, name: str) -> ResolutionResult:
        invalid = validate_username(name, RESOLVER_SERVICE)
        if invalid is not None:
            return invalid

        name = name.strip()
        enabled = self.enabled_providers
        if len(enabled) == 0:
            return ResolutionResult.offline(RESOLVER_SERVICE, "no resolvers enabled")

        pending = {
            asyncio.create_task(provider.resolve(name), name=f"resolve:{provider.provider_id}")
            for provider in enabled
        }
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.aggregate_timeout_ms / 1000

        first_offline: Optional[ResolutionResult] = None
        last_unknown: Optional[ResolutionResult] = None

        try:
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    logger.debug("aggregate timeout resolving %s", name)
                    break
                done, pending = await asyncio.wait(
                    pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    if task.exception() is not None:
                        logger.warning(
                            "resolver task failed for %s", name, exc_info=task.exception()
                        )
                        continue
                    result = normalize_result(task.result(), name)
                    if result.status == ResolutionStatus.PREMIUM:
                        return result
                    if result.status == ResolutionStatus.OFFLINE:
                        if first_offline is None:
                            first_offline = result
                    else:
                        last_unknown = result
        finally:
            for task in pending:
                self._abandoned.add(task)
                task.add_done_callback(self._discard_abandoned)

        if first_offline is not None:
            return first_offline
        if last_unknown is not None and len(pending) == 0:
            return ResolutionResult.unknown(
                RESOLVER_SERVICE, f"no definitive answer ({last_unknown.message})"
            )
        if len(pending) > 0:
            return ResolutionResult.unknown(RESOLVER_SERVICE, "timeout")
        return ResolutionResult.unknown(RESOLVER_SERVICE, "no definitive answer")

    def stats(self) -> Dict[str, Dict[str, int]]:
        return {
            provider.provider_id: dict(provider.counters) for provider in self.providers
        }

    async def close(self) -> None:
        """Cancel providers abandoned by earlier races and wait for them to stop."""
        abandoned = list(self._abandoned)
        for task in abandoned:
            task.cancel()
        if abandoned:
            await asyncio.gather(*abandoned, return_exceptions=True)

    def _discard_abandoned(self, task: asyncio.Task) -> None:
        self._abandoned.discard(task)
        if task.cancelled():
            return
        if task.exception() is not None:
            logger.debug("abandoned resolver task failed: %s", task.exception())
