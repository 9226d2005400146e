import logging
from time import time
from typing import Optional

import aiohttp
import redis.asyncio as redis
import sentry_sdk
from aiohttp import web
from sentry_sdk.integrations.aiohttp import AioHttpIntegration
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine

from social.graze.gatekeeper.admission import AdmissionService
from social.graze.gatekeeper.app.config import (
    AdmissionServiceAppKey,
    AuthorizationCacheAppKey,
    CoordinatorAppKey,
    HealthGaugeAppKey,
    InvalidationChannelAppKey,
    MetricsClientAppKey,
    PlayerStoreAppKey,
    RedisClientAppKey,
    ResolutionCacheAppKey,
    ResolverFailureMonitorAppKey,
    ResolverPoolAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
    TaskRunnerAppKey,
)
from social.graze.gatekeeper.app.handlers.internal import (
    handle_internal_admission,
    handle_internal_alive,
    handle_internal_authorized,
    handle_internal_blocked,
    handle_internal_login,
    handle_internal_login_failed,
    handle_internal_logout,
    handle_internal_ready,
    handle_internal_resolve,
    handle_internal_session,
    handle_internal_stats,
    handle_internal_verify,
)
from social.graze.gatekeeper.app.metrics import create_metrics_client
from social.graze.gatekeeper.app.tasks import BackgroundTaskRunner
from social.graze.gatekeeper.auth.cache import AuthorizationCache
from social.graze.gatekeeper.auth.conflict import ConflictResolver
from social.graze.gatekeeper.cache.persistent import PersistentResolutionStore
from social.graze.gatekeeper.cache.resolution import ResolutionCache
from social.graze.gatekeeper.model.health import HealthGauge
from social.graze.gatekeeper.resolve.alerts import ResolverFailureMonitor
from social.graze.gatekeeper.resolve.pool import ResolverPool
from social.graze.gatekeeper.resolve.providers import create_providers
from social.graze.gatekeeper.store.coordinator import PlayerRecordCoordinator
from social.graze.gatekeeper.store.invalidation import InvalidationChannel
from social.graze.gatekeeper.store.sql import SqlPlayerStore

logger = logging.getLogger(__name__)


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]
    health_gauge = app[HealthGaugeAppKey]

    metrics_client = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        debug=settings.debug,
    )
    await metrics_client.connect()
    app[MetricsClientAppKey] = metrics_client

    player_store = SqlPlayerStore(create_async_engine(str(settings.pg_dsn)))
    app[PlayerStoreAppKey] = player_store
    if settings.create_schema:
        try:
            await player_store.create_schema()
        except (SQLAlchemyError, OSError) as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Unable to verify player schema, store will report unavailable")

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logging.info("Starting request: %s", params)

        async def on_request_end(session, trace_config_ctx, params):
            logging.info("Ending request: %s", params)

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    http_session = aiohttp.ClientSession(trace_configs=[trace_config])
    app[SessionAppKey] = http_session

    redis_client = redis.Redis(
        connection_pool=redis.ConnectionPool.from_url(str(settings.redis_dsn))
    )
    app[RedisClientAppKey] = redis_client

    runner = BackgroundTaskRunner(metrics_client, settings.worker_id, health_gauge)
    runner.start()
    app[TaskRunnerAppKey] = runner

    channel = InvalidationChannel(runner)
    app[InvalidationChannelAppKey] = channel

    coordinator = PlayerRecordCoordinator(player_store, channel)
    app[CoordinatorAppKey] = coordinator

    failure_monitor = ResolverFailureMonitor(
        enabled=settings.resolver_alerts_enabled,
        failure_rate_threshold=settings.resolver_alert_failure_rate,
        min_requests=settings.resolver_alert_min_requests,
        window_minutes=settings.resolver_alert_window_minutes,
        cooldown_minutes=settings.resolver_alert_cooldown_minutes,
        metrics_client=metrics_client,
    )
    failure_monitor.start(runner)
    app[ResolverFailureMonitorAppKey] = failure_monitor

    pool = ResolverPool(
        create_providers(
            http_session,
            mojang_enabled=settings.mojang_enabled,
            ashcon_enabled=settings.ashcon_enabled,
            wpme_enabled=settings.wpme_enabled,
            request_timeout_ms=settings.request_timeout_ms,
            requests_per_window=settings.provider_requests_per_minute,
            metrics_client=metrics_client,
            failure_monitor=failure_monitor,
        ),
        aggregate_timeout_ms=settings.aggregate_timeout_ms,
    )
    app[ResolverPoolAppKey] = pool

    resolution_cache = ResolutionCache(
        pool,
        runner,
        persistent=PersistentResolutionStore(
            redis_client,
            premium_ttl_seconds=settings.persistent_premium_ttl_seconds,
            offline_ttl_seconds=settings.persistent_offline_ttl_seconds,
        ),
        hit_ttl_seconds=settings.resolution_hit_ttl_seconds,
        miss_ttl_seconds=settings.resolution_miss_ttl_seconds,
        max_entries=settings.resolution_cache_max_entries,
        soft_ratio=settings.soft_refresh_ratio,
        metrics_client=metrics_client,
    )
    app[ResolutionCacheAppKey] = resolution_cache

    auth_cache = AuthorizationCache(
        runner,
        channel,
        ttl_minutes=settings.auth_cache_ttl_minutes,
        max_size=settings.auth_cache_max_size,
        max_sessions=settings.max_sessions,
        session_timeout_minutes=settings.session_timeout_minutes,
        brute_force_max_attempts=settings.brute_force_max_attempts,
        brute_force_timeout_minutes=settings.brute_force_timeout_minutes,
        premium_ttl_hours=settings.premium_ttl_hours,
        premium_refresh_threshold=settings.premium_refresh_threshold,
        premium_max_size=settings.premium_cache_max_size,
        cleanup_interval_seconds=settings.cleanup_interval_seconds,
        metrics_client=metrics_client,
    )
    auth_cache.start()
    app[AuthorizationCacheAppKey] = auth_cache

    app[AdmissionServiceAppKey] = AdmissionService(
        resolution_cache,
        auth_cache,
        coordinator,
        ConflictResolver(coordinator, runner),
        runner,
        admission_timeout_ms=settings.admission_timeout_ms,
        premium_check_enabled=settings.premium_check_enabled,
        metrics_client=metrics_client,
    )

    runner.schedule_periodic(health_gauge.tick, 30, "tick-health")

    logger.info("Startup complete")

    yield

    logger.info("Shutting down")

    auth_cache.stop()
    await runner.shutdown(settings.shutdown_grace_seconds)
    await pool.close()

    await player_store.close()
    await http_session.close()
    await redis_client.aclose()
    await metrics_client.close()


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        response = await handler(request)
        return response
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise e


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    request_method: str = request.method
    request_path = request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except Exception as e:
        metrics_client.increment(
            "gatekeeper.server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        metrics_client.timer(
            "gatekeeper.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "gatekeeper.server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


def add_internal_routes(app: web.Application) -> None:
    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
            web.get("/internal/api/resolve", handle_internal_resolve),
            web.post("/internal/api/admission", handle_internal_admission),
            web.post("/internal/api/login", handle_internal_login),
            web.post("/internal/api/login/failed", handle_internal_login_failed),
            web.post("/internal/api/logout", handle_internal_logout),
            web.post("/internal/api/verify", handle_internal_verify),
            web.get("/internal/api/authorized", handle_internal_authorized),
            web.get("/internal/api/session", handle_internal_session),
            web.get("/internal/api/blocked", handle_internal_blocked),
            web.get("/internal/api/stats", handle_internal_stats),
        ]
    )


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=True,
            integrations=[AioHttpIntegration()],
        )
    app = web.Application(middlewares=[statsd_middleware, sentry_middleware])

    app[SettingsAppKey] = settings
    app[HealthGaugeAppKey] = HealthGauge()

    add_internal_routes(app)

    app.cleanup_ctx.append(background_tasks)

    return app
