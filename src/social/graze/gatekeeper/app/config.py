"""
Configuration Module for the Gatekeeper Service

This module defines the configuration system for the gatekeeper service, using
Pydantic for settings validation and dependency injection through AppKeys.

The configuration follows these principles:
1. Environment-based configuration with sensible defaults
2. Strong validation and typing through Pydantic
3. Dependency injection pattern using aiohttp's app context

Every long-lived component (resolver pool, caches, record coordinator, task
runner) is constructed once at startup and stored on the application under a
typed AppKey. Handlers reach them only through those keys.

Key configuration areas include:
- Service identification and networking
- Database and cache connections
- Identity provider selection, timeouts and rate limits
- Cache sizes and lifetimes
- Brute force protection
- Monitoring and observability
"""

from typing import Final, Optional
import logging

from aiohttp import ClientSession, web
from pydantic import AliasChoices, Field, PostgresDsn, RedisDsn, field_validator
from pydantic_settings import BaseSettings
from redis import asyncio as redis

from social.graze.gatekeeper.admission import AdmissionService
from social.graze.gatekeeper.app.metrics import MetricsClient
from social.graze.gatekeeper.app.tasks import BackgroundTaskRunner
from social.graze.gatekeeper.auth.cache import AuthorizationCache
from social.graze.gatekeeper.cache.resolution import ResolutionCache
from social.graze.gatekeeper.model.health import HealthGauge
from social.graze.gatekeeper.resolve.alerts import ResolverFailureMonitor
from social.graze.gatekeeper.resolve.pool import ResolverPool
from social.graze.gatekeeper.store.coordinator import PlayerRecordCoordinator
from social.graze.gatekeeper.store.invalidation import InvalidationChannel
from social.graze.gatekeeper.store.sql import SqlPlayerStore


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings for the gatekeeper service.

    Values are loaded from environment variables, with defaults suitable for
    development environments. For example, the database connection string can be
    set with either PG_DSN or DATABASE_URL.
    """

    # Environment and debugging settings
    debug: bool = False
    """
    Enable debug mode for verbose logging and request tracing.
    Set with DEBUG=true environment variable.
    """

    http_port: int = Field(alias="port", default=5100)
    """
    HTTP port for the internal API to listen on.
    Set with PORT environment variable.
    """

    worker_id: str = "gatekeeper"
    """
    Identifier for this instance, attached to task metrics.
    Set with WORKER_ID environment variable.
    """

    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    # Database and cache connections
    redis_dsn: RedisDsn = Field(
        "redis://valkey:6379/1?decode_responses=True",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore
    """
    Redis connection string for the persistent resolution tier.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    pg_dsn: PostgresDsn = Field(
        "postgresql+asyncpg://postgres:password@db/gatekeeper",
        validation_alias=AliasChoices("pg_dsn", "database_url"),
    )  # type: ignore
    """
    PostgreSQL connection string for player records.
    Set with PG_DSN or DATABASE_URL environment variables.
    """

    create_schema: bool = True
    """
    Create the player table on startup if it does not exist.
    Set with CREATE_SCHEMA environment variable.
    """

    # Identity providers
    mojang_enabled: bool = True
    """Query api.mojang.com. Set with MOJANG_ENABLED."""

    ashcon_enabled: bool = True
    """Query api.ashcon.app. Set with ASHCON_ENABLED."""

    wpme_enabled: bool = False
    """Query api-mc.wpme.pl. Set with WPME_ENABLED."""

    request_timeout_ms: int = 2000
    """
    Per-request timeout for a single provider, in milliseconds. Values below 100
    are raised to 100. Set with REQUEST_TIMEOUT_MS.
    """

    aggregate_timeout_ms: int = 3000
    """
    Upper bound for racing all providers, in milliseconds.
    Set with AGGREGATE_TIMEOUT_MS.
    """

    provider_requests_per_minute: int = 60
    """
    Requests each provider may receive per 60 second window.
    Set with PROVIDER_REQUESTS_PER_MINUTE.
    """

    # Resolver failure alerts
    resolver_alerts_enabled: bool = True
    """
    Warn (log and Sentry) when providers fail too often.
    Set with RESOLVER_ALERTS_ENABLED.
    """

    resolver_alert_failure_rate: float = 0.5
    """Share of failed provider requests in a window that raises an alert. Default: 0.5"""

    resolver_alert_min_requests: int = 10
    """Provider requests a window must see before it can alert."""

    resolver_alert_window_minutes: int = 5
    """Length of the alert window; counters start over when it ends."""

    resolver_alert_cooldown_minutes: int = 30
    """Minimum time between two alerts."""

    # Resolution cache
    resolution_hit_ttl_seconds: int = 600
    """Lifetime of a cached PREMIUM result. Default: 600 (10 minutes)"""

    resolution_miss_ttl_seconds: int = 180
    """Lifetime of a cached OFFLINE result. Default: 180 (3 minutes)"""

    resolution_cache_max_entries: int = 10000
    """Maximum in-process resolution entries before the oldest tenth is evicted."""

    soft_refresh_ratio: float = 0.8
    """
    Fraction of an entry's lifetime after which it is refreshed in the background.
    Set with SOFT_REFRESH_RATIO environment variable.
    Default: 0.8
    """

    persistent_premium_ttl_seconds: int = 30 * 24 * 60 * 60
    """Lifetime of PREMIUM results in Redis. Default: 30 days"""

    persistent_offline_ttl_seconds: int = 60 * 60
    """Lifetime of OFFLINE results in Redis. Default: 1 hour"""

    # Authorization cache
    auth_cache_ttl_minutes: int = 60
    """Lifetime of an authorized player entry."""

    auth_cache_max_size: int = 10000
    """Maximum authorized player entries before least recently used eviction."""

    max_sessions: int = 1000
    """Maximum concurrent sessions before the least active one is evicted."""

    session_timeout_minutes: int = 60
    """Inactivity timeout for sessions."""

    premium_ttl_hours: int = 24
    """Lifetime of a cached premium decision per nickname."""

    premium_refresh_threshold: float = 0.8
    """Fraction of the premium decision lifetime after which it is re-verified."""

    premium_cache_max_size: int = 10000
    """Maximum cached premium decisions."""

    brute_force_max_attempts: int = 5
    """Failed logins within one window before an origin is blocked."""

    brute_force_timeout_minutes: int = 10
    """Length of the failed login window, measured from the first failure."""

    cleanup_interval_seconds: int = 300
    """How often expired authorization state is swept. Default: 300 (5 minutes)"""

    # Admission
    admission_timeout_ms: int = 1500
    """
    Upper bound on waiting for a premium decision during admission, in
    milliseconds. A timeout is treated as "cannot verify" and the connection is
    denied. Set with ADMISSION_TIMEOUT_MS.
    """

    premium_check_enabled: bool = True
    """
    When disabled every valid connection is admitted through the offline path.
    Set with PREMIUM_CHECK_ENABLED.
    """

    shutdown_grace_seconds: float = 5.0
    """Time in-flight background tasks get to finish on shutdown."""

    # Monitoring and observability settings
    metrics_backend: str = "telegraf"
    """
    Metrics backend, 'telegraf' or 'none'.
    Set with METRICS_BACKEND environment variable.
    """

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """

    @field_validator(
        "request_timeout_ms",
        "aggregate_timeout_ms",
        "provider_requests_per_minute",
        "resolution_hit_ttl_seconds",
        "resolution_miss_ttl_seconds",
        "resolution_cache_max_entries",
        "persistent_premium_ttl_seconds",
        "persistent_offline_ttl_seconds",
        "auth_cache_max_size",
        "max_sessions",
        "session_timeout_minutes",
        "premium_ttl_hours",
        "premium_cache_max_size",
        "brute_force_max_attempts",
        "brute_force_timeout_minutes",
        "cleanup_interval_seconds",
        "admission_timeout_ms",
        "resolver_alert_min_requests",
        "resolver_alert_window_minutes",
        "resolver_alert_cooldown_minutes",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator(
        "soft_refresh_ratio", "premium_refresh_threshold", "resolver_alert_failure_rate"
    )
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("must be in the range (0, 1]")
        return v

    @field_validator("metrics_backend")
    @classmethod
    def validate_metrics_backend(cls, v: str) -> str:
        if v.lower() not in ("telegraf", "none"):
            raise ValueError("metrics_backend must be 'telegraf' or 'none'")
        return v.lower()


# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
"""AppKey for accessing the Redis client"""

HealthGaugeAppKey: Final = web.AppKey("health_gauge", HealthGauge)
"""AppKey for accessing the health monitoring gauge"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the configured metrics client"""

TaskRunnerAppKey: Final = web.AppKey("task_runner", BackgroundTaskRunner)
"""AppKey for the background task runner"""

PlayerStoreAppKey: Final = web.AppKey("player_store", SqlPlayerStore)
"""AppKey for the SQL player store"""

InvalidationChannelAppKey: Final = web.AppKey("invalidation_channel", InvalidationChannel)
"""AppKey for the record change channel"""

CoordinatorAppKey: Final = web.AppKey("coordinator", PlayerRecordCoordinator)
"""AppKey for the player record coordinator"""

ResolverPoolAppKey: Final = web.AppKey("resolver_pool", ResolverPool)
"""AppKey for the identity resolver pool"""

ResolutionCacheAppKey: Final = web.AppKey("resolution_cache", ResolutionCache)
"""AppKey for the two-tier resolution cache"""

AuthorizationCacheAppKey: Final = web.AppKey("authorization_cache", AuthorizationCache)
"""AppKey for the authorization cache"""

AdmissionServiceAppKey: Final = web.AppKey("admission_service", AdmissionService)
"""AppKey for the admission service"""

ResolverFailureMonitorAppKey: Final = web.AppKey(
    "resolver_failure_monitor", ResolverFailureMonitor
)
"""AppKey for the provider failure-rate monitor"""
