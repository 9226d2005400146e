"""
Tests for the internal HTTP API in social.graze.gatekeeper.app.handlers.internal

The application is assembled with real components over stub providers and the
in-memory player store, and driven through aiohttp's test client.
"""

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils

from social.graze.gatekeeper.admission import AdmissionService
from social.graze.gatekeeper.app.config import (
    AdmissionServiceAppKey,
    AuthorizationCacheAppKey,
    CoordinatorAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    ResolutionCacheAppKey,
    ResolverFailureMonitorAppKey,
    ResolverPoolAppKey,
    Settings,
    SettingsAppKey,
    TaskRunnerAppKey,
)
from social.graze.gatekeeper.app.server import (
    add_internal_routes,
    sentry_middleware,
    statsd_middleware,
)
from social.graze.gatekeeper.auth.cache import AuthorizationCache
from social.graze.gatekeeper.auth.conflict import ConflictResolver
from social.graze.gatekeeper.cache.resolution import ResolutionCache
from social.graze.gatekeeper.model.health import HealthGauge
from social.graze.gatekeeper.resolve.alerts import ResolverFailureMonitor
from social.graze.gatekeeper.resolve.pool import ResolverPool
from social.graze.gatekeeper.resolve.result import ResolutionResult, offline_identity_id
from tests.test_helpers import (
    SNIPER_PREMIUM_ID,
    STEVE_PREMIUM_ID,
    StubProvider,
    make_offline_record,
)

ORIGIN = "203.0.113.7"


@pytest.fixture
def app(runner, coordinator, metrics_client):
    pool = ResolverPool(
        [StubProvider("mojang", ResolutionResult.premium(STEVE_PREMIUM_ID, "Steve", "mojang"))]
    )
    resolution_cache = ResolutionCache(pool, runner)
    auth_cache = AuthorizationCache(runner)

    app = web.Application(middlewares=[statsd_middleware, sentry_middleware])
    app[SettingsAppKey] = Settings(debug=True, metrics_backend="none")
    app[HealthGaugeAppKey] = HealthGauge()
    app[MetricsClientAppKey] = metrics_client
    app[TaskRunnerAppKey] = runner
    app[CoordinatorAppKey] = coordinator
    app[ResolverPoolAppKey] = pool
    app[ResolverFailureMonitorAppKey] = ResolverFailureMonitor()
    app[ResolutionCacheAppKey] = resolution_cache
    app[AuthorizationCacheAppKey] = auth_cache
    app[AdmissionServiceAppKey] = AdmissionService(
        resolution_cache,
        auth_cache,
        coordinator,
        ConflictResolver(coordinator, runner),
        runner,
    )
    add_internal_routes(app)
    return app


@pytest_asyncio.fixture
async def client(app):
    test_client = test_utils.TestClient(test_utils.TestServer(app))
    await test_client.start_server()
    yield test_client
    await test_client.close()


class TestHealthHandlers:
    """Test suite for liveness and readiness."""

    async def test_alive(self, client, metrics_client):
        """Liveness always answers 200 and requests are counted."""
        response = await client.get("/internal/alive")
        assert response.status == 200
        assert metrics_client.count("gatekeeper.server.request.count") == 1

    async def test_ready_follows_store(self, client, player_store):
        """Readiness fails while the player store is unreachable."""
        assert (await client.get("/internal/ready")).status == 200
        player_store.connected = False
        assert (await client.get("/internal/ready")).status == 503

    async def test_ready_follows_health_gauge(self, client, app):
        """Readiness fails after a burst of errors."""
        await app[HealthGaugeAppKey].womp(101)
        assert (await client.get("/internal/ready")).status == 503


class TestApiHandlers:
    """Test suite for the internal API."""

    async def test_resolve(self, client):
        """Each requested name is resolved."""
        response = await client.get(
            "/internal/api/resolve", params=[("name", "Steve"), ("name", "no way")]
        )
        assert response.status == 200
        body = await response.json()
        assert body[0]["name"] == "Steve"
        assert body[0]["status"] == "premium"
        assert body[0]["identity_id"] == str(STEVE_PREMIUM_ID)
        assert body[1]["status"] == "offline"
        assert body[1]["message"] == "invalid characters"

    async def test_resolve_without_names(self, client):
        """No names gives an empty list."""
        response = await client.get("/internal/api/resolve")
        assert await response.json() == []

    async def test_admission(self, client):
        """A premium name without a local account is admitted online."""
        response = await client.post(
            "/internal/api/admission", json={"name": "Steve", "origin": ORIGIN}
        )
        assert response.status == 200
        body = await response.json()
        assert body["kind"] == "online"
        assert body["premium_id"] == str(STEVE_PREMIUM_ID)

    async def test_admission_bad_request(self, client):
        """Malformed bodies are rejected with 400."""
        assert (await client.post("/internal/api/admission", data="nope")).status == 400
        assert (await client.post("/internal/api/admission", json={})).status == 400
        response = await client.post(
            "/internal/api/admission", json={"name": "Steve", "origin": 7}
        )
        assert response.status == 400

    async def test_admission_internal_error(self, client, app, monkeypatch):
        """Unexpected failures answer 500 and womp the health gauge."""

        async def broken(name, origin):
            raise RuntimeError("boom")

        monkeypatch.setattr(app[AdmissionServiceAppKey], "pre_login", broken)

        response = await client.post("/internal/api/admission", json={"name": "Steve"})

        assert response.status == 500
        body = await response.json()
        assert body["error_type"] == "RuntimeError"
        assert body["error_message"] == "boom"
        assert app[HealthGaugeAppKey].value == 1

    async def test_authorized_and_session(self, client, app):
        """Authorization and session state are reported per identity."""
        app[AdmissionServiceAppKey].complete_login(STEVE_PREMIUM_ID, "Steve", ORIGIN)

        response = await client.get(
            "/internal/api/authorized",
            params={"identity_id": str(STEVE_PREMIUM_ID), "origin": ORIGIN},
        )
        assert (await response.json())["authorized"] is True

        response = await client.get(
            "/internal/api/session",
            params={"identity_id": str(STEVE_PREMIUM_ID), "name": "steve", "origin": ORIGIN},
        )
        assert (await response.json())["active"] is True

    async def test_invalid_identity_id(self, client):
        """Identity ids must be UUIDs."""
        response = await client.get("/internal/api/authorized", params={"identity_id": "x"})
        assert response.status == 400
        response = await client.get(
            "/internal/api/session", params={"identity_id": str(STEVE_PREMIUM_ID)}
        )
        assert response.status == 400

    async def test_blocked(self, client, app):
        """Blocked origins are reported."""
        for _ in range(5):
            app[AuthorizationCacheAppKey].register_failed_login(ORIGIN)
        response = await client.get("/internal/api/blocked", params={"origin": ORIGIN})
        assert await response.json() == {"origin": ORIGIN, "blocked": True}

    async def test_stats(self, client):
        """Stats expose every component."""
        await client.get("/internal/api/resolve", params={"name": "Steve"})
        body = await (await client.get("/internal/api/stats")).json()
        assert body["resolvers"] == {"mojang": {"requests": 1}}
        assert body["resolver_alerts"]["total"] == 0
        assert body["resolution_cache"]["misses"] == 1
        assert "hit_rate" in body["authorization_cache"]
        assert body["cached_records"] == 0


class TestLoginHandlers:
    """Test suite for the login state endpoints."""

    async def test_login_then_authorized_and_session(self, client, coordinator):
        """A reported login makes the authorization and session queries true."""
        steve = make_offline_record("Steve")
        await coordinator.save(steve)

        response = await client.post(
            "/internal/api/login", json={"name": "Steve", "origin": ORIGIN}
        )
        assert response.status == 200
        body = await response.json()
        assert body == {
            "identity_id": str(steve.identity_id),
            "nickname": "Steve",
            "is_premium": False,
        }

        response = await client.get(
            "/internal/api/authorized",
            params={"identity_id": str(steve.identity_id), "origin": ORIGIN},
        )
        assert (await response.json())["authorized"] is True
        response = await client.get(
            "/internal/api/session",
            params={"identity_id": str(steve.identity_id), "name": "Steve", "origin": ORIGIN},
        )
        assert (await response.json())["active"] is True

    async def test_premium_login_without_record(self, client):
        """A premium login with no stored record uses the premium id."""
        response = await client.post(
            "/internal/api/login",
            json={"name": "Notch", "origin": ORIGIN, "premium_id": str(SNIPER_PREMIUM_ID)},
        )
        body = await response.json()
        assert body["identity_id"] == str(SNIPER_PREMIUM_ID)
        assert body["is_premium"] is True

    async def test_offline_login_without_record(self, client):
        """A local login with no stored record uses the derived offline id."""
        response = await client.post("/internal/api/login", json={"name": "Alex"})
        assert (await response.json())["identity_id"] == str(offline_identity_id("Alex"))

    async def test_login_bad_request(self, client):
        """Invalid names and premium ids are rejected."""
        response = await client.post("/internal/api/login", json={"name": "no way"})
        assert response.status == 400
        response = await client.post(
            "/internal/api/login", json={"name": "Steve", "premium_id": "x"}
        )
        assert response.status == 400

    async def test_login_store_unavailable(self, client, player_store):
        """A login cannot be recorded while the player store is down."""
        player_store.connected = False
        response = await client.post(
            "/internal/api/login", json={"name": "Steve", "origin": ORIGIN}
        )
        assert response.status == 503

    async def test_failed_logins_block_origin(self, client):
        """Repeated failures reported over HTTP block the origin."""
        for _ in range(4):
            response = await client.post("/internal/api/login/failed", json={"origin": ORIGIN})
            assert (await response.json())["blocked"] is False
        response = await client.post("/internal/api/login/failed", json={"origin": ORIGIN})
        assert (await response.json())["blocked"] is True

        response = await client.get("/internal/api/blocked", params={"origin": ORIGIN})
        assert (await response.json())["blocked"] is True
        response = await client.post(
            "/internal/api/admission", json={"name": "Steve", "origin": ORIGIN}
        )
        assert (await response.json())["kind"] == "deny"

    async def test_logout(self, client):
        """Logout drops authorization and the session."""
        await client.post(
            "/internal/api/login",
            json={"name": "Notch", "origin": ORIGIN, "premium_id": str(SNIPER_PREMIUM_ID)},
        )
        response = await client.post(
            "/internal/api/logout", json={"identity_id": str(SNIPER_PREMIUM_ID)}
        )
        assert response.status == 200

        response = await client.get(
            "/internal/api/authorized",
            params={"identity_id": str(SNIPER_PREMIUM_ID), "origin": ORIGIN},
        )
        assert (await response.json())["authorized"] is False
        response = await client.post("/internal/api/logout", json={"identity_id": "x"})
        assert response.status == 400

    async def test_verify(self, client, coordinator):
        """Presented ids are checked against the stored record."""
        await coordinator.save(
            make_offline_record("Steve", remote_identity_id=str(STEVE_PREMIUM_ID))
        )

        response = await client.post(
            "/internal/api/verify",
            json={"name": "Steve", "identity_id": str(STEVE_PREMIUM_ID)},
        )
        assert (await response.json())["verified"] is True
        response = await client.post(
            "/internal/api/verify",
            json={"name": "Steve", "identity_id": str(SNIPER_PREMIUM_ID)},
        )
        assert (await response.json())["verified"] is False
        response = await client.post("/internal/api/verify", json={"name": "Steve"})
        assert response.status == 400
