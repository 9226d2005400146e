import json
import logging
import uuid
from typing import Optional

import sentry_sdk
from aiohttp import web

from social.graze.gatekeeper.app.config import (
    AdmissionServiceAppKey,
    AuthorizationCacheAppKey,
    CoordinatorAppKey,
    HealthGaugeAppKey,
    ResolutionCacheAppKey,
    ResolverFailureMonitorAppKey,
    ResolverPoolAppKey,
    SettingsAppKey,
    TaskRunnerAppKey,
)
from social.graze.gatekeeper.resolve.result import validate_username
from social.graze.gatekeeper.store.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


def _bad_request(message: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(
        body=json.dumps({"error": message}), content_type="application/json"
    )


def _identity_id_param(request: web.Request) -> uuid.UUID:
    return _uuid_value(request.query.get("identity_id", ""), "identity_id")


def _origin_param(request: web.Request) -> Optional[str]:
    origin = request.query.get("origin", "")
    return origin if len(origin) > 0 else None


def _uuid_value(value, field: str) -> uuid.UUID:
    if not isinstance(value, str):
        raise _bad_request(f"{field} must be a UUID")
    try:
        return uuid.UUID(value)
    except ValueError:
        raise _bad_request(f"{field} must be a UUID")


async def _json_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise _bad_request("body must be JSON")
    if not isinstance(body, dict):
        raise _bad_request("body must be a JSON object")
    origin = body.get("origin")
    if origin is not None and not isinstance(origin, str):
        raise _bad_request("origin must be a string")
    return body


async def _internal_error(request: web.Request, e: Exception, handler: str):
    logger.exception("Unexpected error in %s", handler)
    sentry_sdk.capture_exception(e)
    await request.app[HealthGaugeAppKey].womp()

    settings = request.app.get(SettingsAppKey)
    if settings and settings.debug:
        response_body = json.dumps(
            {
                "error": "Internal Server Error",
                "error_type": type(e).__name__,
                "error_message": str(e),
            }
        )
    else:
        response_body = json.dumps(
            {"error": "Internal Server Error", "error_type": type(e).__name__}
        )
    return web.HTTPInternalServerError(body=response_body, content_type="application/json")


async def handle_internal_ready(request: web.Request):
    health_gauge = request.app[HealthGaugeAppKey]
    coordinator = request.app[CoordinatorAppKey]
    if await health_gauge.is_healthy() and await coordinator.health_check():
        return web.Response(status=200)
    return web.Response(status=503)


async def handle_internal_alive(request: web.Request):
    return web.Response(status=200)


async def handle_internal_resolve(request: web.Request):
    names = request.query.getall("name", [])
    if len(names) == 0:
        return web.json_response([])

    resolution_cache = request.app[ResolutionCacheAppKey]
    results = []
    for name in names:
        result = await resolution_cache.resolve(name)
        results.append({"name": name, **result.model_dump(mode="json")})
    return web.json_response(results)


async def handle_internal_admission(request: web.Request):
    body = await _json_body(request)
    if not isinstance(body.get("name"), str):
        raise _bad_request("name is required")

    admission_service = request.app[AdmissionServiceAppKey]
    try:
        decision = await admission_service.pre_login(body["name"], body.get("origin"))
    except Exception as e:
        raise await _internal_error(request, e, "handle_internal_admission")
    return web.json_response(decision.model_dump(mode="json"))


async def handle_internal_login(request: web.Request):
    body = await _json_body(request)
    name = body.get("name")
    if not isinstance(name, str) or validate_username(name, "login") is not None:
        raise _bad_request("a valid name is required")
    premium_id = None
    if body.get("premium_id") is not None:
        premium_id = _uuid_value(body["premium_id"], "premium_id")

    admission_service = request.app[AdmissionServiceAppKey]
    try:
        entry = await admission_service.record_login(
            name, body.get("origin"), premium_id
        )
    except StoreUnavailableError as e:
        logger.error("Player store unavailable recording login: %s", e)
        return web.json_response({"error": str(e)}, status=503)
    except Exception as e:
        raise await _internal_error(request, e, "handle_internal_login")
    return web.json_response(
        {
            "identity_id": str(entry.identity_id),
            "nickname": entry.nickname,
            "is_premium": entry.is_premium,
        }
    )


async def handle_internal_login_failed(request: web.Request):
    body = await _json_body(request)
    admission_service = request.app[AdmissionServiceAppKey]
    origin = body.get("origin")
    return web.json_response(
        {"origin": origin, "blocked": admission_service.register_failed_login(origin)}
    )


async def handle_internal_logout(request: web.Request):
    body = await _json_body(request)
    identity_id = _uuid_value(body.get("identity_id"), "identity_id")
    request.app[AdmissionServiceAppKey].logout(identity_id)
    return web.json_response({"identity_id": str(identity_id), "logged_out": True})


async def handle_internal_verify(request: web.Request):
    body = await _json_body(request)
    if not isinstance(body.get("name"), str):
        raise _bad_request("name is required")
    identity_id = _uuid_value(body.get("identity_id"), "identity_id")

    admission_service = request.app[AdmissionServiceAppKey]
    verified = await admission_service.verify_identity(body["name"], identity_id)
    return web.json_response(
        {"name": body["name"], "identity_id": str(identity_id), "verified": verified}
    )


async def handle_internal_authorized(request: web.Request):
    identity_id = _identity_id_param(request)
    auth_cache = request.app[AuthorizationCacheAppKey]
    return web.json_response(
        {
            "identity_id": str(identity_id),
            "authorized": auth_cache.is_player_authorized(
                identity_id, _origin_param(request)
            ),
        }
    )


async def handle_internal_session(request: web.Request):
    identity_id = _identity_id_param(request)
    name = request.query.get("name", "")
    if len(name) == 0:
        raise _bad_request("name is required")
    auth_cache = request.app[AuthorizationCacheAppKey]
    return web.json_response(
        {
            "identity_id": str(identity_id),
            "active": auth_cache.has_active_session(
                identity_id, name, _origin_param(request)
            ),
        }
    )


async def handle_internal_blocked(request: web.Request):
    origin = _origin_param(request)
    auth_cache = request.app[AuthorizationCacheAppKey]
    return web.json_response({"origin": origin, "blocked": auth_cache.is_blocked(origin)})


async def handle_internal_stats(request: web.Request):
    return web.json_response(
        {
            "resolvers": request.app[ResolverPoolAppKey].stats(),
            "resolver_alerts": request.app[ResolverFailureMonitorAppKey].stats(),
            "resolution_cache": request.app[ResolutionCacheAppKey].stats(),
            "authorization_cache": request.app[AuthorizationCacheAppKey].stats(),
            "cached_records": request.app[CoordinatorAppKey].cached_count,
            "pending_tasks": request.app[TaskRunnerAppKey].pending_count,
        }
    )
