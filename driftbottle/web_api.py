"""HTTP API for the Drift Bottle Telegram Mini App.

Provides endpoints for the Mini App to authenticate a Telegram session,
read and update the caller's profile, and check the bot configuration.
Uses aiohttp.

Authentication is via Telegram initData HMAC validation: either posted to
/api/auth/telegram, or sent on every request as `Authorization: tma <initData>`.
"""

import json
import time

from aiohttp import web
from telegram.error import InvalidToken, TelegramError

from .config import Config
from .profiles import (
    apply_profile_update, upsert_profile, validate_profile_update,
)
from .rate_limit import RateLimiter, client_ip, create_rate_limit_middleware
from .web_auth import ERROR_MESSAGES, ErrorKind, Invalid, explain, redact_token, verify


ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.MALFORMED_INPUT: 400,
    ErrorKind.MISSING_HASH: 400,
    ErrorKind.MISSING_USER: 400,
    ErrorKind.INVALID_USER_PAYLOAD: 400,
    ErrorKind.INVALID_SIGNATURE: 401,
    ErrorKind.EXPIRED: 401,
    ErrorKind.INVALID_TIMESTAMP: 401,
    ErrorKind.MISSING_SERVER_CONFIG: 500,
}

# Paths that require `Authorization: tma <initData>`.
PROTECTED_PREFIXES = ("/api/user",)

CORS_METHODS = "GET, POST, PUT, OPTIONS"
CORS_HEADERS = "Authorization, Content-Type"
# Rate-limit headers the Mini App reads to back off.
CORS_EXPOSE_HEADERS = "Retry-After, X-RateLimit-Limit, X-RateLimit-Remaining"


def _error(error: str, message: str, status: int, **extra) -> web.Response:
    body = {"success": False, "error": error, "message": message}
    body.update(extra)
    return web.json_response(body, status=status)


def _verification_error(result: Invalid) -> web.Response:
    """Map a failed verification to its HTTP response."""
    return _error(result.reason.value, result.message, ERROR_STATUS[result.reason])


def _verify_request_data(request: web.Request, init_data: str):
    """Verify initData against the configured token and expiry window."""
    config: Config = request.app["config"]
    return verify(
        init_data, config.telegram_token,
        max_age_seconds=config.max_age_seconds,
        now=request.app["clock"](),
    )


async def _read_json(request: web.Request) -> dict | None:
    """Return the JSON object body, or None if it is missing or not an object."""
    try:
        body = await request.json()
    except (json.JSONDecodeError, ValueError):
        return None
    return body if isinstance(body, dict) else None


def _now(request: web.Request) -> int:
    return int(request.app["clock"]())


async def handle_auth_telegram(request: web.Request) -> web.Response:
    """POST /api/auth/telegram: verify initData and return the Telegram user.

    Body: {"initData": "<Telegram WebApp initData>"}
    """
    body = await _read_json(request)
    if body is None:
        return _error("invalid_body", "invalid JSON body", 400)

    init_data = body.get("initData")
    if not isinstance(init_data, str) or not init_data.strip():
        return _error(ErrorKind.MALFORMED_INPUT.value, "initData is required", 400)

    result = _verify_request_data(request, init_data)
    if not result.ok:
        print(f"[Auth] rejected: {result.reason.value}")
        return _verification_error(result)

    profiles: dict = request.app["profiles"]
    profile = upsert_profile(profiles, result.user, _now(request))
    request.app["save_fn"]()
    print(f"[Auth] user {result.user.id} verified")

    return web.json_response({
        "success": True,
        "user": result.user.to_dict(),
        "authDate": result.auth_date,
        "profile": profile.to_dict(),
    })


def _current_profile(request: web.Request):
    """Profile for the authenticated caller, created on first sight."""
    profiles: dict = request.app["profiles"]
    user = request["tg_user"]
    created = user.id not in profiles
    profile = upsert_profile(profiles, user, _now(request))
    if created:
        request.app["save_fn"]()
    return profile


async def handle_get_user(request: web.Request) -> web.Response:
    """GET /api/user: return the caller's profile."""
    profile = _current_profile(request)
    return web.json_response({"success": True, "profile": profile.to_dict()})


async def handle_put_user(request: web.Request) -> web.Response:
    """PUT /api/user: validate and apply a profile update.

    Body: {"first_name": "...", "last_name": "...", "bio": "...", "avatar_url": "..."}
    Nothing is stored if any field is rejected.
    """
    body = await _read_json(request)
    if body is None:
        return _error("invalid_body", "invalid JSON body", 400)

    applied, errors = validate_profile_update(body)
    if errors:
        return _error("validation_failed", "profile update rejected", 400, errors=errors)

    profile = _current_profile(request)
    apply_profile_update(profile, applied, _now(request))
    request.app["save_fn"]()
    return web.json_response({"success": True, "profile": profile.to_dict()})


async def handle_validate_bot(request: web.Request) -> web.Response:
    """GET /api/validate-bot: ask Telegram whether the configured token works."""
    config: Config = request.app["config"]
    if not config.telegram_token:
        kind = ErrorKind.MISSING_SERVER_CONFIG
        return _error(kind.value, ERROR_MESSAGES[kind], ERROR_STATUS[kind], valid=False)

    bot = request.app["bot"]
    if bot is None:
        return _error("bot_unavailable", "bot is not running", 503, valid=False)

    token_prefix = redact_token(config.telegram_token)
    try:
        me = await bot.get_me()
    except InvalidToken as e:
        return _error("invalid_token", str(e), 400, valid=False, tokenPrefix=token_prefix)
    except TelegramError as e:
        print(f"[API] getMe failed: {e}")
        return _error("telegram_error", str(e), 502, valid=False, tokenPrefix=token_prefix)

    return web.json_response({
        "success": True,
        "valid": True,
        "bot": {
            "id": me.id,
            "username": me.username,
            "first_name": me.first_name,
            "can_join_groups": me.can_join_groups,
            "can_read_all_group_messages": me.can_read_all_group_messages,
            "supports_inline_queries": me.supports_inline_queries,
        },
        "tokenPrefix": token_prefix,
    })


async def handle_debug_hash(request: web.Request) -> web.Response:
    """POST /api/debug/telegram-hash: show how a given initData is checked.

    Only registered when debug endpoints are enabled in the config. The
    report carries the match result but never the expected hash.
    """
    config: Config = request.app["config"]
    body = await _read_json(request)
    if body is None:
        return _error("invalid_body", "invalid JSON body", 400)

    init_data = body.get("initData")
    if not isinstance(init_data, str) or not init_data:
        return _error(ErrorKind.MALFORMED_INPUT.value, "initData is required", 400)

    report = explain(
        init_data, config.telegram_token,
        max_age_seconds=config.max_age_seconds,
        now=request.app["clock"](),
    )
    return web.json_response({"success": True, "report": report})


async def handle_health(request: web.Request) -> web.Response:
    """GET /api/health: simple health check, no auth required."""
    return web.json_response({"status": "ok", "time": int(time.time())})


@web.middleware
async def auth_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Require a valid `tma <initData>` Authorization header on protected paths."""
    if request.method == "OPTIONS" or not request.path.startswith(PROTECTED_PREFIXES):
        return await handler(request)

    auth = request.headers.get("Authorization", "")
    if not auth.startswith("tma "):
        return _error("unauthorized", "missing or invalid Authorization header", 401)

    result = _verify_request_data(request, auth[4:])
    if not result.ok:
        return _verification_error(result)

    request["tg_user"] = result.user
    request["auth_date"] = result.auth_date
    return await handler(request)


def parse_cors_origins(value: str) -> tuple[str, ...]:
    """Split a comma-separated origin list. Empty or "*" allows any origin."""
    origins = tuple(item.strip() for item in value.split(",") if item.strip())
    return origins or ("*",)


@web.middleware
async def cors_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Add CORS headers for the Mini App frontend.

    With an explicit origin list, the request's Origin is echoed back only
    when it is listed.
    """
    if request.method == "OPTIONS":
        response = web.Response()
    else:
        response = await handler(request)

    origins = request.app["cors_origins"]
    if "*" in origins:
        response.headers["Access-Control-Allow-Origin"] = "*"
    else:
        origin = request.headers.get("Origin", "")
        if origin in origins:
            response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Vary"] = "Origin"
    response.headers["Access-Control-Allow-Methods"] = CORS_METHODS
    response.headers["Access-Control-Allow-Headers"] = CORS_HEADERS
    response.headers["Access-Control-Expose-Headers"] = CORS_EXPOSE_HEADERS
    return response


@web.middleware
async def logging_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Log each request with the client address and, once verified, the Telegram user.

    Headers and bodies are never logged: they carry initData.
    """
    config: Config = request.app["config"]
    ip = client_ip(request, config.trust_proxy)
    start = time.time()
    try:
        response = await handler(request)
    except Exception as e:
        elapsed = (time.time() - start) * 1000
        print(f"[API] {ip} {request.method} {request.path} → ERROR: {type(e).__name__} ({elapsed:.0f}ms)")
        raise

    elapsed = (time.time() - start) * 1000
    user = request.get("tg_user")
    who = f" user={user.id}" if user is not None else ""
    print(f"[API] {ip} {request.method} {request.path}{who} → {response.status} ({elapsed:.0f}ms)")
    return response


def create_web_app(
    config: Config,
    profiles: dict,
    save_fn=None,
    bot=None,
    clock=None,
    limiter: RateLimiter | None = None,
) -> web.Application:
    """Create and configure the aiohttp web application.

    `bot` is a python-telegram-bot Bot used by /api/validate-bot; `clock`
    returns unix seconds and drives initData expiry checks.
    """
    if limiter is None:
        limiter = RateLimiter()
    app = web.Application(middlewares=[
        logging_middleware,
        cors_middleware,
        create_rate_limit_middleware(limiter, config.trust_proxy),
        auth_middleware,
    ])
    app["config"] = config
    app["profiles"] = profiles
    app["save_fn"] = save_fn or (lambda: None)
    app["bot"] = bot
    app["clock"] = clock or time.time
    app["cors_origins"] = parse_cors_origins(config.cors_origin)
    app["rate_limiter"] = limiter

    app.router.add_get("/api/health", handle_health)
    app.router.add_get("/api/ping", handle_health)
    app.router.add_post("/api/auth/telegram", handle_auth_telegram)
    app.router.add_get("/api/user", handle_get_user)
    app.router.add_put("/api/user", handle_put_user)
    app.router.add_get("/api/validate-bot", handle_validate_bot)
    if config.debug_endpoints:
        app.router.add_post("/api/debug/telegram-hash", handle_debug_hash)

    return app
