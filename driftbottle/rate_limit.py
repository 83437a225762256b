"""In-memory sliding-window rate limiting for the HTTP API.

Limits write requests (and ping polling) per client IP. Each path prefix
has its own window; the first matching rule wins.
"""

import math
import time
from collections import deque
from dataclasses import dataclass

from aiohttp import web


LIMITED_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


@dataclass(frozen=True)
class Rule:
    prefix: str
    max_requests: int
    window_seconds: float


RULES = (
    Rule("/api/auth", 10, 300),
    Rule("/api/user", 20, 60),
    Rule("/api/ping", 120, 60),
)
DEFAULT_RULE = Rule("", 50, 60)

CLEANUP_INTERVAL = 300

ALWAYS_LIMITED_PREFIXES = ("/api/ping",)


def rule_for_path(path: str) -> Rule:
    for rule in RULES:
        if path.startswith(rule.prefix):
            return rule
    return DEFAULT_RULE


class RateLimiter:
    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._hits: dict[tuple[str, str], deque] = {}
        self._last_cleanup = clock()

    def hit(self, client: str, rule: Rule) -> float:
        """Record a request. Returns 0 if allowed, else seconds until a slot frees up."""
        now = self._clock()
        if now - self._last_cleanup >= CLEANUP_INTERVAL:
            self.cleanup()
        hits = self._hits.setdefault((client, rule.prefix), deque())
        while hits and now - hits[0] >= rule.window_seconds:
            hits.popleft()
        if len(hits) >= rule.max_requests:
            return max(rule.window_seconds - (now - hits[0]), 0.001)
        hits.append(now)
        return 0

    def cleanup(self) -> None:
        """Drop clients with no requests inside their window."""
        now = self._clock()
        self._last_cleanup = now
        for key in list(self._hits):
            hits = self._hits[key]
            rule = rule_for_path(key[1])
            while hits and now - hits[0] >= rule.window_seconds:
                hits.popleft()
            if not hits:
                del self._hits[key]

    def __len__(self) -> int:
        return len(self._hits)


def client_ip(request: web.Request, trust_proxy: bool = False) -> str:
    """Client address, taken from proxy headers only when they are trusted."""
    if trust_proxy:
        forwarded = request.headers.get("X-Forwarded-For", "")
        if forwarded:
            return forwarded.split(",")[0].strip()
        real_ip = request.headers.get("X-Real-IP", "")
        if real_ip:
            return real_ip.strip()
    return request.remote or "unknown"


def _is_limited(request: web.Request) -> bool:
    if request.method in LIMITED_METHODS:
        return True
    return request.path.startswith(ALWAYS_LIMITED_PREFIXES)


def create_rate_limit_middleware(limiter: RateLimiter, trust_proxy: bool = False):
    """Build an aiohttp middleware that enforces RULES with the given limiter."""

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler) -> web.StreamResponse:
        if request.method == "OPTIONS" or not _is_limited(request):
            return await handler(request)

        rule = rule_for_path(request.path)
        ip = client_ip(request, trust_proxy)
        retry_after = limiter.hit(ip, rule)
        if retry_after:
            retry_seconds = math.ceil(retry_after)
            print(f"[RateLimit] {ip} {request.method} {request.path} (retry in {retry_seconds}s)")
            return web.json_response(
                {
                    "success": False,
                    "error": "rate_limited",
                    "message": "Too many requests, try again later",
                    "retryAfter": retry_seconds,
                },
                status=429,
                headers={
                    "Retry-After": str(retry_seconds),
                    "X-RateLimit-Limit": str(rule.max_requests),
                    "X-RateLimit-Remaining": "0",
                },
            )

        response = await handler(request)
        response.headers["X-RateLimit-Limit"] = str(rule.max_requests)
        return response

    return rate_limit_middleware
