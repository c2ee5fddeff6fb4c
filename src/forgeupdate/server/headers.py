"""
Response header policy.

Security headers are attached in aiohttp's ``on_response_prepare`` signal, so
they also land on responses aiohttp generates itself (404 for unknown routes,
405 for wrong methods) and on streamed downloads.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Mapping

from aiohttp import web

CACHE_NO_STORE = "no-store"
CACHE_IMMUTABLE = "public, max-age=31536000, immutable"

SECURITY_HEADERS: Mapping[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
}

CORS_ALLOWED_METHODS = "GET, HEAD, OPTIONS"
CORS_ALLOWED_HEADERS = "Content-Type, If-None-Match"
CORS_EXPOSED_HEADERS = "X-Checksum-SHA256, Retry-After, Content-Length, ETag"
CORS_MAX_AGE_S = 600

_SignalHandler = Callable[[web.Request, web.StreamResponse], Awaitable[None]]


class CorsPolicy:
    """Exact-match origin allowlist. Everything else gets no CORS headers."""

    def __init__(self, allowed_origins: Iterable[str] = ()) -> None:
        self._allowed = frozenset(o.rstrip("/") for o in allowed_origins if o)

    @property
    def allowed_origins(self) -> frozenset[str]:
        return self._allowed

    def is_allowed(self, origin: str | None) -> bool:
        return bool(origin) and origin in self._allowed

    def response_headers(self, origin: str | None) -> dict[str, str]:
        """Headers for a simple (non-preflight) cross-origin response."""
        if origin is None or not self.is_allowed(origin):
            return {}
        return {
            "Access-Control-Allow-Origin": origin,
            "Access-Control-Expose-Headers": CORS_EXPOSED_HEADERS,
            "Vary": "Origin",
        }

    def preflight_headers(self, origin: str | None) -> dict[str, str]:
        """Headers answering an OPTIONS preflight."""
        if origin is None or not self.is_allowed(origin):
            return {}
        return {
            "Access-Control-Allow-Origin": origin,
            "Access-Control-Allow-Methods": CORS_ALLOWED_METHODS,
            "Access-Control-Allow-Headers": CORS_ALLOWED_HEADERS,
            "Access-Control-Max-Age": str(CORS_MAX_AGE_S),
            "Vary": "Origin",
        }


def apply_security_headers(
    response: web.StreamResponse, *, cross_origin_allowed: bool = False
) -> None:
    """Set the fixed security headers on a response (overwrites)."""
    for name, value in SECURITY_HEADERS.items():
        response.headers[name] = value
    if cross_origin_allowed:
        response.headers["Cross-Origin-Resource-Policy"] = "cross-origin"
    # Anything that did not choose a cache policy is not cacheable
    response.headers.setdefault("Cache-Control", CACHE_NO_STORE)


def make_response_prepare_hook(cors: CorsPolicy) -> _SignalHandler:
    """Create the ``on_response_prepare`` handler for an application."""

    async def on_prepare(request: web.Request, response: web.StreamResponse) -> None:
        origin = request.headers.get("Origin")
        allowed = cors.is_allowed(origin)
        apply_security_headers(response, cross_origin_allowed=allowed)
        if allowed and "Access-Control-Allow-Origin" not in response.headers:
            response.headers.update(cors.response_headers(origin))

    return on_prepare
