"""Security Middleware

Response hardening headers, CORS preflight handling and client
identification for FastAPI.
"""

from typing import Callable, Optional

from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from webflasher.config import settings


def get_client_identifier(request: Request, trust_proxy: Optional[bool] = None) -> str:
    """Get client identifier from request (IP address)"""
    if trust_proxy is None:
        trust_proxy = settings.TRUST_PROXY_HEADERS

    # Forwarded IP is only honoured behind a known proxy
    forwarded_for = request.headers.get("X-Forwarded-For") if trust_proxy else None
    if forwarded_for:
        # Take first IP in chain
        return forwarded_for.split(",")[0].strip()

    client = request.client
    return client.host if client else "unknown"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to responses"""

    async def dispatch(self, request: Request, call_next: Callable):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"

        # HSTS (if HTTPS)
        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        # JSON API only
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

        return response


class EmptyPreflightCORSMiddleware(CORSMiddleware):
    """CORSMiddleware whose accepted preflights carry an empty body, like a bare OPTIONS"""

    def preflight_response(self, request_headers: Headers) -> Response:
        response = super().preflight_response(request_headers)
        if response.status_code != 200:
            return response
        headers = {
            key: value for key, value in response.headers.items()
            if key not in ("content-length", "content-type")
        }
        return Response(status_code=200, headers=headers)
