from __future__ import annotations

import asyncio
import re
import secrets as secrets_module
import uuid

import structlog

from .schemas import make_error_response

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{8,128}$")
_CALLER_ID_RE = re.compile(r"^[A-Za-z0-9._:@-]{1,128}$")

PROTECTED_PREFIX = "/v1/"


def coerce_request_id(value: str | None) -> str:
    if value and _REQUEST_ID_RE.fullmatch(value):
        return value
    return uuid.uuid4().hex


def coerce_caller_id(value: str | None) -> str | None:
    """Caller identity is asserted by the authenticating web tier; malformed values are ignored."""
    if value and _CALLER_ID_RE.fullmatch(value.strip()):
        return value.strip()
    return None


def parse_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None
    scheme, token = parts[0].strip(), parts[1].strip()
    if scheme.lower() != "bearer" or not token:
        return None
    return token


def constant_time_equals(a: str, b: str) -> bool:
    return secrets_module.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def _is_protected_path(path: str) -> bool:
    return path.startswith(PROTECTED_PREFIX)


def install_middlewares(app, *, cfg) -> None:
    """Install request-id, security headers, body/concurrency limits, bearer auth, hosts and CORS."""
    from fastapi.responses import JSONResponse
    from starlette.middleware.base import BaseHTTPMiddleware
    from starlette.requests import Request

    def _error(request: Request, status_code: int, message: str, type: str, headers: dict[str, str] | None = None):
        return JSONResponse(
            status_code=status_code,
            headers=headers,
            content=make_error_response(
                message=message,
                type=type,
                code=getattr(request.state, "request_id", None),
            ).model_dump(),
        )

    class RequestContextMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            request_id = coerce_request_id(request.headers.get("x-request-id"))
            caller_id = coerce_caller_id(request.headers.get("x-caller-id"))
            request.state.request_id = request_id
            request.state.caller_id = caller_id
            structlog.contextvars.bind_contextvars(request_id=request_id, caller_id=caller_id)
            try:
                response = await call_next(request)
            finally:
                structlog.contextvars.clear_contextvars()
            response.headers.setdefault("X-Request-Id", request_id)
            return response

    class SecurityHeadersMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            response = await call_next(request)
            response.headers.setdefault("X-Content-Type-Options", "nosniff")
            response.headers.setdefault("X-Frame-Options", "DENY")
            response.headers.setdefault("Referrer-Policy", "no-referrer")
            response.headers.setdefault("Cross-Origin-Resource-Policy", "same-site")
            if not cfg.enable_api_docs:
                response.headers.setdefault("X-Robots-Tag", "noindex, nofollow")
            if _is_protected_path(request.url.path):
                response.headers.setdefault("Cache-Control", "no-store")
                response.headers.setdefault("Pragma", "no-cache")
            return response

    class MaxBodySizeMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            limit = int(cfg.max_request_body_bytes or 0)
            if limit > 0 and request.method == "POST" and _is_protected_path(request.url.path):
                content_length = request.headers.get("content-length")
                too_large = content_length is not None and content_length.isdigit() and int(content_length) > limit
                if too_large or len(await request.body()) > limit:
                    return _error(request, 413, "Request body too large.", "invalid_request_error")
            return await call_next(request)

    class ConcurrencyLimitMiddleware(BaseHTTPMiddleware):
        def __init__(self, app_):
            super().__init__(app_)
            self._sem = asyncio.Semaphore(max(1, int(cfg.max_inflight_requests or 1)))

        async def dispatch(self, request: Request, call_next):
            if not _is_protected_path(request.url.path):
                return await call_next(request)
            if self._sem.locked():
                return _error(request, 429, "Server is busy. Try again later.", "rate_limit_error")
            async with self._sem:
                return await call_next(request)

    class BearerAuthMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            expected = cfg.server_auth_token
            if not expected or not _is_protected_path(request.url.path) or request.method == "OPTIONS":
                return await call_next(request)

            token = parse_bearer_token(request.headers.get("authorization")) or request.headers.get("x-api-key")
            if not token or not constant_time_equals(token, expected):
                return _error(
                    request,
                    401,
                    "Missing or invalid authentication token.",
                    "authentication_error",
                    headers={"WWW-Authenticate": 'Bearer realm="ai-failover-proxy"'},
                )
            return await call_next(request)

    app.add_middleware(MaxBodySizeMiddleware)
    app.add_middleware(ConcurrencyLimitMiddleware)
    app.add_middleware(BearerAuthMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    # Outermost, so X-Request-Id is set even when inner middleware short-circuits.
    app.add_middleware(RequestContextMiddleware)

    if cfg.allowed_hosts:
        from starlette.middleware.trustedhost import TrustedHostMiddleware

        app.add_middleware(TrustedHostMiddleware, allowed_hosts=list(cfg.allowed_hosts))

    if cfg.cors_allow_origins:
        from fastapi.middleware.cors import CORSMiddleware

        if cfg.cors_allow_credentials and "*" in cfg.cors_allow_origins:
            raise ValueError("CORS_ALLOW_ORIGINS cannot include '*' when CORS_ALLOW_CREDENTIALS=true.")
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(cfg.cors_allow_origins),
            allow_credentials=cfg.cors_allow_credentials,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type", "X-Request-Id", "X-API-Key", "X-Caller-Id"],
            max_age=600,
        )
