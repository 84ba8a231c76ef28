import logging
import os
import sys
import time
import uuid
from typing import Callable, Iterable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from servicebook.api.admin_auth import AdminAccessMiddleware, AdminAuditMiddleware
from servicebook.api.routes_admin import router as admin_router
from servicebook.api.routes_bookings import router as bookings_router
from servicebook.api.routes_health import router as health_router
from servicebook.api.routes_metrics import router as metrics_router
from servicebook.api.routes_payments import router as payments_router
from servicebook.api.routes_worker import router as worker_router
from servicebook.domain.errors import DomainError
from servicebook.infra.db import get_session_factory
from servicebook.infra.logging import configure_logging
from servicebook.infra.metrics import configure_metrics
from servicebook.infra.security import RateLimiter, create_rate_limiter, resolve_client_key
from servicebook.settings import settings

PROBLEM_TYPE_VALIDATION = "https://servicebook.example.com/problems/validation-error"
PROBLEM_TYPE_DOMAIN = "https://servicebook.example.com/problems/domain-error"
PROBLEM_TYPE_RATE_LIMIT = "https://servicebook.example.com/problems/rate-limit"
PROBLEM_TYPE_SERVER = "https://servicebook.example.com/problems/server-error"

RATE_LIMITED_PREFIX = "/v1/bookings"

logger = logging.getLogger(__name__)


def problem_details(
    request: Request,
    status: int,
    title: str,
    detail: str,
    errors: list[dict] | None = None,
    type_: str = "about:blank",
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    content = {
        "type": type_,
        "title": title,
        "status": status,
        "detail": detail,
        "request_id": getattr(request.state, "request_id", None),
        "errors": errors or [],
    }
    return JSONResponse(status_code=status, content=content, headers=headers)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_logger = logging.getLogger("servicebook.request")
        start = time.time()
        response = await call_next(request)
        latency_ms = int((time.time() - start) * 1000)
        if response.status_code >= 500:
            metrics_client = getattr(request.app.state, "metrics", None)
            if metrics_client is not None:
                route = request.scope.get("route")
                metrics_client.record_http_5xx(request.method, getattr(route, "path", request.url.path))
        request_logger.info(
            "request",
            extra={
                "extra": {
                    "request_id": getattr(request.state, "request_id", None),
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "latency_ms": latency_ms,
                }
            },
        )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Throttles booking creation and payment calls per caller."""

    def __init__(self, app: FastAPI, limiter: RateLimiter) -> None:
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next: Callable):
        if request.method != "POST" or not request.url.path.startswith(RATE_LIMITED_PREFIX):
            return await call_next(request)
        if not await self.limiter.allow(resolve_client_key(request)):
            return problem_details(
                request=request,
                status=429,
                title="Too Many Requests",
                detail="Rate limit exceeded",
                type_=PROBLEM_TYPE_RATE_LIMIT,
            )
        return await call_next(request)


def _resolve_cors_origins(app_settings) -> Iterable[str]:
    if app_settings.cors_origins:
        return app_settings.cors_origins
    if app_settings.strict_cors:
        return []
    if app_settings.app_env == "dev":
        return ["http://localhost:3000"]
    return []


def _validate_prod_config(app_settings) -> None:
    if app_settings.app_env == "dev" or getattr(app_settings, "testing", False) or os.getenv("PYTEST_CURRENT_TEST") or "pytest" in sys.argv[0]:
        return

    errors: list[str] = []
    admin_credentials = [
        (app_settings.admin_basic_username, app_settings.admin_basic_password),
        (app_settings.dispatcher_basic_username, app_settings.dispatcher_basic_password),
        (app_settings.accountant_basic_username, app_settings.accountant_basic_password),
        (app_settings.viewer_basic_username, app_settings.viewer_basic_password),
    ]
    if not any(username and password for username, password in admin_credentials):
        errors.append("At least one admin credential pair must be configured outside dev")
    if app_settings.stripe_secret_key and not app_settings.stripe_webhook_secret:
        errors.append("STRIPE_WEBHOOK_SECRET is required when STRIPE_SECRET_KEY is set")

    if errors:
        for error in errors:
            logger.error("startup_config_error", extra={"extra": {"detail": error}})
        raise RuntimeError("Invalid production configuration; see logs for details")


def create_app(app_settings) -> FastAPI:
    configure_logging()
    _validate_prod_config(app_settings)
    app = FastAPI(title="Servicebook", version="1.0.0")

    rate_limiter = create_rate_limiter(app_settings)
    app.state.rate_limiter = rate_limiter
    app.state.app_settings = app_settings
    app.state.db_session_factory = get_session_factory()
    app.state.stripe_client = None
    app.state.metrics = configure_metrics(app_settings.metrics_enabled)

    @app.on_event("shutdown")
    async def shutdown_limiter() -> None:
        await rate_limiter.close()

    app.add_middleware(RateLimitMiddleware, limiter=rate_limiter)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(AdminAccessMiddleware)
    app.add_middleware(AdminAuditMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(_resolve_cors_origins(app_settings)),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            loc = error.get("loc", [])
            field = ".".join(str(part) for part in loc if part not in {"body", "query", "path"}) or "body"
            errors.append({"field": field, "message": error.get("msg", "Invalid value")})
        return problem_details(
            request=request,
            status=422,
            title="Validation Error",
            detail="Request validation failed",
            errors=errors,
            type_=PROBLEM_TYPE_VALIDATION,
        )

    @app.exception_handler(DomainError)
    async def domain_exception_handler(request: Request, exc: DomainError):
        if exc.status_code >= 500:
            logger.error(
                "domain_error",
                extra={"extra": {"path": request.url.path, "error": type(exc).__name__, **exc.context}},
            )
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.title,
            detail=exc.detail,
            errors=exc.errors or [],
            type_=exc.type or PROBLEM_TYPE_DOMAIN,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.detail if isinstance(exc.detail, str) else "HTTP Error",
            detail=exc.detail if isinstance(exc.detail, str) else "Request failed",
            type_=PROBLEM_TYPE_DOMAIN if exc.status_code < 500 else PROBLEM_TYPE_SERVER,
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            extra={"extra": {"request_id": getattr(request.state, "request_id", None), "path": request.url.path}},
        )
        return problem_details(
            request=request,
            status=500,
            title="Internal Server Error",
            detail="Unexpected error",
            type_=PROBLEM_TYPE_SERVER,
        )

    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(bookings_router)
    app.include_router(payments_router)
    app.include_router(worker_router)
    app.include_router(admin_router)
    return app


app = create_app(settings)
