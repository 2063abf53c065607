import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from app.api.problem_details import (
    PROBLEM_TYPE_DOMAIN,
    PROBLEM_TYPE_SERVER,
    PROBLEM_TYPE_VALIDATION,
    problem_details,
)
from app.api.routes_health import router as health_router
from app.api.routes_orders import router as orders_router
from app.api.routes_payments import router as payments_router
from app.domain.errors import DomainError, ExternalServiceError
from app.infra.db import dispose_engine, get_session_factory
from app.infra.logging import clear_log_context, configure_logging, update_log_context
from app.infra.metrics import configure_metrics
from app.infra.stripe_resilience import stripe_retry_after_seconds
from app.infra.tracing import configure_tracing, instrument_fastapi
from app.services import AppServices, build_app_services
from app.settings import settings

logger = logging.getLogger(__name__)
request_logger = logging.getLogger("app.request")

# The API only ever returns JSON; nothing here is meant to be framed or rendered.
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
}


def _admin_log_fields(request: Request) -> dict[str, str]:
    identity = getattr(request.state, "admin_identity", None)
    if identity is None:
        return {}
    return {"admin": str(identity.username), "auth_method": "basic"}


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assign a request id, bind it to the log context and log one line per request."""

    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        update_log_context(request_id=request_id, method=request.method, path=request.url.path)
        span = trace.get_current_span()
        if span and span.is_recording():
            span.set_attribute("request_id", request_id)

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            latency_ms = int((time.perf_counter() - started) * 1000)
            update_log_context(status_code=status_code, latency_ms=latency_ms, **_admin_log_fields(request))
            request_logger.info("request", extra={"latency_ms": latency_ms})
            clear_log_context()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: FastAPI, metrics_client) -> None:
        super().__init__(app)
        self.metrics = metrics_client

    async def dispatch(self, request: Request, call_next: Callable):
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            route = _route_label(request)
            self.metrics.record_http_latency(request.method, route, status_code, time.perf_counter() - started)
            if status_code >= 500:
                self.metrics.record_http_5xx(request.method, route)


def _cors_origins(app_settings) -> list[str]:
    if app_settings.cors_origins:
        return list(app_settings.cors_origins)
    if app_settings.app_env == "dev" and not app_settings.strict_cors:
        return [app_settings.frontend_url.rstrip("/")]
    return []


def _validate_prod_config(app_settings) -> None:
    """Refuse to start in prod without the Stripe credentials every payment path needs."""
    if app_settings.app_env != "prod":
        return
    missing = [
        env_name
        for env_name, value in (
            ("STRIPE_SECRET_KEY", app_settings.stripe_secret_key),
            ("STRIPE_WEBHOOK_SECRET", app_settings.stripe_webhook_secret),
        )
        if not value
    ]
    if missing:
        logger.error("startup_config_error", extra={"extra": {"missing": missing}})
        raise RuntimeError("Invalid production configuration: missing " + ", ".join(missing))


def _bind_state(app: FastAPI, services: AppServices, app_settings) -> None:
    # Tests preload collaborators on app.state; only fill what is missing.
    state = app.state
    state.services = getattr(state, "services", None) or services
    state.app_settings = getattr(state, "app_settings", None) or app_settings
    state.metrics = getattr(state, "metrics", None) or state.services.metrics
    state.db_session_factory = getattr(state, "db_session_factory", None) or get_session_factory()
    state.email_adapter = getattr(state, "email_adapter", None) or state.services.email_adapter
    state.stripe_client = getattr(state, "stripe_client", None) or state.services.stripe_client


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = [
            {
                "field": ".".join(str(part) for part in error.get("loc", ()) if part not in {"body", "query", "path"})
                or "body",
                "message": error.get("msg", "Invalid value"),
            }
            for error in exc.errors()
        ]
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
        retryable = isinstance(exc, ExternalServiceError) and exc.retryable
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.title,
            detail=exc.detail,
            errors=exc.errors or [],
            type_=exc.type or PROBLEM_TYPE_DOMAIN,
            headers={"Retry-After": str(stripe_retry_after_seconds())} if retryable else None,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else None
        return problem_details(
            request=request,
            status=exc.status_code,
            title=message or "HTTP Error",
            detail=message or "Request failed",
            type_=PROBLEM_TYPE_SERVER if exc.status_code >= 500 else None,
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        update_log_context(status_code=500, error_type=type(exc).__name__, **_admin_log_fields(request))
        logger.exception(
            "unhandled_exception",
            extra={"extra": {"path": request.url.path, "error_type": type(exc).__name__}},
        )
        return problem_details(
            request=request,
            status=500,
            title="Internal Server Error",
            detail="Unexpected error",
            type_=PROBLEM_TYPE_SERVER,
        )


def create_app(app_settings, *, tracer_provider=None) -> FastAPI:
    if tracer_provider is None:
        configure_tracing(service_name=app_settings.app_name)
    configure_logging()
    metrics_client = configure_metrics(app_settings.metrics_enabled)
    _validate_prod_config(app_settings)
    services = build_app_services(app_settings, metrics=metrics_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _bind_state(app, services, app_settings)
        logger.info("startup", extra={"extra": {"env": app_settings.app_env}})
        yield
        await dispose_engine()

    app = FastAPI(title="PJH Back Office", version="1.0.0", lifespan=lifespan)

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(MetricsMiddleware, metrics_client=metrics_client)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(app_settings),
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )
    # Added last so the OTel middleware wraps everything above.
    instrument_fastapi(app, tracer_provider=tracer_provider)

    _register_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(payments_router)
    app.include_router(orders_router)
    if app_settings.metrics_enabled:
        from app.api.routes_metrics import router as metrics_router

        app.include_router(metrics_router)
    return app


app = create_app(settings)
