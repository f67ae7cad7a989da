import hashlib
import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.v1.billing_webhook import router as billing_webhook_router
from app.api.v1.scan import router as scan_router
from app.api.v1.subscription import router as subscription_router
from app.core import dependencies
from app.core.config import current_environment, get_settings
from app.services.audit_service import create_audit_log
from app.services.recurring_jobs import start_billing_retry_worker
from app.utils.rate_limit import get_client_ip, get_user_agent, rate_limiter, route_limit_for

settings = get_settings()
_billing_retry_task = None

logger = logging.getLogger(__name__)

app = FastAPI(
    title="DocScan API",
    version="1.0.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)


@app.on_event("startup")
async def _startup_jobs():
    global _billing_retry_task
    errors = settings.validate_required_config()
    if errors:
        if current_environment() == "production":
            for error in errors:
                logger.error("Config error: %s", error)
            raise RuntimeError("Configuration validation failed in production environment")
        for error in errors:
            logger.warning("Config warning: %s", error)

    if _billing_retry_task is None and settings.enable_recurring_jobs:
        _billing_retry_task = start_billing_retry_worker()


@app.on_event("shutdown")
async def _shutdown_jobs():
    global _billing_retry_task
    if _billing_retry_task is not None:
        _billing_retry_task.cancel()
        _billing_retry_task = None


if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

app.include_router(scan_router, prefix="/api/v1", tags=["scan"])
app.include_router(subscription_router, prefix="/api/v1", tags=["subscription"])
app.include_router(billing_webhook_router, prefix="/api/v1", tags=["webhooks"])


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Hide internal details for 5xx in production unless explicitly enabled.
    if exc.status_code >= 500 and not settings.expose_error_details:
        return JSONResponse(status_code=exc.status_code, content={"detail": "Internal server error"})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def _validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request body", "detail": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def _token_fingerprint(request: Request) -> str | None:
    authorization = request.headers.get("authorization") or ""
    if not authorization.startswith("Bearer "):
        return None
    return hashlib.sha256(authorization.encode("utf-8")).hexdigest()[:16]


def _audit_rate_limit_block(request: Request, *, ip: str, key: str, limit: int, window_seconds: int) -> None:
    if dependencies.SessionLocal is None:
        return
    db = dependencies.SessionLocal()
    try:
        create_audit_log(
            db,
            entity_type="system",
            entity_id="rate_limit",
            action="RATE_LIMIT_BLOCKED",
            old_value=None,
            new_value=None,
            actor_type="SYSTEM",
            actor_id=None,
            ip_address=ip,
            user_agent=get_user_agent(request),
            metadata={"path": request.url.path, "key": key, "limit": limit, "window_seconds": window_seconds},
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to audit rate limit block for %s", request.url.path)
    finally:
        db.close()


@app.middleware("http")
async def route_rate_limit_middleware(request: Request, call_next):
    if request.method != "POST":
        return await call_next(request)

    ip = get_client_ip(request) or "unknown"
    rule = route_limit_for(request.url.path, client_ip=ip, user_hint=_token_fingerprint(request))
    if rule is None:
        return await call_next(request)

    allowed, _ = rate_limiter.allow(rule.key, rule.limit, rule.window_seconds)
    if not allowed:
        _audit_rate_limit_block(request, ip=ip, key=rule.key, limit=rule.limit, window_seconds=rule.window_seconds)
        return JSONResponse(status_code=429, content={"error": "Too Many Requests"})

    return await call_next(request)


@app.middleware("http")
async def api_rate_limit_middleware(request: Request, call_next):
    if request.method == "OPTIONS":
        return await call_next(request)

    path = request.url.path
    if not path.startswith("/api/v1"):
        return await call_next(request)

    current = get_settings()
    if not current.rate_limit_api_enabled:
        return await call_next(request)

    ip = get_client_ip(request) or "unknown"
    allowed, _ = rate_limiter.allow(f"api:ip:{ip}", current.rate_limit_api_per_min, 60)
    if not allowed:
        return JSONResponse(status_code=429, content={"error": "Too Many Requests"})

    return await call_next(request)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if not settings.security_headers_enabled:
        return response

    headers = response.headers
    if "X-Content-Type-Options" not in headers:
        headers["X-Content-Type-Options"] = "nosniff"
    if "X-Frame-Options" not in headers:
        headers["X-Frame-Options"] = "DENY"
    if "Referrer-Policy" not in headers:
        headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if "Strict-Transport-Security" not in headers:
        headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    if "Content-Security-Policy" not in headers:
        headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'; base-uri 'none'"
    if "Cache-Control" not in headers:
        headers["Cache-Control"] = "no-store"

    return response


@app.get("/health")
async def health_check():
    return {"status": "ok"}
