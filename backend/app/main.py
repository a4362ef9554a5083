import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.v1.notification_webhooks import router as notification_webhooks_router
from app.api.v1.notifications import router as notifications_router
from app.core.config import get_settings
from app.services.recurring_jobs import start_dispatch_worker_pool
from app.utils.rate_limit import rate_limiter, webhook_rate_limit_key

settings = get_settings()
_dispatch_pool = None

logger = logging.getLogger(__name__)

app = FastAPI(
    title="CivicAid Notifications API",
    version="1.0.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)


@app.on_event("startup")
async def _startup_jobs():
    global _dispatch_pool
    if _dispatch_pool is None and settings.enable_notification_worker:
        _dispatch_pool = start_dispatch_worker_pool()


@app.on_event("shutdown")
async def _shutdown_jobs():
    global _dispatch_pool
    if _dispatch_pool is not None:
        await _dispatch_pool.stop()
        _dispatch_pool = None


if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

app.include_router(notifications_router, prefix="/api/v1", tags=["notifications"])
app.include_router(notification_webhooks_router, prefix="/api/v1", tags=["webhooks"])


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Hide internal details for 5xx in production unless explicitly enabled.
    if exc.status_code >= 500 and not settings.expose_error_details:
        return JSONResponse(status_code=exc.status_code, content={"detail": "Internal server error"})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.middleware("http")
async def webhook_rate_limit_middleware(request: Request, call_next):
    key = webhook_rate_limit_key(request)
    if key is None:
        return await call_next(request)

    current = get_settings()
    if not current.rate_limit_webhook_enabled:
        return await call_next(request)

    allowed, count = rate_limiter.allow(key, current.rate_limit_receipt_ip_per_min, 60)
    if not allowed:
        logger.warning("Webhook rate limit hit key=%s count=%s", key, count)
        return JSONResponse(status_code=429, content={"detail": "Too Many Requests"})
    return await call_next(request)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if not settings.security_headers_enabled:
        return response

    headers = response.headers
    defaults = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
        "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'; base-uri 'none'",
        "Cache-Control": "no-store",
    }
    for name, value in defaults.items():
        if name not in headers:
            headers[name] = value
    return response


@app.get("/health")
async def health_check():
    return {"status": "ok"}
