# api/server.py
# ============================================================================
# TLANGAU SERVER - FASTAPI SERVER
# ============================================================================
# Payment fulfillment, access codes, service-gated push notifications and
# the admin API. CORS, request timing, per-IP rate limits.
# ============================================================================

import time
from contextlib import asynccontextmanager
from typing import Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.dependencies import AppServices, build_services, config
from api.errors import register_exception_handlers
from api.rate_limit import RateLimitExceeded
from api.routers import access, admin, checkout, notifications
from log_setup import configure_logging

logger = structlog.get_logger().bind(component="server")

VERSION = "2.0.0"


# ============================================================================
# LIFESPAN MANAGEMENT
# ============================================================================

def _lifespan(start_background_tasks: bool):

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        services: AppServices = app.state.services
        logger.info("server_starting", version=VERSION, env=services.settings.ENV)

        await services.startup()
        if not services.gateway.configured:
            logger.warning("payment_gateway_not_configured")
        if not services.email_service.configured:
            logger.warning("email_not_configured")
        if start_background_tasks:
            services.sweeper.start()

        yield

        logger.info("server_shutting_down")
        await services.shutdown()

    return lifespan


# ============================================================================
# FASTAPI APP
# ============================================================================

def create_app(services: Optional[AppServices] = None, start_background_tasks: bool = True) -> FastAPI:
    services = services or build_services()

    app = FastAPI(
        title="Tlangau Server",
        description="Payment fulfillment and access-code entitlements for Tlangau notifications",
        version=VERSION,
        lifespan=_lifespan(start_background_tasks),
    )
    app.state.services = services

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=services.settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers, apply the general rate limit"""
        request_id = str(uuid4())[:8]
        start = time.perf_counter()

        if request.url.path.startswith("/api/"):
            try:
                services.rate_limiter.check("general", services.rate_limiter.client_key(request))
            except RateLimitExceeded as e:
                return JSONResponse(
                    status_code=429,
                    content={"success": False, "message": e.message},
                    headers={"Retry-After": str(e.retry_after), "X-Request-ID": request_id},
                )

        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    register_exception_handlers(app, production=services.settings.IS_PRODUCTION)

    app.include_router(checkout.router)
    app.include_router(access.router)
    app.include_router(notifications.router)
    app.include_router(admin.router)
    app.include_router(admin.protected)

    return app


# ============================================================================
# MAIN
# ============================================================================

def main() -> None:
    configure_logging()
    uvicorn.run(
        create_app(),
        host=config.HOST,
        port=config.PORT,
        log_level="info",
    )


if __name__ == "__main__":
    main()
