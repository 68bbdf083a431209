from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Iterable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from booking_service.config import Config
from booking_service.errors import BookingError
from booking_service.gateway import build_gateway
from booking_service.logging_config import logger
from booking_service.pipeline import RequestPipeline
from booking_service.rate_limit import RateLimiter, build_rate_limiter
from booking_service.routes import rate_limit_headers, router
from booking_service.schemas import HealthResponse

_UNSET = object()


def create_app(pipeline: Optional[RequestPipeline] = None, rate_limiter=_UNSET,
               trusted_proxies: Optional[Iterable[str]] = None) -> FastAPI:
    """
    Build the ASGI app. Pass ``rate_limiter=None`` to disable throttling.

    ``trusted_proxies`` lists peer addresses whose X-Forwarded-For header is
    used for rate-limit identity; defaults to ``Config.RATE_LIMIT_TRUSTED_PROXIES``.
    """
    pipeline = pipeline or RequestPipeline(build_gateway())
    limiter: Optional[RateLimiter] = build_rate_limiter() if rate_limiter is _UNSET else rate_limiter

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if app.state.rate_limiter is not None:
            await app.state.rate_limiter.close()

    app = FastAPI(
        title="Calendar Booking Service",
        description="Books events on Google Calendar behind per-stage timeouts and request rate limits",
        version=Config.VERSION,
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline
    app.state.rate_limiter = limiter
    app.state.trusted_proxies = frozenset(
        Config.RATE_LIMIT_TRUSTED_PROXIES if trusted_proxies is None else trusted_proxies)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=Config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "x-access-token", "x-refresh-token"],
        expose_headers=["Content-Length", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
        max_age=600,
    )

    app.include_router(router, prefix="/api")

    @app.exception_handler(BookingError)
    async def booking_error_handler(request: Request, exc: BookingError):
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
            headers=rate_limit_headers(request),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return JSONResponse(status_code=404, content={"error": "Not Found", "path": request.url.path})
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error: {exc}", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal Server Error", "message": str(exc)},
        )

    @app.get("/", response_model=HealthResponse)
    async def root():
        return HealthResponse(
            ok=True,
            service=Config.SERVICE_NAME,
            version=Config.VERSION,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint"""
        auth_state = request.app.state.pipeline.gateway.auth_cache.state.value
        try:
            Config.validate()
            return {"status": "healthy", "authClient": auth_state,
                    "rateLimiting": request.app.state.rate_limiter is not None}
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return {"status": "unhealthy", "authClient": auth_state, "error": str(e)}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
