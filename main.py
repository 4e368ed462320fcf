from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional
import logging
import time

from routes import auth, public, profiles, qr, analytics, admin
from database import Database
from errors import register_exception_handlers
from rate_limit import RateLimiter
from config import Settings, settings as default_settings

VERSION = "1.0.0"

# Configure logging
logging.basicConfig(
    level=getattr(logging, default_settings.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup and shutdown events.
        The store and the limiter live on app.state for the app's lifetime.
        """
        logger.info(f"Starting Card Platform API - Environment: {settings.ENVIRONMENT}")

        db = Database.from_settings(settings)
        await db.init(create_tables=settings.CREATE_TABLES)
        limiter = RateLimiter(
            window_ms=settings.RATE_LIMIT_WINDOW_MS,
            max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
        )
        limiter.start()

        app.state.db = db
        app.state.limiter = limiter

        if await db.check_connection():
            logger.info("Database connection successful")
        else:
            logger.error("Database connection failed")

        yield

        logger.info("Shutting down Card Platform API")
        await limiter.close()
        await db.close()
        logger.info("All connections closed gracefully")

    app = FastAPI(
        title="Card Platform",
        description="Digital business cards with QR codes and scan analytics",
        version=VERSION,
        lifespan=lifespan,
        redoc_url="/api/redoc" if not settings.is_production else None,
    )
    app.state.settings = settings

    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next):
        """
        Add response time header to all requests.
        """
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

        # Log slow requests
        if process_time > 1.0:
            logger.warning(f"Slow request: {request.method} {request.url.path} took {process_time:.2f}s")

        return response

    register_exception_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Process-Time", "Retry-After"],
    )

    # Include routers
    app.include_router(auth.router)
    app.include_router(public.router)
    app.include_router(profiles.router)
    app.include_router(qr.router)
    app.include_router(analytics.router)
    app.include_router(admin.router)

    @app.get("/health")
    async def health_check(request: Request):
        """
        Health check endpoint for monitoring.
        """
        db_healthy = await request.app.state.db.check_connection()
        return {
            "status": "healthy" if db_healthy else "degraded",
            "version": VERSION,
            "environment": settings.ENVIRONMENT,
            "database": "connected" if db_healthy else "disconnected",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=not default_settings.is_production,
        log_level=default_settings.LOG_LEVEL.lower(),
        access_log=True,
    )
