"""
Ride-hailing Dispatch Backend - FastAPI Entry Point
Main application file with CORS, middleware, and route registration
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ridehail.config import Settings, get_settings
from ridehail.database import connect_db, disconnect_db
from ridehail.errors import RideError
from ridehail.logging_config import configure_logging
from ridehail.models.category_model import seed_default_categories
from ridehail.routes import admin_routes, auth_routes, driver_routes, ride_routes
from ridehail.services import build_services
from ridehail.sockets import ride_socket
from ridehail.sockets.ride_socket import manager

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


def create_app(
    settings: Optional[Settings] = None,
    connect_database: bool = True,
    **service_options,
) -> FastAPI:
    """
    Build the FastAPI application

    Args:
        settings: Configuration, defaults to the environment
        connect_database: False when the caller already holds a mongoengine connection
        service_options: Passed to build_services (route_estimator, weather, clock)
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting ride dispatch API...")
        if connect_database:
            connect_db(settings)
        if settings.seed_default_categories:
            seed_default_categories()
        await manager.start()
        yield
        logger.info("Shutting down ride dispatch API...")
        await app.state.services.shutdown()
        await manager.stop()
        if connect_database:
            disconnect_db()

    app = FastAPI(
        title="Ride Dispatch API",
        description="Ride lifecycle and dispatch backend for a ride-hailing platform",
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.services = build_services(settings, push=manager.send_to_user, **service_options)

    # CORS Configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Update with specific origins in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all incoming requests with timing"""
        start_time = time.time()
        logger.info(f"Request: {request.method} {request.url.path}")

        response = await call_next(request)

        process_time = time.time() - start_time
        logger.info(f"Completed in {process_time:.2f}s - Status: {response.status_code}")
        return response

    @app.exception_handler(RideError)
    async def ride_error_handler(request: Request, exc: RideError):
        """Lifecycle errors carry their own status and code"""
        if exc.status_code >= 500:
            logger.warning(f"{exc.code} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle all unhandled exceptions"""
        logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": "Internal server error",
                "error": str(exc),
            },
        )

    @app.get("/")
    async def root():
        """API health check"""
        return {"success": True, "message": "Ride dispatch API is running", "version": API_VERSION}

    @app.get("/health")
    async def health_check():
        """Detailed health check"""
        return {
            "success": True,
            "status": "healthy",
            "reject_policy": settings.reject_policy,
            "websocket": manager.get_stats(),
        }

    # Register route modules
    app.include_router(auth_routes.router, prefix="/auth", tags=["Authentication"])
    app.include_router(driver_routes.router, prefix="/drivers", tags=["Drivers"])
    app.include_router(ride_routes.router, prefix="/rides", tags=["Rides"])
    app.include_router(admin_routes.router, prefix="/admin", tags=["Admin"])

    # Register WebSocket routes
    app.include_router(ride_socket.router, prefix="/ws", tags=["WebSocket"])

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("ridehail.main:create_app", factory=True, host="0.0.0.0", port=8000, reload=True)
