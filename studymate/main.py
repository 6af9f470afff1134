# studymate/main.py
"""
FastAPI application with service container lifecycle management.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from studymate.config import settings
from studymate.container import ServiceContainer
from studymate.features.matching.api import router as discovery_router
from studymate.infrastructure.observability.logging import get_logger, setup_logging
from studymate.routes import health

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the service container on startup and close it on shutdown."""
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    container = ServiceContainer(settings)
    await container.start()
    app.state.container = container

    yield

    logger.info("Application shutting down")
    await container.close()


app = FastAPI(
    title="StudyMate Matching",
    description="Compatibility matching and discovery for study partners",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router)
app.include_router(discovery_router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
