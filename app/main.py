"""
FastAPI application: webhook ingress, health and debug routes.

The pipeline container is built inside the lifespan and stored on
``app.state.container``; routes reach it through the request.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.config import settings
from app.container import PipelineContainer
from app.features.messaging.api.router import router as webhook_router
from app.infrastructure.observability.logging import clear_log_context, get_logger, setup_logging
from app.routes import debug, health

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL, service=settings.SERVICE_NAME)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the pipeline, start it, and tear it down on shutdown."""
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    container = PipelineContainer()
    await container.start(run_workers=settings.QUEUE_RUN_IN_API)
    app.state.container = container

    yield

    logger.info("Application shutting down")
    await container.shutdown()


app = FastAPI(
    title="Enrollment Ingestion",
    description="Messaging webhooks, document extraction and cross-validation",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(webhook_router)
if settings.debug:
    app.include_router(debug.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    clear_log_context()
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
