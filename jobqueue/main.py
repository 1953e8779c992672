"""Main entry point for the job queue service."""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from jobqueue.config import get_settings
from jobqueue.lib.json_logger import setup_logging
from jobqueue.queue import StoreUnavailableError, get_queue, registry, run_worker
from jobqueue.queue.worker import load_handler_modules
from jobqueue.routes import health, jobs
from jobqueue.routes.metrics import router as metrics_router

logger = logging.getLogger(__name__)

settings = get_settings()
setup_logging(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the background worker consumer alongside the HTTP server."""
    load_handler_modules(settings.handler_module_list)

    queue = get_queue()
    stop_event = asyncio.Event()
    worker_task = None

    if len(registry):
        worker_task = asyncio.create_task(
            run_worker(
                queue,
                registry,
                settings.worker_queue_list or None,
                stop_event=stop_event,
                install_signal_handlers=False,  # uvicorn owns signals
            )
        )
        logger.info("Background worker consumer started")

    yield

    # Shutdown: let in-flight jobs finish, then close the store
    stop_event.set()
    if worker_task is not None:
        try:
            await worker_task
        except asyncio.CancelledError:
            pass
        logger.info("Background worker consumer stopped")
    await queue.close()


app = FastAPI(
    title="Job Queue",
    description="Durable priority job queue with idempotent enqueue and retries",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Job store unavailable"})


# Include routers
app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])
app.include_router(metrics_router, tags=["Metrics"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "jobqueue",
        "version": "0.1.0",
        "status": "running"
    }


if __name__ == "__main__":
    uvicorn.run(
        "jobqueue.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug
    )
