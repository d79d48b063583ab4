"""
FastAPI backend for the visitor workflow automation engine.

Wires the trigger detector, graph executor, execution worker pool, event
recorder and funnel analytics behind a small HTTP surface.
"""

# Performance: Install uvloop if available (Linux/macOS only)
try:
    import uvloop
    uvloop.install()
except ImportError:
    pass  # Windows - uvloop not available, use default asyncio

from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from core.container import container
from core.config import Settings
from core.logging import configure_logging, get_logger
from routers import analytics, execution, visitors, workflows

# Initialize settings and logging
settings = Settings()
configure_logging(settings)
logger = get_logger(__name__)

# Suppress noisy loggers
import logging
logging.getLogger("uvicorn").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("uvicorn.error").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting workflow engine")

    await container.database().startup()
    await container.cache().startup()

    # Worker pool for authoritative server actions
    await container.job_queue().start()

    logger.info("Services started successfully",
                workers=settings.execution_workers,
                redis_enabled=settings.redis_enabled,
                dlq_enabled=settings.dlq_enabled)
    yield

    # Shutdown: stop producing work first, then drain the queue
    await container.detector().shutdown()
    await container.joins().shutdown()
    await container.job_queue().stop(drain=True)
    await container.cache().shutdown()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Visitor Workflow Engine",
    version="1.0.0",
    description="Executes visitor-triggered workflow graphs and reports funnel analytics",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)

# Add exception handler middleware BEFORE CORS to catch all errors
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Unhandled exception: {type(e).__name__}: {str(e)}",
                         path=request.url.path, exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )

app.add_middleware(CatchAllExceptionsMiddleware)

# Add CORS middleware (must be AFTER exception middleware)
logger.info("Configuring CORS middleware",
           origins_count=len(settings.cors_origins),
           origins=settings.cors_origins)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers (analytics and execution before workflows: /{workflow_id} is a catch-all)
app.include_router(analytics.router)
app.include_router(execution.router)
app.include_router(workflows.router)
app.include_router(visitors.router)


@app.get("/health")
async def health_check():
    """Detailed health check."""
    queue = container.job_queue()
    return {
        "status": "OK",
        "service": "workflow-engine",
        "version": "1.0.0",
        "environment": "development" if settings.debug else "production",
        "redis_enabled": settings.redis_enabled,
        "cache_backend": "redis" if container.cache().is_redis_available() else "memory",
        "execution": {
            "running": queue.running,
            **queue.stats(),
            "active_joins": container.joins().active_count,
            "pending_timers": container.detector().pending_timers,
        },
        "dlq_enabled": container.dlq().enabled,
        "timestamp": datetime.now().isoformat()
    }


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting workflow engine",
               host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["."] if settings.debug else None,
        reload_excludes=["*.pyc", "__pycache__", "*.log", "*.db"] if settings.debug else None,
        workers=1 if settings.debug else settings.workers
    )
