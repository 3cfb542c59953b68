"""
FastAPI Production Application

Job submission, refund records and the metrics read API.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
import structlog

from orderflow.config import get_settings
from orderflow.config.logging import configure_logging
from orderflow.database.connection import close_database, create_all, init_database
from orderflow.ingestion.jobs import JobProducer
from orderflow.ledger.metrics import MetricsLedger
from orderflow.ledger.store import RedisMetricsStore, close_redis, init_redis
from orderflow.processing.errors import NotFoundError, OrderFlowError, ValidationFailure
from orderflow.serving.api.middleware import RequestLoggingMiddleware
from orderflow.serving.api.routes import health_router, jobs_router, metrics_router

settings = get_settings()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    configure_logging()

    logger.info("Starting orderflow API", environment=settings.app_env)

    await init_database()
    await create_all()

    try:
        redis = await init_redis()
        app.state.ledger = MetricsLedger(RedisMetricsStore(redis))
    except Exception as e:
        logger.warning("Redis init failed, metrics API disabled", error=str(e))
        app.state.ledger = None

    producer = JobProducer()
    try:
        await producer.start()
        app.state.job_producer = producer
    except Exception as e:
        logger.warning("Kafka producer init failed, job submission disabled", error=str(e))
        app.state.job_producer = None

    yield

    logger.info("Shutting down...")
    if app.state.job_producer is not None:
        await app.state.job_producer.stop()
    await close_redis()
    await close_database()


app = FastAPI(
    title="Orderflow API",
    description="Order and refund processing with real-time aggregate metrics",
    version=settings.version,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(health_router, prefix="/api/v1", tags=["Health"])
app.include_router(jobs_router, prefix="/api/v1", tags=["Jobs"])
app.include_router(metrics_router, prefix="/api/v1/metrics", tags=["Metrics"])


@app.exception_handler(OrderFlowError)
async def orderflow_error_handler(request: Request, exc: OrderFlowError) -> JSONResponse:
    if isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, ValidationFailure):
        status_code = 422
    else:
        status_code = 409
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.message, "type": type(exc).__name__, "context": jsonable_context(exc)},
    )


def jsonable_context(exc: OrderFlowError) -> dict:
    return {key: str(value) if value is not None else None for key, value in exc.context.items()}


@app.get("/api/v1/info")
async def api_info():
    """API information endpoint."""
    return {
        "name": "Orderflow API",
        "version": settings.version,
        "environment": settings.app_env,
        "documentation": "/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
