import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from starlette.formparsers import MultiPartParser

from logtrace.core.config import settings, ensure_upload_dir
from logtrace.core.errors import ApiError
from logtrace.core.logging_config import setup_logging

# Raise the per-part size limit for multipart uploads (default is 1 MB)
MultiPartParser.max_part_size = settings.MAX_UPLOAD_MB * 1024 * 1024
from logtrace.routes.analysis import router as analysis_router
from logtrace.routes.anomalies import router as anomalies_router
from logtrace.routes.commands import router as commands_router
from logtrace.routes.events import router as events_router
from logtrace.routes.known_issues import router as known_issues_router
from logtrace.routes.logs import router as logs_router
from logtrace.routes.sessions import router as sessions_router
from logtrace.routes.stats import router as stats_router
from logtrace.routes.trace import router as trace_router
from logtrace.services.worker import shutdown_worker

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_upload_dir()
    logger.info(
        "LogTrace API starting (ingestion concurrency %d)", settings.processing_concurrency()
    )
    yield
    # Let in-flight ingestion jobs finish before the process exits
    shutdown_worker(wait=True)


app = FastAPI(title="LogTrace", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173", "http://localhost:8000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "%s %s -> %s (%.2fms)",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        return response


app.add_middleware(RequestLoggingMiddleware)

app.include_router(logs_router)
app.include_router(trace_router)
app.include_router(events_router)
app.include_router(sessions_router)
app.include_router(commands_router)
app.include_router(anomalies_router)
app.include_router(known_issues_router)
app.include_router(analysis_router)
app.include_router(stats_router)

if settings.JWT_SECRET_KEY == "CHANGE-ME-IN-PRODUCTION":
    logger.warning("JWT_SECRET_KEY is set to the default value. Change it in production!")


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    logger.info(
        "%s %s rejected: %s", request.method, request.url.path, exc.code,
        extra={"method": request.method, "path": request.url.path, "status_code": exc.status_code},
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "type": type(exc).__name__,
        },
    )


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/")
def root():
    return {
        "message": "LogTrace API is running",
        "docs": "/docs",
        "health": "/health",
    }
