"""
FastAPI Application Entry Point
Order Ingestion - Python Backend
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
import os
import asyncio
from dotenv import load_dotenv
import logging
import json
import sys
import time
import uuid as _uuid
from typing import Callable, List
from routers import uploads

from database import engine, init_db, check_db_health
from services.errors import PersistenceError

load_dotenv()

DB_INIT_TIMEOUT_S = 120


class JsonFormatter(logging.Formatter):
    """One JSON object per log line: severity, time, logger, message and traceback."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "severity": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)
    # SQL echo stays off unless LOG_LEVEL_SQL asks for it
    logging.getLogger("sqlalchemy.engine").setLevel(os.getenv("LOG_LEVEL_SQL", "WARNING").upper())


def cors_origins_from_env() -> List[str]:
    raw = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5000")
    return [origin.strip() for origin in raw.split(",") if origin.strip()] or ["http://localhost:3000"]


configure_logging(os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)


def _should_init_db() -> bool:
    return os.getenv("INIT_DB_ON_STARTUP", "false").lower() == "true" or not os.getenv("DATABASE_URL")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Order ingestion API starting")
    if _should_init_db():
        try:
            await asyncio.wait_for(init_db(), timeout=DB_INIT_TIMEOUT_S)
            logger.info("Database tables ready")
        except asyncio.TimeoutError:
            logger.error(f"DB init timed out after {DB_INIT_TIMEOUT_S}s, serving without it")
        except Exception as e:
            logger.error(f"DB init failed, serving without it: {e}", exc_info=True)
    else:
        logger.info("DB init on startup disabled")
    yield
    await engine.dispose()
    logger.info("Order ingestion API stopped")


app = FastAPI(
    title="Order Ingestion API",
    description="Platform and shopping-mall order file ingestion",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins_from_env(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-Id", "X-Upload-Id", "Content-Disposition"],
)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tags every request with X-Request-Id and logs method, path, status and duration."""

    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-Id") or str(_uuid.uuid4())
        request.state.request_id = request_id
        start = time.time()
        client = request.client.host if request.client else "-"
        logger.info(f"REQ {request.method} {request.url.path} ip={client} rid={request_id}")
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(f"Request pipeline failed rid={request_id}")
            raise

        dur_ms = int((time.time() - start) * 1000)
        logger.info(f"RES {request.method} {request.url.path} status={response.status_code} durMs={dur_ms} rid={request_id}")
        response.headers["X-Request-Id"] = request_id
        return response


app.add_middleware(RequestIDMiddleware)


@app.get("/")
async def root_endpoint():
    return {"ok": True, "service": "order-ingestion"}


@app.get("/healthz")
async def healthz():
    return {"ok": True}


@app.get("/api/health")
async def api_health():
    """Liveness plus database reachability."""
    db_health = await check_db_health()
    return {
        "status": "healthy" if db_health["status"] == "healthy" else "degraded",
        "database": db_health,
        "timestamp": time.time(),
    }


# --- Error handlers ---
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Request validation failed: {exc.errors()}")
    return JSONResponse(status_code=422, content={"detail": exc.errors(), "error": "Validation failed"})


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    logger.error(f"[{exc.upload_id}] Upload failed: {exc}")
    return JSONResponse(status_code=500, content={"error": str(exc.original) or str(exc), "uploadId": exc.upload_id})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


app.include_router(uploads.router, prefix="/api", tags=["uploads"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", 8080)),
        reload=os.getenv("NODE_ENV") != "production",
    )
