from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from contextlib import asynccontextmanager
import logging
import time
import uuid

from api_admin import router as admin_router
from api_cache import router as cache_router
from api_health import router as health_router
from config import CORS_ORIGINS, RATE_LIMIT_PER_IP_PER_MIN
from middleware_timeout import TimeoutMiddleware
from services_cache_store import get_cache_store
from services_logging import structured_log_line
from services_rate_limit import FixedWindowRateLimiter, get_client_ip

# Configure logging
logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger("constellations")

rate_limiter = FixedWindowRateLimiter()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Ensure the cache schema exists before serving requests.
    """
    try:
        store = get_cache_store()
        store.init_schema()
        logger.info(structured_log_line({"event": "startup", "database": store.backend}))
    except Exception as e:
        # Keep serving: /health reports the problem and /init can be retried
        logger.error(f"Cache schema initialisation failed on startup: {e}", exc_info=True)

    yield


app = FastAPI(
    title="Constellations Cache Store",
    description="Canonical entity ids and expansion cache for the constellations graph explorer.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials="*" not in CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(TimeoutMiddleware)

app.include_router(health_router)
app.include_router(cache_router)
app.include_router(admin_router)


@app.middleware("http")
async def rate_limit_and_observability(request: Request, call_next):
    start = time.perf_counter()
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    client_ip = get_client_ip(request)
    request.state.request_id = request_id

    response = None
    try:
        if not rate_limiter.allow(f"ip:{client_ip}", RATE_LIMIT_PER_IP_PER_MIN):
            logger.warning(structured_log_line({
                "event": "rate_limit_exceeded",
                "ip": client_ip,
                "limit": RATE_LIMIT_PER_IP_PER_MIN,
            }))
            response = JSONResponse(status_code=429, content={"detail": "Rate limited"})
        else:
            response = await call_next(request)
    finally:
        latency_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            structured_log_line(
                {
                    "event": "request",
                    "request_id": request_id,
                    "route": request.url.path,
                    "method": request.method,
                    "status": getattr(response, "status_code", 500),
                    "latency_ms": latency_ms,
                }
            )
        )

    response.headers["x-request-id"] = request_id
    return response


# Centralized error handling
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """
    Handle HTTP exceptions (4xx, 5xx).
    Logs the error with appropriate level and returns JSON response.
    """
    if exc.status_code >= 500:
        logger.error(
            f"HTTP {exc.status_code} error on {request.method} {request.url.path}",
            extra={
                "status_code": exc.status_code,
                "method": request.method,
                "path": request.url.path,
                "detail": exc.detail,
            },
        )
    else:
        logger.warning(
            f"HTTP {exc.status_code} error on {request.method} {request.url.path}: {exc.detail}",
            extra={
                "status_code": exc.status_code,
                "method": request.method,
                "path": request.url.path,
                "detail": exc.detail,
            },
        )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Handle request validation errors (422).
    These are client errors, so log at WARNING level.
    """
    logger.warning(
        f"Validation error on {request.method} {request.url.path}",
        extra={
            "method": request.method,
            "path": request.url.path,
            "errors": exc.errors(),
        },
    )
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_errors(exc)},
    )


def jsonable_errors(exc: RequestValidationError):
    # pydantic error contexts may hold exception instances
    return [{k: v for k, v in err.items() if k in ("loc", "msg", "type")} for err in exc.errors()]


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """
    Catch-all handler for unhandled exceptions.
    Logs full stack trace but returns sanitized error message to client.
    """
    logger.exception(
        f"Unhandled exception on {request.method} {request.url.path}",
        extra={
            "method": request.method,
            "path": request.url.path,
            "exception_type": type(exc).__name__,
            "exception_message": str(exc),
        },
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


@app.get("/")
def read_root():
    return {"status": "ok", "message": "Constellations cache store is running"}


if __name__ == "__main__":
    import uvicorn
    from config import PORT

    uvicorn.run("main:app", host="0.0.0.0", port=PORT, reload=False)
