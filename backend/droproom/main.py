import os
import time

import sentry_sdk
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from sentry_sdk.integrations.fastapi import FastApiIntegration
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import DBAPIError

from .config import get_settings
from .database import Base, engine
from .errors import RoomError, StorageFailure
from .routes import rooms

dsn = os.getenv("SENTRY_DSN")
if dsn:
    sentry_sdk.init(dsn=dsn, integrations=[FastApiIntegration()])

REQUEST_COUNT = Counter("request_count", "Total requests", ["method", "endpoint"])
REQUEST_LATENCY = Histogram(
    "request_latency_seconds", "Request latency", ["endpoint"]
)
ROOM_ERRORS = Counter("room_error_count", "Core failures surfaced to clients", ["error"])

settings = get_settings()

if engine.dialect.name == "sqlite":
    Base.metadata.create_all(bind=engine)

app = FastAPI(title="Droproom API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.limiter = rooms.limiter
app.add_exception_handler(RateLimitExceeded, lambda r, e: Response("Too Many Requests", status_code=429))
if not settings.testing:
    app.add_middleware(SlowAPIMiddleware)


def _error_response(exc: RoomError) -> JSONResponse:
    ROOM_ERRORS.labels(exc.error).inc()
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error": exc.error, "retryable": exc.retryable},
    )


@app.exception_handler(RoomError)
async def handle_room_error(request: Request, exc: RoomError):
    return _error_response(exc)


@app.exception_handler(DBAPIError)
async def handle_database_unavailable(request: Request, exc: DBAPIError):
    return _error_response(StorageFailure("Database unavailable; retry"))


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    REQUEST_COUNT.labels(request.method, endpoint).inc()
    REQUEST_LATENCY.labels(endpoint).observe(time.time() - start)
    return response


@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/api/health")
def health():
    return {"status": "ok"}


app.include_router(rooms.router)
