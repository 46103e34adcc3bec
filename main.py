import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Iterable

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, get_settings
from contact_store import ContactStore, InMemoryContactStore
from db_models import DomainEvent, ErrorResponse, FinalResponse, HealthResponse, IdentifyRequest
from db_setup import SQLiteContactStore
from exceptions import InvalidRequest, ReconciliationError
from logging_config import setup_logging
from reconciliation import IdentityReconciler

settings = get_settings()

setup_logging(
    level=settings.LOG_LEVEL,
    json_format=settings.is_production,
    environment=settings.ENVIRONMENT,
)
logger = logging.getLogger(__name__)


def build_store(settings: Settings) -> ContactStore:
    if settings.STORE_BACKEND == "memory":
        return InMemoryContactStore()
    return SQLiteContactStore(settings.DB_NAME)


@asynccontextmanager
async def lifespan(app: FastAPI):
    errors = settings.validate_config()
    for error in errors:
        logger.error(f"Configuration error: {error}")
    if errors and settings.is_production:
        raise RuntimeError("Cannot start in production with invalid configuration")

    app.state.store = build_store(settings)
    logger.info(f"Starting {settings.API_TITLE} ({settings.ENVIRONMENT})")
    yield
    logger.info("Shutting down")


app = FastAPI(
    title=settings.API_TITLE,
    version=settings.API_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.perf_counter()
    request_id = request.headers.get("X-Request-ID", f"req-{int(time.time() * 1000)}")

    response = await call_next(request)

    process_time = time.perf_counter() - start_time
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

    if settings.debug_enabled or response.status_code >= 400:
        logger.info(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({process_time:.3f}s)")
    return response


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
    if isinstance(exc, InvalidRequest):
        status_code = 400
        message = str(exc)
    else:
        status_code = 500
        logger.error(
            f"Contact identification failed: {exc}",
            extra={"error_kind": exc.kind, "context": getattr(exc, "context", None)},
        )
        message = "Failed to identify contact" if settings.is_production else str(exc)

    body = ErrorResponse(error=exc.kind, message=message)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    message = ", ".join(
        f"{'.'.join(str(part) for part in error['loc'][1:]) or 'body'}: {error['msg']}"
        for error in exc.errors()
    )
    logger.warning(f"Request validation failed: {message}", extra={"path": request.url.path})
    body = ErrorResponse(error="Validation failed", message=message)
    return JSONResponse(status_code=400, content=body.model_dump())


@app.exception_handler(StarletteHTTPException)
async def not_found_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code != 404:
        return await http_exception_handler(request, exc)

    logger.warning(f"Route not found: {request.method} {request.url.path}")
    body = ErrorResponse(error="Not Found", message=f"Route {request.method} {request.url.path} not found")
    return JSONResponse(status_code=404, content=body.model_dump())


def get_store(request: Request) -> ContactStore:
    return request.app.state.store


def publish_events(events: Iterable[DomainEvent]):
    for event in events:
        logger.info(f"Contact event: {event.event}", extra=event.model_dump(mode="json"))


# Served both bare and under /api; the bare paths are kept for existing clients.
router = APIRouter(tags=["Identity"])


@app.get("/")
async def root():
    return {"message": "Bitespeed API is up"}


@router.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(
        message="Service is healthy",
        timestamp=datetime.now(timezone.utc),
        version=settings.API_VERSION,
    )


@router.post("/identify", response_model=FinalResponse)
def identify(request: IdentifyRequest, store: ContactStore = Depends(get_store)):
    result = IdentityReconciler(store).identify(request)
    publish_events(result.events)
    return FinalResponse(contact=result.contact)


app.include_router(router)
app.include_router(router, prefix="/api")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
