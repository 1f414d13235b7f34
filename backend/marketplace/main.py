# backend/marketplace/main.py

import logging
import os

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from . import models  # noqa: F401 - registers tables on Base.metadata

# Routers under marketplace/api/
from .api import (
    api_booking,
    api_payment,
    api_review,
    api_ws,
    auth,
)
from .api.dependencies import get_event_hub
from .core.config import settings
from .core.observability import setup_logging
from .database import Base, engine
from .realtime.bus import TOPIC_PREFIX, bus
from .utils.errors import BookingError
from .utils.status_logger import register_status_listeners

setup_logging()
logger = logging.getLogger(__name__)

register_status_listeners()

if os.getenv("SKIP_DB_BOOTSTRAP", "0").strip().lower() not in {"1", "true", "yes"}:
    # Alembic owns the schema in deployed environments; this keeps local and
    # test databases usable without a migration step.
    Base.metadata.create_all(bind=engine)

# Always use ORJSONResponse for JSON payloads to ensure consistent, fast
# serialization across all endpoints.
app = FastAPI(title="Marketplace Bookings API", default_response_class=ORJSONResponse)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
logger.info("CORS origins set to: %s", settings.CORS_ORIGINS)


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    """Render booking-core failures in the shared ``error_response`` shape."""
    http_exc = exc.to_http()
    headers = {"WWW-Authenticate": "Bearer"} if http_exc.status_code == status.HTTP_401_UNAUTHORIZED else None
    return ORJSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail}, headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Return validation errors with details and log them for debugging."""
    errors = exc.errors()
    logger.warning("Validation error at %s: %s", request.url.path, errors)
    field_errors = {".".join(str(p) for p in err.get("loc", ()) if p != "body"): err.get("msg", "") for err in errors}
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": {
                "message": "Invalid request.",
                "field_errors": field_errors,
                "code": "validation_error",
            }
        },
    )


api_prefix = settings.API_V1_STR  # usually something like "/api/v1"

# ─── AUTH ROUTES (no version prefix) ────────────────────────────────────────────────
app.include_router(auth.router, prefix="/auth", tags=["auth"])

app.include_router(api_booking.router, prefix=f"{api_prefix}/bookings", tags=["bookings"])
app.include_router(api_payment.router, prefix=f"{api_prefix}/payments", tags=["payments"])
app.include_router(api_review.router, prefix=f"{api_prefix}", tags=["reviews"])
app.include_router(api_ws.router, prefix=f"{api_prefix}", tags=["ws"])


@app.on_event("startup")
async def start_bus_consumer() -> None:
    """Fan booking events published by other instances out to local sockets."""
    hub = get_event_hub()
    await bus.start_pattern_consumer(f"{TOPIC_PREFIX}bookings:*", hub.handle_bus_message)


@app.on_event("shutdown")
async def stop_bus_consumer() -> None:
    await bus.stop()


# ─── A simple root check ─────────────────────────────────────────────────────────────
@app.get("/")
async def root():
    return {"message": "Welcome to the Marketplace Bookings API"}


@app.get("/healthz", tags=["health"])
async def healthz():
    return {"status": "ok"}
