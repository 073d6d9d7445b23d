# app.py
import logging
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .errors import ConcurrencyConflict, SchedulingError
from .logging_context import install_request_id_filter, reset_request_id, set_request_id
from .routers import (
    routes_availability,
    routes_bookings,
    routes_catalog,
)
from .settings import settings

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s",
)
install_request_id_filter()
log = logging.getLogger("booking-engine")


app = FastAPI(
    title="Booking Engine API",
    version="0.1",
    docs_url="/docs",
    swagger_ui_parameters={"displayRequestDuration": True, "tryItOutEnabled": True},
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid4().hex[:12]
    token = set_request_id(request_id)
    try:
        response = await call_next(request)
    finally:
        reset_request_id(token)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError):
    if isinstance(exc, ConcurrencyConflict):
        log.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc)
    else:
        log.info("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc)
    headers = {"Retry-After": "1"} if isinstance(exc, ConcurrencyConflict) else None
    return JSONResponse(
        status_code=exc.status_code, content={"error": exc.to_dict()}, headers=headers
    )


# === HEALTH ===
@app.get("/health")
def health_check():
    return {"status": "ok", "message": "Booking engine running"}


# === INCLUDE ROUTERS ===
app.include_router(routes_bookings.router)
app.include_router(routes_availability.router)
app.include_router(routes_catalog.router)
