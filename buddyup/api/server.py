import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from buddyup.api import messages, notifications, participants, realtime, reviews, trips
from buddyup.config import get_settings
from buddyup.errors import TripServiceError
from buddyup.services.scheduler import start_scheduler, stop_scheduler

settings = get_settings()

# Configure logging
logging.basicConfig(level=logging.INFO)
log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - start and stop background services."""
    # Startup
    if settings.SCHEDULER_ENABLED:
        log.info("Starting background scheduler...")
        start_scheduler()
    yield
    # Shutdown
    if settings.SCHEDULER_ENABLED:
        log.info("Stopping background scheduler...")
        stop_scheduler()


description = """
BuddyUp lets people heading the same way share a ride: a creator offers seats on a
trip, others request seats, and the creator accepts or rejects them. Participants
chat, get reminders before departure and review each other afterwards.
"""

tags_metadata = [
    {"name": "trips", "description": "Create, edit, search and close trips"},
    {"name": "participants", "description": "Join requests and participant management"},
    {"name": "messages", "description": "Trip group chat"},
    {"name": "notifications", "description": "Notification inbox and push token registration"},
    {"name": "reviews", "description": "Post-trip reviews and user stats"},
    {"name": "realtime", "description": "WebSocket change feed"},
]

app = FastAPI(
    title="BuddyUp API",
    description=description,
    version="1.0.0",
    openapi_tags=tags_metadata,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOW_ORIGINS_LIST,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TripServiceError)
async def trip_service_error_handler(request: Request, exc: TripServiceError):
    """Map service errors to HTTP. Internal detail is logged, not returned."""
    if exc.status_code >= 500:
        log.error(f"[API] {request.method} {request.url.path} -> {exc.code}: {exc.message}")
    else:
        log.warning(f"[API] {request.method} {request.url.path} -> {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.public_message, "code": exc.code},
    )


# Include routers
app.include_router(trips.router)
app.include_router(participants.router)
app.include_router(messages.router)
app.include_router(notifications.router)
app.include_router(reviews.router)
app.include_router(realtime.router)


@app.get("/")
def root():
    return {"message": "BuddyUp API is running", "version": "1.0.0"}


@app.get("/health")
def health():
    return {"ok": True}
