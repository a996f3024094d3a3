import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from config import settings
from db.database import engine, Base, SessionLocal
from api.users import router as users_router
from api.friends import router as friends_router
from api.feed import router as feed_router
from api.workouts import router as workouts_router
from api.calories import router as calories_router
from services.change_feed import ChangeHub, SqlSnapshotSource, install_change_tracking
from services.errors import (
    AlreadyFriends,
    AlreadyResolved,
    CodeSpaceExhausted,
    DuplicateRequest,
    GymBrosError,
    InvalidCodeFormat,
    NotFound,
    SelfRequest,
    TransientError,
)

settings.validate_security_configuration()

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create all tables
Base.metadata.create_all(bind=engine)

change_hub = ChangeHub()
install_change_tracking(SessionLocal, change_hub)
snapshot_source = SqlSnapshotSource(SessionLocal, change_hub)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    snapshot_source.close(wait=False)


app = FastAPI(title=settings.APP_NAME, version="1.0.0", lifespan=lifespan)
app.state.change_hub = change_hub
app.state.snapshot_source = snapshot_source

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if not settings.SECURITY_HEADERS_ENABLED:
        return response
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "camera=(self), microphone=(), geolocation=()"
    if not request.url.path.startswith(settings.MEDIA_BASE_URL):
        response.headers["Content-Security-Policy"] = settings.SECURITY_CSP
    return response


ERROR_STATUS: list[tuple[type[GymBrosError], int]] = [
    (NotFound, 404),
    (DuplicateRequest, 409),
    (AlreadyFriends, 409),
    (AlreadyResolved, 409),
    (SelfRequest, 400),
    (InvalidCodeFormat, 400),
    (CodeSpaceExhausted, 503),
    (TransientError, 503),
]


def status_for_error(exc: GymBrosError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


@app.exception_handler(GymBrosError)
async def domain_error_handler(request: Request, exc: GymBrosError):
    status_code = status_for_error(exc)
    if status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    headers = {"Retry-After": "1"} if getattr(exc, "retryable", False) else None
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": exc.__class__.__name__},
        headers=headers,
    )


# Routers
app.include_router(users_router, prefix="/api")
app.include_router(friends_router, prefix="/api")
app.include_router(feed_router, prefix="/api")
app.include_router(workouts_router, prefix="/api")
app.include_router(calories_router, prefix="/api")

# Uploaded profile pictures
app.mount(settings.MEDIA_BASE_URL, StaticFiles(directory=str(settings.UPLOAD_DIR)), name="media")


@app.get("/api/health")
def health_check():
    return {"status": "ok", "app": settings.APP_NAME}
