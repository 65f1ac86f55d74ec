import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from portal.core.config import settings
from portal.core.database import create_tables
from portal.core.exceptions import register_exception_handlers
from portal.core.logging_config import configure_logging
from portal.api.routes.auth import router as auth_router
from portal.api.routes.push import router as push_router
from portal.api.routes.notifications import router as notifications_router
from portal.api.routes.worker import router as worker_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    # Create tables on startup (SQLite / local development)
    await create_tables()
    if not settings.push_enabled:
        logger.warning("VAPID keys not configured, push delivery is disabled")
    yield


app = FastAPI(
    title="Portal Notifications API",
    description="Notification delivery and sync for the client portal",
    version="1.0.0",
    lifespan=lifespan,
    # Swagger UI only in development; set DEBUG=false in production
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

API_PREFIX = "/api"

app.include_router(auth_router, prefix=API_PREFIX)
app.include_router(push_router, prefix=API_PREFIX)
app.include_router(notifications_router, prefix=API_PREFIX)
app.include_router(worker_router)  # /sw.js must be served from the root scope


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "Portal Notifications API", "version": "1.0.0", "push": settings.push_enabled}
