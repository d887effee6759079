"""FastAPI application entry point."""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.config import settings
from app.database import engine, get_db
from app.models import Base
from app.services.errors import AppError

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, build the storage handle, start the background worker."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    from app.database import async_session
    from app.services.file_storage import build_storage
    from app.services.job_worker import (
        WorkerContext, ensure_maintenance_jobs, recover_stale_jobs, worker_loop,
    )
    from app.services.virus_scanner import build_rescan_policy

    storage = build_storage(settings)
    app.state.storage = storage

    # Requeue any jobs stuck in "running" from a previous crash,
    # then make sure the recurring maintenance jobs are scheduled
    await recover_stale_jobs(async_session)
    await ensure_maintenance_jobs(async_session)

    ctx = WorkerContext(
        session_factory=async_session,
        storage=storage,
        rescan_policy=build_rescan_policy(settings.RESCAN_POLICY, settings.RESCAN_SIMULATED_INFECTION_RATE),
        poll_interval=settings.WORKER_POLL_INTERVAL,
        share_cleanup_interval=timedelta(minutes=settings.SHARE_CLEANUP_INTERVAL_MINUTES),
        storage_reconcile_interval=timedelta(minutes=settings.STORAGE_RECONCILE_INTERVAL_MINUTES),
        quota_reservation_ttl=timedelta(minutes=settings.QUOTA_RESERVATION_TTL_MINUTES),
    )
    worker_task = asyncio.create_task(worker_loop(ctx))

    yield

    # Cleanup
    worker_task.cancel()
    await engine.dispose()


app = FastAPI(
    title="Cloud Storage API",
    version="1.0.0",
    description="File storage with virus scanning, thumbnails, quotas and share links.",
    lifespan=lifespan,
)

# CORS
origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    body = {"error": exc.message}
    if exc.details:
        body["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/api/health")
async def health_check():
    """Verify API and database connectivity."""
    try:
        async for db in get_db():
            await db.execute(text("SELECT 1"))
            return {"status": "ok", "database": "connected"}
    except Exception as e:
        return {"status": "error", "database": str(e)}


# Register routers
from app.routes.auth import router as auth_router
from app.routes.files import router as files_router
from app.routes.shared import router as shared_router
from app.routes.jobs import router as jobs_router
app.include_router(auth_router)
app.include_router(files_router)
app.include_router(shared_router)
app.include_router(jobs_router)
