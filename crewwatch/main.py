"""FastAPI application entry point."""
import os

# Force UTC before anything caches timezone information
os.environ['TZ'] = 'UTC'

import asyncio
import time

if hasattr(time, "tzset"):
    time.tzset()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from contextlib import asynccontextmanager

from crewwatch.config import get_settings
from crewwatch.version import APP_VERSION
from crewwatch.routers import crew_monitoring, crew_sessions, health
from crewwatch.services.crew_gateway import CrewMonitoringGateway
from crewwatch.services.crew_store import CrewMonitoringStore
from crewwatch.services.supabase_client import SupabaseClient, SupabaseError
from crewwatch.tasks import schedule_crew_heartbeat, schedule_session_refresh, schedule_stale_session_cleanup

settings = get_settings()

# Create logs directory if it doesn't exist
logs_dir = Path(settings.log_dir)
logs_dir.mkdir(parents=True, exist_ok=True)

log_file = logs_dir / "crewwatch.log"
realtime_log_file = logs_dir / "crewwatch_realtime.log"

print(f"General logging to: {log_file.absolute()}")
print(f"Realtime feed logging to: {realtime_log_file.absolute()}")

# Rotating file handler for general logs (1MB max size, keep 5 backup files)
rotating_handler = RotatingFileHandler(
    log_file,
    maxBytes=1024 * 1024,
    backupCount=5,
    encoding='utf-8',
)
rotating_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))

# Rotating file handler for raw realtime traffic (2MB max size, keep 5 backup files)
realtime_rotating_handler = RotatingFileHandler(
    realtime_log_file,
    maxBytes=2 * 1024 * 1024,
    backupCount=5,
    encoding='utf-8',
)
realtime_rotating_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))

# Force=True overrides any configuration uvicorn applied first
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        rotating_handler,
    ],
    force=True,
)

logger = logging.getLogger(__name__)

# Dedicated realtime feed logger
realtime_logger = logging.getLogger("crewwatch.realtime")
realtime_logger.handlers.clear()
realtime_logger.addHandler(realtime_rotating_handler)
realtime_logger.setLevel(logging.DEBUG if settings.environment == "development" else logging.INFO)
realtime_logger.propagate = False

# Uvicorn's access log goes to the general log file too
uvicorn_access_logger = logging.getLogger("uvicorn.access")
uvicorn_access_logger.setLevel(logging.INFO)
if rotating_handler not in uvicorn_access_logger.handlers:
    uvicorn_access_logger.addHandler(rotating_handler)

logger.info("=" * 100)
logger.info("*" * 36 + " Logging system initialized " + "*" * 36)
logger.info("=" * 100)


async def sign_in_service_account(client: SupabaseClient) -> None:
    """Sign the monitoring client in so row level security admits its reads."""
    if not settings.has_service_account:
        logger.warning("No service account configured, crew monitoring reads use the anon key")
        return

    try:
        user = await client.sign_in_with_password(
            settings.supabase_service_email,
            settings.supabase_service_password,
        )
        logger.info(f"Crew monitoring signed in as {user.email or user.id}")
    except SupabaseError as e:
        logger.error(f"Failed to sign in crew monitoring service account: {e.message} (details={e.describe()})")


@asynccontextmanager
async def lifespan(app_instance: FastAPI):
    """Manage application startup and shutdown tasks."""
    logger.info("=" * 60)
    logger.info("CrewWatch API Starting")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Supabase: {settings.supabase_url}")
    logger.info(f"Realtime channel: {settings.realtime_channel}")
    logger.info("=" * 60)

    client = SupabaseClient()
    gateway = CrewMonitoringGateway(client)
    store = CrewMonitoringStore(gateway, settings=settings)
    app_instance.state.client = client
    app_instance.state.gateway = gateway
    app_instance.state.store = store
    app_instance.state.dashboards = {}

    await sign_in_service_account(client)

    try:
        await store.connect()
    except Exception as e:
        logger.error(f"Failed to connect crew monitoring realtime channel: {e}")

    # Subscribing triggers a refresh too; this one covers a feed that never comes up
    await store.refresh_data()

    cleanup_task = None
    heartbeat_task = None
    refresh_task = None

    if client.refresh_token:
        try:
            refresh_task = asyncio.create_task(
                schedule_session_refresh(
                    client,
                    settings.token_refresh_margin_seconds,
                    settings.token_refresh_retry_seconds,
                )
            )
            logger.info(f"Session refresh task started ({settings.token_refresh_margin_seconds}s before expiry)")
        except Exception as e:
            logger.error(f"Failed to start session refresh: {e}")

    try:
        cleanup_task = asyncio.create_task(
            schedule_stale_session_cleanup(gateway, settings.stale_session_cleanup_minutes)
        )
        logger.info(f"Stale session cleanup task started (runs every {settings.stale_session_cleanup_minutes} minutes)")
    except Exception as e:
        logger.error(f"Failed to start stale session cleanup: {e}")

    try:
        heartbeat_task = asyncio.create_task(schedule_crew_heartbeat(store, settings.crew_heartbeat_seconds))
        logger.info(f"Crew heartbeat task started (runs every {settings.crew_heartbeat_seconds} seconds)")
    except Exception as e:
        logger.error(f"Failed to start crew heartbeat: {e}")

    try:
        yield
    finally:
        logger.info("Shutting down background tasks...")

        tasks_to_cancel = []
        if cleanup_task:
            cleanup_task.cancel()
            tasks_to_cancel.append(("Stale session cleanup", cleanup_task))
        if heartbeat_task:
            heartbeat_task.cancel()
            tasks_to_cancel.append(("Crew heartbeat", heartbeat_task))
        if refresh_task:
            refresh_task.cancel()
            tasks_to_cancel.append(("Session refresh", refresh_task))

        for task_name, task in tasks_to_cancel:
            try:
                await asyncio.wait_for(task, timeout=2.0)
            except asyncio.CancelledError:
                logger.info(f"{task_name} task cancelled")
            except asyncio.TimeoutError:
                logger.warning(f"{task_name} task did not cancel within timeout, forcing shutdown")
            except Exception as e:
                logger.error(f"Error cancelling {task_name} task: {e}")

        try:
            await store.close()
            logger.info("Realtime channel closed")
        except Exception as e:
            logger.error(f"Error closing realtime channel: {e}")

        try:
            await client.sign_out()
        except Exception as e:
            logger.error(f"Error signing out service account: {e}")

        await client.close()
        logger.info("CrewWatch API Shutting Down... Goodbye!")


app = FastAPI(
    title="CrewWatch API",
    description="Crew presence and session monitoring",
    version=APP_VERSION,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors with user-friendly messages."""
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")

    errors = []
    for error in exc.errors():
        loc = error.get("loc", [])
        field_path = " -> ".join(str(x) for x in loc[1:]) if len(loc) > 1 else "unknown field"
        errors.append({
            "field": field_path,
            "message": error.get("msg", "Validation error"),
            "type": error.get("type", "unknown"),
        })

    return JSONResponse(
        status_code=422,
        content={
            "detail": "Request validation failed",
            "errors": errors,
        },
    )


allowed_origins = [origin for origin in os.getenv("ALLOWED_ORIGINS", "").split(",") if origin]
if not allowed_origins:
    allowed_origins = [
        "http://localhost:5173",  # Vite dev server
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:3000",
    ]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(crew_monitoring.router)
app.include_router(crew_sessions.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "CrewWatch API",
        "version": APP_VERSION,
        "environment": settings.environment,
        "docs": "/docs",
    }
