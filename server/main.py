"""
FastAPI Main Application
========================

Main entry point for the ClawUI blueprint server.
Provides the REST API for planning and executing blueprints.

Run with:
    uvicorn server.main:app --port 3001
"""

import asyncio
import logging
import os
import sys
from contextlib import asynccontextmanager

# Fix for Windows subprocess support in asyncio
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

from dotenv import load_dotenv

# Load environment variables from .env file if present
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from clawui.blueprint_executor import BlueprintExecutor
from clawui.crash_recovery import CrashRecoveryService
from clawui.database import create_database
from clawui.executor_config import load_executor_settings
from clawui.plan_assistant import PlanAssistant
from clawui.runtime_registry import build_runtime_registry
from clawui.task_queue import BlueprintTaskQueue

from .exceptions import ErrorCode, create_error_response, register_exception_handlers
from .routers import blueprints_router

_logger = logging.getLogger(__name__)


def configure_logging() -> None:
    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown."""
    configure_logging()

    settings = load_executor_settings()
    _logger.info("Database directory: %s", settings.db_dir)
    engine, session_maker = create_database(settings.db_dir)

    registry = build_runtime_registry(settings)
    queue = BlueprintTaskQueue(settings.max_concurrent_processes)
    executor = BlueprintExecutor(session_maker, registry, queue, settings)
    assistant = PlanAssistant(session_maker, registry, queue, settings)
    recovery = CrashRecoveryService(session_maker, registry, settings)

    app.state.settings = settings
    app.state.session_maker = session_maker
    app.state.registry = registry
    app.state.queue = queue
    app.state.executor = executor
    app.state.assistant = assistant
    app.state.recovery = recovery

    # Reconcile executions left running by the previous server instance.
    # Don't fail startup on recovery errors.
    monitor_task = None
    try:
        result = recovery.smart_recover_stale_executions()
        if result.errors:
            _logger.warning("Errors during crash recovery: %s", result.errors)
        if result.monitored:
            monitor_task = asyncio.create_task(
                recovery.monitor_live_executions(result.monitored),
                name="recovery-monitor",
            )
    except Exception as e:
        _logger.error("Crash recovery failed: %s", e)

    yield

    # Shutdown - stop queued and running work first, then the monitor
    await queue.shutdown()
    if monitor_task is not None and not monitor_task.done():
        monitor_task.cancel()
        await asyncio.gather(monitor_task, return_exceptions=True)
    engine.dispose()


# Create FastAPI app
app = FastAPI(
    title="ClawUI",
    description="Blueprint execution engine for AI coding agents",
    version="1.0.0",
    lifespan=lifespan,
)

# ============================================================================
# Exception Handlers
# ============================================================================

# All API errors follow the same format:
# {"error_code": "ERROR_TYPE", "message": "...", "details": {...}, "timestamp": "..."}
register_exception_handlers(app)

# Set when the server should accept connections from other hosts
ALLOW_REMOTE = os.environ.get("CLAWUI_ALLOW_REMOTE", "").lower() in ("1", "true", "yes")

# CORS - allow all origins when remote access is enabled, otherwise localhost only
if ALLOW_REMOTE:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",      # Next.js dev server
            "http://127.0.0.1:3000",
            "http://localhost:3001",
            "http://127.0.0.1:3001",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


# ============================================================================
# Security Middleware
# ============================================================================

if not ALLOW_REMOTE:
    @app.middleware("http")
    async def require_localhost(request: Request, call_next):
        """Only allow requests from localhost (disabled when CLAWUI_ALLOW_REMOTE=1)."""
        client_host = request.client.host if request.client else None

        if client_host not in ("127.0.0.1", "::1", "localhost", "testclient", None):
            # Raised errors here would bypass the exception handlers
            return JSONResponse(
                status_code=403,
                content=create_error_response(ErrorCode.FORBIDDEN, "Localhost access only"),
            )

        return await call_next(request)


# ============================================================================
# Include Routers
# ============================================================================

app.include_router(blueprints_router)


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
