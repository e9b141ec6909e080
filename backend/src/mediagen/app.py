"""FastAPI application factory."""

# Import timezone enforcement (sets TZ=UTC)
import asyncio
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediagen.api.routes import credits, jobs, notifications, webhooks
from mediagen.core import timezone  # noqa: F401
from mediagen.core.config import Settings, configure_logging
from mediagen.core.database import setup_db_session
from mediagen.services.credit_ledger import CreditLedger
from mediagen.services.notifications.change_feed import ChangeFeed
from mediagen.services.notifications.notifier import JobStatusNotifier, NotifierHub
from mediagen.services.notifications.poller import JobPoller
from mediagen.services.providers.registry import build_provider_registry
from mediagen.services.push import PushDispatcher
from mediagen.services.reconciler import WebhookReconciler
from mediagen.services.settlement import JobOutcomeService
from mediagen.services.submission import JobSubmissionService
from mediagen.uow import create_uow_factory
from mediagen.workers.sweep_worker import build_job_store, run_sweep_worker

logger = structlog.get_logger()


def create_resilient_worker(
    coro_func, uow_factory, settings, worker_name: str, shutdown_event: asyncio.Event
):
    """Create a worker with automatic restart on failure.

    Args:
        coro_func: Worker coroutine function (e.g., run_sweep_worker)
        uow_factory: UnitOfWork factory
        settings: Application settings
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown

    Returns:
        Initial task handle (will be auto-recreated on crash)
    """
    RESTART_DELAY = 1  # Fixed 1 second delay between restarts

    def on_worker_done(task: asyncio.Task):
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=RESTART_DELAY,
                exc_info=exc,
            )
        else:
            # Worker stopped cleanly (unexpected for infinite loop workers)
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=RESTART_DELAY,
            )

        async def restart_worker():
            await asyncio.sleep(RESTART_DELAY)

            # Check again if shutdown was requested during sleep
            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            new_task = asyncio.create_task(coro_func(uow_factory, settings))
            new_task.add_done_callback(on_worker_done)

        asyncio.create_task(restart_worker())

    task = asyncio.create_task(coro_func(uow_factory, settings))
    task.add_done_callback(on_worker_done)
    return task


def init_services(
    app: FastAPI,
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient | None = None,
) -> None:
    """Construct every service and store it on ``app.state``.

    Args:
        app: Application whose state receives the services
        settings: Application settings
        session_factory: Database session factory
        http_client: Optional shared client for provider and push calls
    """
    change_feed = ChangeFeed()
    uow_factory = create_uow_factory(session_factory, change_feed)

    registry = build_provider_registry(settings, http_client)
    ledger = CreditLedger()
    store = build_job_store(settings)
    push = PushDispatcher(settings.push_dispatch_url, settings.push_dispatch_key, http_client)
    outcomes = JobOutcomeService(uow_factory, store, ledger, push)
    poller = JobPoller(
        registry,
        outcomes,
        interval_seconds=settings.poll_interval_seconds,
        max_attempts_image=settings.poll_max_attempts_image,
        max_attempts_video=settings.poll_max_attempts_video,
    )

    def notifier_factory() -> JobStatusNotifier:
        return JobStatusNotifier(
            uow_factory,
            change_feed,
            store,
            registry,
            poller,
            heartbeat_seconds=settings.notifier_heartbeat_seconds,
        )

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.change_feed = change_feed
    app.state.uow_factory = uow_factory
    app.state.provider_registry = registry
    app.state.credit_ledger = ledger
    app.state.job_store = store
    app.state.job_outcomes = outcomes
    app.state.submission_service = JobSubmissionService(uow_factory, registry, store, ledger)
    app.state.reconciler = WebhookReconciler(registry, outcomes)
    app.state.notifier_hub = NotifierHub(notifier_factory)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, build services, start the sweep worker
    - Shutdown: Stop notifiers and the worker, close HTTP and database connections
    """
    settings = Settings()  # type: ignore[call-arg]

    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)

    init_services(app, settings, session_factory, http_client)

    # Create shutdown event for graceful worker termination
    shutdown_event = asyncio.Event()

    sweep_worker_task = create_resilient_worker(
        run_sweep_worker, app.state.uow_factory, settings, "sweep", shutdown_event
    )

    logger.info("application.startup", db_url=settings.database_url.split("@")[-1])

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    await app.state.notifier_hub.close()

    sweep_worker_task.cancel()
    await asyncio.gather(sweep_worker_task, return_exceptions=True)

    await http_client.aclose()
    await session_factory.kw["bind"].dispose()


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Mediagen Backend API",
        description="Generation job lifecycle and credit settlement",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(jobs.router)
    app.include_router(credits.router)
    app.include_router(notifications.router)
    app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])

    # Health check endpoint with database validation
    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()
