"""
FastAPI application for the journal queue.

Startup selects the queue backend, wires lifecycle events to the log and
the SSE hub, and (unless disabled) runs a worker pool in-process.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from journalq import __version__
from journalq.config import AppConfig, config as default_config
from journalq.jobs.queue import QueueService
from journalq.jobs.worker import WorkerPool
from journalq.journal.handlers import register_journal_handlers
from journalq.routes.queue import router as queue_router
from journalq.services.completion import AnthropicCompletionService, CompletionService
from journalq.services.notifications import NotificationHub
from journalq.services.storage import Storage, build_storage
from journalq.utils.logging import api_logger as logger, configure_logging


def create_app(
    settings: Optional[AppConfig] = None,
    queue: Optional[QueueService] = None,
    completion: Optional[CompletionService] = None,
    storage: Optional[Storage] = None,
    run_worker: Optional[bool] = None
) -> FastAPI:
    """
    Build the application.

    Collaborators can be injected (tests); anything omitted is built from
    settings during startup.
    """
    settings = settings or default_config
    if run_worker is None:
        run_worker = settings.ENABLE_WORKER

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service = queue or QueueService(settings)
        await service.initialize()
        service.events.attach_logging()

        hub = NotificationHub()
        hub.attach(service.events)

        app.state.queue = service
        app.state.hub = hub
        app.state.pool = None

        if run_worker:
            pool = WorkerPool(
                service,
                concurrency=settings.WORKER_CONCURRENCY,
                poll_interval=settings.WORKER_POLL_INTERVAL,
            )
            completion_service = completion
            if completion_service is None and settings.completion_configured:
                completion_service = AnthropicCompletionService(settings)

            if completion_service is not None:
                register_journal_handlers(pool, completion_service, storage or build_storage(settings), settings)
            else:
                logger.warning("ANTHROPIC_API_KEY not set - journal handlers not registered")

            pool.start()
            app.state.pool = pool
        else:
            logger.info("In-process worker disabled (ENABLE_WORKER=false)")

        logger.info(
            "API started",
            backend=service.backend_name,
            durable=service.is_durable,
            worker=bool(run_worker),
        )

        try:
            yield
        finally:
            if app.state.pool is not None:
                await app.state.pool.shutdown(wait=True, timeout=30.0)
            hub.detach()
            await service.close()
            logger.info("API stopped")

    app = FastAPI(
        title="Journal Queue API",
        description="Background processing for journal entries",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(queue_router)

    @app.get("/health")
    async def health_check(request: Request):
        """Report the active backend. Never fails."""
        service: Optional[QueueService] = getattr(request.app.state, "queue", None)
        pool: Optional[WorkerPool] = getattr(request.app.state, "pool", None)
        try:
            backend = service.backend_name if service else None
            durable = service.is_durable if service else False
        except RuntimeError:
            backend, durable = None, False

        return {
            "status": "healthy",
            "backend": backend,
            "durable": durable,
            "degraded": backend is not None and not durable,
            "worker": {
                "running": pool is not None,
                "active_jobs": pool.active_count if pool else 0,
                "handlers": pool.registered_types if pool else [],
            },
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled API error", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "type": type(exc).__name__
            }
        )

    return app


configure_logging(default_config.LOG_LEVEL)
app = create_app()
