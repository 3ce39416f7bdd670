"""
Provisioner API

FastAPI application for submitting, monitoring and cancelling provisioning jobs.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from redis.asyncio import Redis

from .config import ProvisionerSettings
from .database import Database
from .provisioning.credentials import CredentialResolver, CredentialStore
from .provisioning.errors import IdempotencyConflict, JobNotFound, ValidationError
from .provisioning.job_orchestrator import ProvisioningOrchestrator
from .provisioning.notifications import Notifier
from .provisioning.platform_gateway import PlatformGateway, RemotePlatform
from .provisioning.queue_processor import QueueProcessor
from .provisioning.rate_limit_tracker import RateLimitTracker
from .provisioning.request_router import RequestRouter


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ]
    )
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO))


logger = structlog.get_logger(__name__)


class CreateJobRequest(BaseModel):
    user_id: str
    account_ref: str
    name: str
    groups: int = Field(ge=0)
    items: int = Field(default=0, ge=0)
    spec: Dict[str, Any] = Field(default_factory=dict)
    group_spec: Dict[str, Any] = Field(default_factory=dict)
    item_spec: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None


def create_app(
    transport: RemotePlatform,
    credential_resolver: CredentialResolver,
    settings: Optional[ProvisionerSettings] = None,
    redis_client: Optional[Redis] = None,
    db: Optional[Database] = None,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    """
    Build the API around a platform transport and a credential resolver.

    Redis and the database are created from settings unless given; whatever
    is created here is also closed here on shutdown.
    """
    settings = settings or ProvisionerSettings()
    owns_redis = redis_client is None
    owns_db = db is None
    redis_client = redis_client or Redis.from_url(settings.redis_url, decode_responses=True)
    db = db or Database(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        FastAPI lifespan: startup and shutdown.

        - Initialize database tables
        - Load credentials and start the quota window ticker
        - Create the orchestrator and the queue processor
        - Resume jobs interrupted by a previous shutdown
        """
        logger.info("provisioner_starting")
        await db.init_models()

        tracker = RateLimitTracker(
            default_limit=settings.default_call_limit,
            soft_threshold=settings.soft_threshold,
            hard_threshold=settings.hard_threshold,
            window_seconds=settings.default_window_seconds,
        )
        router = RequestRouter(tracker)
        credentials = CredentialStore(db, tracker, router)
        await credentials.load()

        orchestrator = ProvisioningOrchestrator(
            redis_client=redis_client,
            db=db,
            gateway=PlatformGateway(transport, credential_resolver),
            tracker=tracker,
            router=router,
            settings=settings,
            notifier=notifier,
        )
        processor = QueueProcessor(
            orchestrator.queue,
            router,
            resume=orchestrator.resume_job,
            poll_interval=settings.queue_poll_interval,
            batch_size=settings.queue_batch_size,
            stale_after=settings.queue_stale_after,
        )

        stop_ticker = asyncio.Event()
        ticker = asyncio.create_task(
            tracker.run_ticker(settings.ticker_interval, stop_ticker, on_tick=credentials.flush)
        )
        processor.start()
        recovered = await orchestrator.recover_incomplete()

        app.state.orchestrator = orchestrator
        app.state.credentials = credentials
        logger.info("provisioner_ready", recovered_jobs=recovered, credentials=len(router.profiles))

        yield

        logger.info("provisioner_shutting_down")
        app.state.orchestrator = None
        await processor.stop()
        await orchestrator.shutdown()
        stop_ticker.set()
        await asyncio.gather(ticker, return_exceptions=True)
        await credentials.flush()
        if owns_db:
            await db.dispose()
        if owns_redis:
            await redis_client.aclose()
        logger.info("provisioner_stopped")

    app = FastAPI(
        title="Campaign Provisioner API",
        description="""
        Bulk creation of campaign hierarchies on a rate-limited remote platform.

        ## Features

        * **Jobs**: Submit, monitor and cancel provisioning jobs
        * **Exact counts**: Never more and never fewer resources than requested
        * **Credential routing**: Shared quota pool with per-user fallback
        * **Deferred requests**: Work paused on exhausted quotas resumes automatically
        """,
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.orchestrator = None
    app.state.credentials = None

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content=exc.to_dict())

    @app.exception_handler(JobNotFound)
    async def job_not_found_handler(request: Request, exc: JobNotFound):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=exc.to_dict())

    @app.exception_handler(IdempotencyConflict)
    async def idempotency_conflict_handler(request: Request, exc: IdempotencyConflict):
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=exc.to_dict())

    def get_orchestrator(request: Request) -> ProvisioningOrchestrator:
        """Dependency to get orchestrator instance."""
        orchestrator = request.app.state.orchestrator
        if orchestrator is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Orchestrator not initialized"
            )
        return orchestrator

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        return {
            "status": "healthy" if request.app.state.orchestrator is not None else "starting",
            "service": "campaign-provisioner",
        }

    @app.post("/api/v1/jobs", status_code=status.HTTP_201_CREATED)
    async def create_job(
        body: CreateJobRequest,
        orch: ProvisioningOrchestrator = Depends(get_orchestrator),
    ):
        """
        Submit a provisioning job.

        Submitting the same intent again returns the existing job id.
        """
        job_id = await orch.submit_job(
            user_id=body.user_id,
            parent_spec={
                "account_ref": body.account_ref,
                "name": body.name,
                "spec": body.spec,
                "group_spec": body.group_spec,
                "item_spec": body.item_spec,
            },
            requested_counts={"group": body.groups, "item": body.items},
            idempotency_key=body.idempotency_key,
        )
        return {"job_id": job_id, "status": "accepted"}

    @app.get("/api/v1/jobs/{job_id}")
    async def get_job_status(
        job_id: str,
        orch: ProvisioningOrchestrator = Depends(get_orchestrator),
    ):
        """Job state, progress, failure records and error history."""
        return await orch.get_job_status(job_id)

    @app.get("/api/v1/jobs/{job_id}/rollback-preview")
    async def get_rollback_preview(
        job_id: str,
        orch: ProvisioningOrchestrator = Depends(get_orchestrator),
    ):
        """Resources a rollback of the job would delete, from the ledger."""
        return await orch.get_rollback_preview(job_id)

    @app.post("/api/v1/jobs/{job_id}/cancel")
    async def cancel_job(
        job_id: str,
        orch: ProvisioningOrchestrator = Depends(get_orchestrator),
    ):
        """Cancel a job; anything it created is rolled back."""
        return await orch.cancel_job(job_id)

    @app.get("/api/v1/users/{user_id}/queue")
    async def list_user_queue(
        user_id: str,
        orch: ProvisioningOrchestrator = Depends(get_orchestrator),
    ):
        """Deferred requests waiting for a credential window to reset."""
        return {"user_id": user_id, "queued": await orch.list_queued_for_user(user_id)}

    @app.get("/api/v1/credentials")
    async def list_credentials(
        request: Request,
        orch: ProvisioningOrchestrator = Depends(get_orchestrator),
    ):
        """Quota usage per credential. Secrets are never returned."""
        return {"credentials": await request.app.state.credentials.describe()}

    @app.get("/api/v1/queue/stats")
    async def get_queue_stats(
        orch: ProvisioningOrchestrator = Depends(get_orchestrator),
    ):
        """Get queue statistics."""
        return await orch.get_queue_stats()

    return app


def serve(app: FastAPI, settings: Optional[ProvisionerSettings] = None) -> None:
    """Run an app built by create_app with uvicorn."""
    import uvicorn

    settings = settings or ProvisionerSettings()
    setup_logging(settings.log_level)
    uvicorn.run(app, host=settings.api_host, port=settings.api_port, reload=False)
