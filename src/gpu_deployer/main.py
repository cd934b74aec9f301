"""
Deployer API

FastAPI application that admits GPU jobs, queues them while the GPU is busy,
and provisions them on the compute marketplace.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from redis.asyncio import Redis

from .config import DeployerSettings
from .control_plane.admission_gate import AdmissionGate
from .control_plane.command_executor import CommandExecutor
from .control_plane.errors import DeployerError, InvalidProduct, QueueUnavailable, Unauthorized
from .control_plane.executor_adapter import MarketplaceAdapter
from .control_plane.idempotency_engine import IdempotencyEngine
from .control_plane.job_orchestrator import JobOrchestrator, validate_product
from .control_plane.models import JobRequest, QueuedJob
from .control_plane.notifier import Notifier
from .control_plane.queue_manager import JobQueue, build_queue, check_admin_token
from .control_plane.queue_worker import QueueWorker
from .control_plane.state_manager import StateManager
from .control_plane.teardown import TeardownScheduler
from .database import Database

logger = structlog.get_logger(__name__)

ADMIN_PEEK_MAX = 100


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    )
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO))


@dataclass
class ControlPlane:
    """Components assembled once at startup and shared by every request."""
    settings: DeployerSettings
    orchestrator: JobOrchestrator
    gate: AdmissionGate
    queue: JobQueue
    worker: QueueWorker
    teardown: TeardownScheduler
    state_manager: StateManager
    idempotency: Optional[IdempotencyEngine]


def create_app(
    settings: Optional[DeployerSettings] = None,
    *,
    executor: Optional[CommandExecutor] = None,
    gate: Optional[AdmissionGate] = None,
    queue: Optional[JobQueue] = None,
    notifier: Optional[Notifier] = None,
    redis_client: Optional[Redis] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> FastAPI:
    """
    Build the application.

    Collaborators default to their production implementations; tests pass
    fakes for the executor, gate, queue or Redis client.
    """
    settings = settings or DeployerSettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        FastAPI lifespan: startup and shutdown.

        - Initialize database tables
        - Assemble the control plane
        - Reconcile pending teardowns
        - Start the queue worker
        """
        setup_logging(settings.log_level)
        logger.info(
            "deployer_starting",
            dry_run=settings.dry_run,
            queue_enabled=settings.queue_enabled,
            busy_probe_fail_open=settings.busy_probe_fail_open,
        )

        owns_redis = redis_client is None and bool(settings.redis_url)
        client = redis_client
        if owns_redis:
            client = Redis.from_url(settings.redis_url, decode_responses=True)

        db = Database(settings)
        await db.init_models()

        marketplace = MarketplaceAdapter(executor or CommandExecutor(), settings)
        state_manager = StateManager(db)
        sleep_kwargs = {"sleep": sleep} if sleep else {}
        teardown = TeardownScheduler(marketplace, state_manager, **sleep_kwargs)
        orchestrator = JobOrchestrator(
            settings,
            marketplace,
            notifier or Notifier(settings),
            state_manager,
            teardown,
            **sleep_kwargs,
        )
        admission = gate or AdmissionGate(settings)
        job_queue = queue or build_queue(settings, client)
        worker = QueueWorker(
            job_queue,
            admission,
            orchestrator,
            enabled=settings.queue_enabled,
            interval_seconds=settings.queue_tick_seconds,
        )

        app.state.control_plane = ControlPlane(
            settings=settings,
            orchestrator=orchestrator,
            gate=admission,
            queue=job_queue,
            worker=worker,
            teardown=teardown,
            state_manager=state_manager,
            idempotency=IdempotencyEngine(client, settings.idempotency_ttl_seconds) if client else None,
        )

        reconciled = await teardown.reconcile()
        worker_task = worker.start()
        logger.info(
            "deployer_ready",
            queue_durable=job_queue.durable,
            reconciled_teardowns=reconciled,
            worker=worker_task is not None,
        )

        yield

        logger.info("deployer_shutting_down")
        await worker.shutdown(settings.worker_shutdown_grace_seconds)
        await teardown.shutdown()
        await db.dispose()
        if owns_redis:
            await client.aclose()
        app.state.control_plane = None
        logger.info("deployer_stopped")

    app = FastAPI(
        title="GPU Deployer API",
        description="Admission-controlled GPU job provisioning on the Akash marketplace.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.control_plane = None
    _register_routes(app)
    return app


def get_control_plane(request: Request) -> ControlPlane:
    """Dependency to get the assembled control plane."""
    control_plane = getattr(request.app.state, "control_plane", None)
    if control_plane is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Control plane not initialized",
        )
    return control_plane


def _register_routes(app: FastAPI) -> None:

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        """An unknown product on job submission wins over any other body error."""
        if request.method == "POST" and request.url.path == "/":
            body = exc.body
            product = body.get("product") if isinstance(body, dict) else None
            try:
                validate_product(product)
            except InvalidProduct:
                return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": InvalidProduct.code})
        return await request_validation_exception_handler(request, exc)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "gpu-deployer"}

    @app.get("/__info")
    async def info(cp: ControlPlane = Depends(get_control_plane)):
        """Snapshot of active flags and queue length."""
        try:
            queue_length = await cp.queue.length()
        except QueueUnavailable:
            queue_length = None
        s = cp.settings
        return {
            "dry_run": s.dry_run,
            "disable_busy_check": s.disable_busy_check,
            "busy_check_url": bool(s.busy_check_url),
            "busy_probe_fail_open": s.busy_probe_fail_open,
            "queue_enabled": s.queue_enabled,
            "queue_durable": cp.queue.durable,
            "queue_length": queue_length,
            "in_flight": cp.worker.in_flight,
            "pending_teardowns": cp.teardown.pending_count,
            "deployments": await cp.state_manager.count_by_status(),
        }

    @app.post("/")
    async def submit_job(
        job: Optional[JobRequest] = Body(default=None),
        idempotency_key: Optional[str] = Header(default=None),
        cp: ControlPlane = Depends(get_control_plane),
    ):
        """
        Admit a job: run it now, queue it, or reject it as busy.

        Args:
            job: Product, minutes, customer and payment
            idempotency_key: Optional ``Idempotency-Key`` header
        """
        job = job or JobRequest()

        if cp.idempotency is not None:
            stored = await cp.idempotency.lookup(idempotency_key)
            if stored is not None:
                return {**stored, "replayed": True}

        try:
            validate_product(job.product)
        except InvalidProduct:
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": InvalidProduct.code})

        # Dry runs never touch the marketplace, so they skip the busy probe
        if not cp.settings.dry_run and not await cp.gate.is_available():
            if not cp.settings.queue_enabled:
                return JSONResponse(
                    status_code=status.HTTP_409_CONFLICT,
                    content={"status": "busy", "message": "GPU busy"},
                )
            try:
                position = await cp.queue.enqueue(QueuedJob.from_request(job, idempotency_key))
            except QueueUnavailable as e:
                logger.error("enqueue_failed", error=str(e), product=job.product)
                return JSONResponse(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    content={"status": "error", "error": QueueUnavailable.code},
                )
            body = {"status": "queued", "position": position, "idempotency_key": idempotency_key}
            logger.info("job_queued", product=job.product, minutes=job.minutes, position=position)
            await _remember(cp, idempotency_key, body)
            return body

        try:
            result = await cp.orchestrator.run(job, idempotency_key=idempotency_key)
        except DeployerError as e:
            logger.error("deploy_error", code=e.code, error=str(e), product=job.product)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"status": "error", "error": str(e)},
            )
        except Exception as e:
            logger.exception("deploy_error", error=str(e), product=job.product)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"status": "error", "error": str(e)},
            )

        body = result.to_response()
        await _remember(cp, idempotency_key, body)
        return body

    @app.get("/admin/queue")
    async def peek_queue(
        limit: int = Query(default=20),
        cp: ControlPlane = Depends(get_control_plane),
    ):
        """Bounded, non-destructive view of queued jobs, oldest first."""
        limit = max(1, min(limit, ADMIN_PEEK_MAX))
        try:
            items = await cp.queue.peek(limit)
            length = await cp.queue.length()
        except QueueUnavailable:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "error", "error": QueueUnavailable.code},
            )
        return {"length": length, "items": [item.model_dump(mode="json") for item in items]}

    @app.post("/admin/queue/clear")
    async def clear_queue(
        x_admin_token: Optional[str] = Header(default=None),
        cp: ControlPlane = Depends(get_control_plane),
    ):
        """Empty the queue. Requires ``X-Admin-Token`` matching ADMIN_TOKEN."""
        if not check_admin_token(cp.settings.admin_token, x_admin_token):
            logger.warning("admin_clear_denied")
            return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"error": Unauthorized.code})
        try:
            await cp.queue.clear()
        except QueueUnavailable:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "error", "error": QueueUnavailable.code},
            )
        logger.info("queue_cleared")
        return {"status": "ok", "cleared": True}


async def _remember(cp: ControlPlane, idempotency_key: Optional[str], body: dict) -> None:
    if cp.idempotency is not None:
        await cp.idempotency.remember(idempotency_key, body)


app = create_app()


def run() -> None:
    """Console entry point."""
    import uvicorn

    settings = DeployerSettings()
    uvicorn.run(
        "gpu_deployer.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


# For running directly with python -m
if __name__ == "__main__":
    run()
