"""
Job Orchestrator

Drives one job through the provisioning lifecycle:

    validate -> (dry run | resolve key -> create deployment -> acquire lease
    -> send manifest -> discover URI -> notify -> schedule teardown)
"""
import asyncio
import logging
import tempfile
import time
import uuid
from pathlib import Path
from typing import Awaitable, Callable, Optional

from ..config import DeployerSettings
from .errors import (
    ExecError,
    IdentityUnavailable,
    InvalidProduct,
    ManifestSendFailed,
    NoLeaseFromProvider,
    ProviderUnset,
)
from .executor_adapter import MarketplaceAdapter
from .models import (
    ALLOWED_PRODUCTS,
    DeploymentRecord,
    DeploymentResult,
    DeploymentSession,
    DeploymentStatus,
    JobRequest,
    Lease,
)
from .notifier import Notifier
from .sdl import render_sdl
from .state_manager import StateManager
from .teardown import TeardownScheduler

logger = logging.getLogger(__name__)


def validate_product(product) -> str:
    if not isinstance(product, str) or product not in ALLOWED_PRODUCTS:
        raise InvalidProduct()
    return product


class JobOrchestrator:
    def __init__(
        self,
        settings: DeployerSettings,
        marketplace: MarketplaceAdapter,
        notifier: Notifier,
        state_manager: StateManager,
        teardown: TeardownScheduler,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.marketplace = marketplace
        self.notifier = notifier
        self.state_manager = state_manager
        self.teardown = teardown
        self._sleep = sleep
        self._clock = clock

    async def run(self, job: JobRequest, idempotency_key: Optional[str] = None) -> DeploymentResult:
        """
        Run a job end to end.

        Raises:
            InvalidProduct: before any external call
            ProviderUnset, IdentityUnavailable: configuration errors
            NoLeaseFromProvider: lease polling budget exhausted
            ManifestSendFailed: manifest submission failed
            ExecError: deployment creation failed
        """
        product = validate_product(job.product)

        if self.settings.dry_run:
            return await self._dry_run(job, product, idempotency_key)

        if not self.settings.provider_addr:
            raise ProviderUnset()

        owner = await self._resolve_key()
        session = DeploymentSession(
            session_id=str(uuid.uuid4()),
            product=product,
            minutes=job.minutes,
            owner=owner,
            dseq=str(int(self._clock())),
        )

        try:
            await self._create_deployment(session, idempotency_key)
            await self._provision(session)
        finally:
            self._discard_sdl(session)

        if session.uri and job.customer.email:
            # Notify outcome never changes the session result
            _ = await self.notifier.notify(
                job.customer.email, session.uri, product, job.minutes, dry_run=False
            )

        await self.teardown.schedule(
            session.session_id, session.owner, session.dseq, max(1, job.minutes) * 60, uri=session.uri
        )

        logger.info(f"Deployment dseq {session.dseq} ready at {session.uri or '<pending>'}")
        return DeploymentResult(
            uri=session.uri,
            dseq=session.dseq,
            lease=session.lease,
            idempotency_key=idempotency_key,
            customer=job.customer.model_dump(exclude_none=True),
            payment=job.payment,
        )

    async def _dry_run(self, job: JobRequest, product: str, idempotency_key: Optional[str]) -> DeploymentResult:
        suffix = int(self._clock() * 1000) % 1_000_000
        uri = f"{self.settings.dry_run_uri_base.rstrip('/')}/{product}-{suffix}"
        logger.info(f"dry_run_accept product={product} minutes={job.minutes} uri={uri}")

        if job.customer.email:
            _ = await self.notifier.notify(job.customer.email, uri, product, job.minutes, dry_run=True)

        return DeploymentResult(uri=uri, dry_run=True, idempotency_key=idempotency_key)

    async def _resolve_key(self) -> str:
        try:
            return await self.marketplace.show_key()
        except ExecError as e:
            if not self.settings.akash_mnemonic:
                raise IdentityUnavailable() from e
            logger.info(f"Signing key {self.settings.akash_from} not found, importing")

        try:
            await self.marketplace.import_key(self.settings.akash_mnemonic)
            return await self.marketplace.show_key()
        except ExecError as e:
            raise IdentityUnavailable(f"key import failed: {e}") from e

    async def _create_deployment(self, session: DeploymentSession, idempotency_key: Optional[str]) -> None:
        sdl = render_sdl(session.product, self.settings.provider_addr, self.settings.sdl_dir)
        work_dir = Path(self.settings.work_dir or tempfile.gettempdir())
        work_dir.mkdir(parents=True, exist_ok=True)
        sdl_path = work_dir / f"{session.dseq}.yaml"
        sdl_path.write_text(sdl, encoding="utf-8")
        session.sdl_path = str(sdl_path)

        await self.state_manager.create_session(DeploymentRecord(
            id=session.session_id,
            dseq=session.dseq,
            owner=session.owner,
            product=session.product,
            minutes=session.minutes,
            idempotency_key=idempotency_key,
        ))

        try:
            await self.marketplace.create_deployment(session.sdl_path)
        except ExecError as e:
            await self.state_manager.update_status(session.session_id, DeploymentStatus.FAILED, error=str(e))
            raise
        logger.info(f"Created deployment dseq {session.dseq} for {session.product}")

    async def _provision(self, session: DeploymentSession) -> None:
        """Lease, manifest and URI steps; any failure marks the session failed."""
        try:
            session.lease = await self._await_lease(session)
            await self.state_manager.update_status(
                session.session_id,
                DeploymentStatus.LEASE_ACQUIRED,
                provider=session.lease.provider,
                gseq=session.lease.gseq,
                oseq=session.lease.oseq,
            )

            await self._send_manifest(session)
            await self.state_manager.update_status(session.session_id, DeploymentStatus.MANIFEST_SENT)

            session.uri = await self._await_uri(session)
        except (Exception, asyncio.CancelledError) as e:
            await self.state_manager.update_status(
                session.session_id, DeploymentStatus.FAILED, error=str(e) or type(e).__name__
            )
            raise

    def _discard_sdl(self, session: DeploymentSession) -> None:
        if not session.sdl_path:
            return
        try:
            Path(session.sdl_path).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove {session.sdl_path}: {e}")

    async def _await_lease(self, session: DeploymentSession) -> Lease:
        provider = self.settings.provider_addr
        attempts = self.settings.lease_poll_attempts
        for attempt in range(1, attempts + 1):
            try:
                leases = await self.marketplace.list_leases(session.owner, session.dseq)
            except ExecError as e:
                logger.debug(f"Lease query for dseq {session.dseq} failed (attempt {attempt}): {e}")
                leases = []

            for lease in leases:
                if lease.provider == provider:
                    logger.info(f"Lease acquired for dseq {session.dseq} from {provider}")
                    return lease

            if attempt < attempts:
                await self._sleep(self.settings.poll_interval_seconds)

        logger.error(f"No lease from {provider} for dseq {session.dseq} after {attempts} attempts")
        raise NoLeaseFromProvider()

    async def _send_manifest(self, session: DeploymentSession) -> None:
        try:
            await self.marketplace.send_manifest(session.sdl_path, session.dseq, session.lease, session.owner)
        except ExecError as e:
            raise ManifestSendFailed(f"manifest_send_failed: {e}") from e

    async def _await_uri(self, session: DeploymentSession) -> Optional[str]:
        attempts = self.settings.uri_poll_attempts
        for attempt in range(1, attempts + 1):
            try:
                uri = await self.marketplace.lease_status(session.dseq, session.lease, session.owner)
            except ExecError as e:
                logger.debug(f"Lease status for dseq {session.dseq} failed (attempt {attempt}): {e}")
                uri = None

            if uri:
                return uri

            if attempt < attempts:
                await self._sleep(self.settings.poll_interval_seconds)

        logger.warning(f"uri_not_discovered dseq={session.dseq} after {attempts} attempts")
        return None
