"""Asynchronous provisioning worker pool.

Confirmed tenants are queued here and driven through CREATE_DATABASE,
APPLY_SCHEMA and SEED in order. Progress is written to the step log after every
step, so a workflow interrupted by a crash or shutdown resumes at the first step
without a committed SUCCESS row. A lease on the tenant row keeps two workers,
in this process or another, from running the same workflow at once.
"""

from __future__ import annotations

import asyncio
import os
import socket
import threading
import uuid
from typing import Any, Callable, Protocol

import structlog
from sqlalchemy.orm import Session, sessionmaker

from tenant_lifecycle.models import ProvisioningStep, ProvisioningStepName, StepStatus, TenantStatus, WORKFLOW_STEPS
from tenant_lifecycle.services import registry
from tenant_lifecycle.services.cipher import SecretCipher
from tenant_lifecycle.services.provisioner import DatabaseProvisioner, ProvisioningError, StepTimeoutError

logger = structlog.get_logger(__name__)

INTERRUPTED_MESSAGE = "interrupted by shutdown"
LEASE_RETRY_MARGIN_SECONDS = 0.1


class QueueFull(RuntimeError):
    code = "QUEUE_FULL"


class _LeaseLost(Exception):
    pass


class CacheInvalidator(Protocol):
    def invalidate(self, tenant_id: uuid.UUID) -> None: ...


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class ProvisioningOrchestrator:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        provisioner: DatabaseProvisioner,
        cipher: SecretCipher,
        *,
        cache: CacheInvalidator | None = None,
        workers: int = 4,
        queue_size: int = 100,
        step_timeout_seconds: float = 120.0,
        lease_seconds: int = 300,
        worker_id: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.provisioner = provisioner
        self.cipher = cipher
        self.cache = cache
        self.workers = workers
        self.queue_size = queue_size
        self.step_timeout_seconds = step_timeout_seconds
        self.lease_seconds = lease_seconds
        self.worker_id = worker_id or default_worker_id()

        self._lock = threading.Lock()
        self._tracked: set[uuid.UUID] = set()
        self._queued = 0
        self._active: set[uuid.UUID] = set()
        self._stopping = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[uuid.UUID] | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._deferred: dict[uuid.UUID, asyncio.TimerHandle] = {}

    @property
    def running(self) -> bool:
        return self._loop is not None and not self._stopping

    async def start(self, *, recover: bool = True) -> None:
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._stopping = False
        self._tasks = [
            asyncio.create_task(self._worker_loop(index, self._queue), name=f"provisioning-worker-{index}")
            for index in range(self.workers)
        ]
        logger.info("provisioning_orchestrator_started", worker_id=self.worker_id, workers=self.workers)
        if recover:
            await self.recover()

    async def stop(self, grace_seconds: float = 10.0) -> None:
        with self._lock:
            self._stopping = True
        for handle in self._deferred.values():
            handle.cancel()
        self._deferred.clear()
        if self._active:
            logger.info("provisioning_orchestrator_draining", active=len(self._active))
            try:
                await asyncio.wait_for(self._wait_idle(), timeout=grace_seconds)
            except asyncio.TimeoutError:
                logger.warning("provisioning_shutdown_grace_expired", active=len(self._active))
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        with self._lock:
            self._tracked.clear()
            self._queued = 0
        self._loop = None
        self._queue = None
        logger.info("provisioning_orchestrator_stopped", worker_id=self.worker_id)

    async def _wait_idle(self) -> None:
        while self._active:
            await asyncio.sleep(0.05)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait until every queued or running workflow has finished."""

        async def _wait() -> None:
            while True:
                with self._lock:
                    if not self._tracked:
                        return
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_wait(), timeout=timeout)

    def enqueue(self, tenant_id: uuid.UUID) -> bool:
        """Queue a tenant workflow. Safe to call from any thread.

        Returns False when the tenant is already queued or running.
        """
        with self._lock:
            loop = self._loop
            if loop is None or self._queue is None or self._stopping:
                raise QueueFull("Provisioning is not accepting work.")
            if tenant_id in self._tracked:
                return False
            if self._queued >= self.queue_size:
                raise QueueFull("Provisioning queue is full.")
            self._tracked.add(tenant_id)
            self._queued += 1
            queue = self._queue
        loop.call_soon_threadsafe(queue.put_nowait, tenant_id)
        logger.info("provisioning_enqueued", tenant_id=str(tenant_id))
        return True

    def requeue_failed(self, db: Session, tenant_id: uuid.UUID) -> bool:
        tenant = registry.get_tenant(db, tenant_id)
        if not tenant:
            raise registry.TenantNotFoundError("Tenant not found.")
        registry.set_status(db, tenant, TenantStatus.PENDING)
        self._invalidate(tenant_id)
        logger.info("provisioning_requeued", tenant_id=str(tenant_id), slug=tenant.slug)
        return self.enqueue(tenant_id)

    async def recover(self) -> int:
        tenant_ids = await self._db(registry.tenants_needing_recovery)
        queued = 0
        for tenant_id in tenant_ids:
            try:
                if self.enqueue(tenant_id):
                    queued += 1
            except QueueFull:
                logger.warning("provisioning_recovery_truncated", remaining=len(tenant_ids) - queued)
                break
        if tenant_ids:
            logger.info("provisioning_recovered", queued=queued)
        return queued

    async def _worker_loop(self, index: int, queue: asyncio.Queue[uuid.UUID]) -> None:
        while True:
            tenant_id = await queue.get()
            with self._lock:
                self._queued -= 1
            retry_in: float | None = None
            try:
                if self._stopping:
                    continue
                if await self.run_workflow(tenant_id) is None:
                    retry_in = await self._db(registry.foreign_lease_remaining, tenant_id, self.worker_id)
            except Exception:
                logger.exception("provisioning_workflow_crashed", tenant_id=str(tenant_id), worker=index)
            finally:
                if retry_in is not None and not self._stopping:
                    self._defer(tenant_id, retry_in)
                else:
                    with self._lock:
                        self._tracked.discard(tenant_id)
                queue.task_done()

    def _defer(self, tenant_id: uuid.UUID, delay: float) -> None:
        """Retry once a lease held by another worker, possibly a dead one, lapses.

        The tenant stays tracked while it waits, so duplicate enqueues are refused
        and ``drain`` keeps waiting for it.
        """
        delay += LEASE_RETRY_MARGIN_SECONDS
        logger.info("provisioning_lease_wait", tenant_id=str(tenant_id), retry_in=round(delay, 3))
        loop = asyncio.get_running_loop()
        self._deferred[tenant_id] = loop.call_later(delay, self._resubmit, tenant_id)

    def _resubmit(self, tenant_id: uuid.UUID) -> None:
        self._deferred.pop(tenant_id, None)
        with self._lock:
            queue = self._queue
            if self._stopping or queue is None:
                self._tracked.discard(tenant_id)
                return
            self._queued += 1
        queue.put_nowait(tenant_id)

    async def run_workflow(self, tenant_id: uuid.UUID) -> TenantStatus | None:
        self._active.add(tenant_id)
        claim = asyncio.ensure_future(
            self._db(registry.claim_lease, tenant_id, self.worker_id, self.lease_seconds)
        )
        try:
            if not await asyncio.shield(claim):
                logger.info("provisioning_lease_unavailable", tenant_id=str(tenant_id))
                return None
            return await self._run_claimed(tenant_id)
        except _LeaseLost:
            logger.warning("provisioning_lease_lost", tenant_id=str(tenant_id), worker_id=self.worker_id)
            return None
        finally:
            if not claim.done():
                # The claim may still commit after a cancel; settle it before releasing.
                await asyncio.wait({claim})
            self._active.discard(tenant_id)
            # Inline so a cancelled task still gives the lease back.
            self._with_session(registry.release_lease, tenant_id, self.worker_id)

    async def _run_claimed(self, tenant_id: uuid.UUID) -> TenantStatus | None:
        snapshot = await self._db(self._begin_seeding, tenant_id)
        if snapshot is None:
            return None
        if isinstance(snapshot, TenantStatus):
            return snapshot
        slug, name, db_name, latest = snapshot
        connection_url = self.provisioner.connection_url(db_name)
        log = logger.bind(tenant_id=str(tenant_id), slug=slug)

        actions: dict[ProvisioningStepName, Callable[[], str]] = {
            ProvisioningStepName.CREATE_DATABASE: lambda: self._create_database(slug),
            ProvisioningStepName.APPLY_SCHEMA: lambda: self._apply_schema(connection_url, slug),
            ProvisioningStepName.SEED: lambda: self._seed(connection_url, slug, name),
        }
        for step in WORKFLOW_STEPS:
            if latest.get(step) == StepStatus.SUCCESS:
                log.info("provisioning_step_skipped", step=step.value)
                continue
            if not await self._run_step(tenant_id, slug, step, actions[step]):
                return TenantStatus.FAILED

        await self._db(self._finalize, tenant_id, connection_url)
        self._invalidate(tenant_id)
        log.info("provisioning_completed")
        return TenantStatus.READY

    async def _run_step(
        self,
        tenant_id: uuid.UUID,
        slug: str,
        step: ProvisioningStepName,
        action: Callable[[], str],
    ) -> bool:
        log = logger.bind(tenant_id=str(tenant_id), slug=slug, step=step.value)
        if not await self._db(registry.renew_lease, tenant_id, self.worker_id, self.lease_seconds):
            raise _LeaseLost()
        row_id = await self._db(self._start_step, tenant_id, step)
        log.info("provisioning_step_started")

        try:
            # A timed-out step's thread cannot be killed; its late result is discarded.
            message = await asyncio.wait_for(asyncio.to_thread(action), timeout=self.step_timeout_seconds)
        except asyncio.TimeoutError:
            error = StepTimeoutError(
                f"{step.value} did not finish within {self.step_timeout_seconds:g}s.",
                slug=slug,
                step=step,
            )
            log.error("provisioning_step_timed_out", timeout=self.step_timeout_seconds)
            await self._db(self._fail, tenant_id, row_id, error.message)
            return False
        except ProvisioningError as exc:
            log.error("provisioning_step_failed", error=exc.message)
            await self._db(self._fail, tenant_id, row_id, exc.message)
            return False
        except asyncio.CancelledError:
            log.warning("provisioning_step_interrupted")
            self._with_session(self._interrupt, row_id)
            raise
        except Exception as exc:
            message = self.provisioner.redact(f"{type(exc).__name__}: {exc}")
            log.exception("provisioning_step_crashed")
            await self._db(self._fail, tenant_id, row_id, message)
            return False

        await self._db(self._complete_step, row_id, message)
        log.info("provisioning_step_succeeded", detail=message)
        return True

    def _create_database(self, slug: str) -> str:
        result = self.provisioner.create_database(slug)
        return f"Database {result.db_name}: {result.outcome.value}."

    def _apply_schema(self, connection_url: str, slug: str) -> str:
        tables = self.provisioner.apply_baseline_schema(connection_url, slug=slug)
        return f"Baseline schema applied ({len(tables)} tables)."

    def _seed(self, connection_url: str, slug: str, name: str) -> str:
        inserted = self.provisioner.seed(connection_url, slug, name)
        summary = ", ".join(f"{group}={count}" for group, count in inserted.items())
        return f"Seed data applied ({summary})."

    def _begin_seeding(self, db: Session, tenant_id: uuid.UUID) -> Any:
        tenant = registry.get_tenant(db, tenant_id)
        if not tenant:
            return None
        if tenant.status == TenantStatus.PENDING:
            registry.set_status(db, tenant, TenantStatus.SEEDING)
        elif tenant.status != TenantStatus.SEEDING:
            return tenant.status
        registry.close_orphaned_steps(db, tenant_id, INTERRUPTED_MESSAGE)
        latest = registry.latest_step_statuses(db, tenant_id)
        return tenant.slug, tenant.name, tenant.db_name, latest

    def _start_step(self, db: Session, tenant_id: uuid.UUID, step: ProvisioningStepName) -> uuid.UUID:
        return registry.append_step(db, tenant_id, step, StepStatus.RUNNING).id

    def _complete_step(self, db: Session, row_id: uuid.UUID, message: str) -> None:
        row = db.get(ProvisioningStep, row_id)
        registry.finish_step(db, row, StepStatus.SUCCESS, message=message)

    def _fail(self, db: Session, tenant_id: uuid.UUID, row_id: uuid.UUID, error: str) -> None:
        row = db.get(ProvisioningStep, row_id)
        registry.finish_step(db, row, StepStatus.FAILED, error=error, commit=False)
        tenant = registry.get_tenant(db, tenant_id)
        registry.set_status(db, tenant, TenantStatus.FAILED, last_error=error)
        self._invalidate(tenant_id)

    def _interrupt(self, db: Session, row_id: uuid.UUID) -> None:
        row = db.get(ProvisioningStep, row_id)
        if row and row.status == StepStatus.RUNNING:
            registry.finish_step(db, row, StepStatus.FAILED, error=INTERRUPTED_MESSAGE)

    def _finalize(self, db: Session, tenant_id: uuid.UUID, connection_url: str) -> None:
        tenant = registry.get_tenant(db, tenant_id)
        registry.set_encrypted_connection(db, tenant, self.cipher.encrypt(connection_url))
        row = registry.append_step(
            db,
            tenant_id,
            ProvisioningStepName.READY,
            StepStatus.PENDING,
            message="Tenant is ready.",
            commit=False,
        )
        registry.finish_step(db, row, StepStatus.SUCCESS, commit=False)
        registry.set_status(db, tenant, TenantStatus.READY, commit=False)
        db.commit()

    def _invalidate(self, tenant_id: uuid.UUID) -> None:
        if self.cache is not None:
            self.cache.invalidate(tenant_id)

    def _with_session(self, fn: Callable[..., Any], *args: Any) -> Any:
        with self.session_factory() as db:
            return fn(db, *args)

    async def _db(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(self._with_session, fn, *args)
