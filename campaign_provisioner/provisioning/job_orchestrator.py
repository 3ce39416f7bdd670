"""
Provisioning Orchestrator

Drives one state machine per job:

    pending -> verifying -> in_progress -> completed | rolled_back | failed

Slots are created one at a time behind the idempotency gate: immediately
before every create the live remote count is read, and nothing is created
once the requested count is reached. That gate, not local bookkeeping, is
what keeps the remote count at or below the request across retries,
restarts and duplicate submissions. A retried create first looks for a
child carrying the slot's name, because the failed attempt may have
committed remotely.
"""
import asyncio
import logging
import time
import uuid
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

import redis.asyncio as redis

from ..config import ProvisionerSettings
from .errors import (
    BudgetExhaustedError,
    JobNotFound,
    PermanentRemoteError,
    ProvisioningError,
    RemoteError,
    RequestDeferredError,
    ValidationError,
)
from .error_translator import UserError, translate_error
from .idempotency_engine import IdempotencyEngine, intent_key
from .models import (
    SLOT_KINDS,
    TERMINAL_JOB_STATES,
    JobState,
    ProvisioningJob,
    QueuedRequest,
    ResourceKind,
    Slot,
    SlotStatus,
)
from .notifications import LoggingNotifier, Notifier
from .platform_gateway import GatewayResult, PlatformGateway, RemoteResource
from .preflight import PreflightChecker
from .queue_manager import QueueManager
from .rate_limit_tracker import RateLimitTracker
from .reconciliation import GONE_STATUSES, ExistenceStatus, ReconciliationResult, ReconciliationService, RemoteCounts
from .request_router import RequestRouter, RouteContext
from .retry_executor import CallOutcome, CallScope, RetryExecutor, RetryPolicy, backoff_delay
from .rollback_executor import RollbackExecutor
from .slot_tracker import BUDGET_EXHAUSTED, PERMANENT, SlotTracker
from .state_manager import JobStateManager

logger = logging.getLogger(__name__)

CANCEL_REASON = "Cancelled by user"
ACTIVE_JOB_STATES = (JobState.PENDING, JobState.VERIFYING, JobState.IN_PROGRESS)


class SlotOutcome(Enum):
    CREATED = "created"
    ADOPTED = "adopted"
    SKIPPED = "skipped"
    FAILED = "failed"
    GATE_UNKNOWN = "gate_unknown"
    BLOCKED = "blocked"
    ESCALATE = "escalate"


class ProvisioningOrchestrator:
    def __init__(
        self,
        redis_client: redis.Redis,
        db,  # Database instance (not just engine)
        gateway: PlatformGateway,
        tracker: RateLimitTracker,
        router: RequestRouter,
        settings: Optional[ProvisionerSettings] = None,
        notifier: Optional[Notifier] = None,
        sleep=asyncio.sleep,
        rng=None,
        clock=time.time,
    ):
        self.settings = settings or ProvisionerSettings()
        self.redis = redis_client
        self.db = db
        self.gateway = gateway
        self.tracker = tracker
        self.router = router
        self.notifier = notifier or LoggingNotifier()

        s = self.settings
        self.policy = RetryPolicy(
            retry_budget=s.retry_budget,
            base_delay=s.retry_base_delay,
            max_delay=s.retry_max_delay,
            jitter=s.retry_jitter,
            rate_limit_wait_cap=s.rate_limit_wait_cap,
            max_rate_limit_waits=s.max_rate_limit_waits,
        )
        self.executor = RetryExecutor(tracker, router, policy=self.policy, sleep=sleep, rng=rng)
        self.state = JobStateManager(redis_client, db)
        self.idempotency = IdempotencyEngine(redis_client, ttl_seconds=s.idempotency_ttl_seconds)
        self.slots = SlotTracker(db, slot_retry_cap=s.slot_retry_cap)
        self.reconciliation = ReconciliationService(db, gateway, self.executor, self.slots)
        self.preflight = PreflightChecker(db, gateway, self.executor, platform_root_cap=s.platform_root_cap)
        self.rollback_executor = RollbackExecutor(gateway, self.executor, self.slots, self.reconciliation, self.state)
        self.queue = QueueManager(
            db, max_attempts=s.queue_max_attempts, failure_backoff=s.queue_failure_backoff, clock=clock
        )

        self._semaphore = asyncio.Semaphore(s.max_concurrent_jobs)
        self._running_jobs: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._current_credential: Dict[str, str] = {}
        self._excluded_credentials: Dict[str, FrozenSet[str]] = {}
        self._shutdown_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Upstream API
    # ------------------------------------------------------------------

    async def submit_job(
        self,
        user_id: str,
        parent_spec: Dict[str, Any],
        requested_counts: Dict[str, int],
        idempotency_key: Optional[str] = None,
    ) -> str:
        """
        Accept a bulk-create request and start it in the background.

        Args:
            user_id: Owning operator
            parent_spec: {"account_ref", "name", optional "spec", "group_spec", "item_spec"}
            requested_counts: {"group": N, "item": M}
            idempotency_key: Optional explicit key; defaults to a hash of the intent

        Returns:
            The job id. Re-submitting the same intent returns the existing job id.

        Raises:
            ValidationError: malformed request
            IdempotencyConflict: the idempotency key could not be settled
        """
        account_ref = (parent_spec or {}).get("account_ref")
        root_name = (parent_spec or {}).get("name")
        counts = self._validate_submission(user_id, account_ref, root_name, requested_counts)

        key = idempotency_key or intent_key(user_id, account_ref, root_name, counts)
        job_id = str(uuid.uuid4())
        existing = await self.idempotency.claim(key, job_id)
        if existing:
            logger.info(f"Idempotent job found: {existing}")
            return existing

        job = ProvisioningJob(
            id=job_id,
            user_id=user_id,
            account_ref=account_ref,
            root_name=root_name,
            root_spec=dict(parent_spec.get("spec") or {}),
            group_spec=dict(parent_spec.get("group_spec") or {}),
            item_spec=dict(parent_spec.get("item_spec") or {}),
            requested_groups=counts[ResourceKind.GROUP.value],
            requested_items=counts[ResourceKind.ITEM.value],
            retry_budget=self.settings.job_retry_budget,
            idempotency_key=key,
        )
        try:
            await self.state.create_job(job)
        except Exception:
            await self.idempotency.release(key)
            raise

        self._spawn(job_id)
        logger.info(f"Submitted job {job_id}: {counts} under account {account_ref}")
        return job_id

    async def get_job_status(self, job_id: str) -> Dict[str, Any]:
        """
        State, per-kind slot summary and progress, failure records, error
        history and a user-facing message.
        """
        status = await self.state.get_job_state(job_id)
        if status is None:
            raise JobNotFound(f"Job {job_id} not found")
        status["slots"] = await self.slots.summary(job_id)
        status["progress"] = self._progress(status)
        status["failures"] = await self.slots.failure_report(job_id)
        status["running"] = job_id in self._running_jobs
        status["message"] = self._status_message(status)
        return status

    async def get_rollback_preview(self, job_id: str) -> Dict[str, Any]:
        """What a rollback of the job would delete right now. Makes no remote calls."""
        job = await self.state.get_job(job_id)
        return await self.rollback_executor.preview(job)

    async def cancel_job(self, job_id: str) -> Dict[str, Any]:
        """
        Cancel a job. Anything it already created is rolled back; a job that
        already reached a terminal state is left as it is.
        """
        job = await self.state.get_job(job_id)
        if job.state in TERMINAL_JOB_STATES:
            return {"job_id": job_id, "cancelled": False, "state": job.state.value}

        await self.state.update_fields(job_id, cancel_requested=True)
        self._cancel_events.setdefault(job_id, asyncio.Event()).set()
        await self.queue.cancel_for_job(job_id, CANCEL_REASON)
        self._spawn(job_id)
        logger.info(f"Cancellation requested for job {job_id}")
        return {"job_id": job_id, "cancelled": True, "state": job.state.value}

    async def list_queued_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        return [self._describe_queued(entry) for entry in await self.queue.list_for_user(user_id)]

    async def resume_job(self, job_id: str) -> bool:
        """Restart a paused job. Returns False if it is terminal or already running."""
        job = await self.state.get_job(job_id)
        if job.state in TERMINAL_JOB_STATES:
            return False
        return self._spawn(job_id)

    async def recover_incomplete(self) -> int:
        """Restart every non-terminal job that is neither running nor waiting in the queue."""
        resumed = 0
        for job in await self.state.get_jobs_by_state(ACTIVE_JOB_STATES, limit=1000):
            waiting = [e for e in await self.queue.list_for_user(job.user_id) if e.job_id == job.id]
            if waiting:
                continue
            if self._spawn(job.id):
                resumed += 1
        if resumed:
            logger.info(f"Recovered {resumed} interrupted jobs")
        return resumed

    async def wait_for_job(self, job_id: str, timeout: Optional[float] = None) -> ProvisioningJob:
        """Wait for the job's current background run (if any) and return the job."""
        task = self._running_jobs.get(job_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return await self.state.get_job(job_id)

    async def get_queue_stats(self) -> Dict[str, Any]:
        return {
            "queue": await self.queue.get_stats(),
            "jobs": {"by_state": await self.state.count_by_state()},
            "running_jobs": len(self._running_jobs),
        }

    async def shutdown(self):
        """Shutdown orchestrator."""
        logger.info("Shutting down orchestrator...")
        self._shutdown_event.set()

        for task in list(self._running_jobs.values()):
            task.cancel()
        if self._running_jobs:
            await asyncio.gather(*self._running_jobs.values(), return_exceptions=True)

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    def _spawn(self, job_id: str) -> bool:
        task = self._running_jobs.get(job_id)
        if task is not None and not task.done():
            return False
        if self._shutdown_event.is_set():
            return False

        task = asyncio.create_task(self._run_guarded(job_id))
        self._running_jobs[job_id] = task

        def cleanup(finished: asyncio.Task, jid: str = job_id) -> None:
            if self._running_jobs.get(jid) is finished:
                self._running_jobs.pop(jid, None)

        task.add_done_callback(cleanup)
        return True

    async def _run_guarded(self, job_id: str) -> None:
        async with self._semaphore:
            try:
                await self.run_job(job_id)
            except Exception as e:
                logger.error(f"Job {job_id} failed unexpectedly: {e}", exc_info=True)
                await self._fail_unexpected(job_id, e)

    async def _fail_unexpected(self, job_id: str, error: Exception) -> None:
        try:
            job = await self.state.get_job(job_id)
            if job.state in TERMINAL_JOB_STATES:
                return
            await self.state.append_error(job_id, "internal", error)
            job = await self.state.transition(job_id, JobState.FAILED, error=f"Internal error: {error}")
        except ProvisioningError as e:
            logger.error(f"Could not mark job {job_id} failed: {e}")
            return
        await self._notify(job, "job_failed")
        self._forget(job_id)

    async def run_job(self, job_id: str) -> ProvisioningJob:
        """Advance a job as far as possible. Safe to call again after any interruption."""
        job = await self.state.get_job(job_id)
        if job.state in TERMINAL_JOB_STATES:
            return job

        event = self._cancel_events.setdefault(job_id, asyncio.Event())
        if job.cancel_requested:
            event.set()
        await self.slots.release_interrupted(job_id)

        try:
            if job.cancel_requested or job.rollback_reason:
                return await self._rollback(job, job.rollback_reason or CANCEL_REASON)
            if job.state == JobState.PENDING:
                job = await self.state.transition(job.id, JobState.VERIFYING)
            if job.state == JobState.VERIFYING:
                job = await self._verify_and_start(job)
                if job.state != JobState.IN_PROGRESS:
                    return job
            return await self._provision(job)
        except RequestDeferredError as e:
            await self._defer(job_id, e)
            return await self.state.get_job(job_id)

    def _scope(self, job: ProvisioningJob) -> CallScope:
        return CallScope(
            account_ref=job.account_ref,
            context=RouteContext(
                user_id=job.user_id,
                current_credential_id=self._current_credential.get(job.id),
                excluded=self._excluded_credentials.get(job.id, frozenset()),
            ),
        )

    def _cancelled(self, job_id: str) -> bool:
        event = self._cancel_events.get(job_id)
        return event is not None and event.is_set()

    def _forget(self, job_id: str) -> None:
        self._cancel_events.pop(job_id, None)
        self._current_credential.pop(job_id, None)
        self._excluded_credentials.pop(job_id, None)

    def _remember(self, job_id: str, outcome: CallOutcome) -> None:
        """Keep the credential that worked and skip the ones that could not be resolved."""
        self._current_credential[job_id] = outcome.credential_id
        if outcome.excluded:
            self._excluded_credentials[job_id] = outcome.excluded

    async def _verify_and_start(self, job: ProvisioningJob) -> ProvisioningJob:
        """verifying -> in_progress: pre-flight, slot initialization, root creation."""
        if not await self.preflight.has_passed(job.id):
            try:
                await self.preflight.run(job, self._scope(job))
            except ValidationError as e:
                await self.state.append_error(job.id, "preflight", e, reasons=e.reasons)
                job = await self.state.transition(job.id, JobState.FAILED, error=str(e))
                await self._notify(job, "job_failed")
                self._forget(job.id)
                return job
            except RequestDeferredError as e:
                e.step = "preflight"
                raise

        if await self.slots.count(job.id) == 0:
            await self.slots.initialize_slots(job)
        await self.slots.assert_slot_count(job)

        if self._cancelled(job.id):
            return await self._rollback(job, CANCEL_REASON)

        try:
            root_id = await self._create_root(job)
        except RequestDeferredError as e:
            e.step = "create_root"
            raise
        except (RemoteError, BudgetExhaustedError) as e:
            await self.state.append_error(job.id, "create_root", e, code=getattr(e, "code", None))
            job = await self.state.transition(job.id, JobState.FAILED, error=f"Campaign could not be created: {e}")
            await self._notify(job, "job_failed")
            self._forget(job.id)
            return job

        return await self.state.transition(job.id, JobState.IN_PROGRESS, root_remote_id=root_id)

    async def _create_root(self, job: ProvisioningJob) -> str:
        spec = dict(job.root_spec or {})
        spec["name"] = job.root_name

        async def attempt(credential_id: str) -> GatewayResult:
            # A root with this exact name can only be ours (pre-flight ruled out duplicates)
            listing = await self.gateway.list(credential_id, job.account_ref)
            for resource in listing.value:
                if resource.name == job.root_name and resource.status not in GONE_STATUSES:
                    logger.info(f"Adopting existing root {resource.remote_id} for job {job.id}")
                    return GatewayResult(value=resource.remote_id, usage=listing.usage)
            return await self.gateway.create(credential_id, job.account_ref, ResourceKind.ROOT, spec)

        outcome = await self.executor.call(attempt, self._scope(job), operation="create root")
        self._remember(job.id, outcome)
        root_id = outcome.value.value

        status = await self.reconciliation.verify_entity_exists(root_id, ResourceKind.ROOT, self._scope(job))
        if status == ExistenceStatus.MISSING:
            raise PermanentRemoteError(f"Campaign {root_id} was reported created but does not exist")
        logger.info(f"Created root {root_id} for job {job.id}")
        return root_id

    async def _provision(self, job: ProvisioningJob) -> ProvisioningJob:
        """in_progress loop: creation rounds bounded by the job's retry budget."""
        while True:
            job = await self.state.get_job(job.id)
            if self._cancelled(job.id) or job.cancel_requested:
                return await self._rollback(job, CANCEL_REASON)

            reason, result = await self._run_round(job)
            if reason:
                return await self._rollback(job, reason)

            job = await self.state.get_job(job.id)
            if result is None:
                result = await self._reconcile(job)
            if result is not None:
                over = self._over_ceiling(job, result)
                if over:
                    return await self._rollback(job, over)
                if await self._is_complete(job, result):
                    return await self._complete(job, result)

            if self._cancelled(job.id):
                return await self._rollback(job, CANCEL_REASON)

            work = await self._workable_slots(job.id)
            if not work:
                stuck = await self.slots.get_slots(job.id, statuses=[SlotStatus.FAILED])
                if stuck:
                    return await self._rollback(
                        job, f"{len(stuck)} resources could not be created and cannot be retried"
                    )

            rounds = await self.state.increment_retry(job.id)
            if rounds >= job.retry_budget:
                return await self._rollback(
                    job, f"Retry budget exhausted after {rounds} rounds without reaching the requested counts"
                )
            delay = backoff_delay(rounds - 1, self.policy, self.executor.rng)
            logger.info(f"Job {job.id} round {rounds} incomplete, next round in {delay:.1f}s")
            await self.executor.sleep(delay)

    async def _workable_slots(self, job_id: str) -> List[Slot]:
        slots = await self.slots.get_slots(job_id, statuses=[SlotStatus.PENDING, SlotStatus.FAILED])
        work = [s for s in slots if s.status == SlotStatus.PENDING or self.slots.can_retry(s)]
        work.sort(key=lambda s: (SLOT_KINDS.index(s.kind), s.slot_number))
        return work

    async def _run_round(self, job: ProvisioningJob) -> Tuple[Optional[str], Optional[ReconciliationResult]]:
        """
        One pass over every workable slot in batches, reconciling after each batch.

        Returns:
            (escalation reason or None, last reconciliation result or None)
        """
        work = await self._workable_slots(job.id)
        if not work:
            return None, None

        batch_size = max(1, self.settings.batch_size)
        result: Optional[ReconciliationResult] = None
        for start in range(0, len(work), batch_size):
            for slot in work[start:start + batch_size]:
                if self._cancelled(job.id):
                    return CANCEL_REASON, None
                outcome, reason = await self._provision_slot(job, slot)
                if outcome == SlotOutcome.ESCALATE:
                    return reason, None
                if outcome in (SlotOutcome.GATE_UNKNOWN, SlotOutcome.BLOCKED):
                    return None, None

            result = await self._reconcile(job)
            if result is not None:
                over = self._over_ceiling(job, result)
                if over:
                    return over, result
        return None, result

    async def _provision_slot(self, job: ProvisioningJob, slot: Slot) -> Tuple[SlotOutcome, Optional[str]]:
        kind = slot.kind
        requested = job.requested(kind)
        label = f"{kind.value} {slot.slot_number}"

        # Idempotency gate: live remote count immediately before the create
        try:
            counts = await self.reconciliation.get_current_remote_counts(job.root_remote_id, self._scope(job))
        except RequestDeferredError as e:
            e.step, e.slot_kind, e.slot_number = "create_slot", kind, slot.slot_number
            raise
        except (RemoteError, BudgetExhaustedError) as e:
            if isinstance(e, PermanentRemoteError) and e.is_account_level:
                await self.state.append_error(
                    job.id, "idempotency_check", e, kind=kind.value, slot_number=slot.slot_number, code=e.code,
                )
                return SlotOutcome.ESCALATE, f"Permanent error checking {label}: {e}"
            await self.state.append_error(
                job.id, "idempotency_check", f"Remote count unavailable, not creating {label}: {e}",
                user_error=translate_error(e), kind=kind.value, slot_number=slot.slot_number,
            )
            return SlotOutcome.GATE_UNKNOWN, None

        siblings = await self.slots.get_slots(job.id, kind)
        tracked_created = sum(1 for s in siblings if s.status == SlotStatus.CREATED)
        known_ids = {s.remote_id for s in siblings if s.remote_id}
        remote = counts.resources(kind)
        if len(remote) > requested:
            return SlotOutcome.ESCALATE, f"Remote {kind.value} count {len(remote)} exceeds requested {requested}"

        untracked = [r for r in remote if r.remote_id not in known_ids]
        named = next((r for r in untracked if r.name == slot.name), None)
        remaining = requested - max(tracked_created, len(remote))
        if named is not None or (remaining <= 0 and untracked):
            candidate = named or untracked[0]
            await self.slots.mark_adopted(slot, candidate.remote_id, self._parent_of(job, candidate, counts))
            return SlotOutcome.ADOPTED, None
        if remaining <= 0:
            logger.info(f"Job {job.id}: {label} already satisfied remotely, skipping")
            await self.slots.mark_skipped(slot)
            return SlotOutcome.SKIPPED, None

        if kind == ResourceKind.ITEM:
            parent_ref = await self._item_parent(job, slot, counts)
            if parent_ref is None:
                logger.info(f"Job {job.id}: no live group to hold {label} yet")
                return SlotOutcome.BLOCKED, None
        else:
            parent_ref = job.root_remote_id

        template = job.item_spec if kind == ResourceKind.ITEM else job.group_spec
        spec = dict(template or {})
        spec["name"] = slot.name

        attempts = 0

        async def attempt(credential_id: str) -> GatewayResult:
            nonlocal attempts
            attempts += 1
            if attempts > 1:
                # An earlier attempt may have committed remotely before failing
                listing = await self.gateway.list(credential_id, parent_ref)
                for resource in listing.value:
                    if (resource.name == slot.name and resource.kind in (None, kind)
                            and resource.status not in GONE_STATUSES):
                        logger.info(f"Adopting {resource.remote_id} left by an earlier attempt at {label} of job {job.id}")
                        return GatewayResult(value=resource.remote_id, usage=listing.usage)
            return await self.gateway.create(credential_id, parent_ref, kind, spec)

        slot = await self.slots.mark_creating(slot)
        try:
            outcome = await self.executor.call(attempt, self._scope(job), operation=f"create {label}")
        except RequestDeferredError as e:
            await self.slots.release(slot)
            e.step, e.slot_kind, e.slot_number = "create_slot", kind, slot.slot_number
            raise
        except PermanentRemoteError as e:
            await self.slots.mark_failed(slot, str(e), PERMANENT)
            await self.state.append_error(
                job.id, f"create_{kind.value}", e,
                slot_number=slot.slot_number, code=e.code, scope=e.scope,
            )
            if e.is_account_level:
                return SlotOutcome.ESCALATE, f"Permanent error creating {label}: {e}"
            failed = await self._permanently_failed(job.id, kind)
            if requested and failed / requested > self.settings.failure_escalation_ratio:
                return SlotOutcome.ESCALATE, f"{failed} of {requested} {kind.value}s were permanently rejected"
            return SlotOutcome.FAILED, None
        except BudgetExhaustedError as e:
            await self.slots.mark_failed(slot, str(e), BUDGET_EXHAUSTED)
            await self.state.append_error(
                job.id, f"create_{kind.value}", e, slot_number=slot.slot_number, attempts=e.attempts,
            )
            return SlotOutcome.FAILED, None

        self._remember(job.id, outcome)
        await self.slots.mark_created(slot, outcome.value.value, parent_ref)
        return SlotOutcome.CREATED, None

    async def _permanently_failed(self, job_id: str, kind: ResourceKind) -> int:
        failed = await self.slots.get_slots(job_id, kind, statuses=[SlotStatus.FAILED])
        return sum(1 for s in failed if s.error_kind == PERMANENT)

    async def _item_parent(self, job: ProvisioningJob, slot: Slot, counts: RemoteCounts) -> Optional[str]:
        """Spread items round-robin over the job's created groups that are live remotely."""
        live = {g.remote_id for g in counts.groups}
        groups = [
            g for g in await self.slots.get_slots(job.id, ResourceKind.GROUP, statuses=[SlotStatus.CREATED])
            if g.remote_id in live
        ]
        if not groups:
            return None
        groups.sort(key=lambda g: g.slot_number)
        return groups[(slot.slot_number - 1) % len(groups)].remote_id

    @staticmethod
    def _parent_of(job: ProvisioningJob, resource: RemoteResource, counts: RemoteCounts) -> Optional[str]:
        if resource.kind == ResourceKind.GROUP or resource in counts.groups:
            return job.root_remote_id
        for group_id, items in counts.items_by_group.items():
            if any(item.remote_id == resource.remote_id for item in items):
                return group_id
        return resource.parent_ref

    async def _reconcile(self, job: ProvisioningJob) -> Optional[ReconciliationResult]:
        try:
            result = await self.reconciliation.reconcile(job, self._scope(job))
        except RequestDeferredError as e:
            e.step = "reconcile"
            raise
        except (RemoteError, BudgetExhaustedError) as e:
            await self.state.append_error(
                job.id, "reconcile", f"Reconciliation unavailable: {e}", user_error=translate_error(e)
            )
            return None

        await self.state.update_fields(job.id, last_known_counts=dict(result.actual))
        if result.missing_slots:
            await self.state.append_error(
                job.id,
                "reconcile",
                f"{len(result.missing_slots)} resources reported created were not found remotely",
                user_error=UserError(
                    "Some resources reported as created were not found on the platform and are created again.",
                    "reconcile",
                ),
                slots=[f"{s.kind.value} {s.slot_number}" for s in result.missing_slots],
            )
        return result

    @staticmethod
    def _over_ceiling(job: ProvisioningJob, result: ReconciliationResult) -> Optional[str]:
        for kind in SLOT_KINDS:
            actual = result.actual.get(kind.value, 0)
            if actual > job.requested(kind):
                return f"Remote {kind.value} count {actual} exceeds requested {job.requested(kind)}"
        return None

    async def _is_complete(self, job: ProvisioningJob, result: ReconciliationResult) -> bool:
        summary = await self.slots.summary(job.id)
        for kind in SLOT_KINDS:
            requested = job.requested(kind)
            if result.actual.get(kind.value, 0) != requested:
                return False
            settled = summary[kind.value][SlotStatus.CREATED.value] + summary[kind.value][SlotStatus.SKIPPED.value]
            if settled != requested:
                return False
        return True

    async def _complete(self, job: ProvisioningJob, result: ReconciliationResult) -> ProvisioningJob:
        job = await self.state.transition(job.id, JobState.COMPLETED, last_known_counts=dict(result.actual))
        await self._notify(job, "job_completed")
        self._forget(job.id)
        return job

    async def _rollback(self, job: ProvisioningJob, reason: str) -> ProvisioningJob:
        if not job.rollback_reason:
            job = await self.state.update_fields(job.id, rollback_reason=reason)
        await self.queue.cancel_for_job(job.id, reason)
        try:
            result = await self.rollback_executor.rollback(job, self._scope(job), reason)
        except RequestDeferredError as e:
            e.step = "rollback"
            raise

        job = await self.state.get_job(job.id)
        event = "job_rolled_back" if job.state == JobState.ROLLED_BACK else "job_failed"
        await self._notify(job, event, RollbackExecutor.summarize(result))
        self._forget(job.id)
        return job

    async def _defer(self, job_id: str, error: RequestDeferredError) -> None:
        job = await self.state.get_job(job_id)
        entry = await self.queue.enqueue(
            job.id,
            job.user_id,
            job.account_ref,
            error.step or "resume",
            error.requeue_after,
            slot_kind=error.slot_kind,
            slot_number=error.slot_number,
        )
        job = await self.state.append_error(
            job.id, "deferred", error.reason, user_error=translate_error(error),
            step=entry.step, requeue_after=round(error.requeue_after),
        )
        logger.warning(f"Job {job.id} paused at {entry.step}, resuming in {error.requeue_after:.0f}s")
        await self._notify(job, "job_deferred", {"resume_after_seconds": round(error.requeue_after)})

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------

    @staticmethod
    def _status_message(status: Dict[str, Any]) -> str:
        """User-facing summary; always states what is known to exist remotely."""
        requested = status.get("requested") or {}
        counts = status.get("last_known_counts") or {}
        existing = (
            f"{counts.get('group', 0)} of {requested.get('group', 0)} groups and "
            f"{counts.get('item', 0)} of {requested.get('item', 0)} items exist"
        )
        state = status.get("state")
        if state == JobState.COMPLETED.value:
            return f"Completed: {existing}."
        if state == JobState.ROLLED_BACK.value:
            return f"Rolled back ({status.get('rollback_reason')}): {existing}."
        if state == JobState.FAILED.value:
            errors = status.get("errors") or []
            reason = errors[-1].get("user_message") if errors else None
            reason = reason or translate_error(status.get("last_error")).message
            return f"Failed: {reason.rstrip('.')}. Last confirmed {existing}."
        return f"{str(state).replace('_', ' ').capitalize()}: last confirmed {existing}."

    @staticmethod
    def _progress(status: Dict[str, Any]) -> Dict[str, Any]:
        """Per-kind creation progress and the remaining job retry budget."""
        requested = status.get("requested") or {}
        slots = status.get("slots") or {}
        progress: Dict[str, Any] = {}
        total = done = 0
        for kind in SLOT_KINDS:
            counts = slots.get(kind.value, {})
            created = counts.get(SlotStatus.CREATED.value, 0) + counts.get(SlotStatus.SKIPPED.value, 0)
            progress[kind.value] = {
                "requested": requested.get(kind.value, 0),
                "created": created,
                "pending": counts.get(SlotStatus.PENDING.value, 0) + counts.get(SlotStatus.CREATING.value, 0),
                "failed": counts.get(SlotStatus.FAILED.value, 0),
            }
            total += requested.get(kind.value, 0)
            done += min(created, requested.get(kind.value, 0))
        retry_count = status.get("retry_count", 0)
        retry_budget = status.get("retry_budget", 0)
        progress["retries"] = {
            "count": retry_count,
            "budget": retry_budget,
            "remaining": max(0, retry_budget - retry_count),
        }
        progress["percent"] = round(100.0 * done / total, 1) if total else 100.0
        return progress

    async def _notify(self, job: ProvisioningJob, event: str, details: Optional[Dict[str, Any]] = None) -> None:
        status = self.state.describe(job)
        try:
            await self.notifier.notify(job.user_id, job.id, event, self._status_message(status), details or {})
        except Exception as e:
            logger.warning(f"Notification {event} for job {job.id} failed: {e}")

    @staticmethod
    def _describe_queued(entry: QueuedRequest) -> Dict[str, Any]:
        return {
            "id": entry.id,
            "job_id": entry.job_id,
            "step": entry.step,
            "slot_kind": entry.slot_kind.value if entry.slot_kind else None,
            "slot_number": entry.slot_number,
            "status": entry.status.value,
            "process_after": entry.process_after.isoformat() if entry.process_after else None,
            "attempts": entry.attempts,
            "max_attempts": entry.max_attempts,
            "error": entry.error,
        }

    @staticmethod
    def _validate_submission(user_id: str, account_ref: Optional[str], root_name: Optional[str],
                             requested_counts: Dict[Any, Any]) -> Dict[str, int]:
        reasons = []
        if not user_id:
            reasons.append("user_id is required")
        if not account_ref:
            reasons.append("account_ref is required")
        if not root_name or not str(root_name).strip():
            reasons.append("name is required")

        counts = {ResourceKind.GROUP.value: 0, ResourceKind.ITEM.value: 0}
        for key, value in (requested_counts or {}).items():
            name = key.value if isinstance(key, ResourceKind) else str(key)
            if name not in counts:
                reasons.append(f"Unknown resource kind '{name}'")
                continue
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                reasons.append(f"Requested {name} count must be a non-negative integer")
                continue
            counts[name] = value

        if counts[ResourceKind.GROUP.value] < 1:
            reasons.append("At least one group must be requested")
        if reasons:
            raise ValidationError("Invalid provisioning request", reasons)
        return counts
