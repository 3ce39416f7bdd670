"""
Rollback Executor

Reverses everything a job created, in strict reverse dependency order:
items, then groups, then the root. Children found under the root that the
ledger never tracked are swept as well, so the net effect of the job on the
remote account returns to zero. A resource that is already gone counts as
deleted.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from .error_translator import UserError
from .errors import BudgetExhaustedError, RemoteError
from .models import JobState, ProvisioningJob, ResourceKind, SlotStatus, utcnow
from .platform_gateway import PlatformGateway
from .reconciliation import ReconciliationService
from .retry_executor import CallScope, RetryExecutor
from .slot_tracker import SlotTracker
from .state_manager import JobStateManager

logger = structlog.get_logger(__name__)


@dataclass
class RollbackResult:
    job_id: str
    deleted: int = 0
    already_gone: int = 0
    failed: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class RollbackExecutor:
    def __init__(
        self,
        gateway: PlatformGateway,
        executor: RetryExecutor,
        slots: SlotTracker,
        reconciliation: ReconciliationService,
        state: JobStateManager,
    ):
        self.gateway = gateway
        self.executor = executor
        self.slots = slots
        self.reconciliation = reconciliation
        self.state = state

    async def _delete(self, remote_id: str, kind: ResourceKind, scope: CallScope, result: RollbackResult) -> bool:
        try:
            outcome = await self.executor.call(
                lambda cid: self.gateway.delete(cid, remote_id), scope, operation=f"delete {kind.value}"
            )
        except (RemoteError, BudgetExhaustedError) as e:
            result.failed += 1
            result.errors.append({"kind": kind.value, "remote_id": remote_id, "error": str(e)})
            logger.error("rollback_delete_failed", job_id=result.job_id, kind=kind.value,
                         remote_id=remote_id, error=str(e))
            return False

        if outcome.value.value is False:
            result.already_gone += 1
            status = "already_deleted"
        else:
            result.deleted += 1
            status = "deleted"
        result.details.append({"kind": kind.value, "remote_id": remote_id, "status": status})
        return True

    async def _targets(self, job: ProvisioningJob, scope: CallScope, result: RollbackResult) -> Dict[ResourceKind, List[str]]:
        """Tracked remote ids plus anything still listed under the root, per kind."""
        targets: Dict[ResourceKind, List[str]] = {ResourceKind.ITEM: [], ResourceKind.GROUP: []}
        for slot in await self.slots.get_slots(job.id):
            if slot.remote_id and slot.status != SlotStatus.ROLLED_BACK:
                targets[slot.kind].append(slot.remote_id)

        if job.root_remote_id:
            try:
                counts = await self.reconciliation.get_current_remote_counts(job.root_remote_id, scope)
            except (RemoteError, BudgetExhaustedError) as e:
                result.errors.append({"kind": "sweep", "remote_id": job.root_remote_id, "error": str(e)})
                logger.error("rollback_sweep_failed", job_id=job.id, error=str(e))
            else:
                for kind in (ResourceKind.ITEM, ResourceKind.GROUP):
                    for resource in counts.resources(kind):
                        if resource.remote_id not in targets[kind]:
                            targets[kind].append(resource.remote_id)
        return targets

    async def rollback(self, job: ProvisioningJob, scope: CallScope, reason: str) -> RollbackResult:
        """
        Delete every resource of the job and settle the job state.

        On success every slot ends rolled_back and the job moves to
        rolled_back. If any delete fails the job moves to failed and is left
        for manual intervention; slots whose resource could not be deleted
        keep their status. RequestDeferredError propagates: every delete is
        idempotent, so the caller can simply run the rollback again later.
        """
        result = RollbackResult(job_id=job.id)
        logger.warning("rollback_started", job_id=job.id, reason=reason)

        targets = await self._targets(job, scope, result)
        undeleted = set()
        for kind in (ResourceKind.ITEM, ResourceKind.GROUP):
            for remote_id in targets[kind]:
                if not await self._delete(remote_id, kind, scope, result):
                    undeleted.add(remote_id)

        if job.root_remote_id:
            if not result.errors:
                await self._delete(job.root_remote_id, ResourceKind.ROOT, scope, result)
            else:
                # Root is only deleted once every child is gone
                result.errors.append({"kind": ResourceKind.ROOT.value, "remote_id": job.root_remote_id,
                                      "error": "children could not be deleted"})

        for slot in await self.slots.get_slots(job.id):
            if slot.status == SlotStatus.ROLLED_BACK or slot.remote_id in undeleted:
                continue
            await self.slots.mark_rolled_back(slot)

        if result.success:
            outcome = UserError("The job was rolled back and everything it created was removed.", "rollback",
                                retryable=False)
        else:
            outcome = UserError(
                "The job was rolled back but some resources could not be removed. Support has the details.",
                "rollback", retryable=False, technical=True,
            )
        await self.state.append_error(
            job.id,
            stage="rollback",
            error=reason,
            user_error=outcome,
            deleted=result.deleted,
            already_deleted=result.already_gone,
            delete_failures=result.failed,
        )

        if result.success:
            await self.state.transition(
                job.id,
                JobState.ROLLED_BACK,
                rollback_reason=reason,
                rolled_back_at=utcnow(),
                last_known_counts={ResourceKind.GROUP.value: 0, ResourceKind.ITEM.value: 0},
            )
            logger.info("rollback_completed", job_id=job.id, deleted=result.deleted,
                        already_deleted=result.already_gone)
        else:
            await self.state.transition(
                job.id,
                JobState.FAILED,
                error=f"Rollback incomplete ({result.failed} deletes failed): {reason}",
                rollback_reason=reason,
            )
            logger.error("rollback_incomplete", job_id=job.id, failed=result.failed, errors=result.errors)
        return result

    async def preview(self, job: ProvisioningJob) -> Dict[str, Any]:
        """
        What rollback() would delete, in deletion order, read from the ledger only.

        Untracked children under the root are only discovered by the sweep
        during the rollback itself and are not listed here.
        """
        resources: List[Dict[str, Any]] = []
        by_kind = {kind.value: 0 for kind in (ResourceKind.ITEM, ResourceKind.GROUP, ResourceKind.ROOT)}
        if job.state != JobState.ROLLED_BACK:
            slots = [
                s for s in await self.slots.get_slots(job.id)
                if s.remote_id and s.status != SlotStatus.ROLLED_BACK
            ]
            for kind in (ResourceKind.ITEM, ResourceKind.GROUP):
                for slot in slots:
                    if slot.kind != kind:
                        continue
                    resources.append({
                        "kind": kind.value, "remote_id": slot.remote_id,
                        "name": slot.name, "slot_number": slot.slot_number,
                    })
                    by_kind[kind.value] += 1
            if job.root_remote_id:
                resources.append({
                    "kind": ResourceKind.ROOT.value, "remote_id": job.root_remote_id,
                    "name": job.root_name, "slot_number": None,
                })
                by_kind[ResourceKind.ROOT.value] += 1
        return {
            "job_id": job.id,
            "state": job.state.value,
            "total": len(resources),
            "by_kind": by_kind,
            "resources": resources,
        }

    @staticmethod
    def summarize(result: Optional[RollbackResult]) -> Dict[str, Any]:
        if result is None:
            return {}
        return {
            "deleted": result.deleted,
            "already_deleted": result.already_gone,
            "failed": result.failed,
            "success": result.success,
        }
