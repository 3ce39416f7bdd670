"""
Reconciliation Service

Compares what the slot ledger believes exists against what the remote
platform actually reports. A create call that returned success is not proof
the resource exists; only the listing (or a direct get) is.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import BudgetExhaustedError, NotFoundError, RemoteError, RequestDeferredError
from .models import (
    SLOT_KINDS,
    ProvisioningJob,
    ResourceKind,
    Slot,
    SlotStatus,
    VerificationRecord,
)
from .platform_gateway import PlatformGateway, RemoteResource
from .retry_executor import CallScope, RetryExecutor
from .slot_tracker import SlotTracker

logger = logging.getLogger(__name__)

GONE_STATUSES = frozenset({"deleted", "archived"})


class ExistenceStatus(str, Enum):
    EXISTS = "exists"
    MISSING = "missing"
    UNKNOWN = "unknown"


@dataclass
class RemoteCounts:
    """Live children of a root: groups, and items under each group."""
    groups: List[RemoteResource] = field(default_factory=list)
    items_by_group: Dict[str, List[RemoteResource]] = field(default_factory=dict)

    @property
    def items(self) -> List[RemoteResource]:
        return [item for items in self.items_by_group.values() for item in items]

    def resources(self, kind: ResourceKind) -> List[RemoteResource]:
        if kind == ResourceKind.GROUP:
            return list(self.groups)
        if kind == ResourceKind.ITEM:
            return self.items
        return []

    def count(self, kind: ResourceKind) -> int:
        return len(self.resources(kind))

    def as_dict(self) -> Dict[str, int]:
        return {kind.value: self.count(kind) for kind in SLOT_KINDS}


@dataclass
class ReconciliationResult:
    job_id: str
    expected: Dict[str, int]
    tracked: Dict[str, int]
    actual: Dict[str, int]
    missing_slots: List[Slot] = field(default_factory=list)
    untracked: Dict[str, List[RemoteResource]] = field(default_factory=dict)
    discrepancies: List[Dict[str, Any]] = field(default_factory=list)
    counts: Optional[RemoteCounts] = None

    @property
    def mismatch(self) -> bool:
        """ReconciliationMismatch flag: tracked state disagrees with the remote."""
        return bool(self.discrepancies)


class ReconciliationService:
    def __init__(self, db, gateway: PlatformGateway, executor: RetryExecutor, slots: SlotTracker):
        self.db = db
        self.gateway = gateway
        self.executor = executor
        self.slots = slots

    async def verify_entity_exists(self, remote_id: str, kind: ResourceKind, scope: CallScope) -> ExistenceStatus:
        """
        Check one resource directly.

        API failures are reported as UNKNOWN, never as MISSING.
        """
        try:
            outcome = await self.executor.call(
                lambda cid: self.gateway.get(cid, remote_id), scope, operation=f"get {kind.value}"
            )
        except NotFoundError:
            return ExistenceStatus.MISSING
        except (RemoteError, BudgetExhaustedError, RequestDeferredError) as e:
            logger.warning(f"Could not verify {kind.value} {remote_id}: {e}")
            return ExistenceStatus.UNKNOWN

        resource: RemoteResource = outcome.value.value
        if resource is None or resource.status in GONE_STATUSES:
            return ExistenceStatus.MISSING
        return ExistenceStatus.EXISTS

    async def _list(self, parent_ref: str, scope: CallScope, label: str) -> List[RemoteResource]:
        outcome = await self.executor.call(
            lambda cid: self.gateway.list(cid, parent_ref), scope, operation=f"list {label}"
        )
        return [r for r in outcome.value.value if r.status not in GONE_STATUSES]

    async def get_current_remote_counts(self, root_ref: str, scope: CallScope) -> RemoteCounts:
        """
        Authoritative child counts under a root.

        Raises whatever the retry executor raises when the listing cannot be
        obtained; callers decide how to treat an unknown count.
        """
        groups = await self._list(root_ref, scope, "groups")
        counts = RemoteCounts(groups=groups)
        for group in groups:
            counts.items_by_group[group.remote_id] = await self._list(group.remote_id, scope, "items")
        return counts

    async def reconcile(self, job: ProvisioningJob, scope: CallScope) -> ReconciliationResult:
        """
        Re-verify every created slot of a job against the live remote state.

        Confirmed-missing slots are marked failed so they can be re-created
        and one VerificationRecord is written. result.actual carries the
        observed counts the caller stores as the job's last known counts.
        """
        expected = job.requested_counts()
        created = await self.slots.get_slots(job.id, statuses=[SlotStatus.CREATED])
        tracked = {kind.value: 0 for kind in SLOT_KINDS}
        for slot in created:
            tracked[slot.kind.value] += 1

        if not job.root_remote_id:
            return ReconciliationResult(
                job_id=job.id, expected=expected, tracked=tracked,
                actual={kind.value: 0 for kind in SLOT_KINDS}, counts=RemoteCounts(),
            )

        counts = await self.get_current_remote_counts(job.root_remote_id, scope)
        listed = {kind: {r.remote_id for r in counts.resources(kind)} for kind in SLOT_KINDS}

        result = ReconciliationResult(
            job_id=job.id,
            expected=expected,
            tracked=tracked,
            actual=counts.as_dict(),
            counts=counts,
        )

        tracked_ids = {kind: set() for kind in SLOT_KINDS}
        for slot in created:
            if slot.remote_id in listed[slot.kind]:
                tracked_ids[slot.kind].add(slot.remote_id)
                continue
            status = await self.verify_entity_exists(slot.remote_id, slot.kind, scope)
            if status == ExistenceStatus.MISSING:
                await self.slots.mark_missing(slot)
                result.missing_slots.append(slot)
                result.discrepancies.append({
                    "type": "missing",
                    "kind": slot.kind.value,
                    "slot_number": slot.slot_number,
                    "remote_id": slot.remote_id,
                })
            else:
                tracked_ids[slot.kind].add(slot.remote_id)
                if status == ExistenceStatus.UNKNOWN:
                    result.discrepancies.append({
                        "type": "unverified",
                        "kind": slot.kind.value,
                        "slot_number": slot.slot_number,
                        "remote_id": slot.remote_id,
                    })

        for kind in SLOT_KINDS:
            untracked = [r for r in counts.resources(kind) if r.remote_id not in tracked_ids[kind]]
            if untracked:
                result.untracked[kind.value] = untracked
                result.discrepancies.append({
                    "type": "untracked",
                    "kind": kind.value,
                    "remote_ids": [r.remote_id for r in untracked],
                })
            if result.actual[kind.value] > expected[kind.value]:
                result.discrepancies.append({
                    "type": "over_ceiling",
                    "kind": kind.value,
                    "expected": expected[kind.value],
                    "actual": result.actual[kind.value],
                })

        await self._record(job, result)

        if result.mismatch:
            logger.warning(
                f"Reconciliation mismatch for job {job.id}: tracked={tracked} actual={result.actual} "
                f"missing={len(result.missing_slots)}"
            )
        else:
            logger.info(f"Reconciled job {job.id}: {result.actual}")
        return result

    async def _record(self, job: ProvisioningJob, result: ReconciliationResult) -> None:
        async with self.db.session() as session:
            session.add(VerificationRecord(
                job_id=job.id,
                expected=result.expected,
                tracked=result.tracked,
                actual=result.actual,
                discrepancies=result.discrepancies,
                mismatch=result.mismatch,
            ))
            await session.commit()
