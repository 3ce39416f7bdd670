"""
Slot Tracker

Ledger of intended versus believed-actual state for every planned child
resource of a job. The number of slots per job is fixed when the job is
initialized; afterwards slots only change status.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlmodel import select

from .error_translator import translate_error
from .errors import InvalidSlotTransition, SlotsAlreadyInitialized, ValidationError
from .models import SLOT_KINDS, ProvisioningJob, ResourceKind, Slot, SlotStatus, utcnow

logger = logging.getLogger(__name__)


# Allowed status changes. failed -> creating is additionally bounded by the per-slot retry cap.
SLOT_TRANSITIONS: Dict[SlotStatus, frozenset] = {
    SlotStatus.PENDING: frozenset({
        SlotStatus.CREATING, SlotStatus.SKIPPED, SlotStatus.CREATED, SlotStatus.ROLLED_BACK,
    }),
    SlotStatus.CREATING: frozenset({
        SlotStatus.CREATED, SlotStatus.FAILED, SlotStatus.PENDING, SlotStatus.ROLLED_BACK,
    }),
    SlotStatus.FAILED: frozenset({
        SlotStatus.CREATING, SlotStatus.CREATED, SlotStatus.SKIPPED, SlotStatus.ROLLED_BACK,
    }),
    SlotStatus.CREATED: frozenset({SlotStatus.FAILED, SlotStatus.ROLLED_BACK}),
    SlotStatus.SKIPPED: frozenset({SlotStatus.ROLLED_BACK}),
    SlotStatus.ROLLED_BACK: frozenset(),
}

# Failure kinds recorded on slots
PERMANENT = "permanent"
BUDGET_EXHAUSTED = "budget_exhausted"
MISSING = "missing"

NON_RETRYABLE_KINDS = frozenset({PERMANENT})

# Failure record statuses
RETRYING = "retrying"
FAILED_RETRYABLE = "failed"
PERMANENT_FAILURE = "permanent_failure"
RECOVERED = "recovered"
FAILURE_STATUSES = (FAILED_RETRYABLE, RETRYING, RECOVERED, PERMANENT_FAILURE)


def slot_name(root_name: str, kind: ResourceKind, slot_number: int) -> str:
    """Deterministic remote name for a slot."""
    return f"{root_name} - {kind.value} {slot_number}"


class SlotTracker:
    """Persists and enforces the slot lifecycle for provisioning jobs."""

    def __init__(self, db, slot_retry_cap: int = 3):
        self.db = db
        self.slot_retry_cap = slot_retry_cap

    def can_retry(self, slot: Slot) -> bool:
        return (
            slot.status == SlotStatus.FAILED
            and slot.error_kind not in NON_RETRYABLE_KINDS
            and slot.retry_count < self.slot_retry_cap
        )

    def _check(self, slot: Slot, target: SlotStatus) -> None:
        allowed = SLOT_TRANSITIONS.get(slot.status, frozenset())
        if target not in allowed:
            raise InvalidSlotTransition(
                f"Slot {slot.kind.value} {slot.slot_number} of job {slot.job_id}: "
                f"{slot.status.value} -> {target.value} not allowed"
            )
        if slot.status == SlotStatus.FAILED and target == SlotStatus.CREATING:
            if slot.retry_count >= self.slot_retry_cap:
                raise InvalidSlotTransition(
                    f"Slot {slot.kind.value} {slot.slot_number} of job {slot.job_id} "
                    f"reached its retry cap ({self.slot_retry_cap})"
                )

    async def _transition(self, slot: Slot, target: SlotStatus, bump_retry: bool = False, **fields) -> Slot:
        async with self.db.session() as session:
            current = await session.get(Slot, slot.id)
            if current is None:
                raise InvalidSlotTransition(f"Slot {slot.id} no longer exists")
            self._check(current, target)
            current.status = target
            for name, value in fields.items():
                setattr(current, name, value)
            if bump_retry:
                current.retry_count += 1
            current.updated_at = utcnow()
            session.add(current)
            await session.commit()
            await session.refresh(current)
            return current

    async def initialize_slots(self, job: ProvisioningJob,
                               counts: Optional[Dict[ResourceKind, int]] = None) -> List[Slot]:
        """
        Create exactly the requested slots per kind for a job.

        Raises:
            SlotsAlreadyInitialized: the job already has slots
            ValidationError: a negative count was requested
        """
        if counts is None:
            counts = {kind: job.requested(kind) for kind in SLOT_KINDS}
        for kind, count in counts.items():
            if kind not in SLOT_KINDS:
                raise ValidationError(f"Slots cannot be of kind {kind.value}")
            if count < 0:
                raise ValidationError(f"Requested {kind.value} count must not be negative")

        async with self.db.session() as session:
            existing = await session.execute(
                select(func.count()).select_from(Slot).where(Slot.job_id == job.id)
            )
            if existing.scalar_one() > 0:
                raise SlotsAlreadyInitialized(f"Job {job.id} already has slots")

            slots = []
            for kind in SLOT_KINDS:
                for number in range(1, counts.get(kind, 0) + 1):
                    slot = Slot(
                        job_id=job.id,
                        slot_number=number,
                        kind=kind,
                        name=slot_name(job.root_name, kind, number),
                    )
                    session.add(slot)
                    slots.append(slot)
            await session.commit()
            for slot in slots:
                await session.refresh(slot)

        logger.info(f"Initialized {len(slots)} slots for job {job.id}")
        return slots

    async def get_slots(self, job_id: str, kind: Optional[ResourceKind] = None,
                        statuses: Optional[Iterable[SlotStatus]] = None) -> List[Slot]:
        statement = select(Slot).where(Slot.job_id == job_id)
        if kind is not None:
            statement = statement.where(Slot.kind == kind)
        if statuses is not None:
            statement = statement.where(Slot.status.in_(list(statuses)))
        statement = statement.order_by(Slot.kind, Slot.slot_number)
        async with self.db.session() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def get_slot(self, job_id: str, kind: ResourceKind, slot_number: int) -> Optional[Slot]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Slot).where(
                    Slot.job_id == job_id, Slot.kind == kind, Slot.slot_number == slot_number
                )
            )
            return result.scalars().first()

    async def mark_creating(self, slot: Slot) -> Slot:
        return await self._transition(slot, SlotStatus.CREATING, creation_started_at=utcnow())

    async def mark_created(self, slot: Slot, remote_id: str, parent_remote_id: Optional[str] = None) -> Slot:
        updated = await self._transition(
            slot,
            SlotStatus.CREATED,
            remote_id=remote_id,
            parent_remote_id=parent_remote_id,
            error_message=None,
            error_kind=None,
            creation_completed_at=utcnow(),
        )
        logger.debug(f"Slot {slot.kind.value} {slot.slot_number} of job {slot.job_id} created as {remote_id}")
        return updated

    async def mark_adopted(self, slot: Slot, remote_id: str, parent_remote_id: Optional[str] = None) -> Slot:
        """Bind an existing untracked remote resource to this slot."""
        updated = await self._transition(
            slot,
            SlotStatus.CREATED,
            remote_id=remote_id,
            parent_remote_id=parent_remote_id,
            error_message=None,
            error_kind=None,
            creation_completed_at=utcnow(),
        )
        logger.info(f"Slot {slot.kind.value} {slot.slot_number} of job {slot.job_id} adopted {remote_id}")
        return updated

    async def mark_failed(self, slot: Slot, error: str, error_kind: str) -> Slot:
        updated = await self._transition(
            slot,
            SlotStatus.FAILED,
            error_message=error,
            error_kind=error_kind,
            bump_retry=True,
        )
        logger.warning(
            f"Slot {slot.kind.value} {slot.slot_number} of job {slot.job_id} failed "
            f"({error_kind}, attempt {updated.retry_count}): {error}"
        )
        return updated

    async def mark_missing(self, slot: Slot) -> Slot:
        """Reconciliation found no remote resource behind a created slot."""
        return await self._transition(
            slot,
            SlotStatus.FAILED,
            error_message=f"{slot.kind.value} {slot.remote_id} reported created but not found remotely",
            error_kind=MISSING,
            bump_retry=True,
            remote_id=None,
        )

    async def mark_skipped(self, slot: Slot) -> Slot:
        return await self._transition(slot, SlotStatus.SKIPPED)

    async def mark_rolled_back(self, slot: Slot) -> Slot:
        return await self._transition(slot, SlotStatus.ROLLED_BACK)

    async def release(self, slot: Slot) -> Slot:
        """Return an in-flight slot to pending (deferral)."""
        return await self._transition(slot, SlotStatus.PENDING, creation_started_at=None)

    async def release_interrupted(self, job_id: str) -> int:
        """Return every slot left in creating (e.g. by a restart) to pending."""
        released = 0
        for slot in await self.get_slots(job_id, statuses=[SlotStatus.CREATING]):
            await self.release(slot)
            released += 1
        if released:
            logger.info(f"Released {released} interrupted slots for job {job_id}")
        return released

    async def count(self, job_id: str, kind: Optional[ResourceKind] = None,
                    status: Optional[SlotStatus] = None) -> int:
        statement = select(func.count()).select_from(Slot).where(Slot.job_id == job_id)
        if kind is not None:
            statement = statement.where(Slot.kind == kind)
        if status is not None:
            statement = statement.where(Slot.status == status)
        async with self.db.session() as session:
            result = await session.execute(statement)
            return result.scalar_one()

    async def summary(self, job_id: str) -> Dict[str, Dict[str, int]]:
        """Per-kind counts of slots by status, plus totals."""
        summary: Dict[str, Dict[str, int]] = {
            kind.value: {status.value: 0 for status in SlotStatus} for kind in SLOT_KINDS
        }
        for kind in SLOT_KINDS:
            summary[kind.value]["total"] = 0
        async with self.db.session() as session:
            result = await session.execute(
                select(Slot.kind, Slot.status, func.count())
                .where(Slot.job_id == job_id)
                .group_by(Slot.kind, Slot.status)
            )
            for kind, status, count in result.all():
                summary[kind.value][status.value] = count
                summary[kind.value]["total"] += count
        return summary

    def failure_status(self, slot: Slot) -> Optional[str]:
        """
        Where a slot that has failed at least once stands now:
        retrying, failed (retryable), permanent_failure or recovered.
        None for slots that never failed.
        """
        if slot.retry_count == 0:
            return None
        if slot.status in (SlotStatus.PENDING, SlotStatus.CREATING):
            return RETRYING
        if slot.error_message is None:
            return RECOVERED
        if slot.status == SlotStatus.FAILED and self.can_retry(slot):
            return FAILED_RETRYABLE
        return PERMANENT_FAILURE

    @staticmethod
    def _failure_message(slot: Slot) -> Optional[str]:
        if not slot.error_message:
            return None
        if slot.error_kind == MISSING:
            return "Reported as created but not found on the platform."
        return translate_error(slot.error_message).message

    async def failure_report(self, job_id: str) -> Dict[str, Any]:
        """Per-slot failure records of a job with counts and recovery rate."""
        entries = []
        for slot in await self.get_slots(job_id):
            status = self.failure_status(slot)
            if status is None:
                continue
            entries.append({
                "kind": slot.kind.value,
                "slot_number": slot.slot_number,
                "name": slot.name,
                "status": status,
                "attempts": slot.retry_count,
                "error_kind": slot.error_kind,
                "user_message": self._failure_message(slot),
            })

        stats = {status: 0 for status in FAILURE_STATUSES}
        for entry in entries:
            stats[entry["status"]] += 1
        total = len(entries)
        return {
            "total": total,
            **stats,
            "recovery_rate": round(100.0 * stats[RECOVERED] / total, 2) if total else 0.0,
            "entities": entries,
        }

    async def assert_slot_count(self, job: ProvisioningJob) -> None:
        """Raise ValidationError if the slot count drifted from the requested counts."""
        for kind in SLOT_KINDS:
            actual = await self.count(job.id, kind)
            if actual != job.requested(kind):
                raise ValidationError(
                    f"Job {job.id} has {actual} {kind.value} slots, expected {job.requested(kind)}"
                )
