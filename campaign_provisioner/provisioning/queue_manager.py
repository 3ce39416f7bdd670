"""
Queue Manager

Persistent queue of requests deferred because every eligible credential was
exhausted. Entries are claimed with a conditional UPDATE so that any number
of worker processes can poll the same table without double-processing.
"""
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, update
from sqlmodel import select

from .models import QueuedRequest, QueueStatus, ResourceKind, utc_from_timestamp, utcnow

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (QueueStatus.QUEUED, QueueStatus.PROCESSING)


class QueueManager:
    def __init__(self, db, max_attempts: int = 3, failure_backoff: float = 900.0,
                 clock: Callable[[], float] = time.time):
        self.db = db
        self.max_attempts = max_attempts
        self.failure_backoff = failure_backoff
        self.clock = clock

    async def enqueue(self, job_id: str, user_id: str, account_ref: str, step: str,
                      delay_seconds: float, slot_kind: Optional[ResourceKind] = None,
                      slot_number: Optional[int] = None) -> QueuedRequest:
        """
        Defer a job step for delay_seconds.

        A job has at most one active entry; enqueueing again moves the
        existing entry's schedule instead of adding a second one.
        """
        process_after = utc_from_timestamp(self.clock() + max(0.0, delay_seconds))
        async with self.db.session() as session:
            result = await session.execute(
                select(QueuedRequest).where(
                    QueuedRequest.job_id == job_id,
                    QueuedRequest.status == QueueStatus.QUEUED,
                )
            )
            entry = result.scalars().first()
            if entry is None:
                entry = QueuedRequest(
                    id=str(uuid.uuid4()),
                    job_id=job_id,
                    user_id=user_id,
                    account_ref=account_ref,
                    step=step,
                    slot_kind=slot_kind,
                    slot_number=slot_number,
                    process_after=process_after,
                    max_attempts=self.max_attempts,
                )
            else:
                entry.step = step
                entry.slot_kind = slot_kind
                entry.slot_number = slot_number
                entry.process_after = process_after
            session.add(entry)
            await session.commit()
            await session.refresh(entry)

        logger.info(f"Queued {step} for job {job_id} (retry in {delay_seconds:.0f}s)")
        return entry

    async def ready(self, limit: int = 10) -> List[QueuedRequest]:
        """Queued entries whose scheduled time has elapsed, oldest first."""
        now = utc_from_timestamp(self.clock())
        async with self.db.session() as session:
            result = await session.execute(
                select(QueuedRequest)
                .where(QueuedRequest.status == QueueStatus.QUEUED, QueuedRequest.process_after <= now)
                .order_by(QueuedRequest.process_after)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def claim(self, request_id: str, worker_id: str) -> bool:
        """Atomically move an entry from queued to processing. True if this worker won it."""
        async with self.db.session() as session:
            result = await session.execute(
                update(QueuedRequest)
                .where(QueuedRequest.id == request_id, QueuedRequest.status == QueueStatus.QUEUED)
                .values(
                    status=QueueStatus.PROCESSING,
                    claimed_by=worker_id,
                    claimed_at=utc_from_timestamp(self.clock()),
                )
            )
            await session.commit()
        claimed = result.rowcount == 1
        if not claimed:
            logger.debug(f"Worker {worker_id} lost claim on queued request {request_id}")
        return claimed

    async def get(self, request_id: str) -> Optional[QueuedRequest]:
        async with self.db.session() as session:
            return await session.get(QueuedRequest, request_id)

    async def _settle(self, request_id: str, **fields) -> Optional[QueuedRequest]:
        async with self.db.session() as session:
            entry = await session.get(QueuedRequest, request_id)
            if entry is None:
                return None
            for name, value in fields.items():
                setattr(entry, name, value)
            session.add(entry)
            await session.commit()
            await session.refresh(entry)
            return entry

    async def reschedule(self, request_id: str, delay_seconds: float, reason: Optional[str] = None) -> Optional[QueuedRequest]:
        """Put a claimed entry back without counting an attempt (still rate limited)."""
        return await self._settle(
            request_id,
            status=QueueStatus.QUEUED,
            process_after=utc_from_timestamp(self.clock() + max(0.0, delay_seconds)),
            claimed_by=None,
            claimed_at=None,
            error=reason,
        )

    async def mark_completed(self, request_id: str) -> Optional[QueuedRequest]:
        return await self._settle(request_id, status=QueueStatus.COMPLETED, processed_at=utcnow(), error=None)

    async def mark_failed(self, request_id: str, error: str) -> Optional[QueuedRequest]:
        """
        Count a failed attempt.

        The entry is retried after 2^attempts * failure_backoff seconds until
        max_attempts is reached, then marked failed for good.
        """
        async with self.db.session() as session:
            entry = await session.get(QueuedRequest, request_id)
            if entry is None:
                return None
            entry.attempts += 1
            entry.error = error
            entry.claimed_by = None
            entry.claimed_at = None
            if entry.attempts >= entry.max_attempts:
                entry.status = QueueStatus.FAILED
                entry.processed_at = utcnow()
                logger.error(f"Queued request {request_id} for job {entry.job_id} failed permanently: {error}")
            else:
                backoff = (2 ** entry.attempts) * self.failure_backoff
                entry.status = QueueStatus.QUEUED
                entry.process_after = utc_from_timestamp(self.clock() + backoff)
                logger.warning(
                    f"Queued request {request_id} attempt {entry.attempts}/{entry.max_attempts} failed, "
                    f"retry in {backoff:.0f}s: {error}"
                )
            session.add(entry)
            await session.commit()
            await session.refresh(entry)
            return entry

    async def release_stale(self, stale_after: float) -> int:
        """Return entries stuck in processing (crashed worker) to the queue."""
        cutoff = utc_from_timestamp(self.clock() - stale_after)
        async with self.db.session() as session:
            result = await session.execute(
                update(QueuedRequest)
                .where(QueuedRequest.status == QueueStatus.PROCESSING, QueuedRequest.claimed_at < cutoff)
                .values(status=QueueStatus.QUEUED, claimed_by=None, claimed_at=None)
            )
            await session.commit()
        if result.rowcount:
            logger.warning(f"Released {result.rowcount} stale queued requests")
        return result.rowcount

    async def list_for_user(self, user_id: str) -> List[QueuedRequest]:
        async with self.db.session() as session:
            result = await session.execute(
                select(QueuedRequest)
                .where(QueuedRequest.user_id == user_id, QueuedRequest.status.in_(ACTIVE_STATUSES))
                .order_by(QueuedRequest.process_after)
            )
            return list(result.scalars().all())

    async def cancel_for_job(self, job_id: str, reason: str = "job cancelled") -> int:
        async with self.db.session() as session:
            result = await session.execute(
                update(QueuedRequest)
                .where(QueuedRequest.job_id == job_id, QueuedRequest.status == QueueStatus.QUEUED)
                .values(status=QueueStatus.FAILED, error=reason, processed_at=utcnow())
            )
            await session.commit()
        return result.rowcount

    async def get_stats(self) -> Dict[str, Any]:
        """Entry counts by status and the oldest due entry."""
        async with self.db.session() as session:
            result = await session.execute(
                select(QueuedRequest.status, func.count()).group_by(QueuedRequest.status)
            )
            by_status = {status.value: count for status, count in result.all()}
            oldest = await session.execute(
                select(func.min(QueuedRequest.process_after)).where(QueuedRequest.status == QueueStatus.QUEUED)
            )
            oldest_due = oldest.scalar_one_or_none()
        return {
            "by_status": {status.value: by_status.get(status.value, 0) for status in QueueStatus},
            "next_due_at": oldest_due.isoformat() if oldest_due else None,
        }
