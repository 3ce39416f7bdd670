"""
Job State Manager

Manages provisioning job state transitions and persistence.
Coordinates between Redis (for fast status lookups) and the database (source of truth).
"""
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlmodel import select

from .error_translator import UserError, translate_error
from .errors import InvalidJobTransition, JobNotFound
from .models import TERMINAL_JOB_STATES, JobState, ProvisioningJob, utcnow

logger = logging.getLogger(__name__)


JOB_TRANSITIONS: Dict[JobState, frozenset] = {
    JobState.PENDING: frozenset({JobState.VERIFYING, JobState.FAILED, JobState.ROLLED_BACK}),
    JobState.VERIFYING: frozenset({JobState.IN_PROGRESS, JobState.FAILED, JobState.ROLLED_BACK}),
    JobState.IN_PROGRESS: frozenset({JobState.COMPLETED, JobState.ROLLED_BACK, JobState.FAILED}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.ROLLED_BACK: frozenset(),
}


class JobStateManager:
    """
    Manages job state transitions and provides fast state lookups.

    Uses Redis for state caching and the database as source of truth.
    Every write invalidates the cached entry; reads repopulate it.
    """

    def __init__(self, redis_client: redis.Redis, db, cache_ttl: int = 3600):
        """
        Initialize state manager.

        Args:
            redis_client: Redis async client for caching
            db: Database instance (not just engine)
            cache_ttl: Seconds a cached job state stays valid
        """
        self.redis = redis_client
        self.db = db
        self.cache_prefix = "provisioning:job:"
        self.cache_ttl = cache_ttl

    async def create_job(self, job: ProvisioningJob) -> ProvisioningJob:
        async with self.db.session() as session:
            session.add(job)
            await session.commit()
            await session.refresh(job)
        logger.info(f"Created provisioning job {job.id} for user {job.user_id}")
        return job

    async def get_job(self, job_id: str) -> ProvisioningJob:
        """Load a job from the database. Raises JobNotFound."""
        async with self.db.session() as session:
            job = await session.get(ProvisioningJob, job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    async def get_job_state(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Get job state (cached from Redis, fallback to DB).

        Args:
            job_id: The job ID

        Returns:
            Job state dict or None if not found
        """
        cache_key = f"{self.cache_prefix}{job_id}"
        try:
            cached = await self.redis.get(cache_key)
            if cached:
                if isinstance(cached, bytes):
                    cached = cached.decode("utf-8")
                logger.debug(f"Job {job_id} state from cache")
                return json.loads(cached)
        except RedisError as e:
            logger.warning(f"Error reading from cache for job {job_id}: {e}")

        try:
            job = await self.get_job(job_id)
        except JobNotFound:
            return None

        state = self.describe(job)
        await self._cache_job_state(job_id, state)
        return state

    @staticmethod
    def describe(job: ProvisioningJob) -> Dict[str, Any]:
        return {
            "id": job.id,
            "user_id": job.user_id,
            "account_ref": job.account_ref,
            "root_name": job.root_name,
            "state": job.state.value,
            "root_remote_id": job.root_remote_id,
            "requested": job.requested_counts(),
            "last_known_counts": dict(job.last_known_counts or {}),
            "retry_count": job.retry_count,
            "retry_budget": job.retry_budget,
            "last_error": job.last_error,
            "errors": list(job.error_history or []),
            "cancel_requested": job.cancel_requested,
            "rollback_reason": job.rollback_reason,
            "created_at": job.created_at.isoformat() if job.created_at else None,
            "started_at": job.started_at.isoformat() if job.started_at else None,
            "completed_at": job.completed_at.isoformat() if job.completed_at else None,
            "rolled_back_at": job.rolled_back_at.isoformat() if job.rolled_back_at else None,
        }

    async def transition(self, job_id: str, target: JobState, error: Optional[str] = None,
                         **fields) -> ProvisioningJob:
        """
        Move a job to a new state.

        Args:
            job_id: The job ID
            target: New state
            error: Optional error message stored as last_error
            **fields: Additional columns to update in the same write

        Raises:
            JobNotFound: no such job
            InvalidJobTransition: the state machine does not allow the move
        """
        async with self.db.session() as session:
            job = await session.get(ProvisioningJob, job_id)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")
            if target not in JOB_TRANSITIONS[job.state]:
                raise InvalidJobTransition(f"Job {job_id}: {job.state.value} -> {target.value} not allowed")

            previous = job.state
            job.state = target
            if error is not None:
                job.last_error = error
            for name, value in fields.items():
                setattr(job, name, value)

            now = utcnow()
            if target == JobState.VERIFYING and not job.started_at:
                job.started_at = now
            if target in TERMINAL_JOB_STATES and not job.completed_at:
                job.completed_at = now
            job.updated_at = now

            session.add(job)
            await session.commit()
            await session.refresh(job)

        await self._invalidate_cache(job_id)
        logger.info(f"Job {job_id} state {previous.value} -> {target.value}")
        return job

    async def update_fields(self, job_id: str, **fields) -> ProvisioningJob:
        """Update non-state columns of a job."""
        async with self.db.session() as session:
            job = await session.get(ProvisioningJob, job_id)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")
            for name, value in fields.items():
                setattr(job, name, value)
            job.updated_at = utcnow()
            session.add(job)
            await session.commit()
            await session.refresh(job)

        await self._invalidate_cache(job_id)
        return job

    async def append_error(self, job_id: str, stage: str, error: Union[str, BaseException],
                           user_error: Optional[UserError] = None, **details) -> ProvisioningJob:
        """
        Append an entry to the job's error history and set last_error.

        Each entry keeps the raw error text next to its translated user
        message and category. user_error overrides the translation.
        """
        text = str(error)
        translated = user_error or translate_error(error, details.get("code"))
        async with self.db.session() as session:
            job = await session.get(ProvisioningJob, job_id)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")
            entry = {
                "timestamp": utcnow().isoformat(),
                "stage": stage,
                "error": text,
                "user_message": translated.message,
                "category": translated.category,
            }
            entry.update(details)
            # JSON columns only persist on reassignment
            job.error_history = list(job.error_history or []) + [entry]
            job.last_error = text
            job.updated_at = utcnow()
            session.add(job)
            await session.commit()
            await session.refresh(job)

        await self._invalidate_cache(job_id)
        return job

    async def increment_retry(self, job_id: str) -> int:
        """Consume one creation round. Returns the new retry count."""
        async with self.db.session() as session:
            job = await session.get(ProvisioningJob, job_id)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")
            job.retry_count += 1
            job.updated_at = utcnow()
            session.add(job)
            await session.commit()
            count = job.retry_count

        await self._invalidate_cache(job_id)
        return count

    async def get_jobs_by_state(self, states: Iterable[JobState], limit: int = 100) -> List[ProvisioningJob]:
        async with self.db.session() as session:
            statement = (
                select(ProvisioningJob)
                .where(ProvisioningJob.state.in_(list(states)))
                .order_by(ProvisioningJob.created_at)
                .limit(limit)
            )
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def count_by_state(self) -> Dict[str, int]:
        async with self.db.session() as session:
            result = await session.execute(select(ProvisioningJob.state))
            counts: Dict[str, int] = {}
            for (state,) in result.all():
                counts[state.value] = counts.get(state.value, 0) + 1
        return counts

    async def _cache_job_state(self, job_id: str, state: Dict[str, Any]) -> None:
        """Cache job state in Redis."""
        try:
            await self.redis.setex(f"{self.cache_prefix}{job_id}", self.cache_ttl, json.dumps(state))
        except RedisError as e:
            logger.warning(f"Error caching job state for {job_id}: {e}")

    async def _invalidate_cache(self, job_id: str) -> None:
        """Invalidate cached job state."""
        try:
            await self.redis.delete(f"{self.cache_prefix}{job_id}")
        except RedisError as e:
            logger.warning(f"Error invalidating cache for {job_id}: {e}")
