"""
Idempotency Engine

Prevents duplicate provisioning jobs for the same logical intent.
Uses Redis for fast lookups with configurable TTL.
"""
import hashlib
import json
import logging
from typing import Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from .errors import IdempotencyConflict

logger = logging.getLogger(__name__)


def intent_key(user_id: str, account_ref: str, root_name: str, counts: Dict[str, int]) -> str:
    """Stable key for 'this user wants this root with these counts under this account'."""
    payload = json.dumps(
        {"user": user_id, "account": account_ref, "root": root_name, "counts": counts},
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class IdempotencyEngine:
    """
    Maps idempotency keys to job ids in Redis.

    claim() is a SET NX, so two concurrent submissions of the same intent
    cannot both win: the loser gets the winner's job id back. A key that
    expires between the failed SET NX and the read is claimed again.
    """

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = 86400):
        """
        Initialize idempotency engine.

        Args:
            redis_client: Redis async client
            ttl_seconds: Time-to-live for idempotency keys (default: 24 hours)
        """
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.key_prefix = "provisioning:idempotency:"
        self.max_claim_attempts = 3

    @staticmethod
    def _decode(value) -> Optional[str]:
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def check(self, idempotency_key: str) -> Optional[str]:
        """
        Check if an idempotency key already exists.

        Returns:
            Existing job_id if key exists, None otherwise
        """
        if not idempotency_key:
            return None
        try:
            existing = self._decode(await self.redis.get(f"{self.key_prefix}{idempotency_key}"))
        except RedisError as e:
            # Fail open; pre-flight duplicate-name check still guards the remote side
            logger.error(f"Error checking idempotency key {idempotency_key}: {e}")
            return None
        if existing:
            logger.info(f"Idempotency key found: {idempotency_key} -> {existing}")
        return existing

    async def claim(self, idempotency_key: str, job_id: str) -> Optional[str]:
        """
        Atomically bind idempotency_key to job_id.

        Returns:
            None if this call won the key, otherwise the job id that holds it
        """
        redis_key = f"{self.key_prefix}{idempotency_key}"
        try:
            for _ in range(self.max_claim_attempts):
                won = await self.redis.set(redis_key, job_id, nx=True, ex=self.ttl_seconds)
                if won:
                    logger.debug(f"Claimed idempotency key {idempotency_key} -> {job_id} (TTL: {self.ttl_seconds}s)")
                    return None
                existing = self._decode(await self.redis.get(redis_key))
                if existing:
                    logger.info(f"Duplicate submission for key {idempotency_key}, existing job {existing}")
                    return existing
                # Holder expired between SET NX and GET
                logger.debug(f"Idempotency key {idempotency_key} expired during claim, retrying")
        except RedisError as e:
            logger.error(f"Error claiming idempotency key {idempotency_key}: {e}")
            return None
        raise IdempotencyConflict(
            f"Idempotency key {idempotency_key} could not be claimed after {self.max_claim_attempts} attempts"
        )

    async def release(self, idempotency_key: str) -> bool:
        """Drop a key, e.g. when the job it guarded could not be persisted."""
        if not idempotency_key:
            return False
        try:
            deleted = await self.redis.delete(f"{self.key_prefix}{idempotency_key}")
        except RedisError as e:
            logger.error(f"Error deleting idempotency key {idempotency_key}: {e}")
            return False
        return deleted > 0
