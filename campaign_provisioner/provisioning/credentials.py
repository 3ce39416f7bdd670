"""
Credentials

Resolution of bearer secrets and persistence of credential quota state.
Secrets only ever travel as pydantic SecretStr and are never logged.
"""
import logging
from typing import Dict, List, Optional, Protocol

from pydantic import SecretStr
from sqlmodel import select

from .models import CredentialRecord, timestamp_from_utc, utc_from_timestamp, utcnow
from .rate_limit_tracker import RateLimitTracker
from .request_router import CredentialProfile, RequestRouter

logger = logging.getLogger(__name__)


class CredentialResolver(Protocol):
    """
    Resolves the decrypted bearer secret for a credential id (external).

    Raises LookupError when no secret is available for the id.
    """

    async def resolve(self, credential_id: str) -> SecretStr: ...


class StaticCredentialResolver:
    """In-memory resolver for development and tests."""

    def __init__(self, secrets: Optional[Dict[str, str]] = None):
        self._secrets: Dict[str, SecretStr] = {
            cid: SecretStr(value) for cid, value in (secrets or {}).items()
        }

    def add(self, credential_id: str, secret: str) -> None:
        self._secrets[credential_id] = SecretStr(secret)

    async def resolve(self, credential_id: str) -> SecretStr:
        try:
            return self._secrets[credential_id]
        except KeyError:
            raise LookupError(f"No secret configured for credential {credential_id}") from None


def profile_from_record(record: CredentialRecord) -> CredentialProfile:
    return CredentialProfile(
        credential_id=record.id,
        owner_user_id=record.owner_user_id,
        whitelisted=record.whitelisted,
        eligible_accounts=frozenset(record.eligible_accounts or ()),
        active=record.active,
    )


class CredentialStore:
    """
    Bridges persisted CredentialRecord rows and the in-process tracker/router.

    Loading seeds the tracker with the last persisted window so a restart
    does not forget an exhausted quota; flushing writes the live snapshots
    back.
    """

    def __init__(self, db, tracker: RateLimitTracker, router: RequestRouter):
        self.db = db
        self.tracker = tracker
        self.router = router

    async def load(self) -> int:
        """Load every credential record. Returns the number loaded."""
        async with self.db.session() as session:
            result = await session.execute(select(CredentialRecord))
            records = list(result.scalars().all())

        for record in records:
            self._apply(record)
        logger.info(f"Loaded {len(records)} credential records")
        return len(records)

    def _apply(self, record: CredentialRecord) -> None:
        reset_at = timestamp_from_utc(record.window_reset_at) if record.window_reset_at else None
        self.tracker.register(record.id, limit=record.call_limit, used=record.calls_used, window_reset_at=reset_at)
        if record.active:
            self.router.add_profile(profile_from_record(record))
        else:
            self.router.remove_profile(record.id)

    async def upsert(self, record: CredentialRecord) -> CredentialRecord:
        """Insert or replace a credential record and apply it to the router."""
        async with self.db.session() as session:
            existing = await session.get(CredentialRecord, record.id)
            if existing is None:
                session.add(record)
                target = record
            else:
                existing.label = record.label
                existing.owner_user_id = record.owner_user_id
                existing.whitelisted = record.whitelisted
                existing.eligible_accounts = list(record.eligible_accounts or [])
                existing.call_limit = record.call_limit
                existing.active = record.active
                existing.updated_at = utcnow()
                session.add(existing)
                target = existing
            await session.commit()
            await session.refresh(target)

        self._apply(target)
        return target

    async def flush(self) -> int:
        """Persist the tracker's current snapshots. Returns rows written."""
        written = 0
        async with self.db.session() as session:
            result = await session.execute(select(CredentialRecord))
            for record in result.scalars().all():
                usage = self.tracker.get_usage(record.id)
                record.calls_used = usage.used
                record.call_limit = usage.limit
                record.window_reset_at = (
                    utc_from_timestamp(usage.window_reset_at) if usage.window_reset_at else None
                )
                record.updated_at = utcnow()
                session.add(record)
                written += 1
            await session.commit()
        logger.debug(f"Flushed usage for {written} credentials")
        return written

    async def describe(self) -> List[Dict[str, object]]:
        """Usage view of every credential, secrets excluded."""
        async with self.db.session() as session:
            result = await session.execute(select(CredentialRecord))
            records = list(result.scalars().all())

        view = []
        for record in records:
            usage = self.tracker.get_usage(record.id)
            view.append({
                "id": record.id,
                "label": record.label,
                "owner_user_id": record.owner_user_id,
                "whitelisted": record.whitelisted,
                "active": record.active,
                "used": usage.used,
                "limit": usage.limit,
                "available": usage.available,
                "usage_ratio": round(usage.ratio, 4),
                "window_reset_at": usage.window_reset_at,
                "exhausted": self.tracker.is_exhausted(record.id),
            })
        return view
