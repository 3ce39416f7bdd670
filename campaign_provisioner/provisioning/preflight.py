"""
Pre-flight Checks

Everything that must hold before the first resource of a job is created:
the account is reachable with the routed credential, it is not suspended,
no root with the exact same name exists and the account is below the
platform's own root cap. The outcome is audited as a PreflightRecord.
"""
import time
from typing import List, Optional

import structlog
from sqlmodel import select

from .errors import BudgetExhaustedError, PermanentRemoteError, RemoteError, ValidationError
from .models import PreflightRecord, ProvisioningJob
from .platform_gateway import PlatformGateway, RemoteResource
from .reconciliation import GONE_STATUSES
from .retry_executor import CallScope, RetryExecutor

logger = structlog.get_logger(__name__)

ACCOUNT_BLOCKED_STATUSES = frozenset({"disabled", "suspended", "closed", "unsettled"})
ACCOUNT_WARNING_STATUSES = frozenset({"pending_risk_review", "in_grace_period"})
CAP_WARNING_RATIO = 0.9


class PreflightChecker:
    def __init__(self, db, gateway: PlatformGateway, executor: RetryExecutor, platform_root_cap: int = 5000):
        self.db = db
        self.gateway = gateway
        self.executor = executor
        self.platform_root_cap = platform_root_cap

    async def has_passed(self, job_id: str) -> bool:
        """True if a previous run for this job already cleared every check."""
        async with self.db.session() as session:
            result = await session.execute(
                select(PreflightRecord.id).where(
                    PreflightRecord.job_id == job_id, PreflightRecord.can_proceed == True  # noqa: E712
                )
            )
            return result.first() is not None

    async def run(self, job: ProvisioningJob, scope: CallScope) -> PreflightRecord:
        """
        Run all checks for a job and persist the outcome.

        Raises:
            ValidationError: any check failed; reasons lists every failure
        """
        started = time.monotonic()
        record = PreflightRecord(
            job_id=job.id,
            user_id=job.user_id,
            account_ref=job.account_ref,
            root_name=job.root_name,
            can_proceed=False,
            platform_cap=self.platform_root_cap,
        )
        reasons: List[str] = []
        warnings: List[str] = []

        account = await self._check_account(job, scope, record, reasons, warnings)
        if account is not None:
            roots = await self._list_roots(job, scope, reasons)
            if roots is not None:
                self._check_roots(job, roots, record, reasons, warnings)

        record.reasons = reasons
        record.warnings = warnings
        record.can_proceed = not reasons
        record.duration_ms = int((time.monotonic() - started) * 1000)

        async with self.db.session() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)

        if reasons:
            logger.warning("preflight_failed", job_id=job.id, reasons=reasons)
            raise ValidationError(f"Pre-flight checks failed: {'; '.join(reasons)}", reasons)
        logger.info("preflight_passed", job_id=job.id, warnings=warnings)
        return record

    async def _check_account(self, job, scope, record, reasons, warnings) -> Optional[RemoteResource]:
        try:
            outcome = await self.executor.call(
                lambda cid: self.gateway.get(cid, job.account_ref), scope, operation="get account"
            )
        except PermanentRemoteError as e:
            record.account_reachable = False
            if "suspend" in str(e).lower() or "disabled" in str(e).lower():
                record.account_suspended = True
                reasons.append(f"Account {job.account_ref} is suspended or disabled")
            else:
                reasons.append(f"Account {job.account_ref} is not accessible: {e}")
            return None
        except (RemoteError, BudgetExhaustedError) as e:
            record.account_reachable = False
            reasons.append(f"Account {job.account_ref} is unreachable: {e}")
            return None

        account: RemoteResource = outcome.value.value
        record.account_reachable = True
        status = (account.status or "").lower()
        record.account_suspended = status in ACCOUNT_BLOCKED_STATUSES
        if record.account_suspended:
            reasons.append(f"Account {job.account_ref} status is {status}")
        elif status in ACCOUNT_WARNING_STATUSES:
            warnings.append(f"Account {job.account_ref} status is {status}")
        return account

    async def _list_roots(self, job, scope, reasons) -> Optional[List[RemoteResource]]:
        try:
            outcome = await self.executor.call(
                lambda cid: self.gateway.list(cid, job.account_ref), scope, operation="list roots"
            )
        except (RemoteError, BudgetExhaustedError) as e:
            reasons.append(f"Could not list existing campaigns: {e}")
            return None
        return [r for r in outcome.value.value if r.status not in GONE_STATUSES]

    def _check_roots(self, job, roots: List[RemoteResource], record, reasons, warnings) -> None:
        record.duplicate_exists = any(r.name == job.root_name for r in roots)
        if record.duplicate_exists:
            reasons.append(f"A campaign named '{job.root_name}' already exists")

        record.current_root_count = len(roots)
        record.at_platform_cap = len(roots) >= self.platform_root_cap
        if record.at_platform_cap:
            reasons.append(f"Account is at the campaign limit ({len(roots)}/{self.platform_root_cap})")
        elif len(roots) >= self.platform_root_cap * CAP_WARNING_RATIO:
            warnings.append(f"Account is close to the campaign limit ({len(roots)}/{self.platform_root_cap})")
