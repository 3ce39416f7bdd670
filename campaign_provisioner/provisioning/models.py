"""
Provisioning Data Models

Defines the persisted layout of the provisioner: jobs, their slots, the
credential records, deferred requests and the audit records written by
pre-flight checks and reconciliation. These models are the source of truth
for job state in the database.
"""
from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field, Column, JSON
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum as PyEnum


def utcnow() -> datetime:
    """Naive UTC timestamp (the stored representation)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_from_timestamp(ts: float) -> datetime:
    """Convert epoch seconds to the stored naive UTC representation."""
    return datetime.fromtimestamp(ts, timezone.utc).replace(tzinfo=None)


def timestamp_from_utc(value: datetime) -> float:
    """Convert a stored naive UTC datetime back to epoch seconds."""
    return value.replace(tzinfo=timezone.utc).timestamp()


class JobState(str, PyEnum):
    """Job state machine states."""
    PENDING = "pending"
    VERIFYING = "verifying"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


TERMINAL_JOB_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.ROLLED_BACK})


class ResourceKind(str, PyEnum):
    """Levels of the provisioned hierarchy, in dependency order."""
    ROOT = "root"
    GROUP = "group"
    ITEM = "item"


SLOT_KINDS = (ResourceKind.GROUP, ResourceKind.ITEM)


class SlotStatus(str, PyEnum):
    """Slot lifecycle."""
    PENDING = "pending"
    CREATING = "creating"
    CREATED = "created"
    FAILED = "failed"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled_back"


class QueueStatus(str, PyEnum):
    """Deferred request lifecycle."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProvisioningJob(SQLModel, table=True):
    """
    One bulk-create request: a root resource with N groups and M items.

    Mutated only by the orchestrator (through the job state manager).
    """
    __tablename__ = "provisioning_jobs"

    id: str = Field(primary_key=True, description="UUID job identifier")
    user_id: str = Field(index=True, description="Owning operator")
    account_ref: str = Field(index=True, description="Remote parent account the root is created under")
    root_name: str = Field(description="Exact name of the root resource")
    root_spec: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    group_spec: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    item_spec: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    requested_groups: int = Field(default=0)
    requested_items: int = Field(default=0)
    state: JobState = Field(default=JobState.PENDING, index=True)
    root_remote_id: Optional[str] = Field(default=None, index=True)
    retry_count: int = Field(default=0, description="Creation rounds consumed")
    retry_budget: int = Field(default=5, description="Maximum creation rounds")
    error_history: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    last_error: Optional[str] = Field(default=None)
    last_known_counts: Dict[str, int] = Field(default_factory=dict, sa_column=Column(JSON))
    idempotency_key: Optional[str] = Field(default=None, index=True)
    cancel_requested: bool = Field(default=False)
    rollback_reason: Optional[str] = Field(default=None)
    rolled_back_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    updated_at: datetime = Field(default_factory=utcnow)

    def requested(self, kind: ResourceKind) -> int:
        if kind == ResourceKind.GROUP:
            return self.requested_groups
        if kind == ResourceKind.ITEM:
            return self.requested_items
        return 1

    def requested_counts(self) -> Dict[str, int]:
        return {
            ResourceKind.GROUP.value: self.requested_groups,
            ResourceKind.ITEM.value: self.requested_items,
        }


class Slot(SQLModel, table=True):
    """One planned child resource of a job."""
    __tablename__ = "provisioning_slots"
    __table_args__ = (
        UniqueConstraint("job_id", "slot_number", "kind", name="uq_slot_per_job"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: str = Field(index=True, foreign_key="provisioning_jobs.id")
    slot_number: int = Field(description="Position 1..N within its kind")
    kind: ResourceKind = Field(index=True)
    name: str = Field(description="Deterministic remote name for this slot")
    remote_id: Optional[str] = Field(default=None, index=True)
    parent_remote_id: Optional[str] = Field(default=None)
    status: SlotStatus = Field(default=SlotStatus.PENDING, index=True)
    retry_count: int = Field(default=0)
    error_message: Optional[str] = Field(default=None)
    error_kind: Optional[str] = Field(default=None)
    creation_started_at: Optional[datetime] = Field(default=None)
    creation_completed_at: Optional[datetime] = Field(default=None)
    updated_at: datetime = Field(default_factory=utcnow)


class CredentialRecord(SQLModel, table=True):
    """
    A callable identity and its quota window.

    The secret itself is never stored here; it is resolved on demand by the
    credential resolver.
    """
    __tablename__ = "credential_records"

    id: str = Field(primary_key=True)
    label: str = Field(default="")
    owner_user_id: Optional[str] = Field(default=None, index=True, description="None for pool identities")
    whitelisted: bool = Field(default=False, description="Shared pool identity")
    eligible_accounts: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    call_limit: int = Field(default=200)
    calls_used: int = Field(default=0)
    window_reset_at: Optional[datetime] = Field(default=None)
    active: bool = Field(default=True)
    updated_at: datetime = Field(default_factory=utcnow)


class QueuedRequest(SQLModel, table=True):
    """Unit of work deferred because every eligible credential was exhausted."""
    __tablename__ = "queued_requests"

    id: str = Field(primary_key=True)
    job_id: str = Field(index=True)
    user_id: str = Field(index=True)
    account_ref: str = Field()
    step: str = Field(description="Interrupted step: preflight, create_root, create_slot, reconcile or rollback")
    slot_kind: Optional[ResourceKind] = Field(default=None)
    slot_number: Optional[int] = Field(default=None)
    status: QueueStatus = Field(default=QueueStatus.QUEUED, index=True)
    process_after: datetime = Field(index=True)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    claimed_by: Optional[str] = Field(default=None)
    claimed_at: Optional[datetime] = Field(default=None)
    error: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = Field(default=None)


class VerificationRecord(SQLModel, table=True):
    """Append-only outcome of comparing tracked against observed remote counts."""
    __tablename__ = "verification_records"

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: str = Field(index=True)
    expected: Dict[str, int] = Field(default_factory=dict, sa_column=Column(JSON))
    tracked: Dict[str, int] = Field(default_factory=dict, sa_column=Column(JSON))
    actual: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    discrepancies: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    mismatch: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow, index=True)


class PreflightRecord(SQLModel, table=True):
    """Audit trail of the checks run before any resource is created."""
    __tablename__ = "preflight_records"

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: str = Field(index=True)
    user_id: str = Field(index=True)
    account_ref: str = Field()
    root_name: str = Field()
    can_proceed: bool = Field()
    account_reachable: Optional[bool] = Field(default=None)
    account_suspended: Optional[bool] = Field(default=None)
    duplicate_exists: Optional[bool] = Field(default=None)
    at_platform_cap: Optional[bool] = Field(default=None)
    current_root_count: Optional[int] = Field(default=None)
    platform_cap: Optional[int] = Field(default=None)
    reasons: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    warnings: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    duration_ms: Optional[int] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
