"""
Provisioning Core

Job orchestration components: models, slot ledger, credential routing,
retries, reconciliation, rollback and the deferred request queue.
"""

from .models import JobState, ProvisioningJob, ResourceKind, Slot, SlotStatus
from .errors import ProvisioningError, RequestDeferredError, ValidationError
from .rate_limit_tracker import RateLimitTracker
from .request_router import CredentialProfile, RequestRouter
from .platform_gateway import PlatformGateway
from .job_orchestrator import ProvisioningOrchestrator

__all__ = [
    "JobState",
    "ProvisioningJob",
    "ResourceKind",
    "Slot",
    "SlotStatus",
    "ProvisioningError",
    "RequestDeferredError",
    "ValidationError",
    "RateLimitTracker",
    "CredentialProfile",
    "RequestRouter",
    "PlatformGateway",
    "ProvisioningOrchestrator",
]
