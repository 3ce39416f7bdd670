"""
Provisioning Errors

Shared failure taxonomy. Every remote failure is converted into one of these
classes by the platform gateway so the retry executor and the orchestrator
can classify it without looking at raw error codes.
"""
from typing import Any, Dict, List, Optional


class ProvisioningError(Exception):
    """Base class for all provisioner errors."""

    def to_dict(self) -> Dict[str, Any]:
        return {"error": type(self).__name__, "message": str(self)}


class ValidationError(ProvisioningError):
    """Pre-flight or input failure. Never retried, surfaced immediately."""

    def __init__(self, message: str, reasons: Optional[List[str]] = None):
        super().__init__(message)
        self.reasons = list(reasons or [])

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["reasons"] = self.reasons
        return data


class JobNotFound(ProvisioningError):
    """No job with the given id."""


class IdempotencyConflict(ProvisioningError):
    """An idempotency key kept changing hands while it was being claimed."""


class InvalidJobTransition(ProvisioningError):
    """Job state change not permitted by the state machine."""


class InvalidSlotTransition(ProvisioningError):
    """Slot state change not permitted by the slot lifecycle."""


class SlotsAlreadyInitialized(ValidationError):
    """initialize_slots was called twice for the same job."""


class RemoteError(ProvisioningError):
    """
    Failure reported by (or while talking to) the remote platform.

    Carries the platform error code and any usage metadata that came back
    with the failed response.
    """

    def __init__(self, message: str, code: Optional[Any] = None, usage=None):
        super().__init__(message)
        self.code = code
        self.usage = usage

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["code"] = self.code
        return data


class PermanentRemoteError(RemoteError):
    """
    Non-retryable remote failure.

    scope="account" covers invalid credentials and suspended/disabled
    accounts: nothing else in the job can succeed either. scope="resource"
    covers a single resource being permanently rejected.
    """

    ACCOUNT = "account"
    RESOURCE = "resource"

    def __init__(self, message: str, code: Optional[Any] = None, usage=None, scope: str = RESOURCE):
        super().__init__(message, code=code, usage=usage)
        self.scope = scope

    @property
    def is_account_level(self) -> bool:
        return self.scope == self.ACCOUNT


class NotFoundError(PermanentRemoteError):
    """The remote resource does not exist."""


class CredentialUnavailableError(PermanentRemoteError):
    """The bearer secret for a credential could not be resolved."""

    def __init__(self, credential_id: str, message: str):
        super().__init__(message, scope=PermanentRemoteError.ACCOUNT)
        self.credential_id = credential_id


class RateLimitedError(RemoteError):
    """Quota exhausted for the credential used. Retry after reset_at (epoch seconds)."""

    def __init__(self, message: str, reset_at: Optional[float] = None, code: Optional[Any] = None, usage=None):
        super().__init__(message, code=code, usage=usage)
        self.reset_at = reset_at


class TransientRemoteError(RemoteError):
    """Network failure or 5xx. Retry with backoff."""


class BudgetExhaustedError(ProvisioningError):
    """Synthetic: the retry budget for one call was spent on transient failures."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None, operation: str = "remote_call"):
        super().__init__(
            f"{operation} failed after {attempts} attempts"
            + (f": {last_error}" if last_error else "")
        )
        self.attempts = attempts
        self.last_error = last_error
        self.operation = operation


class RequestDeferredError(ProvisioningError):
    """
    Every eligible credential is exhausted for longer than we are willing to
    wait inline. The caller should queue the work and resume after
    requeue_after seconds.
    """

    def __init__(self, requeue_after: float, reason: str = "all eligible credentials exhausted"):
        super().__init__(f"{reason}; retry in {requeue_after:.0f}s")
        self.requeue_after = max(0.0, requeue_after)
        self.reason = reason
        # Filled in by the orchestrator with the job step that was interrupted
        self.step: Optional[str] = None
        self.slot_kind = None
        self.slot_number: Optional[int] = None
