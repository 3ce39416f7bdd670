"""
Platform Gateway

Bridges the provisioner with the remote advertising platform.
Resolves the bearer credential for each call, invokes the transport and maps
the transport's typed error responses onto the provisioning error taxonomy.
The HTTP transport itself is external and only described by RemotePlatform.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, Protocol, TypeVar

from pydantic import SecretStr

from .credentials import CredentialResolver
from .errors import (
    CredentialUnavailableError,
    NotFoundError,
    PermanentRemoteError,
    RateLimitedError,
    RemoteError,
    TransientRemoteError,
)
from .models import ResourceKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class UsageMetadata:
    """Usage-vs-limit metadata attached to a platform response."""
    used: int
    limit: int
    window_reset_at: Optional[float] = None


@dataclass(frozen=True)
class PlatformError:
    """Typed error returned by the transport instead of a value."""
    code: Any
    message: str
    http_status: Optional[int] = None
    retry_at: Optional[float] = None


@dataclass(frozen=True)
class RemoteResource:
    remote_id: str
    name: str = ""
    kind: Optional[ResourceKind] = None
    parent_ref: Optional[str] = None
    status: str = "active"
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PlatformResponse(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[PlatformError] = None
    usage: Optional[UsageMetadata] = None

    @classmethod
    def success(cls, value: T, usage: Optional[UsageMetadata] = None) -> "PlatformResponse[T]":
        return cls(ok=True, value=value, usage=usage)

    @classmethod
    def failure(cls, error: PlatformError, usage: Optional[UsageMetadata] = None) -> "PlatformResponse[T]":
        return cls(ok=False, error=error, usage=usage)


@dataclass(frozen=True)
class GatewayResult(Generic[T]):
    """A successful call: the value plus the usage metadata it carried."""
    value: T
    usage: Optional[UsageMetadata] = None


class RemotePlatform(Protocol):
    """Transport to the remote platform (external)."""

    async def create(self, token: str, parent_ref: str, kind: ResourceKind,
                     spec: Dict[str, Any]) -> PlatformResponse[str]: ...

    async def get(self, token: str, remote_id: str) -> PlatformResponse[RemoteResource]: ...

    async def list(self, token: str, parent_ref: str) -> PlatformResponse[List[RemoteResource]]: ...

    async def delete(self, token: str, remote_id: str) -> PlatformResponse[bool]: ...


# Platform error codes
INVALID_CREDENTIAL_CODES = {190, 102}
PERMISSION_CODES = {10, 200}
INVALID_PARAMETER_CODES = {100}
NOT_FOUND_CODES = {803}
RATE_LIMIT_CODES = {4, 17, 32, 613, 80004}
TRANSIENT_CODES = {1, 2, 368}

ACCOUNT_SUSPENDED_MARKERS = ("suspended", "disabled", "closed")
NOT_FOUND_MARKERS = ("does not exist", "not found", "invalid id", "unsupported get request")
RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "throttle")
TRANSIENT_MARKERS = (
    "network", "timeout", "econnreset", "econnrefused", "etimedout",
    "internal server error", "service unavailable", "bad gateway", "gateway timeout",
)


def classify_platform_error(error: PlatformError, usage: Optional[UsageMetadata] = None) -> RemoteError:
    """
    Convert a transport error into the provisioning taxonomy.

    Unrecognized errors are treated as transient so they are retried with
    backoff rather than escalated.
    """
    code = error.code
    message = error.message or ""
    lowered = message.lower()

    if code in INVALID_CREDENTIAL_CODES or "access token" in lowered or "invalid token" in lowered:
        return PermanentRemoteError(message, code=code, usage=usage, scope=PermanentRemoteError.ACCOUNT)
    if "account" in lowered and any(marker in lowered for marker in ACCOUNT_SUSPENDED_MARKERS):
        return PermanentRemoteError(message, code=code, usage=usage, scope=PermanentRemoteError.ACCOUNT)
    if code in PERMISSION_CODES or "permission" in lowered or "not authorized" in lowered:
        return PermanentRemoteError(message, code=code, usage=usage, scope=PermanentRemoteError.ACCOUNT)
    if code in RATE_LIMIT_CODES or error.http_status == 429 or any(m in lowered for m in RATE_LIMIT_MARKERS):
        reset_at = error.retry_at
        if reset_at is None and usage is not None:
            reset_at = usage.window_reset_at
        return RateLimitedError(message, reset_at=reset_at, code=code, usage=usage)
    if code in NOT_FOUND_CODES or error.http_status == 404 or any(m in lowered for m in NOT_FOUND_MARKERS):
        return NotFoundError(message, code=code, usage=usage)
    if code in INVALID_PARAMETER_CODES or (error.http_status is not None and 400 <= error.http_status < 500):
        return PermanentRemoteError(message, code=code, usage=usage, scope=PermanentRemoteError.RESOURCE)
    if code in TRANSIENT_CODES or (error.http_status is not None and error.http_status >= 500):
        return TransientRemoteError(message, code=code, usage=usage)
    if any(marker in lowered for marker in TRANSIENT_MARKERS):
        return TransientRemoteError(message, code=code, usage=usage)
    return TransientRemoteError(message or "unknown platform error", code=code, usage=usage)


class PlatformGateway:
    """
    Adapter between the provisioner and the remote platform transport.

    Responsibilities:
    1. Resolve the bearer credential for the chosen credential id
    2. Call the transport
    3. Convert typed error responses into provisioning exceptions
    4. Hand usage metadata back to the caller for quota accounting
    """

    def __init__(self, transport: RemotePlatform, resolver: CredentialResolver):
        self.transport = transport
        self.resolver = resolver

    async def _token(self, credential_id: str) -> str:
        try:
            secret: SecretStr = await self.resolver.resolve(credential_id)
        except LookupError as e:
            raise CredentialUnavailableError(credential_id, str(e)) from e
        return secret.get_secret_value()

    @staticmethod
    def _unwrap(response: PlatformResponse[T], operation: str) -> GatewayResult[T]:
        if response.ok:
            return GatewayResult(value=response.value, usage=response.usage)
        error = response.error or PlatformError(code=None, message=f"{operation} failed without error detail")
        raise classify_platform_error(error, response.usage)

    async def create(self, credential_id: str, parent_ref: str, kind: ResourceKind,
                     spec: Dict[str, Any]) -> GatewayResult[str]:
        response = await self.transport.create(await self._token(credential_id), parent_ref, kind, spec)
        return self._unwrap(response, f"create {kind.value}")

    async def get(self, credential_id: str, remote_id: str) -> GatewayResult[RemoteResource]:
        response = await self.transport.get(await self._token(credential_id), remote_id)
        return self._unwrap(response, "get")

    async def list(self, credential_id: str, parent_ref: str) -> GatewayResult[List[RemoteResource]]:
        response = await self.transport.list(await self._token(credential_id), parent_ref)
        result = self._unwrap(response, "list")
        return GatewayResult(value=list(result.value or []), usage=result.usage)

    async def delete(self, credential_id: str, remote_id: str) -> GatewayResult[bool]:
        """Delete a resource. NotFound is reported as value=False, not raised."""
        response = await self.transport.delete(await self._token(credential_id), remote_id)
        try:
            return self._unwrap(response, "delete")
        except NotFoundError as e:
            logger.info(f"Resource {remote_id} already deleted or does not exist")
            return GatewayResult(value=False, usage=e.usage)
