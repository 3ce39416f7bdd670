"""
In-memory stand-ins for the external collaborators.

FakePlatform implements the RemotePlatform transport over a dict of
resources. Failures are scripted per operation (and per kind for creates),
so scenarios such as "the 3rd group create is rate limited" or "this create
succeeds remotely but reports a timeout" can be reproduced exactly.
"""
import asyncio
import itertools
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Union

from campaign_provisioner.provisioning.models import ResourceKind
from campaign_provisioner.provisioning.platform_gateway import (
    PlatformError,
    PlatformResponse,
    RemoteResource,
    UsageMetadata,
)

ScriptedError = Union[PlatformError, Callable[[], PlatformError]]

NOT_FOUND = PlatformError(code=803, message="Object does not exist", http_status=404)
UNAVAILABLE = PlatformError(code=2, message="Service temporarily unavailable", http_status=503)
INVALID_PARAMETER = PlatformError(code=100, message="Invalid parameter", http_status=400)
ACCOUNT_SUSPENDED = PlatformError(code=None, message="Account suspended", http_status=403)


class VirtualClock:
    """Epoch clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Replacement for asyncio.sleep: records the delay and advances the clock."""

    def __init__(self, clock: VirtualClock):
        self.clock = clock
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        self.clock.advance(delay)
        await asyncio.sleep(0)


class FakePlatform:
    def __init__(self, clock: VirtualClock):
        self.clock = clock
        self.accounts: Dict[str, RemoteResource] = {}
        self.resources: Dict[str, RemoteResource] = {}
        self.calls: List[tuple] = []
        self._ids = itertools.count(1)
        self._scripted: Dict[tuple, Dict[int, ScriptedError]] = defaultdict(dict)
        self._ghosts: Dict[tuple, set] = defaultdict(set)
        self._drops: Dict[tuple, set] = defaultdict(set)
        self._op_calls: Dict[tuple, int] = defaultdict(int)
        self._usage: Dict[str, List[float]] = {}
        self.peak: Dict[ResourceKind, int] = defaultdict(int)

    # -- setup ---------------------------------------------------------

    def add_account(self, account_ref: str, status: str = "active") -> RemoteResource:
        account = RemoteResource(remote_id=account_ref, name=account_ref, status=status)
        self.accounts[account_ref] = account
        return account

    def add_resource(self, parent_ref: str, kind: ResourceKind, name: str) -> RemoteResource:
        resource = RemoteResource(
            remote_id=f"{kind.value}-{next(self._ids)}", name=name, kind=kind, parent_ref=parent_ref
        )
        self.resources[resource.remote_id] = resource
        return resource

    def fail_nth(self, op: str, n: int, error: ScriptedError, kind: Optional[ResourceKind] = None) -> None:
        """Fail the n-th call (1-based) of op, counted per kind for creates."""
        self._scripted[(op, kind)][n] = error

    def ghost_nth(self, kind: ResourceKind, n: int) -> None:
        """The n-th create of kind is committed remotely but reported as a 503."""
        self._ghosts[("create", kind)].add(n)

    def drop_nth(self, kind: ResourceKind, n: int) -> None:
        """The n-th create of kind reports success but nothing is stored."""
        self._drops[("create", kind)].add(n)

    def report_usage(self, token: str, used: int, limit: int, window_reset_at: Optional[float] = None) -> None:
        """Attach usage metadata to every response for token, counting calls from used."""
        self._usage[token] = [used, limit, window_reset_at]

    # -- inspection ----------------------------------------------------

    def children(self, parent_ref: str, kind: Optional[ResourceKind] = None) -> List[RemoteResource]:
        return [
            r for r in self.resources.values()
            if r.parent_ref == parent_ref and (kind is None or r.kind == kind)
        ]

    def count(self, kind: ResourceKind) -> int:
        return sum(1 for r in self.resources.values() if r.kind == kind)

    def calls_for(self, op: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == op]

    # -- transport -----------------------------------------------------

    def _usage_for(self, token: str) -> Optional[UsageMetadata]:
        state = self._usage.get(token)
        if state is None:
            return None
        state[0] += 1
        return UsageMetadata(used=int(state[0]), limit=int(state[1]), window_reset_at=state[2])

    def _next(self, op: str, kind: Optional[ResourceKind] = None) -> int:
        self._op_calls[(op, kind)] += 1
        return self._op_calls[(op, kind)]

    def _scripted_error(self, op: str, n: int, kind: Optional[ResourceKind] = None) -> Optional[PlatformError]:
        entry = self._scripted[(op, kind)].pop(n, None)
        if entry is None:
            return None
        return entry() if callable(entry) else entry

    async def create(self, token: str, parent_ref: str, kind: ResourceKind, spec: dict) -> PlatformResponse:
        self.calls.append(("create", token, parent_ref, kind, spec.get("name")))
        await asyncio.sleep(0)
        usage = self._usage_for(token)
        n = self._next("create", kind)
        error = self._scripted_error("create", n, kind)
        if error is not None:
            return PlatformResponse.failure(error, usage)
        if parent_ref not in self.accounts and parent_ref not in self.resources:
            return PlatformResponse.failure(NOT_FOUND, usage)

        resource = RemoteResource(
            remote_id=f"{kind.value}-{next(self._ids)}",
            name=spec.get("name", ""),
            kind=kind,
            parent_ref=parent_ref,
            attributes=dict(spec),
        )
        if n in self._drops[("create", kind)]:
            return PlatformResponse.success(resource.remote_id, usage)
        self.resources[resource.remote_id] = resource
        self.peak[kind] = max(self.peak[kind], self.count(kind))
        if n in self._ghosts[("create", kind)]:
            return PlatformResponse.failure(UNAVAILABLE, usage)
        return PlatformResponse.success(resource.remote_id, usage)

    async def get(self, token: str, remote_id: str) -> PlatformResponse:
        self.calls.append(("get", token, remote_id))
        await asyncio.sleep(0)
        usage = self._usage_for(token)
        error = self._scripted_error("get", self._next("get"))
        if error is not None:
            return PlatformResponse.failure(error, usage)
        resource = self.accounts.get(remote_id) or self.resources.get(remote_id)
        if resource is None:
            return PlatformResponse.failure(NOT_FOUND, usage)
        return PlatformResponse.success(resource, usage)

    async def list(self, token: str, parent_ref: str) -> PlatformResponse:
        self.calls.append(("list", token, parent_ref))
        await asyncio.sleep(0)
        usage = self._usage_for(token)
        error = self._scripted_error("list", self._next("list"))
        if error is not None:
            return PlatformResponse.failure(error, usage)
        return PlatformResponse.success(self.children(parent_ref), usage)

    async def delete(self, token: str, remote_id: str) -> PlatformResponse:
        self.calls.append(("delete", token, remote_id))
        await asyncio.sleep(0)
        usage = self._usage_for(token)
        error = self._scripted_error("delete", self._next("delete"))
        if error is not None:
            return PlatformResponse.failure(error, usage)
        if self.resources.pop(remote_id, None) is None:
            return PlatformResponse.failure(NOT_FOUND, usage)
        return PlatformResponse.success(True, usage)


def rate_limited(clock: VirtualClock, retry_in: float) -> Callable[[], PlatformError]:
    """Rate-limit error whose reset is computed when it fires."""
    return lambda: PlatformError(
        code=4, message="Application request limit reached", http_status=400, retry_at=clock() + retry_in
    )


ACCOUNT = "act_1001"
USER = "user-1"
CREDENTIAL_IDS = ("pool-a", "pool-b", "own-1")


def token_for(credential_id: str) -> str:
    return f"token-{credential_id}"


def parent_spec(name: str = "Spring Sale", account_ref: str = ACCOUNT) -> dict:
    return {"account_ref": account_ref, "name": name, "spec": {"objective": "traffic"}}


class RefusingResolver:
    """Wraps a resolver and refuses lookups while refuse(credential_id) holds."""

    def __init__(self, inner, refuse: Callable[[str], bool], times: Optional[int] = None):
        self.inner = inner
        self.refuse = refuse
        self.remaining = times
        self.refused: List[str] = []

    async def resolve(self, credential_id: str):
        if self.remaining != 0 and self.refuse(credential_id):
            if self.remaining is not None:
                self.remaining -= 1
            self.refused.append(credential_id)
            raise LookupError(f"No secret configured for credential {credential_id}")
        return await self.inner.resolve(credential_id)
