"""
Retry Executor

Runs one remote call with credential routing, failure classification and
bounded backoff. This is the only place in the provisioner that retries a
remote call.
"""
import asyncio
import logging
import random
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, FrozenSet, Optional

from .errors import (
    BudgetExhaustedError,
    CredentialUnavailableError,
    PermanentRemoteError,
    RateLimitedError,
    RequestDeferredError,
    TransientRemoteError,
)
from .rate_limit_tracker import RateLimitTracker
from .request_router import RequestRouter, RouteContext

logger = logging.getLogger(__name__)

PERMANENT = "permanent"
CREDENTIAL_UNAVAILABLE = "credential_unavailable"
RATE_LIMITED = "rate_limited"
TRANSIENT = "transient"
UNKNOWN = "unknown"


@dataclass(frozen=True)
class RetryPolicy:
    retry_budget: int = 5
    base_delay: float = 1.0
    max_delay: float = 16.0
    jitter: float = 0.1
    rate_limit_wait_cap: float = 300.0
    max_rate_limit_waits: int = 10


@dataclass(frozen=True)
class CallScope:
    """Where a call is routed: the target account and the owning job's routing context."""
    account_ref: str
    context: RouteContext


@dataclass(frozen=True)
class CallOutcome:
    """Result of a successful execute(): the value and the credential that produced it."""
    value: Any
    credential_id: str
    attempts: int
    excluded: FrozenSet[str] = frozenset()


def backoff_delay(attempt: int, policy: RetryPolicy, rng: Optional[random.Random] = None) -> float:
    """
    Delay before retry number attempt+1.

    delay(n) = min(max_delay, base_delay * 2^n), spread by +/- jitter.
    """
    delay = min(policy.max_delay, policy.base_delay * (2 ** attempt))
    if policy.jitter and rng is not None:
        delay += delay * policy.jitter * rng.uniform(-1.0, 1.0)
    return max(0.0, delay)


def classify_error(error: BaseException) -> str:
    if isinstance(error, CredentialUnavailableError):
        return CREDENTIAL_UNAVAILABLE
    if isinstance(error, PermanentRemoteError):
        return PERMANENT
    if isinstance(error, RateLimitedError):
        return RATE_LIMITED
    if isinstance(error, (TransientRemoteError, OSError, asyncio.TimeoutError)):
        return TRANSIENT
    return UNKNOWN


class RetryExecutor:
    """
    Executes remote calls under a RetryPolicy.

    - Permanent failures propagate immediately.
    - A credential whose secret cannot be resolved is excluded for the rest
      of the call and the call is re-routed. With no other credential left
      the failure propagates as a permanent account-level error.
    - RateLimited failures mark the credential exhausted and re-route. If no
      alternate credential exists the call sleeps until the reset when that is
      within rate_limit_wait_cap, otherwise RequestDeferredError is raised.
      These never consume retry budget.
    - Transient failures back off exponentially and consume one budget unit
      each; BudgetExhaustedError is raised after retry_budget attempts.
    - Anything else propagates unchanged.
    """

    def __init__(
        self,
        tracker: RateLimitTracker,
        router: RequestRouter,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.tracker = tracker
        self.router = router
        self.policy = policy or RetryPolicy()
        self.sleep = sleep
        self.rng = rng or random.Random()

    async def call(self, call_fn: Callable[[str], Awaitable[Any]], scope: CallScope,
                   operation: str = "remote_call") -> CallOutcome:
        """execute() with the executor's default policy."""
        return await self.execute(call_fn, self.policy, scope.account_ref, scope.context, operation)

    def _record(self, credential_id: str, usage) -> None:
        if usage is not None:
            self.tracker.record_usage(
                credential_id,
                used=usage.used,
                limit=usage.limit,
                window_reset_at=usage.window_reset_at,
            )
        else:
            self.tracker.record_call(credential_id)

    async def execute(
        self,
        call_fn: Callable[[str], Awaitable[Any]],
        policy: RetryPolicy,
        account_ref: str,
        context: RouteContext,
        operation: str = "remote_call",
    ) -> CallOutcome:
        """
        Run call_fn(credential_id) until it succeeds or a terminal condition is hit.

        Args:
            call_fn: Coroutine function taking the credential id to use
            policy: Retry policy
            account_ref: Remote account the call targets (routing eligibility)
            context: Routing context of the owning job
            operation: Label for logs and errors

        Returns:
            CallOutcome with the call's return value and the credentials
            excluded along the way
        """
        budget_used = 0
        rate_waits = 0
        current = context.current_credential_id
        excluded = frozenset(context.excluded)

        while True:
            attempt_context = replace(context, current_credential_id=current, excluded=excluded)
            decision = self.router.route(account_ref, attempt_context)
            if not decision.proceed:
                wait = decision.requeue_after
                if wait is None or wait > policy.rate_limit_wait_cap or rate_waits >= policy.max_rate_limit_waits:
                    logger.warning(f"{operation} deferred for account {account_ref}: {decision.reason}")
                    raise RequestDeferredError(
                        wait if wait is not None else policy.rate_limit_wait_cap,
                        decision.reason,
                    )
                rate_waits += 1
                logger.info(f"{operation} waiting {wait:.1f}s for a credential window to reset")
                await self.sleep(wait)
                continue

            credential_id = decision.credential_id
            try:
                result = await call_fn(credential_id)
            except Exception as e:
                kind = classify_error(e)
                if kind == UNKNOWN:
                    raise

                if kind == CREDENTIAL_UNAVAILABLE:
                    excluded = excluded | {credential_id}
                    if not self.router.has_candidates(account_ref, replace(attempt_context, excluded=excluded)):
                        logger.error(f"{operation}: no usable credential left for account {account_ref}: {e}")
                        raise
                    logger.warning(f"{operation}: credential {credential_id} unavailable, re-routing: {e}")
                    current = None
                    continue

                self._record(credential_id, getattr(e, "usage", None))
                if kind == PERMANENT:
                    logger.error(f"{operation} failed permanently with credential {credential_id}: {e}")
                    raise

                if kind == RATE_LIMITED:
                    self.tracker.mark_exhausted(credential_id, e.reset_at)
                    rate_waits += 1
                    if rate_waits > policy.max_rate_limit_waits:
                        raise RequestDeferredError(
                            policy.rate_limit_wait_cap, f"{operation} kept hitting rate limits"
                        ) from e
                    current = None
                    continue

                budget_used += 1
                if budget_used >= policy.retry_budget:
                    logger.error(f"{operation} exhausted retry budget after {budget_used} attempts: {e}")
                    raise BudgetExhaustedError(budget_used, e, operation) from e
                delay = backoff_delay(budget_used - 1, policy, self.rng)
                logger.warning(
                    f"{operation} transient failure (attempt {budget_used}/{policy.retry_budget}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                await self.sleep(delay)
                current = credential_id
                continue

            self._record(credential_id, getattr(result, "usage", None))
            return CallOutcome(
                value=result, credential_id=credential_id, attempts=budget_used + 1, excluded=excluded,
            )
