"""Tests for the single retrying call path."""
import random

import pytest

from campaign_provisioner.provisioning.errors import (
    BudgetExhaustedError,
    CredentialUnavailableError,
    PermanentRemoteError,
    RateLimitedError,
    RequestDeferredError,
    TransientRemoteError,
)
from campaign_provisioner.provisioning.request_router import CredentialProfile, RouteContext
from campaign_provisioner.provisioning.retry_executor import (
    CREDENTIAL_UNAVAILABLE,
    PERMANENT,
    RATE_LIMITED,
    TRANSIENT,
    UNKNOWN,
    CallScope,
    RetryExecutor,
    RetryPolicy,
    backoff_delay,
    classify_error,
)
from campaign_provisioner.provisioning.platform_gateway import GatewayResult, UsageMetadata


class Script:
    """call_fn that replays a list of outcomes (exceptions are raised)."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.credentials = []

    async def __call__(self, credential_id):
        self.credentials.append(credential_id)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class TestBackoff:
    def test_delay_doubles_up_to_max(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=16.0, jitter=0.0)
        assert [backoff_delay(n, policy) for n in range(6)] == [1, 2, 4, 8, 16, 16]

    def test_jitter_stays_within_bounds(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=16.0, jitter=0.1)
        rng = random.Random(7)
        for _ in range(50):
            assert 3.6 <= backoff_delay(2, policy, rng) <= 4.4

    def test_classification(self):
        assert classify_error(PermanentRemoteError("x")) == PERMANENT
        assert classify_error(RateLimitedError("x")) == RATE_LIMITED
        assert classify_error(TransientRemoteError("x")) == TRANSIENT
        assert classify_error(ConnectionResetError()) == TRANSIENT
        assert classify_error(CredentialUnavailableError("pool-a", "no secret")) == CREDENTIAL_UNAVAILABLE
        assert classify_error(KeyError("x")) == UNKNOWN


class TestExecute:
    async def test_success_first_try(self, executor, scope):
        outcome = await executor.call(Script("ok"), scope, operation="get account")
        assert outcome.value == "ok"
        assert outcome.credential_id == "pool-a"
        assert outcome.attempts == 1

    async def test_budget_exhausted_after_exactly_budget_attempts(self, executor, scope, sleep):
        """Always-transient call: 5 attempts, delays 1, 2, 4, 8."""
        call = Script(TransientRemoteError("502 bad gateway"))
        with pytest.raises(BudgetExhaustedError) as exc_info:
            await executor.call(call, scope, operation="create group")
        assert len(call.credentials) == 5
        assert exc_info.value.attempts == 5
        assert sleep.delays == [1, 2, 4, 8]

    async def test_transient_then_success(self, executor, scope, sleep):
        call = Script(TransientRemoteError("timeout"), OSError("reset"), "ok")
        outcome = await executor.call(call, scope)
        assert outcome.value == "ok"
        assert outcome.attempts == 3
        assert sleep.delays == [1, 2]

    async def test_permanent_error_is_not_retried(self, executor, scope, sleep):
        call = Script(PermanentRemoteError("invalid parameter"))
        with pytest.raises(PermanentRemoteError):
            await executor.call(call, scope)
        assert len(call.credentials) == 1
        assert sleep.delays == []

    async def test_unknown_error_propagates_unchanged(self, executor, scope):
        with pytest.raises(KeyError):
            await executor.call(Script(KeyError("boom")), scope)

    async def test_rate_limit_waits_for_reset_without_budget(self, executor, scope, sleep, clock, tracker):
        call = Script(RateLimitedError("limit", reset_at=clock() + 2), "ok")
        outcome = await executor.call(call, scope)
        assert outcome.value == "ok"
        assert sleep.delays == [2]
        assert outcome.attempts == 1
        assert not tracker.is_exhausted("pool-a")

    async def test_rate_limit_rotates_to_alternate_credential(self, executor, scope, router, clock, sleep):
        router.add_profile(CredentialProfile(credential_id="pool-b", whitelisted=True))
        call = Script(RateLimitedError("limit", reset_at=clock() + 600), "ok")
        outcome = await executor.call(call, scope)
        assert call.credentials[0] != call.credentials[1]
        assert outcome.credential_id == call.credentials[1]
        assert sleep.delays == []

    async def test_long_rate_limit_defers(self, executor, scope, clock):
        call = Script(RateLimitedError("limit", reset_at=clock() + 1000))
        with pytest.raises(RequestDeferredError) as exc_info:
            await executor.call(call, scope)
        assert exc_info.value.requeue_after == pytest.approx(1000)

    async def test_usage_metadata_feeds_tracker(self, executor, scope, tracker, clock):
        usage = UsageMetadata(used=120, limit=200, window_reset_at=clock() + 900)
        await executor.call(Script(GatewayResult(value="g-1", usage=usage)), scope)
        assert tracker.get_usage("pool-a").used == 120

    async def test_usage_on_failure_feeds_tracker(self, executor, scope, tracker, clock):
        usage = UsageMetadata(used=42, limit=200, window_reset_at=clock() + 900)
        with pytest.raises(PermanentRemoteError):
            await executor.call(Script(PermanentRemoteError("rejected", usage=usage)), scope)
        assert tracker.get_usage("pool-a").used == 42


class TestCredentialUnavailable:
    async def test_reroutes_and_reports_exclusion(self, executor, scope, router, sleep):
        router.add_profile(CredentialProfile(credential_id="pool-b", whitelisted=True))
        call = Script(CredentialUnavailableError("pool-a", "no secret"), "ok")

        outcome = await executor.call(call, scope)

        assert call.credentials == ["pool-a", "pool-b"]
        assert outcome.credential_id == "pool-b"
        assert outcome.excluded == frozenset({"pool-a"})
        assert outcome.attempts == 1
        assert sleep.delays == []

    async def test_no_alternative_propagates(self, executor, scope, sleep):
        call = Script(CredentialUnavailableError("pool-a", "no secret"))
        with pytest.raises(CredentialUnavailableError) as exc_info:
            await executor.call(call, scope)
        assert exc_info.value.is_account_level
        assert len(call.credentials) == 1
        assert sleep.delays == []

    async def test_context_exclusions_are_respected(self, executor, router):
        router.add_profile(CredentialProfile(credential_id="pool-b", whitelisted=True))
        scope = CallScope(
            account_ref="act_1001",
            context=RouteContext(user_id="user-1", current_credential_id="pool-a", excluded=frozenset({"pool-a"})),
        )
        call = Script("ok")

        outcome = await executor.call(call, scope)

        assert call.credentials == ["pool-b"]
        assert outcome.excluded == frozenset({"pool-a"})


class TestRateLimitWaits:
    async def test_wait_count_is_bounded(self, tracker, router, sleep, clock):
        executor = RetryExecutor(tracker, router, RetryPolicy(jitter=0.0, max_rate_limit_waits=2), sleep=sleep)
        scope = CallScope(account_ref="act_1001", context=RouteContext(user_id="user-1"))
        call = Script(RateLimitedError("limit", reset_at=clock() + 1))

        with pytest.raises(RequestDeferredError):
            await executor.call(call, scope)
        assert len(call.credentials) <= 3
        assert len(sleep.delays) <= 2
