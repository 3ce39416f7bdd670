"""Tests for credential routing."""
from campaign_provisioner.provisioning.rate_limit_tracker import CredentialUsage
from campaign_provisioner.provisioning.request_router import (
    CredentialProfile,
    RequestRouter,
    RouteContext,
    route,
)

NOW = 1_700_000_000.0
POOL_A = CredentialProfile(credential_id="pool-a", whitelisted=True)
POOL_B = CredentialProfile(credential_id="pool-b", whitelisted=True)
OWN = CredentialProfile(credential_id="own-1", owner_user_id="user-1")


def usage(credential_id, used, limit=200, reset_in=600.0):
    return CredentialUsage(credential_id=credential_id, used=used, limit=limit, window_reset_at=NOW + reset_in)


def decide(credentials, snapshot, context=None, account="act_1001"):
    return route(
        account,
        context or RouteContext(user_id="user-1"),
        credentials,
        snapshot,
        soft_threshold=0.80,
        hard_threshold=0.95,
        now=NOW,
    )


class TestPureRoute:
    def test_least_loaded_pool_credential_wins(self):
        """A at 95% and B at 10%: B is chosen."""
        decision = decide([POOL_A, POOL_B], {"pool-a": usage("pool-a", 190), "pool-b": usage("pool-b", 20)})
        assert decision.proceed
        assert decision.credential_id == "pool-b"

    def test_current_credential_kept_under_soft_threshold(self):
        snapshot = {"pool-a": usage("pool-a", 100), "pool-b": usage("pool-b", 0)}
        decision = decide([POOL_A, POOL_B], snapshot, RouteContext(user_id="user-1", current_credential_id="pool-a"))
        assert decision.credential_id == "pool-a"

    def test_rotates_once_soft_threshold_crossed(self):
        snapshot = {"pool-a": usage("pool-a", 170), "pool-b": usage("pool-b", 100)}
        decision = decide([POOL_A, POOL_B], snapshot, RouteContext(user_id="user-1", current_credential_id="pool-a"))
        assert decision.credential_id == "pool-b"

    def test_pool_preferred_over_own_credential(self):
        decision = decide([OWN, POOL_A], {"own-1": usage("own-1", 0), "pool-a": usage("pool-a", 150)})
        assert decision.credential_id == "pool-a"
        assert decision.reason == "pool"

    def test_falls_back_to_own_credential(self):
        decision = decide([OWN, POOL_A], {"own-1": usage("own-1", 0), "pool-a": usage("pool-a", 199)})
        assert decision.credential_id == "own-1"
        assert decision.reason == "own"

    def test_other_users_credentials_are_not_eligible(self):
        other = CredentialProfile(credential_id="own-2", owner_user_id="user-2")
        decision = decide([other], {"own-2": usage("own-2", 0)})
        assert not decision.proceed
        assert decision.requeue_after is None

    def test_account_eligibility(self):
        scoped = CredentialProfile(credential_id="pool-c", whitelisted=True, eligible_accounts=frozenset({"act_9"}))
        decision = decide([scoped, POOL_B], {"pool-c": usage("pool-c", 0), "pool-b": usage("pool-b", 150)})
        assert decision.credential_id == "pool-b"

    def test_all_exhausted_reports_earliest_reset(self):
        snapshot = {"pool-a": usage("pool-a", 200, reset_in=120), "pool-b": usage("pool-b", 195, reset_in=45)}
        decision = decide([POOL_A, POOL_B], snapshot)
        assert not decision.proceed
        assert decision.requeue_after == 45

    def test_unobserved_credentials_are_treated_as_free(self):
        decision = decide([POOL_A], {})
        assert decision.proceed
        assert decision.credential_id == "pool-a"

    def test_excluded_credentials_are_skipped(self):
        context = RouteContext(user_id="user-1", excluded=frozenset({"pool-a"}))
        decision = decide([POOL_A, POOL_B], {}, context)
        assert decision.credential_id == "pool-b"


class TestRequestRouter:
    def test_routes_from_live_tracker(self, tracker, clock):
        router = RequestRouter(tracker, [POOL_A, POOL_B])
        tracker.record_usage("pool-a", used=190, limit=200, window_reset_at=clock() + 600)
        tracker.record_usage("pool-b", used=20, limit=200, window_reset_at=clock() + 600)
        assert router.route("act_1001", RouteContext(user_id="user-1")).credential_id == "pool-b"

    def test_removed_profile_is_not_routed(self, tracker):
        router = RequestRouter(tracker, [POOL_A, POOL_B])
        router.remove_profile("pool-a")
        assert [p.credential_id for p in router.profiles] == ["pool-b"]
        assert router.route("act_1001", RouteContext(user_id="user-1")).credential_id == "pool-b"

    def test_has_candidates_ignores_exhaustion_but_not_exclusion(self, tracker, clock):
        router = RequestRouter(tracker, [POOL_A, POOL_B])
        tracker.mark_exhausted("pool-a", clock() + 600)
        assert router.has_candidates("act_1001", RouteContext(user_id="user-1"))
        assert router.has_candidates("act_1001", RouteContext(user_id="user-1", excluded=frozenset({"pool-a"})))
        assert not router.has_candidates(
            "act_1001", RouteContext(user_id="user-1", excluded=frozenset({"pool-a", "pool-b"}))
        )

    def test_has_candidates_counts_own_credentials(self, tracker):
        router = RequestRouter(tracker, [OWN])
        assert router.has_candidates("act_1001", RouteContext(user_id="user-1"))
        assert not router.has_candidates("act_1001", RouteContext(user_id="user-2"))
