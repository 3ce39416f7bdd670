"""
Request Router

Chooses which credential an outbound call should use, or decides that the
call has to wait. route() is a pure function over a usage snapshot so the
policy can be tested without any I/O; RequestRouter binds it to the live
tracker and credential profiles.
"""
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence

from .rate_limit_tracker import CredentialUsage, RateLimitTracker


@dataclass(frozen=True)
class CredentialProfile:
    """Routing-relevant facts about one identity."""
    credential_id: str
    owner_user_id: Optional[str] = None
    whitelisted: bool = False
    eligible_accounts: FrozenSet[str] = frozenset()
    active: bool = True

    def serves(self, account_ref: str) -> bool:
        return not self.eligible_accounts or account_ref in self.eligible_accounts


@dataclass(frozen=True)
class RouteContext:
    """Per-job routing state."""
    user_id: str
    current_credential_id: Optional[str] = None
    excluded: FrozenSet[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class RouteDecision:
    proceed: bool
    credential_id: Optional[str] = None
    requeue_after: Optional[float] = None
    reason: str = ""


def _candidates(account_ref: str, context: RouteContext,
                credentials: Iterable[CredentialProfile]) -> tuple:
    pool: List[CredentialProfile] = []
    own: List[CredentialProfile] = []
    for profile in credentials:
        if not profile.active or profile.credential_id in context.excluded:
            continue
        if profile.whitelisted and profile.serves(account_ref):
            pool.append(profile)
        elif profile.owner_user_id == context.user_id and profile.serves(account_ref):
            own.append(profile)
    return pool, own


def _pick(profiles: Sequence[CredentialProfile], usage: Dict[str, CredentialUsage],
          context: RouteContext, soft: float, hard: float) -> Optional[str]:
    usable = [p for p in profiles if usage[p.credential_id].ratio < hard]
    if not usable:
        return None

    current = context.current_credential_id
    if current is not None:
        for p in usable:
            if p.credential_id == current and usage[current].ratio < soft:
                return current

    # Least loaded first: under-soft before over-soft, then most calls remaining
    ranked = sorted(
        usable,
        key=lambda p: (
            usage[p.credential_id].ratio >= soft,
            -usage[p.credential_id].available,
            p.credential_id,
        ),
    )
    return ranked[0].credential_id


def route(
    account_ref: str,
    context: RouteContext,
    credentials: Iterable[CredentialProfile],
    usage: Dict[str, CredentialUsage],
    soft_threshold: float,
    hard_threshold: float,
    now: float,
    default_limit: int = 200,
) -> RouteDecision:
    """
    Decide which credential to use for a call against account_ref.

    Policy:
        1. Whitelisted pool identities eligible for the account, least loaded
           first. The job's current credential is kept while it is under the
           soft threshold.
        2. Otherwise the caller's own identities, same ordering.
        3. If everything eligible is at or above the hard threshold, do not
           proceed and report the earliest reset ETA.
    """
    pool, own = _candidates(account_ref, context, credentials)
    considered = pool + own
    if not considered:
        return RouteDecision(proceed=False, reason=f"no credential eligible for account {account_ref}")

    snapshot = {
        p.credential_id: usage.get(p.credential_id) or CredentialUsage(
            credential_id=p.credential_id, used=0, limit=default_limit, window_reset_at=None, observed=False
        )
        for p in considered
    }

    for group, label in ((pool, "pool"), (own, "own")):
        chosen = _pick(group, snapshot, context, soft_threshold, hard_threshold)
        if chosen is not None:
            return RouteDecision(proceed=True, credential_id=chosen, reason=label)

    resets = [u.window_reset_at for u in snapshot.values() if u.window_reset_at is not None]
    requeue_after = max(0.0, min(resets) - now) if resets else None
    return RouteDecision(
        proceed=False,
        requeue_after=requeue_after,
        reason="all eligible credentials exhausted",
    )


class RequestRouter:
    """Binds route() to the live tracker and the loaded credential profiles."""

    def __init__(self, tracker: RateLimitTracker, profiles: Optional[Iterable[CredentialProfile]] = None):
        self.tracker = tracker
        self._profiles: Dict[str, CredentialProfile] = {}
        for profile in profiles or ():
            self.add_profile(profile)

    def add_profile(self, profile: CredentialProfile) -> None:
        self._profiles[profile.credential_id] = profile

    def remove_profile(self, credential_id: str) -> None:
        self._profiles.pop(credential_id, None)

    @property
    def profiles(self) -> List[CredentialProfile]:
        return list(self._profiles.values())

    def has_candidates(self, account_ref: str, context: RouteContext) -> bool:
        """True if any active, non-excluded credential may serve account_ref, exhausted or not."""
        pool, own = _candidates(account_ref, context, self._profiles.values())
        return bool(pool or own)

    def route(self, account_ref: str, context: RouteContext) -> RouteDecision:
        ids = list(self._profiles)
        return route(
            account_ref,
            context,
            self._profiles.values(),
            self.tracker.snapshot(ids),
            soft_threshold=self.tracker.soft_threshold,
            hard_threshold=self.tracker.hard_threshold,
            now=self.tracker.clock(),
            default_limit=self.tracker.default_limit,
        )
