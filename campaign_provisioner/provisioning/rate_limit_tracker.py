"""
Rate Limit Tracker

Process-wide view of per-credential call usage and quota windows.

All mutation goes through record_usage (and the helpers built on it). State
is kept as immutable CredentialUsage snapshots that are replaced with a
compare-and-swap, so concurrent callers never see a half-updated window and
out-of-order responses cannot roll usage backwards.
"""
import asyncio
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CredentialUsage:
    """Usage snapshot for one credential's current quota window."""
    credential_id: str
    used: int
    limit: int
    window_reset_at: Optional[float]
    observed: bool = True

    @property
    def ratio(self) -> float:
        if self.limit <= 0:
            return 1.0
        return min(1.0, self.used / self.limit)

    @property
    def available(self) -> int:
        return max(0, self.limit - self.used)


class RateLimitTracker:
    """
    Tracks per-identity call usage and reset windows.

    Identities that were never observed are reported optimistically: full
    default limit available, zero usage.
    """

    def __init__(
        self,
        default_limit: int = 200,
        soft_threshold: float = 0.80,
        hard_threshold: float = 0.95,
        window_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ):
        if not 0 < soft_threshold <= hard_threshold <= 1:
            raise ValueError("thresholds must satisfy 0 < soft <= hard <= 1")
        self.default_limit = default_limit
        self.soft_threshold = soft_threshold
        self.hard_threshold = hard_threshold
        self.window_seconds = window_seconds
        self.clock = clock
        self._states: Dict[str, CredentialUsage] = {}
        self._cas_lock = threading.Lock()

    def _compare_and_swap(self, credential_id: str, expected: Optional[CredentialUsage], new: CredentialUsage) -> bool:
        with self._cas_lock:
            if self._states.get(credential_id) is not expected:
                return False
            self._states[credential_id] = new
            return True

    def _update(self, credential_id: str, compute: Callable[[Optional[CredentialUsage]], Optional[CredentialUsage]]) -> bool:
        """Retry compute+swap until it wins. Returns False if compute declined the update."""
        while True:
            current = self._states.get(credential_id)
            new = compute(current)
            if new is None:
                return False
            if self._compare_and_swap(credential_id, current, new):
                return True

    def register(self, credential_id: str, limit: Optional[int] = None,
                 used: int = 0, window_reset_at: Optional[float] = None) -> None:
        """Seed a credential (e.g. from a persisted record). Existing newer state wins."""
        self.record_usage(
            credential_id,
            used=used,
            limit=limit or self.default_limit,
            window_reset_at=window_reset_at,
            observed=used > 0 or window_reset_at is not None,
        )

    def record_usage(self, credential_id: str, used: int, limit: int,
                     window_reset_at: Optional[float], observed: bool = True) -> bool:
        """
        Apply usage metadata observed on a response.

        Args:
            credential_id: Identity the call was made with
            used: Calls used in the window
            limit: Calls allowed in the window
            window_reset_at: Epoch seconds when the window resets

        Returns:
            True if the snapshot changed, False if the update was stale
        """
        incoming = CredentialUsage(
            credential_id=credential_id,
            used=max(0, int(used)),
            limit=max(1, int(limit)),
            window_reset_at=window_reset_at,
            observed=observed,
        )

        def compute(current: Optional[CredentialUsage]) -> Optional[CredentialUsage]:
            if current is None or current.window_reset_at is None:
                return incoming
            if incoming.window_reset_at is None:
                # No window information: same window as the stored one
                return replace(current, used=max(current.used, incoming.used), limit=incoming.limit, observed=True)
            if incoming.window_reset_at < current.window_reset_at:
                return None
            if incoming.window_reset_at > current.window_reset_at:
                return incoming
            if incoming.used <= current.used and incoming.limit == current.limit:
                return None
            return replace(current, used=max(current.used, incoming.used), limit=incoming.limit, observed=True)

        applied = self._update(credential_id, compute)
        if applied:
            logger.debug(
                f"Usage for credential {credential_id}: {incoming.used}/{incoming.limit} "
                f"(resets at {window_reset_at})"
            )
        return applied

    def mark_exhausted(self, credential_id: str, reset_at: Optional[float] = None) -> None:
        """
        Record a rate-limited response: the window is full until reset_at.

        The platform's own verdict overrides whatever window was estimated
        locally, including a later one.
        """
        if reset_at is None:
            reset_at = self.get_usage(credential_id).window_reset_at or (self.clock() + self.window_seconds)

        def compute(current: Optional[CredentialUsage]) -> CredentialUsage:
            limit = current.limit if current is not None else self.default_limit
            return CredentialUsage(credential_id=credential_id, used=limit, limit=limit, window_reset_at=reset_at)

        self._update(credential_id, compute)
        logger.warning(f"Credential {credential_id} rate limited until {reset_at}")

    def record_call(self, credential_id: str) -> None:
        """Count one call made without usage metadata on the response."""
        def compute(current: Optional[CredentialUsage]) -> CredentialUsage:
            now = self.clock()
            if current is None:
                return CredentialUsage(
                    credential_id=credential_id,
                    used=1,
                    limit=self.default_limit,
                    window_reset_at=now + self.window_seconds,
                )
            if current.window_reset_at is None:
                return replace(current, used=current.used + 1, window_reset_at=now + self.window_seconds)
            if current.window_reset_at <= now:
                return replace(current, used=1, window_reset_at=now + self.window_seconds)
            return replace(current, used=current.used + 1)

        self._update(credential_id, compute)

    def get_usage(self, credential_id: str) -> CredentialUsage:
        state = self._states.get(credential_id)
        if state is None:
            return CredentialUsage(
                credential_id=credential_id,
                used=0,
                limit=self.default_limit,
                window_reset_at=None,
                observed=False,
            )
        if state.window_reset_at is not None and state.window_reset_at <= self.clock():
            return replace(state, used=0, window_reset_at=None)
        return state

    def get_available(self, credential_id: str) -> int:
        """Remaining calls in the current window."""
        return self.get_usage(credential_id).available

    def usage_ratio(self, credential_id: str) -> float:
        return self.get_usage(credential_id).ratio

    def is_exhausted(self, credential_id: str) -> bool:
        return self.usage_ratio(credential_id) >= self.hard_threshold

    def is_soft_limited(self, credential_id: str) -> bool:
        return self.usage_ratio(credential_id) >= self.soft_threshold

    def snapshot(self, credential_ids: Optional[List[str]] = None) -> Dict[str, CredentialUsage]:
        """Consistent per-credential view used by the request router."""
        ids = credential_ids if credential_ids is not None else list(self._states)
        return {cid: self.get_usage(cid) for cid in ids}

    def tick(self) -> List[str]:
        """Reset every window whose reset time has passed. Returns the ids reset."""
        now = self.clock()
        reset: List[str] = []
        for credential_id in list(self._states):
            def compute(current: Optional[CredentialUsage]) -> Optional[CredentialUsage]:
                if current is None or current.window_reset_at is None or current.window_reset_at > now:
                    return None
                return replace(current, used=0, window_reset_at=None)

            if self._update(credential_id, compute):
                reset.append(credential_id)
        if reset:
            logger.info(f"Reset quota windows for {len(reset)} credentials")
        return reset

    async def run_ticker(self, interval: float, stop_event: asyncio.Event,
                         on_tick: Optional[Callable[[], "asyncio.Future"]] = None) -> None:
        """Periodic tick until stop_event is set. on_tick runs after every tick."""
        while not stop_event.is_set():
            self.tick()
            if on_tick is not None:
                try:
                    await on_tick()
                except Exception as e:
                    logger.error(f"Ticker callback failed: {e}")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
