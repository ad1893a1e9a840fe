"""
Quota Tracker for Meta's per-account call scoring.

Meta scores every call against an ad account (reads cost 1, writes cost 3)
over a rolling decay window, and blocks the account once the score passes
the tier's maximum. This tracker mirrors that accounting locally so calls
are delayed before the provider starts rejecting them.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Awaitable, Callable, Dict, Optional

from meta_core.errors import QuotaExceededError

logger = logging.getLogger(__name__)


class QuotaTierName(str, Enum):
    """Access tier of the Meta app."""

    DEVELOPMENT = "development"
    STANDARD = "standard"


@dataclass(frozen=True)
class QuotaTier:
    """Score ceiling and block duration for an access tier."""

    name: QuotaTierName
    max_score: int
    block_seconds: float


QUOTA_TIERS: Dict[QuotaTierName, QuotaTier] = {
    QuotaTierName.DEVELOPMENT: QuotaTier(QuotaTierName.DEVELOPMENT, max_score=60, block_seconds=300.0),
    QuotaTierName.STANDARD: QuotaTier(QuotaTierName.STANDARD, max_score=9000, block_seconds=60.0),
}

DECAY_WINDOW_SECONDS = 300.0  # 5 min


class CallCost(IntEnum):
    """Score charged per call category."""

    READ = 1
    WRITE = 3


@dataclass
class QuotaWindow:
    """Accumulated score for one scope key."""

    started_at: float
    score: int
    blocked_until: Optional[float] = None

    def is_expired(self, now: float, decay_seconds: float) -> bool:
        return now >= self.started_at + decay_seconds

    def is_blocked(self, now: float) -> bool:
        return self.blocked_until is not None and now < self.blocked_until


@dataclass
class QuotaReservation:
    """Outcome of a successful check_and_reserve call."""

    scope_key: str
    cost: int
    score: int
    waited_seconds: float = 0.0


class QuotaTracker:
    """
    Tracks usage score per scope key and gates outbound calls.

    One instance is constructed per process (or per tenant) and passed to
    the API client; there is no module-level tracker.
    """

    def __init__(
        self,
        tier: QuotaTier = QUOTA_TIERS[QuotaTierName.DEVELOPMENT],
        decay_seconds: float = DECAY_WINDOW_SECONDS,
        max_wait_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize Quota Tracker.

        Args:
            tier: Access tier limits to enforce
            decay_seconds: Length of a scoring window
            max_wait_seconds: Longest a caller may be delayed by a block
            clock: Monotonic time source in seconds
            sleep: Coroutine used to wait out a block
        """
        self.tier = tier
        self.decay_seconds = decay_seconds
        self.max_wait_seconds = max_wait_seconds
        self._clock = clock
        self._sleep = sleep
        self._windows: Dict[str, QuotaWindow] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        logger.info(
            f"QuotaTracker initialized (tier={tier.name.value}, max_score={tier.max_score}, "
            f"block={tier.block_seconds}s, decay={decay_seconds}s)"
        )

    @classmethod
    def for_tier(cls, tier_name: str, **kwargs: Any) -> "QuotaTracker":
        """
        Build a tracker for a named tier.

        Args:
            tier_name: "development" or "standard"
            **kwargs: Forwarded to the constructor

        Returns:
            Configured QuotaTracker
        """
        return cls(tier=QUOTA_TIERS[QuotaTierName(tier_name)], **kwargs)

    def _lock_for(self, scope_key: str) -> asyncio.Lock:
        lock = self._locks.get(scope_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[scope_key] = lock
        return lock

    async def check_and_reserve(self, scope_key: str, cost: int) -> QuotaReservation:
        """
        Score a call against its scope, waiting out a block if needed.

        Args:
            scope_key: Quota identity (normally an act_-prefixed account id)
            cost: Score of the call (see CallCost)

        Returns:
            Reservation describing the accepted call

        Raises:
            QuotaExceededError: If the block outlasts max_wait_seconds
        """
        waited = 0.0

        while True:
            async with self._lock_for(scope_key):
                now = self._clock()
                window = self._windows.get(scope_key)

                if window is not None and window.is_blocked(now):
                    wait = window.blocked_until - now
                else:
                    if window is None or window.is_expired(now, self.decay_seconds):
                        self._prune_expired(now, keep=scope_key)
                        window = QuotaWindow(started_at=now, score=cost)
                        self._windows[scope_key] = window
                    else:
                        window.score += cost

                    if window.score <= self.tier.max_score:
                        logger.debug(
                            f"Quota reserved for {scope_key}: cost={cost}, "
                            f"score={window.score}/{self.tier.max_score}"
                        )
                        return QuotaReservation(scope_key, cost, window.score, waited)

                    # Blocked until the window decays; the next accepted call
                    # opens a fresh window.
                    window_end = window.started_at + self.decay_seconds
                    if window_end > now:
                        window.blocked_until = window_end
                    else:
                        window.blocked_until = now + self.tier.block_seconds
                    wait = window.blocked_until - now
                    logger.warning(
                        f"Quota threshold crossed for {scope_key}: "
                        f"score={window.score} > {self.tier.max_score}, blocked for {wait:.1f}s"
                    )

            if waited + wait > self.max_wait_seconds:
                raise QuotaExceededError(
                    f"Quota for {scope_key} is blocked for another {wait:.1f}s",
                    scope_key=scope_key,
                    retry_after=wait,
                )

            logger.warning(f"Delaying call for {scope_key} by {wait:.1f}s until quota unblocks")
            await self._sleep(wait)
            waited += wait

    def get_status(self, scope_key: str) -> Dict[str, Any]:
        """
        Get quota status for a scope key.

        Args:
            scope_key: Quota identity

        Returns:
            Dictionary with score, limits and block state
        """
        now = self._clock()
        window = self._windows.get(scope_key)
        if window is None or (
            window.is_expired(now, self.decay_seconds) and not window.is_blocked(now)
        ):
            return {
                "scope_key": scope_key,
                "tier": self.tier.name.value,
                "score": 0,
                "max_score": self.tier.max_score,
                "blocked": False,
                "blocked_for_seconds": 0.0,
                "window_resets_in_seconds": 0.0,
            }

        blocked = window.is_blocked(now)
        return {
            "scope_key": scope_key,
            "tier": self.tier.name.value,
            "score": window.score,
            "max_score": self.tier.max_score,
            "blocked": blocked,
            "blocked_for_seconds": round(window.blocked_until - now, 3) if blocked else 0.0,
            "window_resets_in_seconds": round(
                max(0.0, window.started_at + self.decay_seconds - now), 3
            ),
        }

    def _prune_expired(self, now: float, keep: str) -> None:
        """Drop decayed windows (and their idle locks) of other scopes."""
        stale = [
            key for key, window in self._windows.items()
            if key != keep
            and window.is_expired(now, self.decay_seconds)
            and not window.is_blocked(now)
        ]
        for key in stale:
            del self._windows[key]
            lock = self._locks.get(key)
            if lock is not None and not lock.locked():
                del self._locks[key]

    def reset(self, scope_key: Optional[str] = None) -> None:
        """
        Clear tracked windows.

        Args:
            scope_key: Scope to clear (all scopes when None)
        """
        if scope_key is None:
            self._windows.clear()
            for key in [k for k, lock in self._locks.items() if not lock.locked()]:
                del self._locks[key]
            logger.info("Cleared all quota windows")
        else:
            self._windows.pop(scope_key, None)
            lock = self._locks.get(scope_key)
            if lock is not None and not lock.locked():
                del self._locks[scope_key]
            logger.info(f"Cleared quota window for {scope_key}")
