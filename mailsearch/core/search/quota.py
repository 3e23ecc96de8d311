"""
Quota governance for quota-limited embedding providers.

QuotaGovernor is a two-state machine (AVAILABLE -> COOLDOWN -> AVAILABLE)
driven by quota-class failures. RequestGate spaces outbound requests by a
minimum delay plus jitter; callers are slowed, never queued forever.
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from mailsearch.core.search.errors import QuotaExceeded, RateLimited

logger = logging.getLogger(__name__)

DEFAULT_BASE_COOLDOWN = 60 * 60.0
DEFAULT_COOLDOWN_GROWTH = 1.5
DEFAULT_MAX_COOLDOWN = 24 * 60 * 60.0


class QuotaStatus(str, Enum):
    AVAILABLE = "available"
    COOLDOWN = "cooldown"


@dataclass(frozen=True)
class QuotaState:
    """Snapshot of a provider's quota state (process-wide, not persisted)."""
    available: bool
    cooldown_until: Optional[float]
    cooldown_duration: float
    last_request_at: Optional[float]


class QuotaGovernor:
    """
    Per-provider availability state machine.

    The cooldown duration grows by `growth` on every quota failure (capped at
    `max_cooldown`) and drops back to `base_cooldown` on the next success.
    Entering and leaving cooldown are each logged once.
    """

    def __init__(
        self,
        name: str = "embedding",
        base_cooldown: float = DEFAULT_BASE_COOLDOWN,
        growth: float = DEFAULT_COOLDOWN_GROWTH,
        max_cooldown: float = DEFAULT_MAX_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
    ):
        if growth < 1.0:
            raise ValueError("growth must be >= 1.0")
        self.name = name
        self.base_cooldown = base_cooldown
        self.growth = growth
        self.max_cooldown = max_cooldown
        self._clock = clock

        self._status = QuotaStatus.AVAILABLE
        self._cooldown_until: Optional[float] = None
        self._cooldown_duration = min(base_cooldown, max_cooldown)
        self.last_request_at: Optional[float] = None

    @property
    def status(self) -> QuotaStatus:
        self._refresh()
        return self._status

    @property
    def cooldown_duration(self) -> float:
        """Duration the next cooldown will last."""
        return self._cooldown_duration

    def _refresh(self):
        if self._status is QuotaStatus.COOLDOWN and self._clock() >= self._cooldown_until:
            self._status = QuotaStatus.AVAILABLE
            self._cooldown_until = None
            logger.info(f"{self.name}: quota cooldown expired, requests re-enabled")

    def is_available(self) -> bool:
        return self.status is QuotaStatus.AVAILABLE

    def remaining_cooldown(self) -> float:
        if not self.is_available():
            return max(0.0, self._cooldown_until - self._clock())
        return 0.0

    def check(self):
        """Fail fast while in cooldown."""
        if not self.is_available():
            raise QuotaExceeded(
                f"{self.name}: embedding generation disabled by quota cooldown",
                retry_after=self.remaining_cooldown(),
            )

    def record_request(self):
        self.last_request_at = self._clock()

    def record_success(self):
        if self._cooldown_duration != self.base_cooldown:
            logger.debug(f"{self.name}: quota cooldown duration reset to {self.base_cooldown:.0f}s")
        self._cooldown_duration = min(self.base_cooldown, self.max_cooldown)

    def record_quota_failure(self) -> float:
        """
        Register a quota-class failure.

        Only an AVAILABLE governor enters cooldown; failures that land while
        already cooling down (in-flight requests) still grow the duration.

        Returns:
            Seconds until requests are allowed again
        """
        self._refresh()
        if self._status is QuotaStatus.AVAILABLE:
            duration = self._cooldown_duration
            self._status = QuotaStatus.COOLDOWN
            self._cooldown_until = self._clock() + duration
            logger.warning(
                f"{self.name}: quota exceeded, disabling embedding generation for {duration / 60:.0f} minutes"
            )
        self._cooldown_duration = min(self._cooldown_duration * self.growth, self.max_cooldown)
        return self.remaining_cooldown()

    def snapshot(self) -> QuotaState:
        self._refresh()
        return QuotaState(
            available=self._status is QuotaStatus.AVAILABLE,
            cooldown_until=self._cooldown_until,
            cooldown_duration=self._cooldown_duration,
            last_request_at=self.last_request_at,
        )


class RequestGate:
    """
    Minimum-delay gate for outbound requests.

    Each caller reserves the next free slot and sleeps until it plus a random
    jitter. The following slot starts min_delay after that send time. A
    caller whose slot is further out than `max_wait` gets RateLimited
    instead of waiting.
    """

    def __init__(
        self,
        min_delay: float = 1.0,
        max_jitter: float = 0.5,
        max_wait: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], "asyncio.Future"] = asyncio.sleep,
    ):
        self.min_delay = min_delay
        self.max_jitter = max_jitter
        self.max_wait = max_wait
        self._clock = clock
        self._sleep = sleep
        self._next_slot = 0.0

    async def acquire(self):
        now = self._clock()
        slot = max(now, self._next_slot)
        wait = slot - now
        if wait > self.max_wait:
            raise RateLimited(f"Request gate saturated (next slot in {wait:.1f}s)")

        jitter = random.uniform(0, self.max_jitter) if self.max_jitter > 0 else 0.0
        # Spacing is measured from when this request actually goes out
        self._next_slot = slot + jitter + self.min_delay
        if wait + jitter > 0:
            await self._sleep(wait + jitter)

    def push_back(self, delay: float):
        """Delay every future slot by at least `delay` seconds from now."""
        self._next_slot = max(self._next_slot, self._clock() + delay)
