"""
Quota tracking for Arbiter.

Keeps a rolling usage window per backend against a tiered unit limit.
Windows roll over lazily, the first time a backend is touched after its
window has ended. Check-and-increment happens under one lock per backend,
so concurrent dispatches against different backends never contend.
"""

import time
from dataclasses import dataclass, replace
from threading import Lock
from typing import Callable, Optional

from arbiter.registry import UnknownBackendError
from arbiter.schemas import ArbiterError, QuotaWindow
from arbiter.validation import ValidationError


@dataclass(frozen=True)
class QuotaTier:
    """A named usage allocation (e.g. free vs paid)."""
    name: str
    limit: int
    window_seconds: float


@dataclass(frozen=True)
class QuotaReservation:
    """Units admitted for an in-flight dispatch, not yet consumed."""
    backend_id: str
    units: int
    generation: int


class QuotaExceededError(ArbiterError):
    """Raised when a backend has no quota left in its current window."""
    def __init__(self, backend_id: str, consumed: int, limit: int, requested: int = 0):
        self.backend_id = backend_id
        self.consumed = consumed
        self.limit = limit
        self.requested = requested
        super().__init__(
            f"Quota exceeded for backend '{backend_id}': "
            f"{consumed}/{limit} units used, {requested} requested"
        )


class QuotaTracker:
    """
    Per-backend quota windows.

    Example:
        ```python
        tracker = QuotaTracker({"free": QuotaTier("free", 10, 3600)})
        tracker.open_window("mgrep", "free")

        reservation = tracker.reserve("mgrep")
        try:
            run_search()
        except Exception:
            tracker.release(reservation)
            raise
        tracker.commit(reservation)
        ```
    """

    def __init__(
        self,
        tiers: dict[str, QuotaTier],
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize the tracker.

        Args:
            tiers: Tier name -> tier definition.
            clock: Returns the current time in seconds. Defaults to time.time.
        """
        self._tiers = dict(tiers)
        self._clock = clock or time.time

        self._windows: dict[str, QuotaWindow] = {}
        self._tier_of: dict[str, str] = {}
        self._pending_tier: dict[str, str] = {}
        self._generation: dict[str, int] = {}

        # One lock per backend; _locks_guard only protects the lock table
        self._locks: dict[str, Lock] = {}
        self._locks_guard = Lock()

    # =========================================================================
    # Window lifecycle
    # =========================================================================

    def open_window(self, backend_id: str, tier_name: str) -> QuotaWindow:
        """Create the first window for a newly registered backend."""
        tier = self._get_tier(tier_name)
        now = self._clock()
        window = QuotaWindow(
            backend_id=backend_id,
            window_start=now,
            window_end=now + tier.window_seconds,
            consumed=0,
            limit=tier.limit,
        )
        with self._locks_guard:
            if backend_id in self._locks:
                raise ValueError(f"Quota window for '{backend_id}' already open")
            self._windows[backend_id] = window
            self._tier_of[backend_id] = tier.name
            self._generation[backend_id] = 0
            self._locks[backend_id] = Lock()
        return replace(window)

    def set_tier(self, backend_id: str, tier_name: str) -> None:
        """
        Stage a tier change. It takes effect at the next rollover, never
        mid-window.
        """
        self._get_tier(tier_name)
        with self._lock_for(backend_id):
            if tier_name == self._tier_of[backend_id]:
                self._pending_tier.pop(backend_id, None)
            else:
                self._pending_tier[backend_id] = tier_name

    def tier_of(self, backend_id: str) -> str:
        """Tier currently in force for a backend."""
        with self._lock_for(backend_id):
            self._roll_over(backend_id)
            return self._tier_of[backend_id]

    def _roll_over(self, backend_id: str) -> None:
        """Advance the window if it has ended. Caller holds the backend lock."""
        window = self._windows[backend_id]
        now = self._clock()
        if now < window.window_end:
            return

        pending = self._pending_tier.pop(backend_id, None)
        if pending is not None:
            self._tier_of[backend_id] = pending
        tier = self._tiers[self._tier_of[backend_id]]

        start = window.window_end
        if now >= start + tier.window_seconds:
            # Skip whole windows nobody touched
            skipped = int((now - start) // tier.window_seconds)
            start += skipped * tier.window_seconds

        self._windows[backend_id] = QuotaWindow(
            backend_id=backend_id,
            window_start=start,
            window_end=start + tier.window_seconds,
            consumed=0,
            limit=tier.limit,
        )
        self._generation[backend_id] += 1

    # =========================================================================
    # Admission
    # =========================================================================

    def check_admissible(self, backend_id: str) -> bool:
        """True if the backend has at least one unit left in its window."""
        with self._lock_for(backend_id):
            self._roll_over(backend_id)
            window = self._windows[backend_id]
            return window.consumed + window.reserved < window.limit

    def reserve(self, backend_id: str, units: int = 1) -> QuotaReservation:
        """
        Admit a dispatch: check and hold ``units`` in one critical section.

        Raises:
            QuotaExceededError: If the units do not fit in the current window.
        """
        self._check_units(units)
        with self._lock_for(backend_id):
            self._roll_over(backend_id)
            window = self._windows[backend_id]
            if window.consumed + window.reserved + units > window.limit:
                raise QuotaExceededError(
                    backend_id, window.consumed + window.reserved, window.limit, units
                )
            window.reserved += units
            return QuotaReservation(
                backend_id=backend_id,
                units=units,
                generation=self._generation[backend_id],
            )

    def commit(self, reservation: QuotaReservation) -> None:
        """
        Turn a reservation into consumption.

        A reservation from a window that has since rolled over is dropped;
        the new window starts clean.
        """
        with self._lock_for(reservation.backend_id):
            self._roll_over(reservation.backend_id)
            if reservation.generation != self._generation[reservation.backend_id]:
                return
            window = self._windows[reservation.backend_id]
            window.reserved -= reservation.units
            window.consumed += reservation.units

    def release(self, reservation: QuotaReservation) -> None:
        """Give back a reservation after a failed or abandoned dispatch."""
        with self._lock_for(reservation.backend_id):
            self._roll_over(reservation.backend_id)
            if reservation.generation != self._generation[reservation.backend_id]:
                return
            self._windows[reservation.backend_id].reserved -= reservation.units

    def record(self, backend_id: str, units: int) -> None:
        """
        Add ``units`` to the backend's consumption.

        Raises:
            QuotaExceededError: If this would push consumption past the limit.
        """
        self._check_units(units)
        with self._lock_for(backend_id):
            self._roll_over(backend_id)
            window = self._windows[backend_id]
            if window.consumed + window.reserved + units > window.limit:
                raise QuotaExceededError(
                    backend_id, window.consumed + window.reserved, window.limit, units
                )
            window.consumed += units

    # =========================================================================
    # Inspection
    # =========================================================================

    def snapshot(self, backend_id: str) -> QuotaWindow:
        """Copy of the backend's current window."""
        with self._lock_for(backend_id):
            self._roll_over(backend_id)
            return replace(self._windows[backend_id])

    def get_stats(self, backend_id: str) -> dict:
        """Usage statistics for a backend."""
        window = self.snapshot(backend_id)
        with self._lock_for(backend_id):
            tier = self._tier_of[backend_id]
            pending = self._pending_tier.get(backend_id)
        return {
            "backend_id": backend_id,
            "tier": tier,
            "pending_tier": pending,
            "consumed": window.consumed,
            "reserved": window.reserved,
            "limit": window.limit,
            "remaining": window.remaining,
            "window_start": window.window_start,
            "window_end": window.window_end,
        }

    def reset(self, backend_id: Optional[str] = None) -> None:
        """
        Zero consumption for a backend, or for all backends if None.

        The window boundaries are left as they are.
        """
        with self._locks_guard:
            backend_ids = [backend_id] if backend_id else list(self._locks)
        for bid in backend_ids:
            with self._lock_for(bid):
                self._windows[bid].consumed = 0

    # =========================================================================
    # Helpers
    # =========================================================================

    def _lock_for(self, backend_id: str) -> Lock:
        with self._locks_guard:
            lock = self._locks.get(backend_id)
        if lock is None:
            raise UnknownBackendError(backend_id)
        return lock

    def _get_tier(self, tier_name: str) -> QuotaTier:
        tier = self._tiers.get(tier_name)
        if tier is None:
            raise ValueError(f"Unknown quota tier '{tier_name}'")
        return tier

    @staticmethod
    def _check_units(units: int) -> None:
        if not isinstance(units, int) or units < 0:
            raise ValidationError(f"units must be a non-negative integer, got {units!r}")
