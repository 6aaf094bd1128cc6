"""Cooldown Tracker — suppresses repeat dispatches to the same (ticket, persona).

Two windows apply: a short one for direct human mentions and a long one
for system-chained dispatches. Urgent triggers bypass both. Entries live
only in process memory, in an ExpiringLedger that is pruned once it
grows past a size threshold.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from typing import Generic, TypeVar

from grove.models import MentionKind

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


class ExpiringLedger(Generic[K]):
    """Last-touched timestamps per key, oldest first."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: OrderedDict[K, float] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: K) -> bool:
        return key in self._entries

    def touch(self, key: K) -> None:
        self._entries[key] = self._clock()
        self._entries.move_to_end(key)

    def age(self, key: K) -> float | None:
        """Seconds since ``key`` was last touched, or None if unknown."""
        stamp = self._entries.get(key)
        if stamp is None:
            return None
        return self._clock() - stamp

    def prune(self, max_age: float) -> int:
        """Drop entries older than ``max_age``. Returns how many were removed."""
        cutoff = self._clock() - max_age
        removed = 0
        while self._entries:
            key, stamp = next(iter(self._entries.items()))
            if stamp >= cutoff:
                break
            del self._entries[key]
            removed += 1
        return removed


class CooldownTracker:
    def __init__(
        self,
        mention_window: float = 30,
        auto_window: float = 300,
        prune_threshold: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.mention_window = mention_window
        self.auto_window = auto_window
        self.prune_threshold = prune_threshold
        self._ledger: ExpiringLedger[tuple[str, str]] = ExpiringLedger(clock)

    def __len__(self) -> int:
        return len(self._ledger)

    def window_for(self, kind: MentionKind) -> float:
        if kind == MentionKind.URGENT:
            return 0
        if kind == MentionKind.HUMAN:
            return self.mention_window
        return self.auto_window

    def remaining(self, ticket_id: str, persona_id: str, kind: MentionKind) -> float:
        """Seconds left on the cooldown, 0 when dispatch is allowed."""
        window = self.window_for(kind)
        age = self._ledger.age((ticket_id, persona_id))
        if age is None or window <= 0:
            return 0.0
        return max(0.0, window - age)

    def is_on_cooldown(self, ticket_id: str, persona_id: str, kind: MentionKind) -> bool:
        return self.remaining(ticket_id, persona_id, kind) > 0

    def mark_dispatched(self, ticket_id: str, persona_id: str) -> None:
        self._ledger.touch((ticket_id, persona_id))
        if len(self._ledger) > self.prune_threshold:
            removed = self._ledger.prune(self.auto_window)
            if removed:
                logger.debug("Pruned %d expired cooldown entries", removed)
