"""Drops client retransmits at ingestion.

The game client tags each event with ``client_event_id`` and resends the
whole upload when it never sees the response. Such a resend usually lands
within seconds, so a short window keyed by (user_id, client_event_id)
catches it. The window lives in this process only: after a restart, or on a
second ingestion worker, a resend gets through and the aggregators absorb it.
"""

from __future__ import annotations

import time
from collections import OrderedDict

RetransmitKey = tuple[str, str]


class DeduplicationFilter:
    """Remembers recent (user_id, client_event_id) pairs for ``window_seconds``.

    The oldest pair goes first, once it ages out or once ``max_entries`` is
    reached.
    """

    def __init__(self, window_seconds: float = 60.0, max_entries: int = 100_000) -> None:
        self.window_seconds = window_seconds
        self.max_entries = max_entries
        self._recent: OrderedDict[RetransmitKey, float] = OrderedDict()
        self._retransmits = 0

    def is_duplicate(self, user_id: str, client_event_id: str) -> bool:
        """True for a retransmit; otherwise remember the pair and return False."""
        now = time.monotonic()
        self._expire(now)

        key = (user_id, client_event_id)
        if key in self._recent:
            self._retransmits += 1
            return True

        self._recent[key] = now
        if len(self._recent) > self.max_entries:
            self._recent.popitem(last=False)
        return False

    def forget(self, user_id: str, client_event_id: str) -> None:
        """Release a pair whose upload was not stored, so its resend is accepted."""
        self._recent.pop((user_id, client_event_id), None)

    def _expire(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._recent and next(iter(self._recent.values())) < cutoff:
            self._recent.popitem(last=False)

    @property
    def stats(self) -> dict[str, int]:
        return {"tracked": len(self._recent), "retransmits_dropped": self._retransmits}
