"""
replay.py — bounded memory of event ids we've already acted on.

Relays redeliver: the same event arrives once per relay we're subscribed on,
and again after every forced reconnect. This cache is what keeps command
execution at-most-once per event.

Retention policy: count-bounded. When more than `max_events` ids are held,
the single entry with the oldest timestamp goes. No time-based purge; the
inbound age window already stops stale events before they get here.
"""

import logging
import time
from typing import Dict, Optional

log = logging.getLogger(__name__)

MAX_STORED_EVENTS = 1000


class ReplayCache:
    """In-memory event_id -> first-seen timestamp map with oldest-first eviction."""

    def __init__(self, max_events: int = MAX_STORED_EVENTS) -> None:
        if max_events < 1:
            raise ValueError("max_events must be positive")
        self.max_events = max_events
        self._seen: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, event_id: str) -> bool:
        return self.has(event_id)

    def has(self, event_id: str) -> bool:
        return event_id in self._seen

    def record(self, event_id: str, timestamp: Optional[float] = None) -> None:
        """
        Remember an id. Re-recording an id keeps its first-seen time.

        Eviction runs after every insert; a linear scan is fine at this size.
        """
        if event_id in self._seen:
            return
        self._seen[event_id] = time.time() if timestamp is None else timestamp
        while len(self._seen) > self.max_events:
            oldest = min(self._seen, key=self._seen.__getitem__)
            del self._seen[oldest]
            log.debug("Cache cleanup: removed oldest event, size: %d", len(self._seen))

    def clear(self) -> None:
        self._seen.clear()
