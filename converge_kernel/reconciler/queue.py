"""Delay-aware work queue of unit ids."""

import threading
from datetime import datetime
from typing import Dict, List, Optional, Set


class WorkQueue:
    """
    Holds each unit id at most once, with the earliest time it is due.
    Adding an id that is already queued keeps the earlier due time.
    """

    def __init__(self):
        self._due: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def add(self, unit_id: str, at: datetime) -> None:
        with self._lock:
            current = self._due.get(unit_id)
            if current is None or at < current:
                self._due[unit_id] = at

    def discard(self, unit_id: str) -> None:
        with self._lock:
            self._due.pop(unit_id, None)

    def drain(self, now: datetime) -> Set[str]:
        """Remove and return every id due at or before ``now``."""
        with self._lock:
            ready = {uid for uid, at in self._due.items() if at <= now}
            for uid in ready:
                del self._due[uid]
            return ready

    def due_at(self, unit_id: str) -> Optional[datetime]:
        return self._due.get(unit_id)

    def pending(self) -> List[str]:
        return sorted(self._due)

    def __contains__(self, unit_id: str) -> bool:
        return unit_id in self._due

    def __len__(self) -> int:
        return len(self._due)
