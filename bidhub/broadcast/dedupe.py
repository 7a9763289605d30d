"""Bounded event-id memory used to suppress duplicate deliveries."""

from __future__ import annotations

from collections import deque
from typing import Deque


class EventDeduper:
    def __init__(self, capacity: int = 10000) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._order: Deque[str] = deque()
        self._known: set[str] = set()

    def check_and_add(self, event_id: str) -> bool:
        """Return True the first time ``event_id`` is seen, False afterwards."""
        if not event_id:
            raise ValueError("event_id missing")
        if event_id in self._known:
            return False
        self._order.append(event_id)
        self._known.add(event_id)
        while len(self._order) > self._capacity:
            self._known.discard(self._order.popleft())
        return True

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._known

    def __len__(self) -> int:
        return len(self._known)
