# analytics/position_history.py
"""
Bounded per-entity position history.
Oldest entry is evicted (and returned to the pool) once capacity is reached.
"""
from collections import deque
from typing import Optional, Tuple

import numpy as np

from analytics.position_pool import Position, PositionPool

DEFAULT_HISTORY_SIZE = 25


class PositionHistory:
    """
    Chronological buffer of Position records, oldest at index 0.
    Records are owned by the history: appends copy values into a record
    acquired from the pool, evictions hand the record back.
    """

    def __init__(self, capacity: int = DEFAULT_HISTORY_SIZE, pool: Optional[PositionPool] = None):
        self.capacity = capacity
        self.pool = pool if pool is not None else PositionPool(enabled=False)
        self._items = deque()

    def append(self, pos):
        """
        Push a value copy of pos (anything with x/y/z attributes).
        Missing or None coordinates become 0.
        """
        x = getattr(pos, "x", None)
        y = getattr(pos, "y", None)
        z = getattr(pos, "z", None)

        while len(self._items) >= self.capacity:
            self.pool.release(self._items.popleft())

        record = self.pool.acquire()
        record.set(x if x is not None else 0.0,
                   y if y is not None else 0.0,
                   z if z is not None else 0.0)
        self._items.append(record)

    def last(self) -> Optional[Position]:
        return self._items[-1] if self._items else None

    def second_last(self) -> Optional[Position]:
        return self._items[-2] if len(self._items) >= 2 else None

    def as_array(self) -> np.ndarray:
        """History as an (n, 3) float array, oldest row first."""
        if not self._items:
            return np.empty((0, 3), dtype=float)
        return np.array([p.as_tuple() for p in self._items], dtype=float)

    def snapshot(self) -> Tuple[Tuple[float, float, float], ...]:
        """Immutable copy of the current contents."""
        return tuple(p.as_tuple() for p in self._items)

    def clear(self):
        """Drop every entry, returning the records to the pool."""
        while self._items:
            self.pool.release(self._items.popleft())

    def __len__(self):
        return len(self._items)

    def __getitem__(self, index) -> Position:
        return self._items[index]

    def __iter__(self):
        return iter(self._items)

    def __repr__(self):
        return f"PositionHistory(len={len(self._items)}, capacity={self.capacity})"
