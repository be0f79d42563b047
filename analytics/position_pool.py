# analytics/position_pool.py
"""
Position records and a recycling pool for them.
Histories churn through one record per entity per tick; the pool keeps
retired records around for reuse instead of allocating new ones.
Pooling never changes the values callers read, only allocation.
"""
import logging
import threading
from dataclasses import dataclass

log = logging.getLogger("position_pool")

DEFAULT_POOL_MAX_SIZE = 500


@dataclass
class Position:
    """Mutable x/y/z triple. Compare with thresholds, never with ==."""
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def set(self, x, y, z):
        self.x = x
        self.y = y
        self.z = z
        return self

    def clear(self):
        self.x = 0.0
        self.y = 0.0
        self.z = 0.0

    def as_tuple(self):
        return (self.x, self.y, self.z)


class PositionPool:
    """
    Free-list of retired Position records.
    """

    def __init__(self, enabled=True, max_size=DEFAULT_POOL_MAX_SIZE, thread_safe=False):
        """
        Args:
            enabled: When False, acquire always allocates and release is a no-op
            max_size: Maximum number of idle records kept for reuse
            thread_safe: Guard the free list with a lock (shared pools only)
        """
        self.enabled = enabled
        self.max_size = max_size
        self._items = []
        # id() of every record handed out and not yet released
        self._live_ids = set()
        self._lock = threading.Lock() if thread_safe else None

        self.created = 0
        self.reused = 0
        self.dropped = 0

    def acquire(self) -> Position:
        """Return a zero-valued Position, reused when one is available."""
        if not self.enabled:
            self.created += 1
            return Position()

        if self._lock is not None:
            with self._lock:
                return self._pop()
        return self._pop()

    def release(self, item: Position):
        """
        Clear a record and keep it for reuse if the pool has room.
        Releasing a record that is already idle, or that this pool never
        handed out, does nothing.
        """
        if not self.enabled or item is None:
            return

        if self._lock is not None:
            with self._lock:
                self._push(item)
        else:
            self._push(item)

    def _pop(self):
        if self._items:
            item = self._items.pop()
            self.reused += 1
        else:
            self.created += 1
            item = Position()
        self._live_ids.add(id(item))
        return item

    def _push(self, item):
        if id(item) not in self._live_ids:
            return
        self._live_ids.discard(id(item))
        item.clear()
        if len(self._items) < self.max_size:
            self._items.append(item)
        else:
            # Full: let the record be garbage collected
            self.dropped += 1

    def __len__(self):
        return len(self._items)

    def get_stats(self):
        return {
            "enabled": self.enabled,
            "idle": len(self._items),
            "max_size": self.max_size,
            "created": self.created,
            "reused": self.reused,
            "dropped": self.dropped,
        }


def create_position_pool(config=None) -> PositionPool:
    """Factory function to create a pool from an AFKConfig or a plain dict."""
    if config is None:
        return PositionPool()
    if isinstance(config, dict):
        return PositionPool(
            enabled=config.get("position_pool_enabled", True),
            max_size=config.get("position_pool_max_size", DEFAULT_POOL_MAX_SIZE),
            thread_safe=config.get("thread_safe", False),
        )
    return PositionPool(
        enabled=config.position_pool_enabled,
        max_size=config.position_pool_max_size,
        thread_safe=config.thread_safe,
    )
