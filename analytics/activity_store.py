# analytics/activity_store.py
"""
Per-entity activity state and the store that owns it.
"""
import logging
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, List, Optional, Tuple

from analytics.position_history import PositionHistory
from analytics.position_pool import Position, PositionPool

log = logging.getLogger("activity_store")


@dataclass(frozen=True)
class ActivityVerdict:
    """Result of one update for one entity."""
    is_afk: bool
    unchanged_ticks: int
    stationary: bool = False
    pattern_detected: bool = False
    # "afk_start", "afk_end" or None when the verdict did not flip
    transition: Optional[str] = None


@dataclass
class EntityActivityState:
    entity_id: str
    history: PositionHistory
    last_position: Position
    last_pitch: float = 0.0
    last_yaw: float = 0.0
    unchanged_ticks: int = 0
    initialized: bool = False
    is_afk: bool = False
    last_verdict: Optional[ActivityVerdict] = None
    updates: int = 0
    # Set once the store has released this state; updates must re-fetch
    removed: bool = False
    lock: Optional[threading.Lock] = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class EntitySnapshot:
    """Read-only copy of an entity's state for display or reporting."""
    entity_id: str
    is_afk: bool
    unchanged_ticks: int
    last_pitch: float
    last_yaw: float
    last_position: Tuple[float, float, float]
    history: Tuple[Tuple[float, float, float], ...]
    updates: int


class ActivityStateStore:
    """
    Maps entity id -> EntityActivityState.
    Entries are created on first observation and kept until removed
    explicitly (remove / retain_only / clear).
    """

    def __init__(self, history_size: int = 25, pool: Optional[PositionPool] = None,
                 thread_safe: bool = False):
        """
        Args:
            history_size: Capacity of each entity's position history
            pool: Shared position pool (a disabled pool is used if omitted)
            thread_safe: Lock the map and give every entity its own lock
        """
        self.history_size = history_size
        self.pool = pool if pool is not None else PositionPool(enabled=False)
        self.thread_safe = thread_safe
        self._states: Dict[str, EntityActivityState] = {}
        self._lock = threading.Lock() if thread_safe else None

    def get(self, entity_id) -> Optional[EntityActivityState]:
        return self._states.get(entity_id)

    def get_or_create(self, entity_id) -> EntityActivityState:
        """Return the entity's state, creating an uninitialized one if unknown."""
        if self._lock is not None:
            with self._lock:
                return self._get_or_create(entity_id)
        return self._get_or_create(entity_id)

    def _get_or_create(self, entity_id):
        state = self._states.get(entity_id)
        if state is None:
            state = EntityActivityState(
                entity_id=entity_id,
                history=PositionHistory(self.history_size, self.pool),
                last_position=self.pool.acquire(),
                lock=threading.Lock() if self.thread_safe else None,
            )
            self._states[entity_id] = state
            log.debug("Tracking new entity %s", entity_id)
        return state

    def remove(self, entity_id) -> bool:
        """Forget an entity and hand its pooled records back."""
        if self._lock is not None:
            with self._lock:
                state = self._states.pop(entity_id, None)
        else:
            state = self._states.pop(entity_id, None)
        if state is None:
            return False
        self._release(state)
        return True

    def retain_only(self, observed_ids: Iterable) -> List[str]:
        """
        Drop every entity not in observed_ids.

        Returns:
            Ids that were removed
        """
        keep = set(observed_ids)
        stale = [eid for eid in self.ids() if eid not in keep and self.remove(eid)]
        if stale:
            log.info("Stopped tracking %d absent entities: %s", len(stale), ", ".join(map(str, stale)))
        return stale

    def clear(self):
        for eid in self.ids():
            self.remove(eid)

    def _release(self, state):
        if state.lock is not None:
            with state.lock:
                self._release_records(state)
        else:
            self._release_records(state)

    def _release_records(self, state):
        state.removed = True
        state.history.clear()
        self.pool.release(state.last_position)

    def snapshot(self) -> MappingProxyType:
        """Immutable view of every tracked entity; safe to hand to renderers."""
        if self._lock is not None:
            with self._lock:
                states = list(self._states.items())
        else:
            states = list(self._states.items())

        snap = {}
        for eid, state in states:
            if state.lock is not None:
                with state.lock:
                    entry = self._snapshot_entry(eid, state)
            else:
                entry = self._snapshot_entry(eid, state)
            if entry is not None:
                snap[eid] = entry
        return MappingProxyType(snap)

    @staticmethod
    def _snapshot_entry(eid, state) -> Optional[EntitySnapshot]:
        if state.removed:
            return None
        return EntitySnapshot(
            entity_id=eid,
            is_afk=state.is_afk,
            unchanged_ticks=state.unchanged_ticks,
            last_pitch=state.last_pitch,
            last_yaw=state.last_yaw,
            last_position=state.last_position.as_tuple(),
            history=state.history.snapshot(),
            updates=state.updates,
        )

    def ids(self):
        if self._lock is not None:
            with self._lock:
                return list(self._states)
        return list(self._states)

    def __contains__(self, entity_id):
        return entity_id in self._states

    def __len__(self):
        return len(self._states)
