# analytics/afk_detector.py
"""
AFK detection per tracked entity.

Two independent signals are combined each tick:
  - stationarity: pitch, yaw and every position axis changed less than
    their thresholds since the previous sample
  - movement pattern: the latest displacement repeats within the recent
    history (forced movement such as transport loops)

An entity is AFK once it has been stationary-or-patterned for
afk_threshold consecutive ticks, or immediately whenever a pattern is
detected.
"""
import logging
from typing import Optional

from analytics.activity_store import ActivityStateStore, ActivityVerdict, EntityActivityState
from analytics.afk_config import AFKConfig, ConfigurationError
from analytics.movement_pattern import detect_movement_pattern
from analytics.position_pool import PositionPool, create_position_pool
from telemetry.sample import TelemetrySample

log = logging.getLogger("afk_detector")


class ActivityClassifier:
    """
    State machine per entity: Uninitialized -> Tracking.
    Updates for one entity must not overlap; pass thread_safe=True in the
    config when several threads drive the classifier.
    """

    def __init__(self, config: Optional[AFKConfig] = None,
                 store: Optional[ActivityStateStore] = None,
                 pool: Optional[PositionPool] = None):
        """
        Args:
            config: AFKConfig (defaults if omitted)
            store: Existing state store; its history size must match the config
            pool: Position pool for a new store; with a store, it must be the store's pool

        Raises:
            ConfigurationError: store and config disagree, or pool is not the store's
        """
        self.config = config or AFKConfig()
        if store is not None:
            if store.history_size != self.config.history_size:
                raise ConfigurationError(
                    f"store history_size ({store.history_size}) does not match config "
                    f"history_size ({self.config.history_size})")
            if pool is not None and pool is not store.pool:
                raise ConfigurationError("pool must be the store's pool when a store is given")
        else:
            pool = pool or create_position_pool(self.config)
            store = ActivityStateStore(self.config.history_size, pool,
                                       thread_safe=self.config.thread_safe)
        self.store = store
        self.pool = store.pool

    def update(self, entity_id, sample) -> ActivityVerdict:
        """
        Feed one telemetry sample for an entity and get its verdict.

        Args:
            entity_id: Entity identifier (username, track id, ...)
            sample: TelemetrySample, or a mapping with optional x/y/z/pitch/yaw

        Returns:
            ActivityVerdict
        """
        if not isinstance(sample, TelemetrySample):
            sample = TelemetrySample.from_mapping(sample)
        sample = sample.normalized()

        while True:
            state = self.store.get_or_create(entity_id)
            if state.lock is None:
                return self._update(state, sample)
            with state.lock:
                # Removed between lookup and lock: its records are back in the pool
                if not state.removed:
                    return self._update(state, sample)

    def _update(self, state: EntityActivityState, sample: TelemetrySample) -> ActivityVerdict:
        cfg = self.config
        state.updates += 1

        if not state.initialized:
            state.last_pitch = sample.pitch
            state.last_yaw = sample.yaw
            state.last_position.set(sample.x, sample.y, sample.z)
            state.history.append(sample)
            state.unchanged_ticks = 0
            state.initialized = True
            # A first sighting is never AFK
            verdict = ActivityVerdict(is_afk=False, unchanged_ticks=0)
            state.is_afk = False
            state.last_verdict = verdict
            return verdict

        pitch_diff = abs(state.last_pitch - sample.pitch)
        yaw_diff = abs(state.last_yaw - sample.yaw)
        last = state.last_position
        dx = abs(last.x - sample.x)
        dy = abs(last.y - sample.y)
        dz = abs(last.z - sample.z)

        # Newest sample must take part in the pattern window
        state.history.append(sample)
        pattern_detected = detect_movement_pattern(state.history, cfg)

        stationary = (pitch_diff <= cfg.pitch_yaw_threshold and
                      yaw_diff <= cfg.pitch_yaw_threshold and
                      dx <= cfg.position_threshold and
                      dy <= cfg.position_threshold and
                      dz <= cfg.position_threshold)

        if stationary or pattern_detected:
            state.unchanged_ticks += 1
        else:
            state.unchanged_ticks = 0

        state.last_pitch = sample.pitch
        state.last_yaw = sample.yaw
        last.set(sample.x, sample.y, sample.z)

        # OR, not AND: a pattern flags AFK before the dwell threshold is reached
        is_afk = state.unchanged_ticks >= cfg.afk_threshold or pattern_detected

        transition = None
        if is_afk != state.is_afk:
            transition = "afk_start" if is_afk else "afk_end"
            if is_afk:
                log.info("Entity %s is AFK (%d ticks, %s)", state.entity_id, state.unchanged_ticks,
                         "movement pattern" if pattern_detected else "stationary")
            else:
                log.info("Entity %s is active again", state.entity_id)

        state.is_afk = is_afk
        verdict = ActivityVerdict(
            is_afk=is_afk,
            unchanged_ticks=state.unchanged_ticks,
            stationary=stationary,
            pattern_detected=pattern_detected,
            transition=transition,
        )
        state.last_verdict = verdict
        return verdict

    def verdict(self, entity_id) -> Optional[ActivityVerdict]:
        """Last verdict for an entity, or None if it was never observed."""
        state = self.store.get(entity_id)
        return state.last_verdict if state is not None else None

    def forget(self, entity_id) -> bool:
        return self.store.remove(entity_id)

    def retain_only(self, observed_ids):
        return self.store.retain_only(observed_ids)

    def snapshot(self):
        return self.store.snapshot()
