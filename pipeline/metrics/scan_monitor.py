# pipeline/metrics/scan_monitor.py
"""
Scan Statistics
Tracks entity counts, AFK counts, tick latency and failed ticks, and logs
a summary at a fixed interval.
"""

import time
import logging
import numpy as np
from collections import deque
from dataclasses import dataclass, asdict
from typing import Dict, Optional

log = logging.getLogger("scan_monitor")


@dataclass
class ScanStats:
    """Aggregated scan statistics."""
    total_entities: int = 0      # entities classified in the last scan
    afk_entities: int = 0        # of which AFK
    skipped_entities: int = 0    # missing/invalid telemetry in the last scan
    ticks: int = 0
    failed_ticks: int = 0
    afk_transitions: int = 0
    uptime_minutes: int = 0

    mean_tick_ms: float = 0.0
    p95_tick_ms: float = 0.0
    max_tick_ms: float = 0.0


class ScanMonitor:
    """
    Collects per-tick numbers from the scan loop.
    """

    def __init__(self, stats_interval: float = 300.0, window_size: int = 100, clock=time.time):
        """
        Args:
            stats_interval: Seconds between logged summaries (0 disables)
            window_size: Number of recent ticks used for latency figures
            clock: Time source, injectable for tests
        """
        self.stats_interval = stats_interval
        self.clock = clock
        self.latency_history: deque = deque(maxlen=window_size)
        self.stats = ScanStats()
        self.start_time = clock()
        # 0 so the first interval check logs right away
        self.last_print_time = 0.0

    def record_tick(self, total_entities: int, afk_entities: int, tick_ms: float,
                    skipped_entities: int = 0, transitions: int = 0):
        self.stats.ticks += 1
        self.stats.total_entities = total_entities
        self.stats.afk_entities = afk_entities
        self.stats.skipped_entities = skipped_entities
        self.stats.afk_transitions += transitions
        self.latency_history.append(tick_ms)

    def record_failure(self):
        self.stats.ticks += 1
        self.stats.failed_ticks += 1

    def get_stats(self) -> ScanStats:
        """Calculate and return aggregated statistics."""
        self.stats.uptime_minutes = int((self.clock() - self.start_time) // 60)
        if self.latency_history:
            arr = np.array(self.latency_history)
            self.stats.mean_tick_ms = float(np.mean(arr))
            self.stats.p95_tick_ms = float(np.percentile(arr, 95))
            self.stats.max_tick_ms = float(np.max(arr))
        return self.stats

    def get_summary(self) -> Dict:
        return asdict(self.get_stats())

    def maybe_log_summary(self, now: Optional[float] = None) -> bool:
        """Log the summary if stats_interval has elapsed since the last one."""
        if not self.stats_interval:
            return False
        now = self.clock() if now is None else now
        if now - self.last_print_time < self.stats_interval:
            return False

        stats = self.get_stats()
        log.info("=== AFK Monitor Statistics ===")
        log.info("Runtime: %d minutes", stats.uptime_minutes)
        log.info("Entities tracked (last scan): %d", stats.total_entities)
        log.info("Currently AFK (last scan): %d", stats.afk_entities)
        log.info("AFK transitions: %d | Ticks: %d (failed %d) | Tick: %.2fms mean, %.2fms p95",
                 stats.afk_transitions, stats.ticks, stats.failed_ticks,
                 stats.mean_tick_ms, stats.p95_tick_ms)
        self.last_print_time = now
        return True
