# pipeline/scan_loop.py
"""
Scan loop: one tick lists the entities the source can see, pulls one
telemetry sample per entity, classifies it and hands the verdicts on to
storage and MQTT. A failed tick is skipped without touching stored state.
"""
import time
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from analytics.activity_store import ActivityVerdict
from analytics.afk_detector import ActivityClassifier
from pipeline.metrics.scan_monitor import ScanMonitor
from pipeline.system_metrics import get_health
from telemetry.sample import InvalidTelemetry, TelemetrySample

log = logging.getLogger("scan_loop")


@dataclass(frozen=True)
class EntityReport:
    entity_id: Any
    verdict: ActivityVerdict
    sample: TelemetrySample
    distance: Optional[float] = None


@dataclass
class ScanResult:
    ts: float
    reports: List[EntityReport] = field(default_factory=list)
    skipped: List[Any] = field(default_factory=list)

    @property
    def total_entities(self) -> int:
        return len(self.reports)

    @property
    def afk_entities(self) -> int:
        return sum(1 for r in self.reports if r.verdict.is_afk)

    @property
    def transitions(self) -> List[EntityReport]:
        return [r for r in self.reports if r.verdict.transition]


class ScanLoop:
    """
    Drives the classifier from an entity source.

    The source needs two methods:
        get_online_entities() -> list of ids (None when the list is unavailable)
        get_entity_telemetry(entity_id) -> mapping with optional x/y/z/pitch/yaw
    """

    def __init__(self, classifier: ActivityClassifier, source, cfg: Optional[Dict] = None,
                 publisher=None, db=None, monitor: Optional[ScanMonitor] = None,
                 sleep=time.sleep, clock=time.time):
        """
        Args:
            classifier: ActivityClassifier holding all per-entity state
            source: Entity source (see class docstring)
            cfg: Top level of system.yaml (scan_interval, error_backoff, ...)
            publisher: Optional MqttClient
            db: Optional LocalDB
            monitor: Optional ScanMonitor (one is created from cfg if omitted)
        """
        cfg = cfg or {}
        self.classifier = classifier
        self.source = source
        self.publisher = publisher
        self.db = db
        self.sleep = sleep
        self.clock = clock

        self.device_id = cfg.get("device_id", "afk-monitor")
        self.scan_interval = cfg.get("scan_interval", 0.1)
        self.error_backoff = cfg.get("error_backoff", 5.0)
        self.heartbeat_interval = cfg.get("heartbeat_interval", 60.0)
        self.reference_point = cfg.get("reference_point")
        self.evict_absent = classifier.config.evict_absent_entities

        self.monitor = monitor or ScanMonitor(stats_interval=cfg.get("stats_interval", 300), clock=clock)
        self.running = False
        self.last_heartbeat = 0.0
        self.last_result: Optional[ScanResult] = None

    def run_once(self) -> Optional[ScanResult]:
        """
        Run one tick.

        Returns:
            ScanResult, or None if the entity list could not be retrieved
        """
        start = time.perf_counter()
        try:
            entity_ids = self.source.get_online_entities()
        except Exception:
            log.exception("Failed to retrieve entity list - skipping tick")
            self.monitor.record_failure()
            return None
        if entity_ids is None:
            log.error("Could not retrieve entity list from source - skipping tick")
            self.monitor.record_failure()
            return None

        result = ScanResult(ts=self.clock())
        for entity_id in entity_ids:
            sample = self._read_sample(entity_id)
            if sample is None:
                result.skipped.append(entity_id)
                continue

            verdict = self.classifier.update(entity_id, sample)
            distance = sample.distance_to(self.reference_point) if self.reference_point else None
            result.reports.append(EntityReport(entity_id, verdict, sample, distance))

        if self.evict_absent:
            self.classifier.retain_only(entity_ids)

        result.reports.sort(key=lambda r: str(r.entity_id).lower())
        tick_ms = (time.perf_counter() - start) * 1000.0
        self.monitor.record_tick(result.total_entities, result.afk_entities, tick_ms,
                                 skipped_entities=len(result.skipped),
                                 transitions=len(result.transitions))
        self.last_result = result

        self._emit(result)
        self.monitor.maybe_log_summary()
        return result

    def _read_sample(self, entity_id) -> Optional[TelemetrySample]:
        try:
            raw = self.source.get_entity_telemetry(entity_id)
            sample = TelemetrySample.from_mapping(raw) if raw is not None else None
        except InvalidTelemetry as e:
            log.warning("Invalid telemetry for %s: %s", entity_id, e)
            return None
        except Exception as e:
            log.warning("Could not get telemetry for %s: %s", entity_id, e)
            return None

        if sample is None or not sample.has_position:
            log.warning("Could not get position for %s", entity_id)
            return None
        return sample

    def _emit(self, result: ScanResult):
        """Store and publish; failures here never reach classifier state."""
        try:
            for report in result.transitions:
                if self.db:
                    self.db.insert_afk_event(self.device_id, report.entity_id, report.verdict,
                                             ts=result.ts, payload={"distance": report.distance})
                if self.publisher:
                    self.publisher.publish_afk_event(report.entity_id, report.verdict, ts=result.ts)
            if self.publisher:
                self.publisher.publish_scan(result)
        except Exception:
            log.exception("Failed to store/publish scan results")

    def heartbeat(self, now: Optional[float] = None):
        """Send host health and scan statistics every heartbeat_interval seconds."""
        if not (self.publisher or self.db) or not self.heartbeat_interval:
            return
        now = self.clock() if now is None else now
        if now - self.last_heartbeat < self.heartbeat_interval:
            return
        self.last_heartbeat = now
        try:
            health = get_health()
            summary = self.monitor.get_summary()
            if self.publisher:
                self.publisher.publish_heartbeat(health, summary)
            if self.db:
                self.db.insert_health(self.device_id, health, summary)
        except Exception:
            log.exception("Heartbeat failed")

    def run_forever(self, max_ticks: Optional[int] = None):
        """
        Tick until stop() is called, the source is exhausted or max_ticks is reached.
        """
        self.running = True
        ticks = 0
        log.info("Scan loop started (interval %.2fs)", self.scan_interval)
        while self.running:
            result = self.run_once()
            ticks += 1
            self.heartbeat()

            if max_ticks is not None and ticks >= max_ticks:
                break
            if getattr(self.source, "exhausted", False):
                log.info("Entity source exhausted after %d ticks", ticks)
                break

            self.sleep(self.error_backoff if result is None else self.scan_interval)

        self.running = False
        log.info("Scan loop stopped after %d ticks", ticks)
        return ticks

    def stop(self):
        self.running = False
