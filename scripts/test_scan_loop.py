# scripts/test_scan_loop.py
"""
Test script for the scan loop: failure isolation, skipping bad telemetry,
AFK transition storage, publishing and replay sources.
"""
import sys
import os
import json
import tempfile
import logging
import time
import gzip
import base64
from unittest import mock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import afk_monitor
from analytics.afk_config import AFKConfig
from analytics.activity_store import ActivityVerdict
from analytics.afk_detector import ActivityClassifier
from pipeline.metrics.scan_monitor import ScanMonitor
from pipeline.scan_loop import EntityReport, ScanLoop, ScanResult
from storage.db import LocalDB
from telemetry import mqtt_client
from telemetry.sample import TelemetrySample
from telemetry.replay_source import ReplaySource

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
log = logging.getLogger("test_scan_loop")


class ScriptedSource:
    """Entity source that replays a list of scans; a scan may be an Exception."""

    def __init__(self, scans):
        self.scans = list(scans)
        self.current = {}

    def get_online_entities(self):
        scan = self.scans.pop(0)
        if isinstance(scan, Exception):
            raise scan
        if scan is None:
            return None
        self.current = scan
        return list(scan)

    def get_entity_telemetry(self, entity_id):
        record = self.current.get(entity_id)
        if isinstance(record, Exception):
            raise record
        return record


class RecordingPublisher:
    def __init__(self, fail=False):
        self.fail = fail
        self.events = []
        self.scans = []
        self.heartbeats = []

    def publish_afk_event(self, entity_id, verdict, ts=None):
        if self.fail:
            raise RuntimeError("broker down")
        self.events.append((entity_id, verdict.transition))

    def publish_scan(self, result):
        self.scans.append(result)

    def publish_heartbeat(self, health=None, statistics=None):
        self.heartbeats.append((health, statistics))


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _pos(x, y=64.0, z=0.0, **extra):
    return dict(x=x, y=y, z=z, **extra)


def _loop(scans, config=None, **kwargs):
    classifier = ActivityClassifier(config or AFKConfig())
    cfg = kwargs.pop("cfg", {"stats_interval": 0})
    return ScanLoop(classifier, ScriptedSource(scans), cfg, sleep=lambda s: None, **kwargs)


def test_failed_tick_leaves_state_untouched():
    loop = _loop([{"a": _pos(1.0)}, {"a": _pos(1.0)}, RuntimeError("radar unplugged"), None, {"a": _pos(1.0)}])
    loop.run_once()
    loop.run_once()
    before = loop.classifier.snapshot()["a"]

    assert loop.run_once() is None
    assert loop.run_once() is None
    assert loop.classifier.snapshot()["a"] == before
    assert loop.monitor.stats.failed_ticks == 2

    result = loop.run_once()
    assert result.reports[0].verdict.unchanged_ticks == 2


def test_entities_without_position_are_skipped():
    loop = _loop([{
        "ok": _pos(1.0),
        "no_z": {"x": 1.0, "y": 2.0},
        "missing": None,
        "garbage": {"x": "north", "y": 1, "z": 1},
        "broken": IOError("timeout"),
    }])
    result = loop.run_once()
    assert [r.entity_id for r in result.reports] == ["ok"]
    assert sorted(result.skipped) == ["broken", "garbage", "missing", "no_z"]
    assert "no_z" not in loop.classifier.store
    assert loop.monitor.stats.skipped_entities == 4


def test_reports_are_sorted_and_have_distance():
    loop = _loop([{"bob": _pos(3.0, 4.0, 0.0), "Alice": _pos(0.0, 0.0, 0.0), "carol": _pos(1.0)}],
                 cfg={"stats_interval": 0, "reference_point": {"x": 0, "y": 0, "z": 0}})
    result = loop.run_once()
    assert [r.entity_id for r in result.reports] == ["Alice", "bob", "carol"]
    assert result.reports[1].distance == 5.0
    assert result.total_entities == 3
    assert result.afk_entities == 0


def test_transitions_are_stored_and_published():
    scans = [{"idle": _pos(5.0)} for _ in range(4)] + [{"idle": _pos(50.0)}]
    publisher = RecordingPublisher()
    with tempfile.TemporaryDirectory() as tmp:
        db = LocalDB(os.path.join(tmp, "afk.db"))
        loop = _loop(scans, AFKConfig(afk_threshold=3), publisher=publisher, db=db)
        for _ in range(5):
            loop.run_once()

        events = db.query_afk_events(entity_id="idle")
        assert [e["event"] for e in events] == ["afk_end", "afk_start"]
        assert events[1]["unchanged_ticks"] == 3
        assert db.get_afk_statistics()["idle"]["afk_count"] == 1
        db.close()

    assert publisher.events == [("idle", "afk_start"), ("idle", "afk_end")]
    assert len(publisher.scans) == 5
    assert loop.monitor.stats.afk_transitions == 2


def test_publisher_failure_does_not_break_tick():
    loop = _loop([{"a": _pos(0.0)}] * 4, AFKConfig(afk_threshold=2), publisher=RecordingPublisher(fail=True))
    results = [loop.run_once() for _ in range(4)]
    assert all(r is not None for r in results)
    assert results[-1].reports[0].verdict.unchanged_ticks == 3


def test_absent_entities_persist_unless_eviction_enabled():
    scans = [{"a": _pos(0.0), "b": _pos(0.0)}, {"a": _pos(0.0)}]
    keep = _loop(list(scans))
    keep.run_once()
    keep.run_once()
    assert "b" in keep.classifier.store

    evict = _loop(list(scans), AFKConfig(evict_absent_entities=True))
    evict.run_once()
    evict.run_once()
    assert "b" not in evict.classifier.store
    assert "a" in evict.classifier.store


def test_run_forever_stops_when_replay_ends():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "scans.jsonl")
        with open(path, "w") as f:
            for i in range(20):
                f.write(json.dumps({"ts": i, "entities": {"cart": {"x": i, "y": 64, "z": 0},
                                                          "afk": {"x": 0, "y": 64, "z": 0}}}) + "\n")
            f.write("not json\n")

        source = ReplaySource.from_file(path)
        sleeps = []
        loop = ScanLoop(ActivityClassifier(AFKConfig()), source, {"stats_interval": 0, "scan_interval": 0.5},
                        sleep=sleeps.append)
        ticks = loop.run_forever()

    # 20 scans plus the tick that finds the end
    assert ticks == 21
    assert sleeps == [0.5] * 20
    assert loop.classifier.verdict("cart").pattern_detected is True
    assert loop.classifier.verdict("afk").is_afk is True
    assert loop.classifier.verdict("afk").pattern_detected is False


def test_run_forever_backs_off_after_failure():
    sleeps = []
    loop = ScanLoop(ActivityClassifier(), ScriptedSource([RuntimeError("x"), {"a": _pos(0)}]),
                    {"stats_interval": 0, "scan_interval": 0.1, "error_backoff": 5}, sleep=sleeps.append)
    assert loop.run_forever(max_ticks=2) == 2
    assert sleeps == [5]


def test_heartbeat_interval():
    clock = FakeClock()
    publisher = RecordingPublisher()
    loop = _loop([{"a": _pos(0)}], publisher=publisher, clock=clock,
                 cfg={"stats_interval": 0, "heartbeat_interval": 60})
    loop.run_once()
    loop.heartbeat()
    loop.heartbeat()
    clock.now += 61
    loop.heartbeat()
    assert len(publisher.heartbeats) == 2
    health, stats = publisher.heartbeats[0]
    assert "cpu" in health
    assert stats["total_entities"] == 1


def test_scan_monitor_summary_interval():
    clock = FakeClock(0.0)
    monitor = ScanMonitor(stats_interval=300, clock=clock)
    monitor.record_tick(4, 1, 2.0)
    monitor.record_tick(5, 2, 4.0)
    monitor.record_failure()

    clock.now = 301.0
    assert monitor.maybe_log_summary() is True
    assert monitor.maybe_log_summary() is False
    clock.now = 700.0
    assert monitor.maybe_log_summary() is True

    stats = monitor.get_stats()
    assert stats.ticks == 3
    assert stats.failed_ticks == 1
    assert stats.total_entities == 5
    assert stats.afk_entities == 2
    assert stats.mean_tick_ms == 3.0
    assert stats.uptime_minutes == 11


def test_runner_exits_cleanly_on_bad_afk_section():
    with tempfile.TemporaryDirectory() as tmp:
        for body in ("afk: 5\n", "afk: [1, 2]\n", "afk:\n  position_threshold: .nan\n"):
            path = os.path.join(tmp, "system.yaml")
            with open(path, "w") as f:
                f.write(body)
            assert afk_monitor.main(["--config", path, "--replay", os.path.join(tmp, "none.jsonl")]) == 1, body


def test_runner_applies_retention_at_startup():
    verdict = ActivityVerdict(is_afk=True, unchanged_ticks=15, transition="afk_start")
    with tempfile.TemporaryDirectory() as tmp:
        db_path = os.path.join(tmp, "afk.db")
        db = LocalDB(db_path)
        now = time.time()
        db.insert_afk_event("dev", "old", verdict, ts=now - 40 * 86400)
        db.insert_afk_event("dev", "recent", verdict, ts=now - 86400)
        db.close()

        cfg = {"enable_db": True, "db_path": db_path, "retention_days": 30, "stats_interval": 0}
        loop = afk_monitor.build_monitor(cfg, ScriptedSource([]))
        assert [e["entity_id"] for e in loop.db.query_afk_events()] == ["recent"]
        loop.db.close()

        cfg["retention_days"] = 0
        loop = afk_monitor.build_monitor(cfg, ScriptedSource([]))
        assert len(loop.db.query_afk_events()) == 1
        loop.db.close()


class FakePahoClient:
    """Stands in for paho's Client; records publishes, never touches the network."""

    def __init__(self, *args, **kwargs):
        self.published = []

    def connect(self, host, port, keepalive=60):
        pass

    def loop_start(self):
        pass

    def reconnect(self):
        pass

    def publish(self, topic, payload, qos=0):
        self.published.append((topic, payload, qos))


def test_mqtt_payloads():
    cfg = {"topic_prefix": "afkmon", "qos": 1, "connection_timeout": 0, "compress_payload": True}
    with mock.patch.object(mqtt_client.mqtt, "Client", FakePahoClient):
        client = mqtt_client.MqttClient(cfg, "dev1")

    verdict = ActivityVerdict(is_afk=True, unchanged_ticks=15, stationary=True, transition="afk_start")
    client.publish_afk_event("steve", verdict, ts=5.0)
    topic, payload, qos = client.client.published[-1]
    assert topic == "afkmon/dev1/afk"
    assert qos == 1
    event = json.loads(payload)
    assert event["entity"] == "steve"
    assert event["event"] == "afk_start"
    assert event["unchanged_ticks"] == 15

    sample = TelemetrySample(x=0.0, y=64.0, z=0.0)
    result = ScanResult(ts=6.0, reports=[EntityReport(f"entity_{i}", verdict, sample, 1.5) for i in range(30)])
    client.publish_scan(result)
    topic, payload, _ = client.client.published[-1]
    assert topic == "afkmon/dev1"
    scan = json.loads(gzip.decompress(base64.b64decode(payload)))
    assert scan["total"] == 30
    assert scan["afk"] == 30

    client.publish_heartbeat({"cpu": 1.0}, {"ticks": 3})
    topic, payload, qos = client.client.published[-1]
    assert topic == "afkmon/dev1/heartbeat"
    assert qos == 0
    assert json.loads(payload)["statistics"] == {"ticks": 3}


def main():
    tests = [(name, func) for name, func in sorted(globals().items())
             if name.startswith("test_") and callable(func)]
    failed = 0
    for name, func in tests:
        try:
            func()
            log.info("✅ %s", name)
        except AssertionError:
            failed += 1
            log.exception("❌ %s", name)
    log.info("%d/%d scan loop tests passed", len(tests) - failed, len(tests))
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
