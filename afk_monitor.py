# afk_monitor.py
import argparse
import logging
import signal
import sys
import os

import yaml

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from analytics.afk_config import AFKConfig, ConfigurationError, load_system_config
from analytics.afk_detector import ActivityClassifier
from pipeline.scan_loop import ScanLoop
from storage.db import LocalDB, DB_PATH
from telemetry.replay_source import ReplaySource

log = logging.getLogger("afk_monitor")


def build_monitor(cfg, source, mqtt_cfg=None, afk_config=None):
    """Wire classifier, storage and publisher from a loaded system config."""
    if afk_config is None:
        afk_config = AFKConfig.from_dict(cfg.get("afk"))
    classifier = ActivityClassifier(afk_config)

    db = None
    if cfg.get("enable_db", False):
        try:
            db = LocalDB(cfg.get("db_path", DB_PATH))
        except Exception as e:
            log.warning("Database initialization failed: %s", e)
        else:
            retention_days = cfg.get("retention_days", 30)
            if retention_days:
                db.cleanup_old_events(retention_days)

    publisher = None
    if cfg.get("enable_mqtt", False) and mqtt_cfg:
        try:
            from telemetry.mqtt_client import MqttClient
            publisher = MqttClient(mqtt_cfg, cfg.get("device_id", "afk-monitor"))
        except Exception as e:
            log.warning("MQTT client initialization failed: %s", e)

    return ScanLoop(classifier, source, cfg, publisher=publisher, db=db)


def main(argv=None):
    parser = argparse.ArgumentParser(description="AFK monitor: classify idle entities from scan telemetry")
    parser.add_argument("--config", default="config/system.yaml", help="System configuration file")
    parser.add_argument("--mqtt-config", default="config/mqtt.yaml", help="MQTT configuration file")
    parser.add_argument("--replay", required=True, help="Recorded scans (JSON lines) to feed the monitor")
    parser.add_argument("--loop", action="store_true", help="Restart the replay when it ends")
    parser.add_argument("--ticks", type=int, default=None, help="Stop after this many scans")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(message)s")

    try:
        cfg = load_system_config(args.config)
        afk_config = AFKConfig.from_dict(cfg.get("afk"))
    except (OSError, yaml.YAMLError, ConfigurationError) as e:
        log.error("Failed to load config: %s", e)
        return 1

    mqtt_cfg = None
    if cfg.get("enable_mqtt", False):
        try:
            with open(args.mqtt_config) as f:
                mqtt_cfg = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            log.warning("Failed to load MQTT config, publishing disabled: %s", e)

    try:
        source = ReplaySource.from_file(args.replay, loop=args.loop)
    except OSError as e:
        log.error("Failed to open replay file: %s", e)
        return 1

    monitor = build_monitor(cfg, source, mqtt_cfg, afk_config)

    def stop(sig, frame):
        """Signal handler for graceful shutdown."""
        log.info("Received stop signal (sig=%d), shutting down...", sig)
        monitor.stop()

    signal.signal(signal.SIGINT, stop)
    signal.signal(signal.SIGTERM, stop)

    log.info("=" * 60)
    log.info("AFK Monitor - Starting")
    log.info("=" * 60)
    log.info("Device ID: %s", cfg.get("device_id", "afk-monitor"))
    log.info("Replay: %s", args.replay)
    log.info("=" * 60)

    try:
        ticks = monitor.run_forever(max_ticks=args.ticks)
    except KeyboardInterrupt:
        log.info("Keyboard interrupt received")
        ticks = monitor.monitor.stats.ticks

    stats = monitor.monitor.get_stats()
    log.info("=" * 60)
    log.info("AFK monitor stopped")
    log.info("Total scans: %d (failed %d), AFK transitions: %d", ticks, stats.failed_ticks, stats.afk_transitions)
    log.info("=" * 60)

    if monitor.publisher:
        monitor.publisher.shutdown()
    if monitor.db:
        monitor.db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
