# telemetry/mqtt_client.py
import paho.mqtt.client as mqtt
import json
import logging
import time
import gzip
import base64

log = logging.getLogger("mqtt")


def compress_payload(payload_dict):
    """
    Compress JSON payload to keep large scan summaries small.
    Returns base64-encoded compressed string.
    """
    try:
        json_str = json.dumps(payload_dict, separators=(',', ':'))
        compressed = gzip.compress(json_str.encode('utf-8'))
        return base64.b64encode(compressed).decode('utf-8')
    except (TypeError, ValueError):
        log.debug("Payload compression failed, sending plain JSON")
        return json.dumps(payload_dict, separators=(',', ':'), default=str)


class MqttClient:
    def __init__(self, cfg, device_id):
        self.cfg = cfg
        self.device_id = device_id
        self.topic = f"{cfg.get('topic_prefix')}/{device_id}"
        self.afk_topic = f"{self.topic}/afk"
        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=device_id)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.connected = False
        self.use_compression = cfg.get("compress_payload", True)

        try:
            broker = cfg.get("broker")
            port = cfg.get("port", 1883)
            timeout = cfg.get("connection_timeout", 5)

            log.info("Connecting to MQTT broker %s:%s...", broker, port)
            self.client.connect(broker, port, keepalive=60)
            self.client.loop_start()

            start_time = time.time()
            while not self.connected and (time.time() - start_time) < timeout:
                time.sleep(0.1)

            if self.connected:
                log.info("MQTT client connected to %s:%s", broker, port)
            else:
                log.warning("MQTT connection timeout after %ss - will retry on publish", timeout)
        except (OSError, ValueError) as e:
            log.warning("MQTT client initialization failed: %s", e)
            self.connected = False

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if not reason_code.is_failure:
            self.connected = True
            log.info("MQTT client connected successfully")
        else:
            self.connected = False
            log.warning("MQTT connection failed: %s", reason_code)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        self.connected = False
        if reason_code.is_failure:
            log.warning("MQTT client disconnected unexpectedly (%s)", reason_code)
        else:
            log.info("MQTT client disconnected")

    def _publish(self, topic, payload, qos=None):
        if not self.connected:
            try:
                self.client.reconnect()
            except (OSError, ValueError):
                log.debug("MQTT reconnect failed (broker may be unavailable)")
        if qos is None:
            qos = self.cfg.get("qos", 1)

        json_str = json.dumps(payload, separators=(',', ':'), default=str)
        if self.use_compression and len(json_str) > 500:
            self.client.publish(topic, compress_payload(payload), qos=qos)
        else:
            self.client.publish(topic, json_str, qos=qos)

    def publish_afk_event(self, entity_id, verdict, ts=None):
        """
        Publish an AFK transition for one entity.

        Args:
            entity_id: Entity identifier
            verdict: ActivityVerdict with a non-empty transition
        """
        try:
            payload = {
                "deviceId": self.device_id,
                "ts": ts if ts is not None else time.time(),
                "entity": entity_id,
                "event": verdict.transition,
                "afk": verdict.is_afk,
                "unchanged_ticks": verdict.unchanged_ticks,
                "pattern_detected": verdict.pattern_detected,
            }
            self._publish(self.afk_topic, payload)
        except Exception:
            log.exception("MQTT AFK event publish failed")

    def publish_scan(self, scan_result):
        """
        Publish the per-entity verdicts of one scan.

        Args:
            scan_result: ScanResult from the scan loop
        """
        try:
            payload = {
                "deviceId": self.device_id,
                "ts": scan_result.ts,
                "total": scan_result.total_entities,
                "afk": scan_result.afk_entities,
                "entities": [
                    {
                        "id": r.entity_id,
                        "afk": r.verdict.is_afk,
                        "ticks": r.verdict.unchanged_ticks,
                        "distance": r.distance,
                    }
                    for r in scan_result.reports
                ],
            }
            self._publish(self.topic, payload)
        except Exception:
            log.exception("MQTT scan publish failed")

    def publish_heartbeat(self, system_health=None, statistics=None):
        """
        Publish heartbeat packet with host health and scan statistics.
        """
        try:
            payload = {
                "deviceId": self.device_id,
                "ts": time.time(),
                "type": "heartbeat",
                "system": system_health or {},
                "statistics": statistics or {},
            }
            self._publish(f"{self.topic}/heartbeat", payload, qos=0)
        except Exception:
            log.exception("MQTT heartbeat publish failed")

    def shutdown(self):
        try:
            self.client.loop_stop()
            self.client.disconnect()
        except (OSError, ValueError) as e:
            log.debug("MQTT shutdown: %s", e)
