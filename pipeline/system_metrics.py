# pipeline/system_metrics.py
import time

import psutil

THERMAL_ZONE = "/sys/class/thermal/thermal_zone0/temp"


def read_temperature():
    """CPU temperature in Celsius, or None where the host does not expose it."""
    try:
        with open(THERMAL_ZONE) as f:
            return int(f.read()) / 1000.0
    except (OSError, ValueError):
        return None


def get_health():
    return {
        "cpu": psutil.cpu_percent(),
        "ram": psutil.virtual_memory().percent,
        "temp": read_temperature(),
        "ts": time.time(),
    }
