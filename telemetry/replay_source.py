# telemetry/replay_source.py
"""
Entity source backed by a recorded scan file.

Each line of the file is one scan, JSON encoded:
    {"ts": 1700000000.0, "entities": {"alice": {"x": 1, "y": 64, "z": -3, "pitch": 0, "yaw": 90}}}

Any object with the same two methods (get_online_entities and
get_entity_telemetry) can drive the scan loop, e.g. a live radar client.
"""
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

log = logging.getLogger("replay_source")


class ReplaySource:
    def __init__(self, frames: List[Dict], loop: bool = False):
        """
        Args:
            frames: List of {"entities": {id: record}} scans, in order
            loop: Start over from the first scan when the end is reached
        """
        self.frames = frames
        self.loop = loop
        self.index = -1
        self.current: Dict = {}
        self.exhausted = not frames

    @classmethod
    def from_file(cls, path, loop: bool = False) -> "ReplaySource":
        frames = []
        with open(Path(path), "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                try:
                    frames.append(json.loads(line))
                except json.JSONDecodeError as e:
                    log.warning("Skipping malformed scan on line %d of %s: %s", lineno, path, e)
        log.info("Loaded %d recorded scans from %s", len(frames), path)
        return cls(frames, loop=loop)

    def get_online_entities(self) -> Optional[List[str]]:
        """Advance to the next scan and list the entities present in it."""
        if self.exhausted:
            return []
        self.index += 1
        if self.index >= len(self.frames):
            if not self.loop:
                self.exhausted = True
                self.current = {}
                return []
            self.index = 0
        self.current = self.frames[self.index].get("entities") or {}
        return list(self.current)

    def get_entity_telemetry(self, entity_id) -> Optional[Dict]:
        return self.current.get(entity_id)
