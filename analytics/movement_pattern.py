# analytics/movement_pattern.py
# Forced-movement Pattern Detection
# Detects repeating per-tick displacement (transport loops, water streams,
# mob pushers) that keeps an idle entity moving without player input.

import logging

import numpy as np

log = logging.getLogger("movement_pattern")


def movement_vectors(points: np.ndarray) -> np.ndarray:
    """Per-tick displacement: row j is points[j + 1] - points[j]."""
    return np.diff(points, axis=0)


def count_pattern_matches(history, lookback: int, diff_threshold: float) -> int:
    """
    Count earlier movement vectors that match the latest one.

    The latest vector (last - second last) is compared against up to
    `lookback` preceding vectors, newest first. A candidate matches when
    every axis differs from the latest vector by at most diff_threshold.

    Args:
        history: PositionHistory (or anything with as_array()) or an (n, 3) array
        lookback: Maximum number of earlier vectors to compare
        diff_threshold: Per-axis tolerance

    Returns:
        Number of matching vectors in the window
    """
    points = history.as_array() if hasattr(history, "as_array") else np.asarray(history, dtype=float)
    n = len(points)
    if n < 2:
        return 0

    vectors = movement_vectors(points)
    latest = vectors[-1]

    # Vector j starts at point j; the window covers j = n-3 down to n-lookback-2
    start = max(0, n - lookback - 2)
    window = vectors[start:n - 2]
    if len(window) == 0:
        return 0

    matches = np.all(np.abs(window - latest) <= diff_threshold, axis=1)
    return int(np.count_nonzero(matches))


def is_stationary_vector(vector: np.ndarray, diff_threshold: float) -> bool:
    return bool(np.all(np.abs(vector) <= diff_threshold))


def detect_movement_pattern(history, config) -> bool:
    """
    Decide whether the latest movement vector recurs within the look-back window.

    Pure function of the supplied history; never mutates it.

    Args:
        history: PositionHistory or (n, 3) array, oldest first
        config: AFKConfig

    Returns:
        True if at least pattern_threshold earlier vectors match the latest one
    """
    points = history.as_array() if hasattr(history, "as_array") else np.asarray(history, dtype=float)
    n = len(points)
    if n < config.pattern_min_history or n < 2:
        return False

    if config.pattern_ignore_stationary:
        latest = points[-1] - points[-2]
        if is_stationary_vector(latest, config.pattern_diff_threshold):
            return False

    count = count_pattern_matches(points, config.pattern_lookback, config.pattern_diff_threshold)
    detected = count >= config.pattern_threshold
    if detected:
        log.debug("Movement pattern: %d/%d vectors match (need %d)",
                  count, config.pattern_lookback, config.pattern_threshold)
    return detected
