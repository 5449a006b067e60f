"""
Signal scoring primitives.

Pure functions; all persistence and thresholds live in the matching engine.
"""

from __future__ import annotations

import statistics
from datetime import datetime
from typing import Mapping

import jellyfish

from crosslink.kernel.time import coerce_utc

HOURS_PER_WEEK = 168

EXACT_MATCH_SCORE = 100.0
CONTAINMENT_SCORE = 85.0


def username_similarity(a: str | None, b: str | None) -> float:
    """Score two usernames on a 0-100 scale.

    Case-insensitive. Exact match scores 100, containment of one in the other
    scores 85, otherwise the normalized Levenshtein similarity.
    """
    if not a or not b:
        return 0.0

    left = a.strip().lower()
    right = b.strip().lower()
    if not left or not right:
        return 0.0
    if left == right:
        return EXACT_MATCH_SCORE
    if left in right or right in left:
        return CONTAINMENT_SCORE

    distance = jellyfish.levenshtein_distance(left, right)
    longest = max(len(left), len(right))
    return max(0.0, (1.0 - distance / longest) * 100.0)


def hour_of_week_bucket(moment: datetime) -> int:
    """Bucket index 0..167, Monday 00:00 UTC being bucket 0."""
    utc = coerce_utc(moment)
    return utc.weekday() * 24 + utc.hour


def histogram_vector(histogram: Mapping[str, int] | None) -> list[float]:
    vector = [0.0] * HOURS_PER_WEEK
    for key, count in (histogram or {}).items():
        try:
            bucket = int(key)
        except (TypeError, ValueError):
            continue
        if 0 <= bucket < HOURS_PER_WEEK:
            vector[bucket] = float(count)
    return vector


def activity_correlation(
    left: Mapping[str, int] | None,
    right: Mapping[str, int] | None,
) -> float:
    """Pearson correlation of two hour-of-week histograms, clamped to [0, 1].

    Anti-correlated and undefined (flat or empty histogram) pairs score 0.
    """
    x = histogram_vector(left)
    y = histogram_vector(right)
    try:
        value = statistics.correlation(x, y)
    except statistics.StatisticsError:
        return 0.0
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(1.0, value))
