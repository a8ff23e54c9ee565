"""
Inter-arrival gap statistics for presence timeout calibration.

Record the gap between consecutive accepted adverts from the target while it
sits still next to the host. Every long gap is a moment a timeout of that
length would have wrongly declared the beacon away, so the gap distribution
gives an empirical false-away rate per candidate timeout:

    false_per_day(t) = count(gap >= t) / active_seconds * 86400

and suggest_timeouts() picks the smallest t that meets a target rate.
"""

from __future__ import annotations
import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

DEFAULT_FALSE_THRESHOLDS: Tuple[float, ...] = (10, 20, 30, 45, 60, 90, 120, 150, 180)


@dataclass(frozen=True)
class GapObservation:
    delta_seconds: float
    wall_seconds: float
    rssi: Optional[int]


@dataclass
class GapTracker:
    min_gap_seconds: float = 0.2
    thresholds: Sequence[float] = DEFAULT_FALSE_THRESHOLDS
    gaps: List[GapObservation] = field(default_factory=list)
    observed_seconds: float = 0.0
    first_seen_at: Optional[float] = None
    previous_at: Optional[float] = None
    exceed_counts: List[int] = field(default_factory=list)

    def __post_init__(self):
        if not self.exceed_counts:
            self.exceed_counts = [0] * len(self.thresholds)

    def record(self, now: float, rssi: Optional[int] = None) -> Optional[GapObservation]:
        """Feed one accepted advert; returns the gap if one was recorded.

        The first advert (and the first after reset_anchor) only anchors the
        clock. Deltas below min_gap_seconds are duplicates and leave the
        anchor where it was.
        """
        if self.first_seen_at is None:
            self.first_seen_at = now
        if self.previous_at is None:
            self.previous_at = now
            return None
        delta = now - self.previous_at
        if delta < self.min_gap_seconds:
            return None
        obs = GapObservation(delta, now - self.first_seen_at, rssi)
        self.gaps.append(obs)
        self.observed_seconds += delta
        for i, t in enumerate(self.thresholds):
            if delta >= t:
                self.exceed_counts[i] += 1
        self.previous_at = now
        return obs

    def reset_anchor(self):
        """Drop the previous timestamp so an outage is not counted as a gap."""
        self.previous_at = None

    @property
    def deltas(self) -> List[float]:
        return [g.delta_seconds for g in self.gaps]

    def false_per_hour(self) -> List[float]:
        return false_per_hour_values(self.exceed_counts, self.observed_seconds)


def quantile(sorted_values: Sequence[float], q: float) -> float:
    """Linear interpolation at rank (n-1)*q over an already sorted sequence."""
    n = len(sorted_values)
    if n == 0:
        raise ValueError("quantile of empty sequence")
    if n == 1:
        return float(sorted_values[0])
    pos = (n - 1) * q
    i = int(math.floor(pos))
    frac = pos - i
    if i >= n - 1:
        return float(sorted_values[n - 1])
    return sorted_values[i] * (1 - frac) + sorted_values[i + 1] * frac


@dataclass(frozen=True)
class GapSummary:
    count: int
    min: float
    max: float
    mean: float
    p50: float
    p90: float
    p95: float
    p99: float


def summarize(values: Sequence[float]) -> GapSummary:
    if not values:
        raise ValueError("no values to summarize")
    s = sorted(values)
    return GapSummary(
        count=len(s),
        min=s[0],
        max=s[-1],
        mean=sum(s) / len(s),
        p50=quantile(s, 0.50),
        p90=quantile(s, 0.90),
        p95=quantile(s, 0.95),
        p99=quantile(s, 0.99),
    )


def histogram(values: Sequence[float], bin_width: float = 0.25, max_seconds: float = 10.0,
              top_n: int = 5) -> List[Tuple[str, int]]:
    """Top-N populated bins as (label, count); ties keep bin order."""
    bins = int(math.ceil(max_seconds / bin_width))
    counts = [0] * (bins + 1)
    for v in values:
        if v < 0:
            continue
        if v >= max_seconds:
            counts[bins] += 1
        else:
            idx = int(math.floor(v / bin_width))
            counts[min(max(idx, 0), bins - 1)] += 1

    entries = []
    for i in range(bins):
        if counts[i] == 0:
            continue
        a = i * bin_width
        entries.append((f"[{a:.2f}-{a + bin_width:.2f})", counts[i]))
    if counts[bins] > 0:
        entries.append((f"[>={max_seconds:.2f}]", counts[bins]))

    entries.sort(key=lambda e: e[1], reverse=True)
    return entries[:top_n]


def format_histogram(entries: Sequence[Tuple[str, int]]) -> str:
    if not entries:
        return "(no bins yet)"
    return " ".join(f"{label}={n}" for label, n in entries)


def false_per_day(gaps: Sequence[float], threshold: float, active_seconds: float) -> float:
    if active_seconds <= 0:
        raise ValueError("active_seconds must be positive")
    exceed = sum(1 for g in gaps if g >= threshold)
    return exceed / active_seconds * 86400.0


def false_per_hour_values(exceed_counts: Sequence[int], active_seconds: float) -> List[float]:
    hours = max(active_seconds / 3600.0, 0.0001)
    return [c / hours for c in exceed_counts]


def format_false_per_hour(thresholds: Sequence[float], values: Sequence[float]) -> str:
    return " ".join(f"{int(t)}s={v:.2f}" for t, v in zip(thresholds, values))


@dataclass(frozen=True)
class TimeoutSuggestion:
    t1: float
    t2: float
    false_per_day_at_t1: float


def suggest_timeouts(gaps: Sequence[float], active_seconds: float, *,
                     target_false_per_day: float = 0.1,
                     safety_margin: float = 3.0,
                     max_suggested: float = 120.0,
                     step: float = 0.5,
                     min_active_seconds: float = 60.0,
                     min_gaps: int = 50) -> Optional[TimeoutSuggestion]:
    """Suggest (T1, T2) or None when the window is too small to trust."""
    if active_seconds <= min_active_seconds or len(gaps) < min_gaps:
        return None

    chosen = None
    k = 1
    while k * step <= max_suggested:
        candidate = k * step
        if false_per_day(gaps, candidate, active_seconds) <= target_false_per_day:
            chosen = candidate
            break
        k += 1

    if chosen is not None:
        base = chosen
    else:
        base = min(max(gaps) + safety_margin, max_suggested)
        logger.debug("no threshold <= %.1fs meets target; falling back to %.2fs", max_suggested, base)

    t1 = min(base + safety_margin, max_suggested)
    t2 = min(max(t1 * 2.0, t1 + 10.0), max_suggested)
    return TimeoutSuggestion(t1, t2, false_per_day(gaps, base, active_seconds))


def suggested_timeout_flags(s: TimeoutSuggestion) -> str:
    return f"--timeout {int(math.ceil(s.t1))} --away-timeout {int(math.ceil(s.t2))}"
