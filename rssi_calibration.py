"""
Two-phase RSSI calibration.

  1) baseline: beacon right next to the host
  2) away:     beacon in another room / far away

Each window needs a minimum number of valid samples. The midpoint between the
weak end of the baseline (p25) and the strong end of the away window (p75)
becomes the suggested --min-valid-rssi; advert interval p95 drives the
suggested weak/away timings.
"""

from __future__ import annotations
import logging
import math
import statistics as stats
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence

from ibeacon_decode import clamp_rssi, is_valid_rssi

logger = logging.getLogger(__name__)

MIN_MEDIAN_DROP_DB = 6.0
DEFAULT_INTERVAL_P95 = 20.0


class InsufficientSamples(ValueError):
    pass


def round_half_away(x: float) -> int:
    return int(math.copysign(math.floor(abs(x) + 0.5), x))


@dataclass(frozen=True)
class RssiWindowStats:
    count: int
    min: float
    max: float
    median: float
    p25: float
    p75: float
    mean: float

    def as_line(self) -> str:
        return (f"count={self.count} median={self.median:.1f} p25={self.p25:.1f} "
                f"p75={self.p75:.1f} min={self.min:.1f} max={self.max:.1f}")


def lower_rank(sorted_values: Sequence[float], p: float) -> float:
    """Percentile at the lower rank int((n-1)*p), no interpolation."""
    n = len(sorted_values)
    return float(sorted_values[0]) if n == 1 else float(sorted_values[int((n - 1) * p)])


def window_stats(values: Sequence[int]) -> RssiWindowStats:
    if not values:
        raise InsufficientSamples("empty sample window")
    s = sorted(values)
    return RssiWindowStats(
        count=len(s),
        min=float(s[0]),
        max=float(s[-1]),
        median=float(stats.median(s)),
        p25=lower_rank(s, 0.25),
        p75=lower_rank(s, 0.75),
        mean=stats.fmean(s),
    )


@dataclass(frozen=True)
class IntervalStats:
    p50: float
    p90: float
    p95: float
    max: float


def interval_stats(intervals: Sequence[float]) -> Optional[IntervalStats]:
    if not intervals:
        return None
    s = sorted(intervals)
    return IntervalStats(lower_rank(s, 0.50), lower_rank(s, 0.90), lower_rank(s, 0.95), s[-1])


@dataclass
class CalibrationSample:
    min_samples: int = 15
    baseline: List[int] = field(default_factory=list)
    away: List[int] = field(default_factory=list)

    def ready(self, phase: str) -> bool:
        return len(getattr(self, phase)) >= self.min_samples

    def complete(self) -> bool:
        return self.ready("baseline") and self.ready("away")


@dataclass(frozen=True)
class CalibrationResult:
    baseline: RssiWindowStats
    away: RssiWindowStats
    min_valid_rssi: int
    drop_median: float
    drop_conservative: float
    baseline_below: int
    away_above: int
    low_contrast: bool


def recommend_threshold(sample: CalibrationSample,
                        min_median_drop: float = MIN_MEDIAN_DROP_DB) -> CalibrationResult:
    if not sample.complete():
        raise InsufficientSamples(
            f"insufficient samples (baseline={len(sample.baseline)}, away={len(sample.away)}, "
            f"min={sample.min_samples})"
        )
    b = window_stats(sample.baseline)
    a = window_stats(sample.away)
    threshold = clamp_rssi(round_half_away((b.p25 + a.p75) / 2.0))
    drop_median = b.median - a.median
    drop_conservative = b.p25 - a.p75
    return CalibrationResult(
        baseline=b,
        away=a,
        min_valid_rssi=threshold,
        drop_median=drop_median,
        drop_conservative=drop_conservative,
        baseline_below=sum(1 for v in sample.baseline if v < threshold),
        away_above=sum(1 for v in sample.away if v >= threshold),
        low_contrast=drop_median < min_median_drop or b.p25 <= a.p75,
    )


@dataclass(frozen=True)
class PresenceFlags:
    min_valid_rssi: int
    weak_seconds: int
    timeout: int
    away_timeout: int
    ema_alpha: float
    weak_prime_seconds: int

    def as_line(self, program: str = "beacon-presence") -> str:
        return (f"{program} --min-valid-rssi {self.min_valid_rssi} --weak-seconds {self.weak_seconds} "
                f"--timeout {self.timeout} --away-timeout {self.away_timeout} "
                f"--ema-alpha {self.ema_alpha:.2f}")


def recommend_flags(result: CalibrationResult, interval_p95: Optional[float]) -> PresenceFlags:
    p95 = DEFAULT_INTERVAL_P95 if interval_p95 is None else interval_p95
    base_timeout = max(60, int(math.ceil(p95 * 3.0)))
    return PresenceFlags(
        min_valid_rssi=result.min_valid_rssi,
        weak_seconds=max(20, int(math.ceil(p95 * 2.0))),
        timeout=base_timeout,
        away_timeout=base_timeout + int(math.ceil(p95)),
        ema_alpha=0.30,
        weak_prime_seconds=max(10, int(math.ceil(p95 * 4.0))),
    )


class Phase(str, Enum):
    WAITING_BLUETOOTH = "waiting_bluetooth"
    AWAIT_BASELINE = "await_baseline"
    BASELINE = "baseline"
    AWAIT_AWAY = "await_away"
    AWAY = "away"
    DONE = "done"


class CalibrationRunner:
    """Drives the baseline/away capture from Enter presses and 1 s ticks."""

    def __init__(self, *, baseline_seconds: float = 20.0, away_seconds: float = 30.0,
                 min_samples: int = 15, min_gap_seconds: float = 0.2,
                 sink: Callable[[str], None] = print):
        self.durations = {Phase.BASELINE: baseline_seconds, Phase.AWAY: away_seconds}
        self.sample = CalibrationSample(min_samples=min_samples)
        self.min_gap_seconds = min_gap_seconds
        self.intervals: List[float] = []
        self.last_advert_at: Optional[float] = None
        self.phase = Phase.WAITING_BLUETOOTH
        self.phase_start: Optional[float] = None
        self.last_remaining: Optional[int] = None
        self.sink = sink

    def bluetooth_ready(self):
        if self.phase is Phase.WAITING_BLUETOOTH:
            self.phase = Phase.AWAIT_BASELINE
            self.sink("[BLE] Step 1/2: place the beacon next to the computer.")
            self.sink(f"[BLE] Press Enter to start baseline capture "
                      f"({int(self.durations[Phase.BASELINE])}s).")

    def enter_pressed(self, now: float):
        if self.phase is Phase.AWAIT_BASELINE:
            self._start(Phase.BASELINE, now)
            self.sink(f"[BLE] baseline started: stay close for {int(self.durations[Phase.BASELINE])}s")
        elif self.phase is Phase.AWAIT_AWAY:
            self._start(Phase.AWAY, now)
            self.sink(f"[BLE] away started: move away for {int(self.durations[Phase.AWAY])}s")

    def _start(self, phase: Phase, now: float):
        getattr(self.sample, phase.value).clear()
        self.phase = phase
        self.phase_start = now
        self.last_remaining = None

    def observe(self, rssi: int, now: float):
        # every advert moves the anchor, even one too close to count
        if self.last_advert_at is not None and now - self.last_advert_at >= self.min_gap_seconds:
            self.intervals.append(now - self.last_advert_at)
        self.last_advert_at = now
        if not is_valid_rssi(rssi):
            return
        if self.phase in (Phase.BASELINE, Phase.AWAY):
            getattr(self.sample, self.phase.value).append(rssi)

    def tick(self, now: float) -> bool:
        """Advance countdowns; True once both windows are captured."""
        if self.phase not in (Phase.BASELINE, Phase.AWAY) or self.phase_start is None:
            return self.phase is Phase.DONE
        label = self.phase.value
        total = self.durations[self.phase]
        samples = getattr(self.sample, label)
        elapsed = now - self.phase_start
        remaining = max(0, int(math.ceil(total - elapsed)))
        if remaining != self.last_remaining:
            if remaining % 5 == 0 or remaining <= 5:
                self.sink(f"[BLE] {label} remaining: {remaining}s (samples={len(samples)})")
            self.last_remaining = remaining

        if elapsed >= total:
            if not self.sample.ready(label):
                self.sink(f"[BLE] {label} extended: need {self.sample.min_samples} samples "
                          f"(have {len(samples)})")
                self.phase_start = now
                self.last_remaining = None
            elif self.phase is Phase.BASELINE:
                self.phase = Phase.AWAIT_AWAY
                self.phase_start = None
                self.sink(f"[BLE] baseline complete: {len(samples)} samples")
                self.sink("[BLE] Step 2/2: move to another room or further away.")
                self.sink(f"[BLE] Press Enter to start away capture ({int(self.durations[Phase.AWAY])}s).")
            else:
                self.phase = Phase.DONE
                self.phase_start = None
                self.sink(f"[BLE] away complete: {len(samples)} samples")
        return self.phase is Phase.DONE

    def reset_anchor(self):
        self.last_advert_at = None

    def interval_p95(self) -> Optional[float]:
        s = interval_stats(self.intervals)
        return s.p95 if s else None

    def summary(self) -> Optional[PresenceFlags]:
        """Print the calibration report; None when samples are insufficient."""
        try:
            result = recommend_threshold(self.sample)
        except InsufficientSamples as e:
            logger.debug("calibration incomplete: %s", e)
            self.sink(f"[BLE] summary: {e}")
            self.sink("[BLE] retry: keep the beacon steady and closer for baseline, then farther for away")
            return None

        self.sink(f"[BLE] baseline stats: {result.baseline.as_line()}")
        self.sink(f"[BLE] away stats:     {result.away.as_line()}")
        self.sink(f"[BLE] drop median={result.drop_median:.1f} dB, "
                  f"conservative={result.drop_conservative:.1f} dB")

        s = interval_stats(self.intervals)
        if s is not None:
            self.sink(f"[BLE] adv interval p50={s.p50:.1f}s p90={s.p90:.1f}s "
                      f"p95={s.p95:.1f}s max={s.max:.1f}s")

        nb, na = len(self.sample.baseline), len(self.sample.away)
        self.sink(f"[BLE] min-valid-rssi range: [{round_half_away(result.away.p75)}, "
                  f"{round_half_away(result.baseline.p25)}] -> suggested {result.min_valid_rssi}")
        self.sink(f"[BLE] min-valid-rssi check: baseline< {result.baseline_below}/{nb} "
                  f"({100.0 * result.baseline_below / max(nb, 1):.1f}%) "
                  f"away>= {result.away_above}/{na} ({100.0 * result.away_above / max(na, 1):.1f}%)")

        flags = recommend_flags(result, self.interval_p95())
        self.sink(f"[BLE] weak-prime-seconds hint: ~4 ads = {flags.weak_prime_seconds}s")
        self.sink("[BLE] suggested flags:")
        self.sink(flags.as_line())
        if result.low_contrast:
            self.sink("[BLE] warning: baseline/away separation is small; "
                      "try moving farther during away phase.")
        return flags
