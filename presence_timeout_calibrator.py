#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
presence_timeout_calibrator.py
Measure advert gaps of a beacon that stays PRESENT, and suggest timeouts.

Leave the beacon next to the host for a long session (hours is best). Every
accepted advert gap is logged to CSV; every --summary-every seconds (and on
Ctrl+C) a report prints gap percentiles, a histogram, a false-away/hour table
and suggested T1/T2 for beacon-presence. Ctrl+C once = final report, twice =
exit immediately.

Usage:
  presence-timeout-calibrator --uuid FDA50693-A4E2-4FB1-AFCF-C6EB07647825 --major 10011 --minor 19641
  presence-timeout-calibrator --out gaps.csv --target-false-per-day 0.05
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import Callable, List, Optional

from beacon_config import DEFAULT_MAJOR, DEFAULT_MINOR, DEFAULT_UUID
from beacon_session import (
    AdvertisementEvent,
    BeaconSession,
    BleakAdvertisementSource,
    PowerState,
    PowerStateEvent,
    ShutdownToken,
    log_power_state,
    run_session,
)
from gap_csv import DEFAULT_CSV_NAME, GapCsvWriter
from gap_stats import (
    DEFAULT_FALSE_THRESHOLDS,
    GapTracker,
    format_false_per_hour,
    format_histogram,
    histogram,
    suggest_timeouts,
    suggested_timeout_flags,
    summarize,
)
from ibeacon_decode import BeaconIdentity, BeaconMatcher, is_valid_rssi

logger = logging.getLogger("presence_timeout_calibrator")

LONG_GAP_SECONDS = 10.0
LOG_EVERY_GAPS = 200


class TimeoutCalibrator:
    def __init__(self, target: BeaconIdentity, *, thresholds=DEFAULT_FALSE_THRESHOLDS,
                 min_gap_seconds: float = 0.2, csv_writer: Optional[GapCsvWriter] = None,
                 target_false_per_day: float = 0.1, safety_margin: float = 3.0,
                 max_suggested: float = 120.0, bin_width: float = 0.25, hist_max: float = 10.0,
                 sink: Callable[[str], None] = print):
        self.matcher = BeaconMatcher(target)
        self.tracker = GapTracker(min_gap_seconds=min_gap_seconds, thresholds=tuple(thresholds))
        self.csv = csv_writer
        self.target_false_per_day = target_false_per_day
        self.safety_margin = safety_margin
        self.max_suggested = max_suggested
        self.bin_width = bin_width
        self.hist_max = hist_max
        self.sink = sink

    def on_advertisement(self, ev: AdvertisementEvent):
        sample = self.matcher.match(ev.payload, ev.rssi, ev.observed_at)
        if sample is None:
            return
        rssi = sample.rssi if is_valid_rssi(sample.rssi) else None
        obs = self.tracker.record(sample.observed_at, rssi)
        if obs is None:
            return
        if self.csv is not None:
            self.csv.write(obs, self.tracker.false_per_hour())
        if obs.delta_seconds >= LONG_GAP_SECONDS:
            logger.info("[BLE] long gap: %.2fs", obs.delta_seconds)
        elif len(self.tracker.gaps) % LOG_EVERY_GAPS == 0:
            logger.info("[BLE] gaps recorded: %d last=%.2fs", len(self.tracker.gaps), obs.delta_seconds)

    def on_power_state(self, ev: PowerStateEvent):
        log_power_state(ev.state)
        if ev.state is not PowerState.POWERED_ON:
            self.tracker.reset_anchor()

    def summary_lines(self, now: float, final: bool = False) -> List[str]:
        t = self.tracker
        if t.first_seen_at is None:
            return [f"[BLE] {'final' if final else 'summary'}: waiting for first beacon..."]
        wall = now - t.first_seen_at
        if not t.gaps:
            return [f"[BLE] {'final' if final else 'summary'}: no gaps yet (wall={wall:.2f}s)"]

        prefix = "[BLE] FINAL" if final else "[BLE] summary"
        deltas = t.deltas
        active = max(t.observed_seconds, 0.0)
        s = summarize(deltas)
        exceed = {k: sum(1 for g in deltas if g >= k) for k in (10, 20, 30)}
        lines = [
            f"{prefix} wall={wall:.2f}s active={active:.2f}s samples={s.count} min={s.min:.2f}s "
            f"avg={s.mean:.2f}s p50={s.p50:.2f}s p90={s.p90:.2f}s p95={s.p95:.2f}s p99={s.p99:.2f}s "
            f"max={s.max:.2f}s exceed>=10s:{exceed[10]} >=20s:{exceed[20]} >=30s:{exceed[30]}",
            f"{prefix} histogram (bin={self.bin_width:.2f}s, up to {self.hist_max:.2f}s): "
            f"{format_histogram(histogram(deltas, self.bin_width, self.hist_max))}",
            f"{prefix} false/hour table: {format_false_per_hour(t.thresholds, t.false_per_hour())}",
        ]
        suggestion = suggest_timeouts(
            deltas, active,
            target_false_per_day=self.target_false_per_day,
            safety_margin=self.safety_margin,
            max_suggested=self.max_suggested,
        )
        if suggestion is None:
            lines.append(f"{prefix} suggested timeouts: insufficient data to estimate reliably yet.")
        else:
            lines.append(
                f"{prefix} suggested presence timeouts (empirical, target false/day <= "
                f"{self.target_false_per_day:.3f}): T1={suggestion.t1:.2f}s "
                f"(est false/day ~ {suggestion.false_per_day_at_t1:.3f}) T2={suggestion.t2:.2f}s"
            )
            lines.append(f"{prefix} suggested flags: {suggested_timeout_flags(suggestion)}")
        return lines

    def emit_summary(self, now: float, final: bool = False):
        for line in self.summary_lines(now, final):
            self.sink(line)
        if self.csv is not None:
            self.csv.flush()

    def finish(self, now: float):
        self.emit_summary(now, final=True)
        if self.csv is not None:
            self.csv.close()
        logger.debug("[BLE] decoder: %s", self.matcher.stats.as_line())


def _thresholds(s: str):
    try:
        out = tuple(float(x) for x in s.split(",") if x.strip())
    except ValueError:
        raise argparse.ArgumentTypeError(f"bad threshold list: {s!r}") from None
    if not out or any(t <= 0 for t in out):
        raise argparse.ArgumentTypeError("thresholds must be positive seconds")
    return out


def build_arg_parser():
    ap = argparse.ArgumentParser(description="Presence timeout calibrator (advert gap statistics)")
    ap.add_argument("--uuid", default=DEFAULT_UUID, help="Beacon proximity UUID")
    ap.add_argument("--major", type=int, default=DEFAULT_MAJOR, help="Beacon major")
    ap.add_argument("--minor", type=int, default=DEFAULT_MINOR, help="Beacon minor")
    ap.add_argument("--out", default=DEFAULT_CSV_NAME, help="CSV output path ('' to disable)")
    ap.add_argument("--thresholds", type=_thresholds, default=DEFAULT_FALSE_THRESHOLDS,
                    help="Comma-separated false/hour thresholds in seconds")
    ap.add_argument("--summary-every", type=float, default=30.0, help="Seconds between summaries")
    ap.add_argument("--min-gap", type=float, default=0.2, help="Gaps below this are duplicates")
    ap.add_argument("--target-false-per-day", type=float, default=0.1, help="Objective for T1")
    ap.add_argument("--safety-margin", type=float, default=3.0, help="Seconds added to the chosen threshold")
    ap.add_argument("--max-suggested", type=float, default=120.0, help="Ceiling for suggested timeouts")
    ap.add_argument("--adapter", default=None, help="HCI adapter to use (e.g., hci0)")
    ap.add_argument("--debug", action="store_true")
    return ap


def _force_exit():
    sys.stdout.flush()
    os._exit(130)


async def main(argv: Optional[list] = None) -> int:
    ap = build_arg_parser()
    args = ap.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO, format="%(message)s")
    try:
        target = BeaconIdentity.parse(args.uuid, args.major, args.minor)
    except ValueError as e:
        ap.error(str(e))
    if args.summary_every <= 0 or args.min_gap < 0:
        ap.error("--summary-every must be > 0 and --min-gap >= 0")

    writer = None
    if args.out:
        writer = GapCsvWriter(args.out, args.thresholds)
        writer.open()

    session = BeaconSession(ShutdownToken(on_force=_force_exit))
    cal = TimeoutCalibrator(
        target,
        thresholds=args.thresholds,
        min_gap_seconds=args.min_gap,
        csv_writer=writer,
        target_false_per_day=args.target_false_per_day,
        safety_margin=args.safety_margin,
        max_suggested=args.max_suggested,
    )
    session.on_advertisement = cal.on_advertisement
    session.on_power_state = cal.on_power_state
    session.every(args.summary_every, cal.emit_summary)
    session.on_drain(lambda: cal.finish(session.clock()))

    print(f"[BLE] presence timeout calibrator started for {target}. "
          f"Press Ctrl+C to stop and print FINAL report.")
    await run_session(session, BleakAdvertisementSource(session, adapter=args.adapter))
    print("[BLE] exited.")
    return 0


def cli():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
