#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
beacon_calibrate.py
Two-step RSSI calibration for beacon-presence.

  1) Place the beacon next to the computer, press Enter -> baseline capture
  2) Move it to another room / far away, press Enter   -> away capture

Prints per-window RSSI stats, the advert interval percentiles and a suggested
beacon-presence command line. A window that ends with too few samples is
extended until it has enough.

Usage:
  beacon-calibrate --uuid FDA50693-A4E2-4FB1-AFCF-C6EB07647825 --major 10011 --minor 19641
  beacon-calibrate --baseline-seconds 30 --away-seconds 45 --save-config presence.json
"""

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import replace
from typing import Optional

from beacon_config import DEFAULT_MAJOR, DEFAULT_MINOR, DEFAULT_UUID, load_config, save_config
from beacon_session import (
    AdvertisementEvent,
    BeaconSession,
    BleakAdvertisementSource,
    InputEvent,
    PowerState,
    PowerStateEvent,
    ShutdownToken,
    log_power_state,
    run_session,
    start_stdin_reader,
)
from ibeacon_decode import BeaconIdentity, BeaconMatcher
from rssi_calibration import CalibrationRunner, PresenceFlags

logger = logging.getLogger("beacon_calibrate")


class CalibrationSession:
    """Glue between the event channel and CalibrationRunner."""

    def __init__(self, target: BeaconIdentity, runner: CalibrationRunner, session: BeaconSession):
        self.matcher = BeaconMatcher(target)
        self.runner = runner
        self.session = session
        self.flags: Optional[PresenceFlags] = None

    def on_advertisement(self, ev: AdvertisementEvent):
        sample = self.matcher.match(ev.payload, ev.rssi, ev.observed_at)
        if sample is not None:
            self.runner.observe(sample.rssi, sample.observed_at)

    def on_power_state(self, ev: PowerStateEvent):
        log_power_state(ev.state)
        if ev.state is PowerState.POWERED_ON:
            self.runner.bluetooth_ready()
        else:
            self.runner.reset_anchor()

    def on_input(self, ev: InputEvent):
        self.runner.enter_pressed(self.session.clock())

    def tick(self, now: float):
        if self.runner.tick(now):
            self.session.token.request("calibration done")

    def finish(self):
        self.flags = self.runner.summary()
        print("[BLE] calibration done" if self.flags else "[BLE] calibration incomplete")


def build_arg_parser():
    ap = argparse.ArgumentParser(description="Two-step RSSI calibration for beacon-presence")
    ap.add_argument("--uuid", default=DEFAULT_UUID, help="Beacon proximity UUID")
    ap.add_argument("--major", type=int, default=DEFAULT_MAJOR, help="Beacon major")
    ap.add_argument("--minor", type=int, default=DEFAULT_MINOR, help="Beacon minor")
    ap.add_argument("--baseline-seconds", type=float, default=20.0, help="Baseline (near) capture length")
    ap.add_argument("--away-seconds", type=float, default=30.0, help="Away (far) capture length")
    ap.add_argument("--min-samples", type=int, default=15, help="Minimum valid samples per window")
    ap.add_argument("--save-config", default=None,
                    help="Merge the suggested values into this JSON config for beacon-presence")
    ap.add_argument("--adapter", default=None, help="HCI adapter to use (e.g., hci0)")
    ap.add_argument("--debug", action="store_true")
    return ap


def _force_exit():
    sys.stdout.flush()
    os._exit(130)


def save_suggestion(path: str, target: BeaconIdentity, flags: PresenceFlags):
    cfg = load_config(path)
    cfg = replace(
        cfg,
        target=target,
        min_valid_rssi=flags.min_valid_rssi,
        weak_seconds=float(flags.weak_seconds),
        timeout=float(flags.timeout),
        away_timeout=float(flags.away_timeout),
        ema_alpha=flags.ema_alpha,
    )
    save_config(path, cfg.validate())
    print(f"✅ Saved suggested settings to {path}")


async def main(argv: Optional[list] = None) -> int:
    ap = build_arg_parser()
    args = ap.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO, format="%(message)s")
    try:
        target = BeaconIdentity.parse(args.uuid, args.major, args.minor)
    except ValueError as e:
        ap.error(str(e))
    if args.baseline_seconds <= 0 or args.away_seconds <= 0 or args.min_samples < 1:
        ap.error("capture lengths must be > 0 and --min-samples >= 1")

    session = BeaconSession(ShutdownToken(on_force=_force_exit))
    runner = CalibrationRunner(
        baseline_seconds=args.baseline_seconds,
        away_seconds=args.away_seconds,
        min_samples=args.min_samples,
    )
    cal = CalibrationSession(target, runner, session)
    session.on_advertisement = cal.on_advertisement
    session.on_power_state = cal.on_power_state
    session.on_input = cal.on_input
    session.every(1.0, cal.tick)
    session.on_drain(cal.finish)

    print(f"[BLE] calibration ready for {target}")
    print("[BLE] waiting for Bluetooth...")
    start_stdin_reader(session)
    await run_session(session, BleakAdvertisementSource(session, adapter=args.adapter))

    if cal.flags is not None and args.save_config:
        try:
            save_suggestion(args.save_config, target, cal.flags)
        except (OSError, ValueError) as e:
            logger.error("⚠️ Failed to save %s: %s", args.save_config, e)
    return 0 if cal.flags is not None else 1


def cli():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
