#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
BLE Beacon Presence Tracker
- Scans iBeacon adverts (Apple manufacturer data) and follows ONE uuid/major/minor
- EMA smoothing on RSSI, weak-signal and silence timers with hysteresis
- Reports searching / present / away once per second; away locks for the session
- Settings from flags or a JSON config (flags win); --save-config writes them back

Usage:
  beacon-presence --uuid FDA50693-A4E2-4FB1-AFCF-C6EB07647825 --major 10011 --minor 19641
  beacon-presence --config presence.json --min-valid-rssi -78 --save-config presence.json
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import Callable, Optional

from beacon_config import PresenceConfig, apply_overrides, load_config, save_config
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
from ibeacon_decode import BeaconMatcher
from presence_report import PresenceReporter
from presence_state import PresenceDecision, PresenceStateMachine

logger = logging.getLogger("beacon_presence")


class PresenceTracker:
    """Decoder -> matcher -> gate -> EMA/state machine -> reporter."""

    def __init__(self, config: PresenceConfig, started_at: float, sink: Callable[[str], None] = print):
        self.config = config
        self.matcher = BeaconMatcher(config.target)
        self.machine = PresenceStateMachine(config)
        self.reporter = PresenceReporter(config, started_at, sink)
        self.outage = False

    def on_advertisement(self, ev: AdvertisementEvent):
        sample = self.matcher.gate(self.matcher.match(ev.payload, ev.rssi, ev.observed_at))
        if sample is not None:
            self.machine.observe(sample)

    def on_power_state(self, ev: PowerStateEvent):
        log_power_state(ev.state)
        if ev.state is PowerState.POWERED_ON:
            if self.outage:
                self.machine.power_restored()
            self.outage = False
        else:
            self.outage = True

    def tick(self, now: float) -> PresenceDecision:
        d = self.machine.tick(now)
        self.reporter.report(d, now, self.machine.record.first_confirmed)
        return d

    def finish(self):
        rec = self.machine.record
        logger.info("[BLE] session end: state=%s away_locked=%s", rec.state.value, rec.away_locked)
        logger.debug("[BLE] decoder: %s", self.matcher.stats.as_line())


def build_arg_parser():
    p = argparse.ArgumentParser(description="BLE iBeacon presence tracker (single beacon)")
    p.add_argument("--uuid", default=None, help="Beacon proximity UUID")
    p.add_argument("--major", type=int, default=None, help="Beacon major (0-65535)")
    p.add_argument("--minor", type=int, default=None, help="Beacon minor (0-65535)")
    p.add_argument("--min-valid-rssi", type=int, default=None,
                   help="dBm floor for a usable advert and for weak-signal detection (default -75)")
    p.add_argument("--weak-seconds", type=float, default=None,
                   help="Seconds of weak averaged RSSI before declaring away (default 60, >= 1)")
    p.add_argument("--timeout", type=float, default=None,
                   help="Silence before reporting stale-hold (T1, default 113)")
    p.add_argument("--away-timeout", type=float, default=None,
                   help="Silence before declaring away (T2, default 120)")
    p.add_argument("--ema-alpha", type=float, default=None, help="EMA weight in (0, 1] (default 0.3)")

    p.add_argument("--config", default=None, help="Load settings from JSON (flags override)")
    p.add_argument("--save-config", default=None, help="Write effective settings to JSON and continue")
    p.add_argument("--adapter", default=None, help="HCI adapter to use (e.g., hci0)")
    p.add_argument("--debug", action="store_true", help="Verbose diagnostics")
    return p


def config_from_args(args) -> PresenceConfig:
    cfg = load_config(args.config)
    cfg = apply_overrides(
        cfg,
        uuid=args.uuid,
        major=args.major,
        minor=args.minor,
        min_valid_rssi=args.min_valid_rssi,
        weak_seconds=args.weak_seconds,
        timeout=args.timeout,
        away_timeout=args.away_timeout,
        ema_alpha=args.ema_alpha,
    )
    return cfg.validate()


def resolve_config(parser, args) -> PresenceConfig:
    """Effective config, or a usage error for bad values and unreadable files."""
    try:
        return config_from_args(args)
    except (ValueError, OSError) as e:
        parser.error(str(e))


def _force_exit():
    sys.stdout.flush()
    os._exit(130)


async def main(argv: Optional[list] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO, format="%(message)s")

    cfg = resolve_config(parser, args)

    if args.save_config:
        try:
            save_config(args.save_config, cfg)
        except OSError as e:
            logger.error("[cfg] cannot save %s: %s", args.save_config, e)

    print(f"[BLE] {cfg.banner()}")
    for note in cfg.notes():
        print(f"[BLE] note: {note}")

    session = BeaconSession(ShutdownToken(on_force=_force_exit))
    tracker = PresenceTracker(cfg, started_at=session.clock())
    session.on_advertisement = tracker.on_advertisement
    session.on_power_state = tracker.on_power_state
    session.every(1.0, tracker.tick)
    session.on_drain(tracker.finish)

    print("[BLE] waiting for central state updates... (Ctrl+C to stop)")
    await run_session(session, BleakAdvertisementSource(session, adapter=args.adapter))
    return 0


def cli():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
