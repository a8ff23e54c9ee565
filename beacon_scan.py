#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
beacon_scan.py
List every iBeacon in range, to find the uuid/major/minor to track.

Each identity prints at most once per --print-interval seconds with its raw
RSSI, an EMA of its RSSI and the advertised tx power.

Usage:
  beacon-scan --min-rssi -90 --print-interval 5
  beacon-scan --seconds 30
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from beacon_session import (
    AdvertisementEvent,
    BeaconSession,
    BleakAdvertisementSource,
    ShutdownToken,
    log_power_state,
    run_session,
)
from ibeacon_decode import BeaconIdentity, is_valid_rssi, parse_ibeacon
from rssi_filter import EmaFilterBank

logger = logging.getLogger("beacon_scan")


def now_iso():
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


class BeaconLister:
    def __init__(self, min_rssi: int = -95, print_interval: float = 2.0, ema_alpha: float = 0.3,
                 sink: Callable[[str], None] = print):
        self.min_rssi = min_rssi
        self.print_interval = print_interval
        self.filters = EmaFilterBank(ema_alpha)
        self.last_print: Dict[BeaconIdentity, float] = {}
        self.sink = sink

    def on_advertisement(self, ev: AdvertisementEvent) -> Optional[str]:
        decoded = parse_ibeacon(ev.payload)
        if decoded is None or not is_valid_rssi(ev.rssi) or ev.rssi < self.min_rssi:
            return None
        key = decoded.identity
        avg = self.filters.update(key, ev.rssi)
        last = self.last_print.get(key)
        if last is not None and ev.observed_at - last < self.print_interval:
            return None
        self.last_print[key] = ev.observed_at
        line = (f"[SCAN] {now_iso()} uuid={key.uuid} major={key.major} minor={key.minor} "
                f"rssi={ev.rssi} avg={avg:.1f} tx={decoded.tx_power}")
        self.sink(line)
        return line


def _force_exit():
    sys.stdout.flush()
    os._exit(130)


def build_arg_parser():
    ap = argparse.ArgumentParser(description="List iBeacon advertisements in range")
    ap.add_argument("--min-rssi", type=int, default=-95, help="Ignore adverts weaker than this (dBm)")
    ap.add_argument("--print-interval", type=float, default=2.0,
                    help="Seconds between lines for the same beacon (>= 0)")
    ap.add_argument("--seconds", type=float, default=None, help="Stop after this many seconds")
    ap.add_argument("--adapter", default=None, help="HCI adapter to use (e.g., hci0)")
    ap.add_argument("--debug", action="store_true")
    return ap


async def main(argv: Optional[list] = None) -> int:
    ap = build_arg_parser()
    args = ap.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO, format="%(message)s")
    if args.print_interval < 0:
        ap.error("invalid value for --print-interval")

    session = BeaconSession(ShutdownToken(on_force=_force_exit))
    lister = BeaconLister(args.min_rssi, args.print_interval)
    session.on_advertisement = lister.on_advertisement
    session.on_power_state = lambda ev: log_power_state(ev.state)
    if args.seconds:
        session.every(args.seconds, lambda now: session.token.request("scan time elapsed"))
    session.on_drain(lambda: print(f"[SCAN] {len(lister.filters)} beacon(s) seen"))

    print(f"[SCAN] starting scan with minRssi={args.min_rssi} printInterval={args.print_interval:.1f}s")
    await run_session(session, BleakAdvertisementSource(session, adapter=args.adapter))
    return 0


def cli():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
