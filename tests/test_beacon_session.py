"""Tests for the single-loop session runtime."""

import asyncio
import time
from types import SimpleNamespace

from bleak.exc import BleakError

from beacon_session import (
    AdvertisementEvent,
    BeaconSession,
    BleakAdvertisementSource,
    InputEvent,
    PowerState,
    PowerStateEvent,
    ShutdownToken,
    classify_bleak_error,
)


class TestShutdownToken:
    """Tests for two-stage shutdown."""

    def test_stages(self):
        forced = []
        token = ShutdownToken(on_force=lambda: forced.append(True))
        assert token.draining is False
        assert token.request("SIGINT") == ShutdownToken.DRAINING
        assert token.reason == "SIGINT"
        assert forced == []
        assert token.request("SIGINT") == ShutdownToken.FORCED
        assert forced == [True]
        assert token.request("SIGINT") == ShutdownToken.FORCED
        assert forced == [True]


class TestScheduling:
    """Tests for scheduled tasks with a manual clock."""

    def test_missed_periods_are_skipped(self):
        now = [0.0]
        calls = []

        async def scenario():
            session = BeaconSession(clock=lambda: now[0])
            session.every(1.0, calls.append)
            session._run_due(0.5)
            session._run_due(1.0)
            session._run_due(3.7)
            return session.tasks[0].next_due

        assert asyncio.run(scenario()) == 4.0
        assert calls == [1.0, 3.7]


class TestSessionRun:
    """Tests for the dispatch loop."""

    def test_dispatch_ticks_and_drain(self):
        seen = []

        async def scenario():
            session = BeaconSession()
            session.on_advertisement = lambda ev: seen.append(("adv", ev.rssi))
            session.on_power_state = lambda ev: seen.append(("power", ev.state))
            session.on_input = lambda ev: seen.append(("input", ev.line))

            def tick(now):
                seen.append("tick")
                if seen.count("tick") == 3:
                    session.token.request("done")

            session.every(0.01, tick)
            session.on_drain(lambda: seen.append("drained"))
            session.post(PowerStateEvent(PowerState.POWERED_ON))
            session.post(AdvertisementEvent(b"", -60, 0.0))
            session.post(InputEvent(""))
            await asyncio.wait_for(session.run(), 5.0)
            return session

        session = asyncio.run(scenario())
        events = [s for s in seen if s != "tick"]
        assert events[:3] == [("power", PowerState.POWERED_ON), ("adv", -60), ("input", "")]
        assert seen.count("tick") == 3
        assert seen[-1] == "drained"
        assert session.power_state is PowerState.POWERED_ON

    def test_shutdown_request_wakes_idle_loop(self):
        """Draining starts right away even when the next timer is far off."""
        async def scenario():
            session = BeaconSession()
            drained_at = []
            session.every(30.0, lambda now: None)
            session.on_drain(lambda: drained_at.append(time.monotonic()))
            start = time.monotonic()
            asyncio.get_running_loop().call_later(0.1, session.token.request, "SIGINT")
            await asyncio.wait_for(session.run(), 5.0)
            return drained_at[0] - start

        assert asyncio.run(scenario()) < 1.0


class TestClassifyBleakError:
    def test_messages(self):
        assert classify_bleak_error(BleakError("Bluetooth adapter is powered off")) is PowerState.POWERED_OFF
        assert classify_bleak_error(BleakError("Permission denied")) is PowerState.UNAUTHORIZED
        assert classify_bleak_error(BleakError("No Bluetooth adapters found.")) is PowerState.UNSUPPORTED
        assert classify_bleak_error(BleakError("something else")) is PowerState.UNKNOWN


class FakeScanner:
    def __init__(self, fail=None, **kwargs):
        self.fail = fail
        self.kwargs = kwargs
        self.stopped = False

    async def start(self):
        if self.fail:
            raise BleakError(self.fail)

    async def stop(self):
        self.stopped = True


class TestBleakAdvertisementSource:
    """Tests for the bleak-backed source with a fake scanner."""

    def test_detection_callback_posts_raw_field(self, make_payload):
        raw = make_payload()

        async def scenario():
            session = BeaconSession(clock=lambda: 42.0)
            source = BleakAdvertisementSource(session)
            device = SimpleNamespace(address="AA:BB:CC:DD:EE:FF")
            source.detection_callback(device, SimpleNamespace(manufacturer_data={0x004C: raw[2:]}, rssi=-61))
            source.detection_callback(device, SimpleNamespace(manufacturer_data={0x004C: raw[2:]}, rssi=None))
            return session.events

        events = asyncio.run(scenario())
        assert events.qsize() == 1
        ev = events.get_nowait()
        assert ev == AdvertisementEvent(raw, -61, 42.0)

    def test_start_failure_reports_power_state(self):
        async def scenario():
            session = BeaconSession()
            source = BleakAdvertisementSource(
                session, retry_seconds=0.01,
                scanner_factory=lambda **kw: FakeScanner(fail="adapter powered off", **kw),
            )
            task = asyncio.ensure_future(source.run())
            ev = await asyncio.wait_for(session.events.get(), 5.0)
            session.token.request("test")
            await asyncio.wait_for(task, 5.0)
            return ev

        assert asyncio.run(scenario()) == PowerStateEvent(PowerState.POWERED_OFF)

    def test_started_scanner_is_stopped_on_drain(self):
        scanners = []

        def factory(**kw):
            scanners.append(FakeScanner(**kw))
            return scanners[-1]

        async def scenario():
            session = BeaconSession()
            source = BleakAdvertisementSource(session, adapter="hci1", scanner_factory=factory)
            task = asyncio.ensure_future(source.run())
            ev = await asyncio.wait_for(session.events.get(), 5.0)
            session.token.request("test")
            await asyncio.wait_for(task, 5.0)
            return ev

        assert asyncio.run(scenario()) == PowerStateEvent(PowerState.POWERED_ON)
        assert len(scanners) == 1
        assert scanners[0].kwargs["adapter"] == "hci1"
        assert scanners[0].stopped is True
