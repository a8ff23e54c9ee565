"""
beacon_session.py
-----------------
Single-loop runtime shared by the beacon tools.

- bleak's detection callback only converts the advert and queues an
  AdvertisementEvent; power changes travel on the same queue.
- BeaconSession.run() is the one consumer: it dispatches events and runs
  scheduled tasks (1 s presence tick, 30 s summaries...) on the same
  coroutine, so handlers never overlap.
- ShutdownToken: first request drains (final summary, csv close), second
  request forces exit without flushing.
"""

from __future__ import annotations
import asyncio
import logging
import signal
import sys
import threading
import time
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Union

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from ibeacon_decode import manufacturer_payloads

logger = logging.getLogger(__name__)


class PowerState(str, Enum):
    POWERED_ON = "poweredOn"
    POWERED_OFF = "poweredOff"
    UNAUTHORIZED = "unauthorized"
    UNSUPPORTED = "unsupported"
    RESETTING = "resetting"
    UNKNOWN = "unknown"


TROUBLESHOOTING = {
    PowerState.UNAUTHORIZED: "grant Bluetooth permission to this program (or run with the needed privileges).",
    PowerState.POWERED_OFF: "Bluetooth is off. Turn the adapter on (e.g. `bluetoothctl power on`).",
    PowerState.UNSUPPORTED: "no usable Bluetooth LE adapter found.",
}


@dataclass(frozen=True)
class AdvertisementEvent:
    payload: bytes
    rssi: int
    observed_at: float


@dataclass(frozen=True)
class PowerStateEvent:
    state: PowerState


@dataclass(frozen=True)
class InputEvent:
    line: str


Event = Union[AdvertisementEvent, PowerStateEvent, InputEvent]


class ShutdownToken:
    RUNNING = "running"
    DRAINING = "draining"
    FORCED = "forced"

    def __init__(self, on_force: Optional[Callable[[], None]] = None):
        self.stage = self.RUNNING
        self.on_force = on_force
        self.reason: Optional[str] = None
        self.listeners: List[Callable[[], None]] = []

    @property
    def draining(self) -> bool:
        return self.stage != self.RUNNING

    def request(self, reason: str = "shutdown") -> str:
        if self.stage == self.RUNNING:
            self.stage = self.DRAINING
            self.reason = reason
            logger.info("[BLE] shutdown requested: %s", reason)
            for listener in self.listeners:
                listener()
        elif self.stage == self.DRAINING:
            self.stage = self.FORCED
            logger.warning("[BLE] force exit: %s", reason)
            if self.on_force is not None:
                self.on_force()
        return self.stage


@dataclass
class ScheduledTask:
    period: float
    callback: Callable[[float], None]
    next_due: float


class BeaconSession:
    def __init__(self, token: Optional[ShutdownToken] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.token = token or ShutdownToken()
        self.clock = clock
        self.events: "asyncio.Queue[Optional[Event]]" = asyncio.Queue()
        self.tasks: List[ScheduledTask] = []
        self.drain_callbacks: List[Callable[[], None]] = []
        self.on_advertisement: Optional[Callable[[AdvertisementEvent], None]] = None
        self.on_power_state: Optional[Callable[[PowerStateEvent], None]] = None
        self.on_input: Optional[Callable[[InputEvent], None]] = None
        self.power_state = PowerState.UNKNOWN
        # a None on the queue wakes run() so draining starts at once
        self.token.listeners.append(lambda: self.events.put_nowait(None))

    def post(self, event: Event):
        self.events.put_nowait(event)

    def every(self, period: float, callback: Callable[[float], None]):
        self.tasks.append(ScheduledTask(period, callback, self.clock() + period))

    def on_drain(self, callback: Callable[[], None]):
        self.drain_callbacks.append(callback)

    def _dispatch(self, event: Event):
        if isinstance(event, PowerStateEvent):
            self.power_state = event.state
            if self.on_power_state is not None:
                self.on_power_state(event)
        elif isinstance(event, InputEvent):
            if self.on_input is not None:
                self.on_input(event)
        elif self.on_advertisement is not None:
            self.on_advertisement(event)

    def _run_due(self, now: float):
        for task in self.tasks:
            if now >= task.next_due:
                task.callback(now)
                # skip missed periods instead of bursting to catch up
                while task.next_due <= now:
                    task.next_due += task.period

    def _until_next(self, now: float) -> float:
        if not self.tasks:
            return 0.25
        return max(0.0, min(t.next_due for t in self.tasks) - now)

    async def run(self):
        """Consume events and timers until the token starts draining."""
        while not self.token.draining:
            try:
                event = await asyncio.wait_for(self.events.get(), timeout=self._until_next(self.clock()))
            except asyncio.TimeoutError:
                event = None
            if event is not None:
                self._dispatch(event)
            self._run_due(self.clock())
        self.drain()

    def drain(self):
        callbacks, self.drain_callbacks = self.drain_callbacks, []
        for cb in callbacks:
            cb()


def classify_bleak_error(err: Exception) -> PowerState:
    msg = str(err).lower()
    if "powered off" in msg or "not powered" in msg or "turned off" in msg:
        return PowerState.POWERED_OFF
    if "not authorized" in msg or "unauthorized" in msg or "permission" in msg or "denied" in msg:
        return PowerState.UNAUTHORIZED
    if "no bluetooth adapter" in msg or "not found" in msg or "unsupported" in msg:
        return PowerState.UNSUPPORTED
    if "resetting" in msg:
        return PowerState.RESETTING
    return PowerState.UNKNOWN


def log_power_state(state: PowerState):
    logger.info("[BLE] central state = %s", state.value)
    hint = TROUBLESHOOTING.get(state)
    if hint:
        logger.warning("[BLE] troubleshooting: %s", hint)


class BleakAdvertisementSource:
    """Feeds a BeaconSession from a BleakScanner, retrying while the radio is down."""

    def __init__(self, session: BeaconSession, *, adapter: Optional[str] = None,
                 retry_seconds: float = 5.0,
                 scanner_factory: Optional[Callable[..., BleakScanner]] = None):
        self.session = session
        self.adapter = adapter
        self.retry_seconds = retry_seconds
        self.scanner_factory = scanner_factory or BleakScanner
        self.scanner = None

    def detection_callback(self, device: BLEDevice, adv: AdvertisementData):
        rssi = getattr(adv, "rssi", None)
        if rssi is None:
            return
        now = self.session.clock()
        for payload in manufacturer_payloads(adv):
            self.session.post(AdvertisementEvent(payload, int(rssi), now))

    def _make_scanner(self):
        kwargs = {"detection_callback": self.detection_callback}
        if self.adapter:
            kwargs["adapter"] = self.adapter
        return self.scanner_factory(**kwargs)

    async def run(self):
        token = self.session.token
        while not token.draining:
            if self.scanner is None:
                scanner = self._make_scanner()
                try:
                    await scanner.start()
                except BleakError as e:
                    logger.debug("scanner start failed: %s", e)
                    self.session.post(PowerStateEvent(classify_bleak_error(e)))
                    await self._sleep_unless_draining(self.retry_seconds)
                    continue
                self.scanner = scanner
                self.session.post(PowerStateEvent(PowerState.POWERED_ON))
                logger.info("[BLE] scanning started")
            # bleak has no adapter state callback: a power loss after a
            # successful start is not seen here, only failed starts are
            await self._sleep_unless_draining(0.25)
        await self.stop()

    async def _sleep_unless_draining(self, seconds: float):
        deadline = time.monotonic() + seconds
        while not self.session.token.draining and time.monotonic() < deadline:
            await asyncio.sleep(min(0.25, seconds))

    async def stop(self):
        scanner, self.scanner = self.scanner, None
        if scanner is not None:
            with suppress(BleakError):
                await scanner.stop()


def install_signal_handlers(token: ShutdownToken) -> bool:
    """Route SIGINT/SIGTERM to the token; False where the loop can't (Windows)."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.request, "SIGINT (Ctrl+C)")
        loop.add_signal_handler(signal.SIGTERM, token.request, "SIGTERM")
    except (NotImplementedError, RuntimeError):
        return False
    return True


async def run_session(session: BeaconSession, source: Optional[BleakAdvertisementSource] = None,
                      extra: Optional[List[Awaitable]] = None):
    """Run the session loop with its radio source until shutdown is drained."""
    install_signal_handlers(session.token)
    source = source or BleakAdvertisementSource(session)
    feeders = [asyncio.ensure_future(source.run())]
    feeders += [asyncio.ensure_future(a) for a in (extra or [])]
    try:
        await session.run()
    finally:
        if not session.token.draining:
            session.token.request("session ended")
        for f in feeders[1:]:
            f.cancel()
        with suppress(asyncio.CancelledError):
            await asyncio.gather(*feeders, return_exceptions=True)


def start_stdin_reader(session: BeaconSession) -> threading.Thread:
    """Post each stdin line as an InputEvent (daemon thread, never blocks exit)."""
    loop = asyncio.get_running_loop()

    def _reader():
        for line in sys.stdin:
            if session.token.draining or loop.is_closed():
                break
            try:
                loop.call_soon_threadsafe(session.post, InputEvent(line.rstrip("\n")))
            except RuntimeError:
                break

    t = threading.Thread(target=_reader, name="stdin-reader", daemon=True)
    t.start()
    return t
