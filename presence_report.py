from __future__ import annotations
from typing import Callable, Optional

from beacon_config import PresenceConfig
from presence_state import PresenceDecision, PresenceState

Sink = Callable[[str], None]


def _fmt(value, spec: str = "") -> str:
    if value is None:
        return "NA"
    return format(value, spec) if spec else str(value)


def format_presence_line(d: PresenceDecision, cfg: PresenceConfig) -> str:
    age = _fmt(int(d.age) if d.age is not None else None)
    weak = _fmt(d.weak_duration, ".0f")
    return (
        f"[BLE] presence {d.state.value} (reason={d.reason}, rssi={_fmt(d.rssi)}, "
        f"rssiAvg={_fmt(d.filtered, '.1f')}, age={age}s, valid>={cfg.min_valid_rssi}, "
        f"weak={weak}s/{int(cfg.weak_seconds)}s@{cfg.min_valid_rssi}, "
        f"timeout={cfg.timeout:.0f}s, awayTimeout={cfg.away_timeout:.0f}s)"
    )


def format_minute_line(minute: int, d: PresenceDecision) -> str:
    age = _fmt(int(d.age) if d.age is not None else None)
    return (f"[BLE] minute {minute}: {d.state.value} (reason={d.reason}, age={age}s, "
            f"rssiAvg={_fmt(d.filtered, '.1f')})")


class PresenceReporter:
    """Decides which decisions reach the sink.

    Edges, the first decision and every searching tick are emitted in full.
    Steady confirmed presence/away gets one short line per session minute.
    """

    def __init__(self, config: PresenceConfig, started_at: float, sink: Sink = print):
        self.config = config
        self.started_at = started_at
        self.sink = sink
        self.last_state: Optional[PresenceState] = None
        self.last_minute: Optional[int] = None

    def report(self, d: PresenceDecision, now: float, first_confirmed: bool) -> Optional[str]:
        line = None
        if d.state is PresenceState.SEARCHING or self.last_state is None or d.state is not self.last_state:
            line = format_presence_line(d, self.config)
        elif first_confirmed:
            minute = int((now - self.started_at) / 60) + 1
            if minute != self.last_minute:
                line = format_minute_line(minute, d)
                self.last_minute = minute
        self.last_state = d.state
        if line is not None:
            self.sink(line)
        return line
