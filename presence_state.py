"""
Presence state machine for a single tracked beacon.

States: searching -> present -> away. Ticked on a fixed cadence (1 s) so that
silence is detected, not just arrivals. Rules, first match wins:

  1. away locked            -> away     (locked)
  2. never seen             -> searching (no-signal)
  3. first tick after seen  -> present  (assumed)
  4. weak for weak_seconds  -> away     (weak-rssi), lock
  5. silent > away_timeout  -> away     (timeout), lock
  6. silent > timeout       -> present  (stale-hold)
  7. otherwise              -> present  (hold)

Once away is declared the lock holds for the rest of the session.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from beacon_config import PresenceConfig
from ibeacon_decode import AdvertisementSample
from rssi_filter import EmaFilter

logger = logging.getLogger(__name__)


class PresenceState(str, Enum):
    SEARCHING = "searching"
    PRESENT = "present"
    AWAY = "away"


@dataclass
class PresenceRecord:
    state: PresenceState = PresenceState.SEARCHING
    first_confirmed: bool = False
    away_locked: bool = False
    last_seen_at: Optional[float] = None
    last_rssi: Optional[int] = None
    weak_since: Optional[float] = None


@dataclass(frozen=True)
class PresenceDecision:
    state: PresenceState
    reason: str
    rssi: Optional[int]
    filtered: Optional[float]
    age: Optional[float]
    weak_duration: Optional[float]


class PresenceStateMachine:
    def __init__(self, config: PresenceConfig):
        self.config = config
        self.record = PresenceRecord()
        self.filter = EmaFilter(config.ema_alpha)

    @property
    def state(self) -> PresenceState:
        return self.record.state

    def observe(self, sample: AdvertisementSample):
        """Feed a matched sample that already passed the validity gate."""
        rec = self.record
        rec.last_rssi = sample.rssi
        self.filter.update(sample.rssi)
        # weak adverts still feed the average but do not count as "seen"
        if sample.rssi >= self.config.min_valid_rssi:
            rec.last_seen_at = sample.observed_at

    def power_restored(self):
        """Forget timing that would span a radio outage. The lock survives."""
        rec = self.record
        rec.last_seen_at = None
        rec.weak_since = None
        rec.first_confirmed = False
        logger.debug("presence timing reset after radio outage")

    def _weak_duration(self, now: float) -> Optional[float]:
        rec = self.record
        filtered = self.filter.filtered
        if not rec.first_confirmed or filtered is None:
            rec.weak_since = None
            return None
        if filtered < self.config.min_valid_rssi:
            if rec.weak_since is None:
                rec.weak_since = now
            return now - rec.weak_since
        rec.weak_since = None
        return 0.0

    def tick(self, now: float) -> PresenceDecision:
        cfg = self.config
        rec = self.record
        age = (now - rec.last_seen_at) if rec.last_seen_at is not None else None
        weak = self._weak_duration(now)

        if rec.away_locked:
            state, reason = PresenceState.AWAY, "locked"
        elif rec.last_seen_at is None:
            state, reason = PresenceState.SEARCHING, "no-signal"
        elif not rec.first_confirmed:
            rec.first_confirmed = True
            state, reason = PresenceState.PRESENT, "assumed"
        elif weak is not None and weak >= cfg.weak_seconds:
            state, reason = PresenceState.AWAY, "weak-rssi"
            rec.away_locked = True
        elif age > cfg.away_timeout:
            state, reason = PresenceState.AWAY, "timeout"
            rec.away_locked = True
        elif age > cfg.timeout:
            state, reason = PresenceState.PRESENT, "stale-hold"
        else:
            state, reason = PresenceState.PRESENT, "hold"

        rec.state = state
        return PresenceDecision(
            state=state,
            reason=reason,
            rssi=rec.last_rssi,
            filtered=self.filter.filtered,
            age=age,
            weak_duration=weak,
        )
