"""Tests for presence report throttling and formatting."""

from presence_report import PresenceReporter, format_minute_line, format_presence_line
from presence_state import PresenceDecision, PresenceState


def decision(state, reason, rssi=-60, filtered=-60.0, age=1.0, weak=0.0):
    return PresenceDecision(state, reason, rssi, filtered, age, weak)


SEARCHING = decision(PresenceState.SEARCHING, "no-signal", None, None, None, None)


class TestFormat:
    """Tests for the report line formats."""

    def test_presence_line(self, config):
        line = format_presence_line(decision(PresenceState.PRESENT, "hold", age=12.7), config)
        assert line.startswith("[BLE] presence present (reason=hold, rssi=-60")
        assert "rssiAvg=-60.0" in line
        assert "age=12s" in line
        assert "timeout=113s, awayTimeout=120s" in line

    def test_missing_values_are_na(self, config):
        line = format_presence_line(SEARCHING, config)
        assert "rssi=NA" in line
        assert "rssiAvg=NA" in line
        assert "age=NAs" in line

    def test_minute_line(self):
        line = format_minute_line(3, decision(PresenceState.AWAY, "locked", age=200.0))
        assert line == "[BLE] minute 3: away (reason=locked, age=200s, rssiAvg=-60.0)"


class TestPresenceReporter:
    """Tests for which decisions reach the sink."""

    def test_sequence(self, config, lines):
        r = PresenceReporter(config, started_at=0.0, sink=lines.append)
        assert r.report(SEARCHING, 0.0, False) is not None
        assert r.report(SEARCHING, 1.0, False) is not None
        assert "presence present" in r.report(decision(PresenceState.PRESENT, "assumed"), 2.0, True)
        assert r.report(decision(PresenceState.PRESENT, "hold"), 3.0, True).startswith("[BLE] minute 1:")
        assert r.report(decision(PresenceState.PRESENT, "hold"), 30.0, True) is None
        assert r.report(decision(PresenceState.PRESENT, "hold"), 61.0, True).startswith("[BLE] minute 2:")
        assert "presence away" in r.report(decision(PresenceState.AWAY, "timeout"), 62.0, True)
        assert r.report(decision(PresenceState.AWAY, "locked"), 63.0, True) is None
        assert len(lines) == 6
