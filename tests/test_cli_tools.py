"""Tests for the command-line tools' event handlers."""

import argparse

import pytest

from beacon_calibrate import CalibrationSession, build_arg_parser as calibrate_parser, save_suggestion
from beacon_config import load_config
from beacon_presence import PresenceTracker, build_arg_parser as presence_parser, config_from_args, resolve_config
from beacon_scan import BeaconLister
from beacon_session import AdvertisementEvent, BeaconSession, InputEvent, PowerState, PowerStateEvent
from gap_csv import GapCsvWriter
from presence_state import PresenceState
from presence_timeout_calibrator import TimeoutCalibrator, _thresholds
from rssi_calibration import CalibrationRunner, Phase, PresenceFlags


class TestPresenceTracker:
    """Tests for beacon-presence wiring."""

    def test_present_after_first_advert(self, config, make_payload, lines):
        tracker = PresenceTracker(config, started_at=0.0, sink=lines.append)
        assert tracker.tick(0.0).state is PresenceState.SEARCHING
        tracker.on_advertisement(AdvertisementEvent(make_payload(minor=1), -50, 0.5))
        tracker.on_advertisement(AdvertisementEvent(make_payload(), 0, 0.5))
        assert tracker.tick(1.0).state is PresenceState.SEARCHING
        tracker.on_advertisement(AdvertisementEvent(make_payload(), -60, 1.5))
        d = tracker.tick(2.0)
        assert (d.state, d.reason) == (PresenceState.PRESENT, "assumed")
        assert tracker.matcher.stats.foreign == 1
        assert tracker.matcher.stats.invalid_rssi == 1
        assert len(lines) == 3

    def test_power_cycle_resets_timing(self, config, make_payload, lines):
        tracker = PresenceTracker(config, started_at=0.0, sink=lines.append)
        tracker.on_power_state(PowerStateEvent(PowerState.POWERED_ON))
        tracker.on_advertisement(AdvertisementEvent(make_payload(), -60, 0.0))
        tracker.tick(0.0)
        tracker.on_power_state(PowerStateEvent(PowerState.POWERED_OFF))
        tracker.on_power_state(PowerStateEvent(PowerState.POWERED_ON))
        assert tracker.tick(1.0).state is PresenceState.SEARCHING


class TestPresenceArgs:
    def test_flags_override_config(self, tmp_path):
        path = tmp_path / "presence.json"
        path.write_text('{"timeout": 90, "minor": 5}', encoding="utf-8")
        args = presence_parser().parse_args(["--config", str(path), "--timeout", "100", "--ema-alpha", "0.5"])
        cfg = config_from_args(args)
        assert cfg.timeout == 100.0
        assert cfg.ema_alpha == 0.5
        assert cfg.target.minor == 5

    def test_invalid_value(self):
        args = presence_parser().parse_args(["--ema-alpha", "0"])
        with pytest.raises(ValueError):
            config_from_args(args)

    def test_unreadable_config_is_a_usage_error(self, tmp_path):
        """A directory passed as --config exits with status 2, not a traceback."""
        parser = presence_parser()
        args = parser.parse_args(["--config", str(tmp_path)])
        with pytest.raises(SystemExit) as exc:
            resolve_config(parser, args)
        assert exc.value.code == 2

    def test_bad_value_is_a_usage_error(self):
        parser = presence_parser()
        args = parser.parse_args(["--weak-seconds", "0"])
        with pytest.raises(SystemExit):
            resolve_config(parser, args)


class TestTimeoutCalibrator:
    """Tests for presence-timeout-calibrator reporting."""

    def test_summary_progression(self, target, make_payload, tmp_path, lines):
        writer = GapCsvWriter(str(tmp_path / "gaps.csv"), (10, 20))
        writer.open()
        cal = TimeoutCalibrator(target, thresholds=(10, 20), csv_writer=writer, sink=lines.append)
        assert "waiting for first beacon" in cal.summary_lines(0.0)[0]

        cal.on_advertisement(AdvertisementEvent(make_payload(), -60, 0.0))
        assert "no gaps yet" in cal.summary_lines(0.5)[0]

        for t in range(1, 101):
            cal.on_advertisement(AdvertisementEvent(make_payload(), -60, float(t)))
        summary = cal.summary_lines(100.0)
        assert summary[0].startswith("[BLE] summary wall=100.00s active=100.00s samples=100")
        assert summary[-1] == "[BLE] summary suggested flags: --timeout 5 --away-timeout 15"

        cal.finish(100.0)
        assert lines[0].startswith("[BLE] FINAL")
        assert writer.rows == 100
        assert not writer.enabled

    def test_invalid_rssi_still_counts_gap(self, target, make_payload):
        cal = TimeoutCalibrator(target, sink=lambda line: None)
        cal.on_advertisement(AdvertisementEvent(make_payload(), -60, 0.0))
        cal.on_advertisement(AdvertisementEvent(make_payload(), 0, 2.0))
        assert cal.tracker.gaps[0].rssi is None

    def test_outage_is_not_a_gap(self, target, make_payload):
        cal = TimeoutCalibrator(target, sink=lambda line: None)
        cal.on_advertisement(AdvertisementEvent(make_payload(), -60, 0.0))
        cal.on_power_state(PowerStateEvent(PowerState.POWERED_OFF))
        cal.on_advertisement(AdvertisementEvent(make_payload(), -60, 300.0))
        cal.on_advertisement(AdvertisementEvent(make_payload(), -60, 301.0))
        assert cal.tracker.deltas == [1.0]

    def test_thresholds_argument(self):
        assert _thresholds("10,20, 45") == (10.0, 20.0, 45.0)
        with pytest.raises(argparse.ArgumentTypeError):
            _thresholds("10,abc")
        with pytest.raises(argparse.ArgumentTypeError):
            _thresholds("0")


class TestBeaconLister:
    """Tests for beacon-scan output throttling."""

    def test_throttle_and_average(self, make_payload, lines):
        lister = BeaconLister(min_rssi=-90, print_interval=2.0, ema_alpha=0.5, sink=lines.append)
        assert lister.on_advertisement(AdvertisementEvent(make_payload(), -60, 0.0)) is not None
        assert lister.on_advertisement(AdvertisementEvent(make_payload(), -70, 1.0)) is None
        line = lister.on_advertisement(AdvertisementEvent(make_payload(), -70, 2.5))
        assert "major=10011 minor=19641 rssi=-70 avg=-67.5 tx=-59" in line
        assert lister.on_advertisement(AdvertisementEvent(make_payload(minor=2), -95, 3.0)) is None
        assert lister.on_advertisement(AdvertisementEvent(b"\x4c\x00", -60, 3.0)) is None
        assert len(lines) == 2
        assert len(lister.filters) == 1


class TestCalibrationSession:
    """Tests for beacon-calibrate wiring."""

    def test_enter_and_done(self, target):
        session = BeaconSession(clock=lambda: 5.0)
        runner = CalibrationRunner(sink=lambda line: None)
        cal = CalibrationSession(target, runner, session)
        cal.on_power_state(PowerStateEvent(PowerState.POWERED_ON))
        cal.on_input(InputEvent(""))
        assert runner.phase is Phase.BASELINE
        assert runner.phase_start == 5.0
        runner.phase = Phase.DONE
        cal.tick(6.0)
        assert session.token.draining

    def test_save_suggestion(self, target, tmp_path):
        path = str(tmp_path / "presence.json")
        flags = PresenceFlags(-78, 40, 60, 80, 0.3, 80)
        save_suggestion(path, target, flags)
        cfg = load_config(path)
        assert (cfg.min_valid_rssi, cfg.weak_seconds, cfg.timeout, cfg.away_timeout) == (-78, 40.0, 60.0, 80.0)
        assert cfg.target == target

    def test_parser_defaults(self):
        args = calibrate_parser().parse_args([])
        assert (args.baseline_seconds, args.away_seconds, args.min_samples) == (20.0, 30.0, 15)
