"""Tests for RSSI smoothing."""

import pytest

from rssi_filter import EmaFilter, EmaFilterBank


class TestEmaFilter:
    """Tests for the single-stream EMA."""

    def test_first_sample_seeds(self):
        f = EmaFilter(0.3)
        assert f.filtered is None
        assert f.update(-70) == -70.0

    def test_weighted_update(self):
        f = EmaFilter(0.5)
        f.update(-60)
        assert f.update(-70) == pytest.approx(-65.0)

    def test_alpha_one_tracks_last_sample(self):
        f = EmaFilter(1.0)
        f.update(-60)
        assert f.update(-90) == -90.0

    @pytest.mark.parametrize("alpha", [0.0, -0.1, 1.5])
    def test_invalid_alpha(self, alpha):
        with pytest.raises(ValueError):
            EmaFilter(alpha)


class TestEmaFilterBank:
    """Tests for per-key filters."""

    def test_keys_are_independent(self):
        bank = EmaFilterBank(0.5)
        bank.update("a", -60)
        bank.update("b", -90)
        assert bank.update("a", -70) == pytest.approx(-65.0)
        assert bank.update("b", -80) == pytest.approx(-85.0)
        assert len(bank) == 2

    def test_invalid_alpha(self):
        with pytest.raises(ValueError):
            EmaFilterBank(0)
