"""Pytest configuration and fixtures."""

import pytest

from beacon_config import PresenceConfig
from ibeacon_decode import BeaconIdentity

TARGET_UUID_HEX = "FDA50693A4E24FB1AFCFC6EB07647825"


def build_ibeacon(uuid_hex=TARGET_UUID_HEX, major=10011, minor=19641, tx_power=-59, prefix=b"\x4c\x00\x02\x15"):
    return (
        prefix
        + bytes.fromhex(uuid_hex)
        + major.to_bytes(2, "big")
        + minor.to_bytes(2, "big")
        + tx_power.to_bytes(1, "big", signed=True)
    )


@pytest.fixture
def make_payload():
    """Factory for raw iBeacon manufacturer fields."""
    return build_ibeacon


@pytest.fixture
def target():
    return BeaconIdentity("FDA50693-A4E2-4FB1-AFCF-C6EB07647825", 10011, 19641)


@pytest.fixture
def config(target):
    return PresenceConfig(
        target=target,
        min_valid_rssi=-75,
        weak_seconds=60,
        timeout=113,
        away_timeout=120,
        ema_alpha=1.0,
    )


@pytest.fixture
def lines():
    """A list usable as a report sink (lines.append)."""
    return []
