from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

APPLE_COMPANY_ID = 0x004C
IBEACON_TYPE = 0x02
IBEACON_LENGTH = 0x15
IBEACON_MIN_LEN = 25

MIN_VALID_RSSI = -120
MAX_VALID_RSSI = -1


def _canonical_uuid(raw: bytes) -> str:
    h = raw.hex().upper()
    return f"{h[0:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"


@dataclass(frozen=True)
class BeaconIdentity:
    uuid: str
    major: int
    minor: int

    @classmethod
    def parse(cls, uuid: str, major: int, minor: int) -> "BeaconIdentity":
        """Normalise operator input (any case, dashes optional)."""
        hexs = (uuid or "").strip().replace("-", "")
        try:
            raw = bytes.fromhex(hexs)
        except ValueError:
            raise ValueError(f"invalid uuid: {uuid!r}") from None
        if len(raw) != 16:
            raise ValueError(f"invalid uuid: {uuid!r}")
        for name, v in (("major", major), ("minor", minor)):
            if not 0 <= int(v) <= 0xFFFF:
                raise ValueError(f"{name} out of range 0-65535: {v}")
        return cls(_canonical_uuid(raw), int(major), int(minor))

    def __str__(self) -> str:
        return f"uuid={self.uuid} major={self.major} minor={self.minor}"


@dataclass(frozen=True)
class IBeaconPayload:
    identity: BeaconIdentity
    tx_power: int


@dataclass(frozen=True)
class AdvertisementSample:
    identity: BeaconIdentity
    rssi: int
    tx_power: int
    observed_at: float


def decode_ibeacon(payload: bytes) -> IBeaconPayload:
    """Decode an iBeacon manufacturer-data field (company id included).

    Layout:
      [0:2]   -> 4C 00 (Apple, little-endian company id)
      [2]     -> 0x02 beacon type
      [3]     -> 0x15 remaining length
      [4:20]  -> proximity UUID
      [20:22] -> major (u16 BE)
      [22:24] -> minor (u16 BE)
      [24]    -> measured tx power (i8)
    """
    if payload is None or len(payload) < IBEACON_MIN_LEN:
        raise ValueError(f"payload too short: {None if payload is None else len(payload)} bytes")
    b = bytes(payload)
    if int.from_bytes(b[0:2], "little") != APPLE_COMPANY_ID:
        raise ValueError(f"not an Apple company id: {b[0:2].hex()}")
    if b[2] != IBEACON_TYPE or b[3] != IBEACON_LENGTH:
        raise ValueError(f"not an iBeacon frame: type=0x{b[2]:02x} len=0x{b[3]:02x}")

    uuid = _canonical_uuid(b[4:20])
    major = int.from_bytes(b[20:22], "big", signed=False)
    minor = int.from_bytes(b[22:24], "big", signed=False)
    tx_power = int.from_bytes(b[24:25], "big", signed=True)
    return IBeaconPayload(BeaconIdentity(uuid, major, minor), tx_power)


def parse_ibeacon(payload: bytes) -> Optional[IBeaconPayload]:
    """Like decode_ibeacon but returns None for foreign or malformed frames."""
    try:
        return decode_ibeacon(payload)
    except ValueError as e:
        logger.debug("ibeacon rejected: %s", e)
        return None


def manufacturer_payloads(adv) -> List[bytes]:
    """Rebuild raw manufacturer fields from a bleak AdvertisementData.

    bleak strips the 2-byte company id into the dict key; put it back
    (little-endian) so the decoder sees the on-air layout.
    """
    out: List[bytes] = []
    md: Dict[int, bytes] = getattr(adv, "manufacturer_data", None) or {}
    for company_id, data in md.items():
        out.append(int(company_id).to_bytes(2, "little") + bytes(data))
    return out


def is_valid_rssi(value: Optional[int]) -> bool:
    return value is not None and MIN_VALID_RSSI <= value <= MAX_VALID_RSSI


def clamp_rssi(value: int) -> int:
    return min(max(value, MIN_VALID_RSSI), MAX_VALID_RSSI)


@dataclass
class DecoderStats:
    seen: int = 0
    rejected: int = 0
    foreign: int = 0
    matched: int = 0
    invalid_rssi: int = 0

    def as_line(self) -> str:
        return (f"seen={self.seen} rejected={self.rejected} foreign={self.foreign} "
                f"matched={self.matched} invalid_rssi={self.invalid_rssi}")


class BeaconMatcher:
    """Decoder + identity matcher + validity gate for one target beacon."""

    def __init__(self, target: BeaconIdentity):
        self.target = target
        self.stats = DecoderStats()

    def match(self, payload: bytes, rssi: int, observed_at: float) -> Optional[AdvertisementSample]:
        """Return a sample for the target, or None (nothing else changes)."""
        self.stats.seen += 1
        decoded = parse_ibeacon(payload)
        if decoded is None:
            self.stats.rejected += 1
            return None
        if decoded.identity != self.target:
            self.stats.foreign += 1
            return None
        self.stats.matched += 1
        return AdvertisementSample(decoded.identity, int(rssi), decoded.tx_power, observed_at)

    def gate(self, sample: Optional[AdvertisementSample]) -> Optional[AdvertisementSample]:
        if sample is None:
            return None
        if not is_valid_rssi(sample.rssi):
            self.stats.invalid_rssi += 1
            logger.debug("rssi out of range dropped: %s", sample.rssi)
            return None
        return sample
