from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from ibeacon_decode import BeaconIdentity, MAX_VALID_RSSI, MIN_VALID_RSSI

logger = logging.getLogger(__name__)

DEFAULT_UUID = "FDA50693-A4E2-4FB1-AFCF-C6EB07647825"
DEFAULT_MAJOR = 10011
DEFAULT_MINOR = 19641
DEFAULT_TARGET = BeaconIdentity(DEFAULT_UUID, DEFAULT_MAJOR, DEFAULT_MINOR)


@dataclass
class PresenceConfig:
    target: BeaconIdentity = field(default=DEFAULT_TARGET)
    min_valid_rssi: int = -75
    weak_seconds: float = 60.0
    timeout: float = 113.0
    away_timeout: float = 120.0
    ema_alpha: float = 0.3

    def validate(self) -> "PresenceConfig":
        if not 0.0 < self.ema_alpha <= 1.0:
            raise ValueError(f"invalid value for --ema-alpha: {self.ema_alpha} (must be in (0, 1])")
        if self.weak_seconds < 1:
            raise ValueError(f"invalid value for --weak-seconds: {self.weak_seconds} (must be >= 1)")
        if self.timeout < 0:
            raise ValueError(f"invalid value for --timeout: {self.timeout}")
        if self.away_timeout < 0:
            raise ValueError(f"invalid value for --away-timeout: {self.away_timeout}")
        if not MIN_VALID_RSSI <= self.min_valid_rssi <= MAX_VALID_RSSI:
            raise ValueError(
                f"invalid value for --min-valid-rssi: {self.min_valid_rssi} "
                f"(must be in [{MIN_VALID_RSSI}, {MAX_VALID_RSSI}])"
            )
        return self

    def notes(self) -> List[str]:
        """Advisory notes; the config is still accepted."""
        out = []
        if self.away_timeout < self.timeout:
            out.append("away-timeout < timeout, stale-hold stage disabled")
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uuid": self.target.uuid,
            "major": self.target.major,
            "minor": self.target.minor,
            "min_valid_rssi": self.min_valid_rssi,
            "weak_seconds": self.weak_seconds,
            "timeout": self.timeout,
            "away_timeout": self.away_timeout,
            "ema_alpha": self.ema_alpha,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PresenceConfig":
        try:
            target = BeaconIdentity.parse(
                d.get("uuid", DEFAULT_UUID),
                int(d.get("major", DEFAULT_MAJOR)),
                int(d.get("minor", DEFAULT_MINOR)),
            )
            return cls(
                target=target,
                min_valid_rssi=int(d.get("min_valid_rssi", -75)),
                weak_seconds=float(d.get("weak_seconds", 60.0)),
                timeout=float(d.get("timeout", 113.0)),
                away_timeout=float(d.get("away_timeout", 120.0)),
                ema_alpha=float(d.get("ema_alpha", 0.3)),
            )
        except (TypeError, AttributeError) as e:
            raise ValueError(f"bad config value: {e}") from None

    def banner(self) -> str:
        return (
            f"tracking {self.target} rssiThreshold>={self.min_valid_rssi} "
            f"weakSeconds={int(self.weak_seconds)} timeout(T1)={int(self.timeout)}s "
            f"awayTimeout(T2)={int(self.away_timeout)}s emaAlpha={self.ema_alpha:.2f}"
        )


def apply_overrides(cfg: PresenceConfig, *, uuid: Optional[str] = None, major: Optional[int] = None,
                    minor: Optional[int] = None, **values) -> PresenceConfig:
    """Layer CLI flags over a loaded config; None means 'not given'."""
    if uuid is not None or major is not None or minor is not None:
        cfg = replace(cfg, target=BeaconIdentity.parse(
            uuid if uuid is not None else cfg.target.uuid,
            major if major is not None else cfg.target.major,
            minor if minor is not None else cfg.target.minor,
        ))
    changes = {k: v for k, v in values.items() if v is not None}
    return replace(cfg, **changes) if changes else cfg


def load_config(path: Optional[str]) -> PresenceConfig:
    if not path:
        return PresenceConfig()
    p = Path(path)
    if not p.exists():
        logger.info("[cfg] %s not found, using defaults", path)
        return PresenceConfig()
    try:
        with p.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"cannot parse {path}: {e}") from None
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object")
    return PresenceConfig.from_dict(data)


def save_config(path: str, cfg: PresenceConfig):
    p = Path(path)
    p.write_text(json.dumps(cfg.to_dict(), indent=2, sort_keys=True), encoding="utf-8")
    logger.info("[cfg] saved %s", path)
