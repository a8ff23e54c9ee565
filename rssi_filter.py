from __future__ import annotations
from typing import Dict, Hashable, Optional


class EmaFilter:
    """Exponential moving average over RSSI samples.

    First sample seeds the value; afterwards
      filtered = alpha * sample + (1 - alpha) * filtered
    """

    def __init__(self, alpha: float = 0.3):
        if not 0.0 < alpha <= 1.0:
            raise ValueError(f"alpha must be in (0, 1], got {alpha}")
        self.alpha = alpha
        self.filtered: Optional[float] = None

    def update(self, sample: float) -> float:
        if self.filtered is None:
            self.filtered = float(sample)
        else:
            self.filtered = self.alpha * float(sample) + (1.0 - self.alpha) * self.filtered
        return self.filtered


class EmaFilterBank:
    """One EmaFilter per key (e.g. BeaconIdentity)."""

    def __init__(self, alpha: float = 0.3):
        if not 0.0 < alpha <= 1.0:
            raise ValueError(f"alpha must be in (0, 1], got {alpha}")
        self.alpha = alpha
        self._filters: Dict[Hashable, EmaFilter] = {}

    def update(self, key: Hashable, sample: float) -> float:
        f = self._filters.get(key)
        if f is None:
            f = self._filters[key] = EmaFilter(self.alpha)
        return f.update(sample)

    def __len__(self) -> int:
        return len(self._filters)
