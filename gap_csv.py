"""
gap_csv.py
One row per recorded advert gap, for offline analysis of timeout choices.

Columns: wall_seconds, gap_seconds, rssi (empty if invalid),
false_per_hour_<t> for each configured threshold t (running value).
"""

from __future__ import annotations
import csv
import logging
from pathlib import Path
from typing import List, Optional, Sequence

from gap_stats import GapObservation

logger = logging.getLogger(__name__)

DEFAULT_CSV_NAME = "presence_timeout_gaps.csv"


def csv_header(thresholds: Sequence[float]) -> List[str]:
    return ["wall_seconds", "gap_seconds", "rssi"] + [f"false_per_hour_{int(t)}" for t in thresholds]


def csv_row(obs: GapObservation, false_per_hour: Sequence[float]) -> List[str]:
    return [
        f"{obs.wall_seconds:.2f}",
        f"{obs.delta_seconds:.2f}",
        "" if obs.rssi is None else str(obs.rssi),
    ] + [f"{v:.2f}" for v in false_per_hour]


class GapCsvWriter:
    """Appends gap rows; failures are logged and disable the writer."""

    def __init__(self, path: str, thresholds: Sequence[float]):
        self.path = Path(path)
        self.thresholds = list(thresholds)
        self._fh = None
        self._writer = None
        self.rows = 0

    @property
    def enabled(self) -> bool:
        return self._writer is not None

    def open(self) -> bool:
        if self._fh is not None:
            return True
        try:
            self._fh = self.path.open("w", newline="", encoding="utf-8")
            self._writer = csv.writer(self._fh)
            self._writer.writerow(csv_header(self.thresholds))
            self._fh.flush()
        except OSError as e:
            logger.error("[BLE] csv error: %s (continuing without csv)", e)
            self._drop()
            return False
        logger.info("[BLE] csv output: %s", self.path.resolve())
        return True

    def write(self, obs: GapObservation, false_per_hour: Sequence[float]):
        if self._writer is None:
            return
        try:
            self._writer.writerow(csv_row(obs, false_per_hour))
            self.rows += 1
        except OSError as e:
            logger.error("[BLE] csv write failed: %s (continuing without csv)", e)
            self._drop()

    def flush(self):
        if self._fh is None:
            return
        try:
            self._fh.flush()
        except OSError as e:
            logger.error("[BLE] csv flush failed: %s", e)

    def close(self) -> Optional[Path]:
        if self._fh is None:
            return None
        self.flush()
        self._drop()
        logger.info("[BLE] csv saved: %s (%d rows)", self.path.resolve(), self.rows)
        return self.path

    def _drop(self):
        fh, self._fh, self._writer = self._fh, None, None
        if fh is not None:
            try:
                fh.close()
            except OSError as e:
                logger.debug("csv close failed: %s", e)
