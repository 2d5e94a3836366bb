"""
Bounded in-memory history of probe and scan results.

One FIFO series per (ip, kind). Each series keeps at most `max_items`
entries; appending beyond that drops the oldest. History is not persisted.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any, Optional, Union

from ._types import MAX_HISTORY_ITEMS, HistoryKind, now_iso

logger = logging.getLogger(__name__)

KindLike = Union[HistoryKind, str]


class HistoryStore:
    """
    Thread-safe bounded history keyed by IP and metric kind.

    Appends to one key are atomic and preserve insertion order. Different
    keys never block each other.
    """

    def __init__(self, max_items: int = MAX_HISTORY_ITEMS):
        if max_items < 1:
            raise ValueError(f"max_items must be positive, got {max_items}")
        self.max_items = max_items
        self._series: dict[tuple[str, HistoryKind], deque] = {}
        self._locks: dict[tuple[str, HistoryKind], threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _key(self, ip: str, kind: KindLike) -> tuple[str, HistoryKind]:
        return ip, HistoryKind(kind)

    def _slot(self, key: tuple[str, HistoryKind]) -> tuple[threading.Lock, deque]:
        """Lock and series for a key, created on first use."""
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
                self._series[key] = deque(maxlen=self.max_items)
            return lock, self._series[key]

    def append(self, ip: str, kind: KindLike, entry: dict) -> dict:
        """
        Append an entry to the (ip, kind) series.

        A `timestamp` is added when the entry has none. Returns the stored
        entry.
        """
        key = self._key(ip, kind)
        stored = dict(entry)
        stored.setdefault("timestamp", now_iso())

        lock, series = self._slot(key)
        with lock:
            series.append(stored)
            logger.debug(f"History {key[1].value} for {ip}: {len(series)} entries")
        return stored

    def get(self, ip: str, kind: KindLike) -> list[dict]:
        """Return a copy of the series, oldest first. Unknown keys yield []."""
        key = self._key(ip, kind)
        with self._registry_lock:
            lock = self._locks.get(key)
            series = self._series.get(key)
        if series is None:
            return []
        with lock:
            return list(series)

    def uptime_percentage(self, ip: str) -> Optional[float]:
        """
        Percentage of uptime entries whose status is "up", rounded to 2 dp.

        None when there is no uptime history for the IP.
        """
        entries = self.get(ip, HistoryKind.UPTIME)
        if not entries:
            return None
        up = sum(1 for e in entries if e.get("status") == "up")
        return round(up / len(entries) * 100, 2)

    def historical(self, ip: str) -> dict[str, Any]:
        """All series for one IP plus its uptime percentage."""
        return {
            "latency": self.get(ip, HistoryKind.LATENCY),
            "bandwidth": self.get(ip, HistoryKind.BANDWIDTH),
            "uptime": self.get(ip, HistoryKind.UPTIME),
            "scanResults": self.get(ip, HistoryKind.SCAN_RESULTS),
            "uptimePercentage": self.uptime_percentage(ip),
        }

    def ips(self) -> list[str]:
        """IPs with at least one recorded entry, in first-seen order."""
        seen: dict[str, None] = {}
        with self._registry_lock:
            keys = list(self._series)
        for ip, _ in keys:
            seen.setdefault(ip, None)
        return list(seen)

    def clear(self, ip: Optional[str] = None) -> None:
        """Drop history for one IP, or everything when ip is None."""
        with self._registry_lock:
            for key in list(self._series):
                if ip is None or key[0] == ip:
                    del self._series[key]
                    del self._locks[key]
