"""
Deep device information cache.

Stores the result of expensive device probes, one JSON record per device key,
so repeated requests for the same device do not probe it again until the
record's TTL has passed.
"""

from __future__ import annotations
import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Protocol

from .errors import CacheIOError, FetchTimeout
from .models import CachedDeviceRecord, CleanupCounts, DeviceCacheStats
from .single_flight import SingleFlight
from .storage import atomic_write_json, key_to_filename, read_json, remove_file

logger = logging.getLogger(__name__)


class DeviceProber(Protocol):
    """Collaborator that performs the expensive deep probe of a device."""

    async def probe_device(self, device_key: str) -> dict[str, Any]:
        """Return deep info for device_key; raise if the device cannot be probed."""


def _iter_values(value: Any) -> Iterator[str]:
    if isinstance(value, dict):
        for item in value.values():
            yield from _iter_values(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _iter_values(item)
    elif value is not None:
        yield str(value)


def record_matches(record: CachedDeviceRecord, query: str) -> bool:
    """Case-insensitive substring match on the key and every deep-info value."""
    needle = query.strip().lower()
    if not needle:
        return True
    if needle in record.device_key.lower():
        return True
    return any(needle in text.lower() for text in _iter_values(record.deep_info))


class DeviceSearch:
    """Search results over a snapshot of the cache.

    Iterating again restarts from the beginning of the same snapshot; records
    written after the search was created are not seen.
    """

    def __init__(self, records: list[CachedDeviceRecord], query: str):
        self._records = records
        self.query = query

    def __iter__(self) -> Iterator[CachedDeviceRecord]:
        for record in self._records:
            if record_matches(record, self.query):
                yield record


class DeviceInfoCache:
    """TTL cache of deep device info with per-key single-flight probing.

    Args:
        root: directory for record files, or None for memory only
        prober: collaborator invoked on a miss
        default_ttl: seconds a freshly probed record stays live
        probe_timeout: upper bound for one probe
        clock: time source, injectable for tests
    """

    def __init__(
        self,
        root: Optional[Path],
        prober: DeviceProber,
        default_ttl: float = 7 * 24 * 60 * 60,
        probe_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.root = root
        self.prober = prober
        self.default_ttl = default_ttl
        self.probe_timeout = probe_timeout
        self._clock = clock
        self._records: dict[str, CachedDeviceRecord] = {}
        self._flight = SingleFlight("device-probe")
        # Bumped by clear() and clear_all(); a probe started under an older value is not stored.
        self._generations: dict[str, int] = {}
        self._epoch = 0
        self.evicted_corrupt = 0

        if self.root is not None:
            self.root.mkdir(parents=True, exist_ok=True)
            self._load()

    def _path(self, device_key: str) -> Optional[Path]:
        if self.root is None:
            return None
        return self.root / key_to_filename(device_key)

    def _load(self) -> None:
        """Load every record file; corrupt ones are deleted and refetched on demand."""
        for path in sorted(self.root.glob("*.json")):  # type: ignore[union-attr]
            try:
                record = CachedDeviceRecord.model_validate(read_json(path))
            except (OSError, ValueError) as e:
                logger.warning(f"Evicting corrupt device record {path.name}: {e}")
                remove_file(path)
                self.evicted_corrupt += 1
                continue
            self._records[record.device_key] = record

        logger.info(f"Loaded {len(self._records)} device records from {self.root}")

    def _persist(self, record: CachedDeviceRecord) -> None:
        path = self._path(record.device_key)
        if path is None:
            return
        try:
            atomic_write_json(path, record.model_dump(mode="json"))
        except CacheIOError as e:
            # The in-memory record is still served; only persistence is lost
            logger.warning(f"Failed to persist device record {record.device_key}: {e}")

    def get_cached(self, device_key: str) -> Optional[CachedDeviceRecord]:
        """Return the live record for device_key, or None if absent or expired."""
        record = self._records.get(device_key)
        if record is None or record.is_expired(self._clock()):
            return None
        return record

    async def get_deep_info(self, device_key: str, force_refresh: bool = False) -> CachedDeviceRecord:
        """Return the cached record, probing the device on a miss.

        Concurrent calls for the same key share a single probe.

        Raises:
            FetchTimeout: if the probe exceeds probe_timeout
            Exception: whatever the prober raises
        """
        if not force_refresh:
            cached = self.get_cached(device_key)
            if cached is not None:
                logger.debug(f"Device cache hit for {device_key}")
                return cached

        return await self._flight.do(device_key, lambda: self._probe_and_store(device_key))

    def _generation(self, device_key: str) -> tuple[int, int]:
        return self._epoch, self._generations.get(device_key, 0)

    async def _probe_and_store(self, device_key: str) -> CachedDeviceRecord:
        logger.info(f"Probing device {device_key}")
        generation = self._generation(device_key)
        try:
            deep_info = await asyncio.wait_for(
                self.prober.probe_device(device_key), timeout=self.probe_timeout
            )
        except asyncio.TimeoutError as e:
            raise FetchTimeout(
                f"Probe of {device_key} timed out after {self.probe_timeout}s", source="probe"
            ) from e
        if self._generation(device_key) != generation:
            logger.debug(f"Cache cleared while probing {device_key}; result not stored")
            return CachedDeviceRecord(
                device_key=device_key,
                deep_info=dict(deep_info),
                fetched_at=self._clock(),
                ttl=self.default_ttl,
            )
        return self.put(device_key, deep_info)

    def put(self, device_key: str, deep_info: dict[str, Any], ttl: Optional[float] = None) -> CachedDeviceRecord:
        """Store or overwrite the record for device_key with a fresh timestamp."""
        record = CachedDeviceRecord(
            device_key=device_key,
            deep_info=dict(deep_info),
            fetched_at=self._clock(),
            ttl=ttl if ttl is not None else self.default_ttl,
        )
        self._records[device_key] = record
        self._persist(record)
        return record

    def search(self, query: str = "", include_expired: bool = False) -> DeviceSearch:
        """Search cached records by key or deep-info content."""
        now = self._clock()
        snapshot = [
            r for r in sorted(self._records.values(), key=lambda r: r.device_key)
            if include_expired or not r.is_expired(now)
        ]
        return DeviceSearch(snapshot, query)

    async def refresh_matching(self, query: str) -> list[CachedDeviceRecord]:
        """Re-probe every cached device matching query, expired ones included.

        Devices whose probe fails keep their old record and are left out of
        the returned list.
        """
        keys = [r.device_key for r in self.search(query, include_expired=True)]
        results = await asyncio.gather(
            *(self.get_deep_info(key, force_refresh=True) for key in keys),
            return_exceptions=True,
        )

        refreshed: list[CachedDeviceRecord] = []
        for key, result in zip(keys, results):
            if isinstance(result, BaseException):
                logger.warning(f"Refresh of {key} failed: {result}")
            else:
                refreshed.append(result)
        return refreshed

    def all_records(self) -> list[CachedDeviceRecord]:
        """All live records, for offline viewing."""
        return list(self.search())

    def clear(self, device_key: str) -> bool:
        """Remove one record. Returns False if it was not cached."""
        self._generations[device_key] = self._generations.get(device_key, 0) + 1
        record = self._records.pop(device_key, None)
        path = self._path(device_key)
        if path is not None:
            remove_file(path)
        return record is not None

    def clear_all(self) -> int:
        """Remove every record and return how many there were."""
        count = len(self._records)
        self._epoch += 1
        for device_key in list(self._records):
            self.clear(device_key)
        self._generations.clear()
        logger.info(f"Cleared {count} device records")
        return count

    def cleanup(self) -> CleanupCounts:
        """Remove expired records only."""
        now = self._clock()
        expired = [key for key, record in self._records.items() if record.is_expired(now)]
        for device_key in expired:
            self.clear(device_key)

        counts = CleanupCounts(removed=len(expired), retained=len(self._records))
        if expired:
            logger.info(f"Device cache cleanup: removed {counts.removed}, retained {counts.retained}")
        return counts

    def stats(self) -> DeviceCacheStats:
        now = self._clock()
        records = list(self._records.values())
        expired = sum(1 for r in records if r.is_expired(now))
        return DeviceCacheStats(
            entry_count=len(records),
            expired_count=expired,
            valid_count=len(records) - expired,
            total_size_estimate=sum(len(r.model_dump_json()) for r in records),
        )
