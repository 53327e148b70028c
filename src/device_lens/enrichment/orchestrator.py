"""
Enrichment orchestrator.

Queries every enabled source for a device concurrently, each with its own
timeout and its own cache slot, and merges the payloads in priority order.
A failing source is reported in the per-source status list and left out of
the merge; it never stops the other sources.
"""

from __future__ import annotations
import asyncio
import copy
import logging
import re
import time
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from ..errors import CacheIOError, DeviceLensError, FetchTimeout, NetworkError
from ..models import (
    CleanupCounts,
    DeviceIdentity,
    EnrichedDevice,
    EnrichmentResult,
    SourceDescriptor,
    SourceState,
    SourceStatus,
)
from ..single_flight import SingleFlight
from ..storage import atomic_write_json, key_to_filename, read_json, remove_file
from .base import RegisteredSource

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _fill_missing(target: dict[str, Any], incoming: dict[str, Any]) -> None:
    for key, value in incoming.items():
        if _is_empty(value):
            continue
        existing = target.get(key)
        if _is_empty(existing):
            target[key] = copy.deepcopy(value)
        elif isinstance(existing, dict) and isinstance(value, dict):
            _fill_missing(existing, value)


def merge_payloads(payloads: list[dict[str, Any]]) -> dict[str, Any]:
    """Merge payloads given in priority order.

    The first non-empty value for a field wins; nested dicts are filled key
    by key, so a later source can add nested fields but never replace one.
    """
    merged: dict[str, Any] = {}
    for payload in payloads:
        _fill_missing(merged, payload)
    return merged


class EnrichmentOrchestrator:
    """Runs enrichment sources and caches their results per device and source.

    Args:
        root: directory for cache slots, or None for memory only
        sources: registered sources; any order, sorted by priority here
        ttl_seconds: lifetime of a cached source result
        timeout_seconds: upper bound for one source query
    """

    def __init__(
        self,
        root: Optional[Path],
        sources: list[RegisteredSource],
        ttl_seconds: float = 30 * 24 * 60 * 60,
        timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self.root = root
        self.sources = sorted(sources, key=lambda r: r.priority)
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._memory: dict[tuple[str, str], EnrichmentResult] = {}
        self._flight = SingleFlight("enrichment")

        if self.root is not None:
            self.root.mkdir(parents=True, exist_ok=True)

    def list_sources(self) -> list[SourceDescriptor]:
        """Configured sources in priority order. Never touches the network."""
        return [registered.describe() for registered in self.sources]

    # Cache slots

    def _slot_path(self, device_key: str, source_name: str) -> Optional[Path]:
        if self.root is None:
            return None
        directory = self.root / key_to_filename(device_key, suffix="")
        return directory / f"{_UNSAFE_CHARS.sub('_', source_name)}.json"

    def _read_slot(self, device_key: str, source_name: str) -> Optional[EnrichmentResult]:
        result = self._memory.get((device_key, source_name))
        if result is not None:
            return result

        path = self._slot_path(device_key, source_name)
        if path is None or not path.exists():
            return None
        try:
            result = EnrichmentResult.model_validate(read_json(path))
        except (OSError, ValueError) as e:
            logger.warning(f"Evicting corrupt enrichment record {path}: {e}")
            remove_file(path)
            return None

        if result.device_key != device_key or result.source_name != source_name:
            return None
        self._memory[(device_key, source_name)] = result
        return result

    def get_cached(self, device_key: str, source_name: str) -> Optional[EnrichmentResult]:
        """Live cached result for one source, or None."""
        result = self._read_slot(device_key, source_name)
        if result is None or result.is_expired(self._clock()):
            return None
        return result

    def _store(self, result: EnrichmentResult) -> None:
        self._memory[(result.device_key, result.source_name)] = result
        path = self._slot_path(result.device_key, result.source_name)
        if path is None:
            return
        try:
            atomic_write_json(path, result.model_dump(mode="json"))
        except CacheIOError as e:
            logger.warning(f"Failed to persist {result.source_name} result for {result.device_key}: {e}")

    # Enrichment

    async def enrich(
        self,
        device_key: str,
        identity: DeviceIdentity,
        force_refresh: bool = False,
    ) -> EnrichedDevice:
        """Query every enabled source and merge what they return.

        Returns once each source has answered, failed or timed out.
        """
        active = [registered for registered in self.sources if registered.enabled]
        outcomes = await asyncio.gather(
            *(self._run_source(registered, device_key, identity, force_refresh) for registered in active)
        )

        statuses = [status for status, _ in outcomes]
        merged = merge_payloads([payload for _, payload in outcomes if payload is not None])

        enriched = EnrichedDevice(
            device_key=device_key,
            identity=identity,
            payload=merged,
            sources=statuses,
            fetched_at=self._clock(),
        )
        logger.info(f"Enriched {device_key}: {enriched.summary}")
        return enriched

    async def _run_source(
        self,
        registered: RegisteredSource,
        device_key: str,
        identity: DeviceIdentity,
        force_refresh: bool,
    ) -> tuple[SourceStatus, Optional[dict[str, Any]]]:
        name = registered.name

        try:
            supported = registered.supports(identity)
        except Exception as e:
            logger.exception(f"{name}: supports() failed: {e}")
            return SourceStatus(name=name, status=SourceState.ERROR, error=str(e)), None
        if not supported:
            return SourceStatus(name=name, status=SourceState.UNSUPPORTED), None

        if not force_refresh:
            cached = self.get_cached(device_key, name)
            if cached is not None:
                logger.debug(f"Enrichment cache hit for {device_key} from {name}")
                return SourceStatus(name=name, status=SourceState.CACHED), cached.payload

        started = time.monotonic()
        try:
            result = await self._flight.do(
                (device_key, name), lambda: self._query(registered, device_key, identity)
            )
        except FetchTimeout as e:
            logger.warning(f"Enrichment source {name} timed out for {device_key}")
            status = SourceStatus(name=name, status=SourceState.TIMEOUT, error=str(e))
            return status, None
        except DeviceLensError as e:
            logger.warning(f"Enrichment source {name} failed for {device_key}: {e}")
            return SourceStatus(name=name, status=SourceState.ERROR, error=str(e)), None
        except Exception as e:
            logger.exception(f"Enrichment source {name} raised unexpectedly for {device_key}: {e}")
            return SourceStatus(name=name, status=SourceState.ERROR, error=str(e)), None

        elapsed_ms = (time.monotonic() - started) * 1000
        return SourceStatus(name=name, status=SourceState.OK, elapsed_ms=elapsed_ms), result.payload

    async def _query(
        self,
        registered: RegisteredSource,
        device_key: str,
        identity: DeviceIdentity,
    ) -> EnrichmentResult:
        name = registered.name
        try:
            payload = await asyncio.wait_for(registered.source.query(identity), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise FetchTimeout(f"No response within {self.timeout_seconds}s", source=name) from e

        if not isinstance(payload, dict):
            raise NetworkError(f"Malformed response of type {type(payload).__name__}", source=name)

        result = EnrichmentResult(
            device_key=device_key,
            source_name=name,
            payload=payload,
            fetched_at=self._clock(),
            ttl=self.ttl_seconds,
        )
        self._store(result)
        return result

    # Maintenance

    def _iter_slots(self) -> Iterator[tuple[Optional[Path], Optional[EnrichmentResult]]]:
        """Every stored slot; (path, None) for files that cannot be parsed."""
        if self.root is None:
            for result in list(self._memory.values()):
                yield None, result
            return

        for path in sorted(self.root.glob("*/*.json")):
            try:
                yield path, EnrichmentResult.model_validate(read_json(path))
            except (OSError, ValueError) as e:
                logger.warning(f"Unreadable enrichment record {path}: {e}")
                yield path, None

    def _drop(self, path: Optional[Path], result: Optional[EnrichmentResult]) -> None:
        if result is not None:
            self._memory.pop((result.device_key, result.source_name), None)
        if path is not None:
            remove_file(path)
            try:
                path.parent.rmdir()
            except OSError:
                pass

    def cleanup(self, source: Optional[str] = None, max_age: Optional[float] = None) -> CleanupCounts:
        """Remove expired results across all sources, or only the named one.

        Args:
            source: restrict cleanup to one source name
            max_age: also remove results older than this many seconds
        """
        now = self._clock()
        removed = retained = 0

        for path, result in self._iter_slots():
            if result is not None and source is not None and result.source_name != source:
                retained += 1
                continue

            stale = result is None or result.is_expired(now)
            if result is not None and max_age is not None:
                stale = stale or now - result.fetched_at > max_age

            if stale:
                self._drop(path, result)
                removed += 1
            else:
                retained += 1

        if removed:
            logger.info(f"Enrichment cache cleanup: removed {removed}, retained {retained}")
        return CleanupCounts(removed=removed, retained=retained)

    def invalidate(self, device_key: str, source: Optional[str] = None) -> int:
        """Forget cached results for one device; returns how many were removed."""
        names = [source] if source is not None else [registered.name for registered in self.sources]
        removed = 0
        for name in names:
            in_memory = self._memory.pop((device_key, name), None) is not None
            path = self._slot_path(device_key, name)
            on_disk = path is not None and path.exists()
            if on_disk:
                self._drop(path, None)
            if in_memory or on_disk:
                removed += 1
        return removed
