"""
Hardware ID database updater.

Downloads the official USB and PCI ID databases, writes them into the data
directory and swaps the in-memory snapshot once the new file is in place.

Sources:
- USB: http://www.linux-usb.org/usb.ids
- PCI: https://pci-ids.ucw.cz/v2.2/pci.ids
"""

from __future__ import annotations
import asyncio
import logging
import time
from pathlib import Path
from typing import Optional, Protocol

import httpx

from .errors import CacheIOError, DefinitionParseError, FetchTimeout, NetworkError
from .id_database import DEFINITION_FILENAMES, IdDatabaseHandle, decode_definitions, load_database
from .models import BusKind, UpdateResult
from .single_flight import SingleFlight
from .storage import atomic_write_bytes

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class DefinitionSource(Protocol):
    """Remote provider of definition files."""

    async def fetch_definitions(self, kind: BusKind) -> bytes:
        """Return the raw definitions payload for kind."""


class HttpDefinitionSource:
    """Fetches definition files over HTTP with httpx."""

    def __init__(
        self,
        urls: dict[BusKind, str],
        timeout: float = 60.0,
        user_agent: str = "device-lens",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.urls = urls
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": user_agent},
            follow_redirects=True,
        )

    async def fetch_definitions(self, kind: BusKind) -> bytes:
        url = self.urls[kind]
        try:
            response = await self._client.get(url)
        except httpx.TimeoutException as e:
            raise FetchTimeout(f"Timed out fetching {url}", source=kind.value) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Failed to fetch {url}: {e}", source=kind.value) from e

        if not response.is_success:
            raise NetworkError(f"HTTP error: {response.status_code} for {url}", source=kind.value)
        return response.content

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class DatabaseUpdater:
    """Keeps the on-disk definition files current and republishes snapshots.

    Args:
        data_dir: directory holding downloaded *.ids files, or None for
            in-memory only operation
        handles: active database handle per kind
        source: where fresh definition files come from
        staleness_days: age after which a downloaded file is considered stale
        timeout_seconds: upper bound for one download
    """

    def __init__(
        self,
        data_dir: Optional[Path],
        handles: dict[BusKind, IdDatabaseHandle],
        source: DefinitionSource,
        staleness_days: float = 30.0,
        timeout_seconds: float = 60.0,
    ):
        self.data_dir = data_dir
        self.handles = handles
        self.source = source
        self.staleness_days = staleness_days
        self.timeout_seconds = timeout_seconds
        self._flight = SingleFlight("hwids-update")

    def override_path(self, kind: BusKind) -> Optional[Path]:
        if self.data_dir is None:
            return None
        return self.data_dir / DEFINITION_FILENAMES[kind]

    def last_modified(self, kind: BusKind) -> Optional[float]:
        path = self.override_path(kind)
        if path is None:
            return None
        try:
            return path.stat().st_mtime
        except OSError:
            return None

    def needs_update(self, kind: BusKind, now: Optional[float] = None) -> bool:
        """True if no downloaded file exists or it is older than the staleness window."""
        modified = self.last_modified(kind)
        if modified is None:
            return True
        now = now if now is not None else time.time()
        return now - modified > self.staleness_days * SECONDS_PER_DAY

    async def update_databases(self, kind: Optional[BusKind] = None, force: bool = True) -> UpdateResult:
        """Download and install fresh definitions.

        Args:
            kind: a single kind, or None for both
            force: when False, kinds that are still fresh are skipped

        Returns:
            UpdateResult; on failure the existing file and snapshot are untouched
            and error describes what went wrong
        """
        kinds = [kind] if kind is not None else list(BusKind)
        outcomes = await asyncio.gather(*(self._update_kind(k, force) for k in kinds))

        result = UpdateResult()
        errors: list[str] = []
        for k, (updated, error) in zip(kinds, outcomes):
            if k == BusKind.USB:
                result.usb_updated = updated
            else:
                result.pci_updated = updated
            if error:
                errors.append(error)

        result.updated = result.usb_updated or result.pci_updated
        result.usb_entries = self.handles[BusKind.USB].current.entry_count
        result.pci_entries = self.handles[BusKind.PCI].current.entry_count
        if errors:
            result.error = "; ".join(errors)
        return result

    async def _update_kind(self, kind: BusKind, force: bool) -> tuple[bool, Optional[str]]:
        if not force and not self.needs_update(kind):
            logger.debug(f"{kind.value} ID database is fresh, skipping update")
            return False, None
        return await self._flight.do(kind, lambda: self._refresh(kind))

    async def _refresh(self, kind: BusKind) -> tuple[bool, Optional[str]]:
        logger.info(f"Updating {kind.value} ID database")
        try:
            payload = await asyncio.wait_for(
                self.source.fetch_definitions(kind), timeout=self.timeout_seconds
            )
            parsed = decode_definitions(payload)
            database = load_database(kind, extra_layers=[parsed])

            path = self.override_path(kind)
            if path is not None:
                atomic_write_bytes(path, payload)

            self.handles[kind].swap(database)
        except asyncio.TimeoutError:
            message = f"Failed to update {kind.value} IDs: timed out after {self.timeout_seconds}s"
        except (NetworkError, DefinitionParseError, CacheIOError) as e:
            message = f"Failed to update {kind.value} IDs: {e}"
        else:
            logger.info(f"{kind.value} ID database updated: {database.entry_count} entries")
            return True, None

        logger.warning(message)
        return False, message
